"""Provide the public `feature_pipeline` package exports."""

from __future__ import annotations

from .sequencer import PipelineSequencer, build_sequencer, run_pipeline

__all__ = ["PipelineSequencer", "build_sequencer", "run_pipeline"]
