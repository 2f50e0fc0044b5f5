from __future__ import annotations

import subprocess
import sys
import threading
import time
from pathlib import Path
from typing import Any, Optional

from .io_utils import _read_text_tail
from .utils import _child_env, _now_iso


def _stream_pipe(pipe: Any, file_path: Path, label: str, to_stderr: bool, quiet: bool = True) -> None:
    prefix = f"[{label}] "
    with open(file_path, "w", encoding="utf-8") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
            if quiet:
                continue
            if to_stderr:
                sys.stderr.write(prefix + line)
                sys.stderr.flush()
            else:
                sys.stdout.write(prefix + line)
                sys.stdout.flush()
    try:
        pipe.close()
    except OSError:
        pass


def _terminate(process: subprocess.Popen) -> None:
    process.terminate()
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()


def _run_streaming(
    command_parts: list[str],
    project_dir: Path,
    run_dir: Path,
    *,
    label: str,
    timeout_seconds: Optional[int] = None,
    echo: bool = True,
) -> dict[str, Any]:
    """Run a long-lived CLI, teeing stdout/stderr into `run_dir` log files."""
    run_dir.mkdir(parents=True, exist_ok=True)
    stdout_path = run_dir / f"{label}.stdout.log"
    stderr_path = run_dir / f"{label}.stderr.log"
    start_time = time.monotonic()
    start_iso = _now_iso()
    timed_out = False

    process = subprocess.Popen(
        command_parts,
        cwd=project_dir,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
        env=_child_env(),
    )

    stdout_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stdout, stdout_path, label, False, not echo),
        daemon=True,
    )
    stderr_thread = threading.Thread(
        target=_stream_pipe,
        args=(process.stderr, stderr_path, label, True, not echo),
        daemon=True,
    )
    stdout_thread.start()
    stderr_thread.start()

    try:
        process.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        timed_out = True
        _terminate(process)

    exit_code = process.poll()
    if exit_code is None:
        exit_code = -1

    stdout_thread.join(timeout=5)
    stderr_thread.join(timeout=5)

    return {
        "command": command_parts,
        "stdout_path": str(stdout_path),
        "stderr_path": str(stderr_path),
        "start_time": start_iso,
        "end_time": _now_iso(),
        "runtime_seconds": int(time.monotonic() - start_time),
        "exit_code": exit_code,
        "timed_out": timed_out,
        "stderr_tail": _read_text_tail(stderr_path, max_chars=2000),
    }


def _run_command(
    command: str,
    project_dir: Path,
    log_path: Path,
    *,
    timeout_seconds: Optional[int] = None,
) -> dict[str, Any]:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "w", encoding="utf-8") as handle:
        try:
            result = subprocess.run(
                command,
                cwd=project_dir,
                shell=True,
                stdout=handle,
                stderr=subprocess.STDOUT,
                text=True,
                env=_child_env(),
                timeout=timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            handle.write(f"\n[pipeline] Command timed out after {timeout_seconds}s\n")
            return {
                "command": command,
                "exit_code": 124,
                "log_path": str(log_path),
                "timed_out": True,
            }
    return {
        "command": command,
        "exit_code": result.returncode,
        "log_path": str(log_path),
        "timed_out": False,
    }
