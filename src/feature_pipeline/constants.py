STATE_DIR_NAME = ".ralph"
LOCK_FILE = "pipeline.lock"
PRD_FILE = "prd.json"
CONFIG_FILE = "config.yaml"
BACKLOG_FILE = "features.yaml"
EVENTS_FILE = "events.ndjson"
RUNS_DIR = "runs"

DEFAULT_STALE_LOCK_SECONDS = 2 * 60 * 60
DEFAULT_TEST_TIMEOUT_SECONDS = 5 * 60
DEFAULT_TRACKER_TIMEOUT_SECONDS = 30
DEFAULT_GENERATOR_TIMEOUT_SECONDS = 10 * 60

DEFAULT_TRACKER_COMMAND = "gh"
DEFAULT_TRACKER_SORT = "sort:reactions-+1-desc"
DEFAULT_GENERATOR_COMMAND = "claude --print --dangerously-skip-permissions -p {prompt}"
DEFAULT_IMPLEMENTER_COMMAND = "ralph execute"
DEFAULT_TEST_COMMAND = "npm test"
DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH = "main"
DEFAULT_ROADMAP_AUTHOR = "Roadmap"

LABEL_QUEUED = "pipeline:queued"
LABEL_IN_PROGRESS = "pipeline:in-progress"
LABEL_COMPLETED = "pipeline:completed"

# Stripped from child environments so nested agent CLIs agree to start.
NESTED_AGENT_ENV_VARS = ("CLAUDECODE",)

STORY_STATUS_COMPLETE = "complete"
STORY_STATUS_SKIPPED = "skipped"
STORY_DONE_STATUSES = {STORY_STATUS_COMPLETE, STORY_STATUS_SKIPPED}

FEATURE_STATUS_OPEN = "open"
FEATURE_STATUS_APPROVED = "approved"

IMPL_STATUS_NONE = "none"
IMPL_STATUS_QUEUED = "queued"
IMPL_STATUS_IN_PROGRESS = "in_progress"
IMPL_STATUS_COMPLETED = "completed"

PRD_SECTION_HEADING = "## PRD"
PRD_DETAILS_SUMMARY = "Ralph PRD JSON"

# (name, color, description) created by `setup-labels`.
TRACKER_LABELS = [
    (LABEL_QUEUED, "fbca04", "PRD generated, waiting for implementation"),
    (LABEL_IN_PROGRESS, "1d76db", "Currently being implemented"),
    (LABEL_COMPLETED, "0e8a16", "Implementation complete"),
    ("type:feature", "a2eeef", "Feature request"),
    ("type:bug", "d73a4a", "Bug report"),
    ("priority:critical", "b60205", "Critical priority"),
    ("priority:high", "d93f0b", "High priority"),
    ("priority:medium", "fbca04", "Medium priority"),
    ("priority:low", "0e8a16", "Low priority"),
    ("source:roadmap", "c5def5", "Seeded from the roadmap"),
    ("source:user", "e4e669", "Submitted via feature board"),
]
