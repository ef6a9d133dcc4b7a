"""obsmem daemon configuration."""
import os
from pathlib import Path


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


# Global daemon paths
DAEMON_DIR = Path(os.getenv("OBSMEM_DAEMON_DIR", str(Path.home() / ".claude-memory")))
PROJECTS_FILE = DAEMON_DIR / "projects.json"
STATE_DIR = DAEMON_DIR / "state"

# Claude Code conversation storage
CLAUDE_PROJECTS_DIR = Path(os.getenv("OBSMEM_CLAUDE_PROJECTS_DIR", str(Path.home() / ".claude" / "projects")))

# Per-project artifact names (relative to the project root)
OBSERVATIONS_FILE = os.getenv("OBSMEM_OBSERVATIONS_FILE", "OBSERVATIONS.md")
LOCK_FILE = os.getenv("OBSMEM_LOCK_FILE", ".claude/observations.lock")

# Quiet period after the last change to a transcript before it is processed
DEBOUNCE_SECONDS = _env_float("OBSMEM_DEBOUNCE_SECONDS", 5 * 60)

# Startup catch-up
MAX_CATCHUP_FILES = _env_int("OBSMEM_MAX_CATCHUP_FILES", 10)

# Transcripts smaller than this are trivial sessions and never processed
MIN_FILE_SIZE_BYTES = _env_int("OBSMEM_MIN_FILE_SIZE_BYTES", 1024)

# Rendered deltas shorter than this are consumed without an extraction pass
MIN_DELTA_CHARS = _env_int("OBSMEM_MIN_DELTA_CHARS", 100)

# Renderer budgets
MAX_TOOL_RESULT_CHARS = _env_int("OBSMEM_MAX_TOOL_RESULT_CHARS", 500)
MAX_TOOL_INPUT_CHARS = 200
MAX_ERROR_BRIEF_CHARS = 120

# Compaction
DEFAULT_COMPACTION_THRESHOLD = _env_int("OBSMEM_DEFAULT_COMPACTION_THRESHOLD", 20000)
MIN_COMPACTION_THRESHOLD = 1000
CHARS_PER_TOKEN = 4
MIN_COMPACTION_CHARS = 50

# Lock retry settings (12 x 5s = 1 minute)
LOCK_RETRY_DELAY_SECONDS = _env_float("OBSMEM_LOCK_RETRY_DELAY_SECONDS", 5.0)
LOCK_MAX_RETRIES = _env_int("OBSMEM_LOCK_MAX_RETRIES", 12)

# When an append is abandoned because the lock stayed held, keep the cursor
# where it was so the same byte range is retried on the next cycle.
ADVANCE_CURSOR_ON_SKIPPED_APPEND = _env_bool("OBSMEM_ADVANCE_CURSOR_ON_SKIPPED_APPEND", False)

# After this many consecutive abandoned appends for one file the delta is
# dropped and the cursor advanced anyway.
MAX_SKIPPED_APPENDS = _env_int("OBSMEM_MAX_SKIPPED_APPENDS", 3)

# External passes
CLAUDE_CLI_COMMAND = os.getenv("OBSMEM_CLAUDE_CLI_COMMAND", "claude")
PASS_TIMEOUT_SECONDS = _env_int("OBSMEM_PASS_TIMEOUT_SECONDS", 600)
NO_OBSERVATIONS_SENTINEL = "NO_OBSERVATIONS"
PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"

# Watcher
WATCHER_ENABLED = _env_bool("OBSMEM_WATCHER_ENABLED", True)

# Observability
OTEL_ENABLED = _env_bool("OBSMEM_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("OBSMEM_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("OBSMEM_OTEL_SERVICE_NAME", "obsmem-daemon")
PROM_PORT = _env_int("OBSMEM_PROM_PORT", 0)

# Server settings
HOST = os.getenv("OBSMEM_HOST", "127.0.0.1")
PORT = int(os.getenv("OBSMEM_PORT", "8765"))
