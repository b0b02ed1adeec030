import os

from dotenv import load_dotenv

# Pick up a local .env before anything reads the environment
load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


LOG_LEVEL = os.environ.get("CONSOLE_LOG_LEVEL", "INFO").upper()
LOG_FILE = os.environ.get("CONSOLE_LOG_FILE")

CONNECT_TIMEOUT_MS = _env_int("CONSOLE_CONNECT_TIMEOUT_MS", 5000)
ADMIN_DATABASE = os.environ.get("CONSOLE_ADMIN_DATABASE", "postgres")
SSLMODE = os.environ.get("CONSOLE_SSLMODE", "prefer")
FANOUT_WORKERS = max(1, _env_int("CONSOLE_FANOUT_WORKERS", 4))

DEFAULT_SCHEMA = "public"
SAMPLE_ROW_LIMIT = _env_int("CONSOLE_SAMPLE_ROWS", 1000)
DEFAULT_PAGE_SIZE = _env_int("CONSOLE_DEFAULT_PAGE_SIZE", 20)

BLOAT_THRESHOLD = _env_float("CONSOLE_BLOAT_THRESHOLD", 20.0)
MAINTENANCE_FRESH_DAYS = _env_int("CONSOLE_FRESH_DAYS", 7)
REINDEX_SKIP_CONSTRAINT_INDEXES = _env_bool("CONSOLE_REINDEX_SKIP_CONSTRAINT_INDEXES", False)

READ_ONLY = _env_bool("CONSOLE_READ_ONLY", False)

SERVER_NAME = os.environ.get("CONSOLE_SERVER_NAME", "PostgreSQL Admin Console")
TRANSPORT = os.environ.get("CONSOLE_TRANSPORT", "http").strip().lower()
HOST = os.environ.get("CONSOLE_HOST", "0.0.0.0")
# Default to 8085 to avoid common 8000 conflicts
PORT = _env_int("CONSOLE_PORT", 8085)
