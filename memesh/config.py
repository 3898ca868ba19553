"""
MeMesh A2A Configuration

Settings resolve in order: environment variable, then `config.json` in the
data directory, then the built-in default.
"""
import os
import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "config.json"


def resolve_data_dir() -> Path:
    """MEMESH_DATA_DIR, else `data/` in a source checkout, else ~/.memesh."""
    override = os.getenv("MEMESH_DATA_DIR")
    if override:
        return Path(override)
    checkout_data = Path(__file__).resolve().parent.parent / "data"
    if checkout_data.is_dir():
        return checkout_data
    return Path.home() / ".memesh"


def load_config_file(path: Path) -> dict:
    """Settings from a JSON object file; missing or unreadable files yield {}."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable config file {path}: {e}")
        return {}
    if not isinstance(loaded, dict):
        logger.warning(f"Ignoring config file {path}: expected a JSON object")
        return {}
    return loaded


DATA_DIR = resolve_data_dir()
_file_settings = load_config_file(DATA_DIR / CONFIG_FILE_NAME)


def _setting(env_key: str, file_key: str, default: str) -> str:
    value = os.getenv(env_key)
    if value is None:
        value = _file_settings.get(file_key, default)
    return str(value)


VERSION = "0.1.0"

# HTTP server - default to localhost only, A2A is not a public-internet protocol
HOST = _setting("MEMESH_A2A_HOST", "HOST", "127.0.0.1")
PORT_RANGE_MIN = int(_setting("MEMESH_A2A_PORT_MIN", "PORT_RANGE_MIN", "3000"))
PORT_RANGE_MAX = int(_setting("MEMESH_A2A_PORT_MAX", "PORT_RANGE_MAX", "3999"))
AGENT_ID = _setting("MEMESH_A2A_AGENT_ID", "AGENT_ID", "")

# Time constants (milliseconds)
TASK_TIMEOUT_MS = 5 * 60_000
TASK_TIMEOUT_MIN_MS = 5_000
TASK_TIMEOUT_MAX_MS = 24 * 60 * 60_000
TIMEOUT_CHECK_INTERVAL_MS = int(_setting("MEMESH_A2A_TIMEOUT_CHECK_INTERVAL", "TIMEOUT_CHECK_INTERVAL_MS", "60000"))
HEARTBEAT_INTERVAL_MS = 60_000
STALE_AGENT_THRESHOLD_MS = int(_setting("MEMESH_A2A_STALE_THRESHOLD", "STALE_AGENT_THRESHOLD_MS", str(5 * 60_000)))
DELETE_STALE_THRESHOLD_MS = 24 * 60 * 60_000

# Phase 1: one task in flight per agent
MAX_CONCURRENT_TASKS_PHASE_1 = 1

# Input validation bounds
MAX_FILTER_ARRAY_SIZE = 100
MAX_LIST_LIMIT = 10_000

# Rate limiting (requests per minute)
RATE_LIMIT_DEFAULT_RPM = 100
RATE_LIMITS_RPM = {
    "send-message": 60,
    "get-task": 120,
    "list-tasks": 100,
    "cancel-task": 60,
}
RATE_LIMIT_ENV_KEYS = {
    "send-message": "MEMESH_A2A_RATE_LIMIT_SEND_MESSAGE",
    "get-task": "MEMESH_A2A_RATE_LIMIT_GET_TASK",
    "list-tasks": "MEMESH_A2A_RATE_LIMIT_LIST_TASKS",
    "cancel-task": "MEMESH_A2A_RATE_LIMIT_CANCEL_TASK",
}
RATE_LIMIT_CLEANUP_INTERVAL_MS = 5 * 60_000
RATE_LIMIT_IDLE_EXPIRY_MS = 10 * 60_000

# Client retry bounds: (min, max, default)
RETRY_MAX_ATTEMPTS_BOUNDS = (0, 10, 3)
RETRY_BASE_DELAY_MS_BOUNDS = (100, 60_000, 1_000)
RETRY_TIMEOUT_MS_BOUNDS = (1_000, 300_000, 30_000)

LOG_LEVEL = _setting("MEMESH_LOG_LEVEL", "LOG_LEVEL", "INFO").upper()


def _positive_int_env(key: str) -> int | None:
    raw = os.getenv(key)
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {key}: {raw!r}")
        return None
    return value if value > 0 else None


def get_a2a_token() -> str | None:
    """Bearer secret shared by all agents. Read at call time so it can be rotated."""
    return os.getenv("MEMESH_A2A_TOKEN") or None


def get_task_timeout_ms() -> int:
    """Task timeout from MEMESH_A2A_TASK_TIMEOUT, clamped to sane bounds."""
    value = _positive_int_env("MEMESH_A2A_TASK_TIMEOUT")
    if value is None:
        return TASK_TIMEOUT_MS
    if value < TASK_TIMEOUT_MIN_MS:
        logger.warning(f"MEMESH_A2A_TASK_TIMEOUT={value} below minimum, using {TASK_TIMEOUT_MIN_MS}")
        return TASK_TIMEOUT_MIN_MS
    if value > TASK_TIMEOUT_MAX_MS:
        logger.warning(f"MEMESH_A2A_TASK_TIMEOUT={value} above maximum, using {TASK_TIMEOUT_MAX_MS}")
        return TASK_TIMEOUT_MAX_MS
    return value


def get_rate_limit_rpm(endpoint: str) -> int:
    """
    Requests-per-minute budget for a rate-limit key.

    Known endpoints: env override, then built-in budget.
    Unknown endpoints: MEMESH_A2A_RATE_LIMIT_DEFAULT, then RATE_LIMIT_DEFAULT_RPM.
    """
    env_key = RATE_LIMIT_ENV_KEYS.get(endpoint)
    if env_key:
        override = _positive_int_env(env_key)
        if override is not None:
            return override
    if endpoint in RATE_LIMITS_RPM:
        return RATE_LIMITS_RPM[endpoint]
    override = _positive_int_env("MEMESH_A2A_RATE_LIMIT_DEFAULT")
    return override if override is not None else RATE_LIMIT_DEFAULT_RPM


def metrics_enabled() -> bool:
    return os.getenv("A2A_METRICS_ENABLED", "true").lower() not in {"0", "false", "no"}


def clamp_env_int(key: str, bounds: tuple[int, int, int]) -> int:
    """Parse an integer env var and clamp it to (min, max); fall back to default."""
    lo, hi, default = bounds
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid value for {key}: {raw!r}, using default {default}")
        return default
    if value < lo:
        logger.warning(f"{key}={value} is below minimum {lo}, clamping")
        return lo
    if value > hi:
        logger.warning(f"{key}={value} exceeds maximum {hi}, clamping")
        return hi
    return value


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT_RANGE_MIN": PORT_RANGE_MIN,
        "PORT_RANGE_MAX": PORT_RANGE_MAX,
        "AGENT_ID": AGENT_ID,
        "TIMEOUT_CHECK_INTERVAL_MS": TIMEOUT_CHECK_INTERVAL_MS,
        "STALE_AGENT_THRESHOLD_MS": STALE_AGENT_THRESHOLD_MS,
        "LOG_LEVEL": LOG_LEVEL,
    }
