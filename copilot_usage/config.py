"""Copilot usage core configuration."""
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


def _env_paths(name: str) -> list[Path]:
    """Split an os.pathsep separated variable into paths (empty when unset)."""
    value = os.getenv(name)
    if not value:
        return []
    return [Path(part).expanduser() for part in value.split(os.pathsep) if part.strip()]


# Discovery roots. When empty, platform defaults from copilot_usage.paths are used.
STORAGE_ROOTS = _env_paths("COPILOT_USAGE_STORAGE_ROOTS")
LOG_ROOTS = _env_paths("COPILOT_USAGE_LOG_ROOTS")

# Real-time updates
WATCH_ENABLED = _env_bool("COPILOT_USAGE_WATCH_ENABLED", True)
SESSION_DEBOUNCE_MS = _env_int("COPILOT_USAGE_SESSION_DEBOUNCE_MS", 500)
EDIT_STATE_DEBOUNCE_MS = _env_int("COPILOT_USAGE_EDIT_STATE_DEBOUNCE_MS", 750)
LOG_DEBOUNCE_MS = _env_int("COPILOT_USAGE_LOG_DEBOUNCE_MS", 1000)
WATCH_MAX_RETRIES = _env_int("COPILOT_USAGE_WATCH_MAX_RETRIES", 3)
WATCH_RETRY_DELAY_SECONDS = _env_int("COPILOT_USAGE_WATCH_RETRY_DELAY_SECONDS", 2)
# Batching window handed to watchfiles before our own per-path debounce runs.
WATCH_BATCH_MS = _env_int("COPILOT_USAGE_WATCH_BATCH_MS", 200)

# Scanning limits
MAX_SESSION_FILE_MB = _env_int("COPILOT_USAGE_MAX_SESSION_FILE_MB", 50)

# Privacy
TRACK_USER_PROMPTS = _env_bool("COPILOT_USAGE_TRACK_USER_PROMPTS", False)

# Analytics
DEFAULT_TIME_RANGE = os.getenv("COPILOT_USAGE_DEFAULT_TIME_RANGE", "30d")
EXTENSION_VERSION = os.getenv("COPILOT_USAGE_EXTENSION_VERSION", "0.1.0")

# Observability
LOG_LEVEL = os.getenv("COPILOT_USAGE_LOG_LEVEL", "INFO")
OTEL_ENABLED = _env_bool("COPILOT_USAGE_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("COPILOT_USAGE_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("COPILOT_USAGE_OTEL_SERVICE_NAME", "copilot-usage")
PROM_PORT = _env_int("COPILOT_USAGE_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("COPILOT_USAGE_HOST", "127.0.0.1")
PORT = _env_int("COPILOT_USAGE_PORT", 8000)

# CORS
FRONTEND_ORIGIN = os.getenv("COPILOT_USAGE_FRONTEND_ORIGIN", "http://localhost:3000")
