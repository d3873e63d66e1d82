"""storylink backend configuration."""
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


# Project root (one level up from storylink/)
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Project registry
PROJECTS_FILE = Path(os.getenv("STORYLINK_PROJECTS_FILE", str(PROJECT_ROOT / "projects.json")))

# Task store: "json" (one tasks.json per project) or "sqlite" (shared database file)
TASK_STORE_BACKEND = os.getenv("STORYLINK_TASK_STORE", "json")
SQLITE_PATH = Path(os.getenv("STORYLINK_SQLITE_PATH", str(PROJECT_ROOT / "data" / "tasks.db")))

# Planning document search roots, tried in order
EPIC_SEARCH_ROOTS = ("docs/epics", ".bmad-core/epics")

# View cache
CACHE_TTL_SECONDS = _env_float("STORYLINK_CACHE_TTL_SECONDS", 300.0)
VALIDATION_CACHE_TTL_SECONDS = _env_float("STORYLINK_VALIDATION_CACHE_TTL_SECONDS", 180.0)

# Change watcher
WATCH_DEBOUNCE_MS = _env_int("STORYLINK_WATCH_DEBOUNCE_MS", 300)
HEARTBEAT_SECONDS = _env_float("STORYLINK_HEARTBEAT_SECONDS", 30.0)
CHANNEL_QUEUE_SIZE = _env_int("STORYLINK_CHANNEL_QUEUE_SIZE", 100)

# Observability
OTEL_ENABLED = _env_bool("STORYLINK_OTEL_ENABLED", False)
OTEL_ENDPOINT = os.getenv("STORYLINK_OTEL_ENDPOINT", "http://localhost:4318")
OTEL_SERVICE_NAME = os.getenv("STORYLINK_OTEL_SERVICE_NAME", "storylink-backend")
PROM_PORT = _env_int("STORYLINK_PROM_PORT", 9464)

# Server settings
HOST = os.getenv("STORYLINK_HOST", "0.0.0.0")
PORT = int(os.getenv("STORYLINK_PORT", "9998"))

# CORS
FRONTEND_ORIGIN = os.getenv("STORYLINK_FRONTEND_ORIGIN", "http://localhost:3000")
