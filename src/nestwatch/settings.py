"""Static configuration for nestwatch.

All user-editable settings (database, dispatch, notifications, logging) live
in a single JSON file for quick edits without touching Python. Secrets stay in
the environment (.env).
"""

import json
import os

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))

# NESTWATCH_CONFIG lets the scheduler point at a deployment-specific file.
CONFIG_PATH = os.getenv("NESTWATCH_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where the SQLite database lives; relative paths are resolved from the project root.
_database = _CONFIG.get("database", {})
DB_PATH = _resolve_path(_database.get("path", "nestwatch.db"))

# Dispatcher batch settings.
# - WORKER_NAME: cursor row used by this dispatcher
# - LOOKBACK_HOURS: first-run window when no cursor exists yet
# - MAX_CONCURRENT_USERS: owners processed in parallel within a batch
# - SEND_INTERVAL_SECONDS: pause between sends to the same owner
_dispatch = _CONFIG.get("dispatch", {})
WORKER_NAME = _dispatch.get("worker_name", "notify")
LOOKBACK_HOURS = int(_dispatch.get("lookback_hours", 24))
MAX_CONCURRENT_USERS = int(_dispatch.get("max_concurrent_users", 1))
SEND_INTERVAL_SECONDS = float(_dispatch.get("send_interval_seconds", 0.05))

# Delivery method switches adapters without changing core logic.
_notifications = _CONFIG.get("notifications", {})
DELIVERY_METHOD = _notifications.get("delivery_method", "bot")
SNIPPET_CHARS = int(_notifications.get("snippet_chars", 300))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
