"""Static configuration for captionsync.

All user-editable settings (retry, sync, parser, recovery, logging) live in a
single JSON file for quick edits without touching Python. A .env file may
override the database path and log level.
"""

import json
import os

from dotenv import load_dotenv

from core.config import ParserConfig, RecoveryConfig, RetryConfig, SyncConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

load_dotenv()

CONFIG_PATH = os.getenv("CAPTIONSYNC_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database. Relative paths are resolved against the
# project root.
DB_PATH = os.getenv("CAPTIONSYNC_DB_PATH") or _CONFIG.get("db_path", "captionsync.db")
if not os.path.isabs(DB_PATH):
    DB_PATH = os.path.join(PROJECT_ROOT, DB_PATH)

# Backoff for every store write made by the processor and synchronizer.
_retry = _CONFIG.get("retry", {})
RETRY = RetryConfig(
    max_retries=int(_retry.get("max_retries", 3)),
    initial_delay_ms=float(_retry.get("initial_delay_ms", 500)),
    max_delay_ms=float(_retry.get("max_delay_ms", 30000)),
    backoff_factor=float(_retry.get("backoff_factor", 2.0)),
    use_jitter=bool(_retry.get("use_jitter", True)),
    timeout_ms=_retry.get("timeout_ms"),
)

# Media group sync defaults; CLI flags override per call.
_sync = _CONFIG.get("sync", {})
SYNC = SyncConfig(
    force_sync=bool(_sync.get("force_sync", False)),
    sync_edit_history=bool(_sync.get("sync_edit_history", False)),
    retry_writes=bool(_sync.get("retry_writes", True)),
)

_parser = _CONFIG.get("parser", {})
PARSER = ParserConfig(
    escalation_name_length=int(_parser.get("escalation_name_length", 23)),
    reasonable_quantity_max=int(_parser.get("reasonable_quantity_max", 10000)),
)

_recovery = _CONFIG.get("recovery", {})
RECOVERY = RecoveryConfig(
    max_retry_count=int(_recovery.get("max_retry_count", 5)),
    stalled_after_minutes=int(_recovery.get("stalled_after_minutes", 15)),
)

# Logging configuration (optional). The level can be forced from the env.
LOGGING = dict(_CONFIG.get("logging", {}))
if os.getenv("CAPTIONSYNC_LOG_LEVEL"):
    LOGGING["level"] = os.getenv("CAPTIONSYNC_LOG_LEVEL")
