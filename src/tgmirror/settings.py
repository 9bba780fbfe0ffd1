"""Static configuration for tgmirror.

All user-editable settings (source channel, target instance, retry timings,
importance rules, junk patterns, logging) live in a single JSON file for quick
edits without touching Python. Secrets stay in the environment / ``.env``.
"""

import json
import os

from dotenv import load_dotenv

load_dotenv()

# config.json in the working directory unless TGMIRROR_CONFIG points elsewhere.
CONFIG_PATH = os.path.abspath(os.getenv("TGMIRROR_CONFIG") or "config.json")

# Relative paths in the config (database, log file) resolve against this.
PROJECT_ROOT = os.path.dirname(CONFIG_PATH)


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

# Source channel public username, used for lookups and fallback links.
_source = _CONFIG.get("source", {})
CHANNEL = str(_source.get("channel", "")).lstrip("@")
if not CHANNEL:
    raise RuntimeError("source.channel is required in config.json")

# Target instance and posting defaults.
_target = _CONFIG.get("target", {})
TARGET_INSTANCE = _target.get("instance")
if not TARGET_INSTANCE:
    raise RuntimeError("target.instance is required in config.json")
LANGUAGE = _target.get("language", "ru")
NORMAL_VISIBILITY = _target.get("normal_visibility", "unlisted")
IMPORTANT_VISIBILITY = _target.get("important_visibility", "public")
MAX_DESCRIPTION_LENGTH = int(_target.get("max_description_length", 1500))

# Delivery retry timings.
# - RETRY_COOLDOWN_SECONDS: pause before retrying a failed event
# - ATTACHMENT_RETRY_*: sub-retry while the target processes uploads
_delivery = _CONFIG.get("delivery", {})
RETRY_COOLDOWN_SECONDS = float(_delivery.get("retry_cooldown_seconds", 60))
ATTACHMENT_RETRY_ATTEMPTS = int(_delivery.get("attachment_retry_attempts", 15))
ATTACHMENT_RETRY_DELAY_SECONDS = float(_delivery.get("attachment_retry_delay_seconds", 20))

# How long a media group stays open waiting for more items.
_grouping = _CONFIG.get("grouping", {})
FLUSH_DELAY_SECONDS = float(_grouping.get("flush_delay_seconds", 10))

# At most CAPACITY important (public) posts per WINDOW.
_rate_limit = _CONFIG.get("rate_limit", {})
RATE_LIMIT_WINDOW_SECONDS = float(_rate_limit.get("window_minutes", 60)) * 60
RATE_LIMIT_CAPACITY = int(_rate_limit.get("capacity", 3))

# Restart the process when the event stream is silent for this long.
_watchdog = _CONFIG.get("watchdog", {})
WATCHDOG_ENABLED = bool(_watchdog.get("enabled", True))
WATCHDOG_THRESHOLD_SECONDS = float(_watchdog.get("threshold_minutes", 30)) * 60

# Importance rules are pulled directly from config.json.
IMPORTANCE_RULES_CONFIG = _CONFIG.get("importance_rules", [])

# Regexes whose matches are removed from source text before posting.
JUNK_PATTERNS = list(_CONFIG.get("junk_patterns", []))

# Where to store the SQLite database.
DB_PATH = _resolve_path(_CONFIG.get("database", {}).get("path", "tgmirror.db"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
