"""Static configuration for herald.

All operator-editable settings (rate limits, media host, pacing, logging)
live in a single JSON file for quick edits without touching Python. Secrets
stay in the environment.
"""

import json
import os

from core.config import DispatchConfig, MediaConfig, QueueConfig, RateLimitConfig

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# config.json can be swapped per deployment with HERALD_CONFIG.
CONFIG_PATH = os.getenv("HERALD_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json with a flat, operator-friendly schema."""

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

# Where to store the SQLite database.
_database = _CONFIG.get("database", {})
DB_PATH = _resolve_path(_database.get("path", "herald.db"))

# Triggers allowed per sender inside the sliding windows.
_rate_limits = _CONFIG.get("rate_limits", {})
RATE_LIMITS = RateLimitConfig(
    hour=int(_rate_limits.get("hour", 3)),
    day=int(_rate_limits.get("day", 8)),
)

# Media host used to turn stored file paths into download URLs.
# - legacy_prefix/public_prefix: one rewrite for files from the old layout
_media = _CONFIG.get("media", {})
MEDIA = MediaConfig(
    base_url=_media.get("base_url", ""),
    legacy_prefix=_media.get("legacy_prefix", "media/campaigns/yanachaga/"),
    public_prefix=_media.get("public_prefix", "post/"),
    timeout_seconds=float(_media.get("timeout_seconds", 30)),
)
MEDIA_MAX_BYTES = _media.get("max_bytes")

_dispatch = _CONFIG.get("dispatch", {})
DISPATCH = DispatchConfig(
    send_timeout_seconds=float(_dispatch.get("send_timeout_seconds", 60)),
    gallery_gap_seconds=float(_dispatch.get("gallery_gap_seconds", 0.5)),
    document_filename=_dispatch.get("document_filename", "Brochure.pdf"),
)

_queue = _CONFIG.get("queue", {})
QUEUE = QueueConfig(
    max_size=int(_queue.get("max_size", 100)),
    workers=int(_queue.get("workers", 4)),
)

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
