import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

BASE_DIR = Path(__file__).resolve().parent

BYTES_PER_MB = 1024 * 1024

# Service limits. These are part of the public contract and are not configurable.
RETENTION_HOURS = 5
RETENTION_SECONDS = RETENTION_HOURS * 3600
BAN_DURATION_HOURS = 3
BAN_DURATION_SECONDS = BAN_DURATION_HOURS * 3600
MAX_UPLOAD_BYTES = 128 * BYTES_PER_MB
UPLOAD_RATE_LIMIT_REQUESTS = 2
UPLOAD_RATE_LIMIT_WINDOW_SECONDS = 5
VELOCITY_LIMIT_REQUESTS = 30
VELOCITY_WINDOW_SECONDS = 60
RANGE_CHUNK_SIZE = 1_000_000
SLOWDOWN_WINDOW_SECONDS = 15 * 60
SLOWDOWN_DELAY_AFTER = 10
SLOWDOWN_DELAY_STEP_SECONDS = 0.1
SLOWDOWN_MAX_DELAY_SECONDS = 5.0
URL_FETCH_TIMEOUT_SECONDS = 30
FALLBACK_EXTENSION = "bin"

# Multipart framing overhead tolerated on top of the file size cap.
MULTIPART_OVERHEAD_BYTES = BYTES_PER_MB

DEFAULT_REAPER_INTERVAL_MINUTES = 60
DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE = 120

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

logger = logging.getLogger("temphost.config")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value.strip() == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean for %s: %s. Ignoring.", env_key, raw_value)
    return None


def load_settings(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Build runtime settings from the environment, then apply *overrides*."""

    storage_root = _resolve_env_path("TEMPHOST_STORAGE_ROOT", BASE_DIR)
    enable_scheduler = _get_optional_bool_env("TEMPHOST_ENABLE_SCHEDULER")
    log_to_file = _get_optional_bool_env("TEMPHOST_LOG_TO_FILE")
    public_url = (os.environ.get("TEMPHOST_PUBLIC_URL") or "").strip().rstrip("/")

    settings: Dict[str, Any] = {
        "storage_root": storage_root,
        "uploads_dir": _resolve_env_path("TEMPHOST_UPLOADS_DIR", storage_root / "uploads"),
        "logs_dir": _resolve_env_path("TEMPHOST_LOGS_DIR", storage_root / "logs"),
        "log_level": os.environ.get("LOG_LEVEL", "INFO").upper(),
        "log_to_file": True if log_to_file is None else log_to_file,
        "port": _safe_int_env("PORT", 5470),
        "reaper_interval_minutes": _safe_int_env(
            "TEMPHOST_REAPER_INTERVAL_MINUTES", DEFAULT_REAPER_INTERVAL_MINUTES
        ),
        "download_rate_limit_per_minute": _safe_int_env(
            "TEMPHOST_RATE_LIMIT_DOWNLOADS_PER_MINUTE", DEFAULT_DOWNLOAD_RATE_LIMIT_PER_MINUTE
        ),
        "rate_limit_storage": os.environ.get("TEMPHOST_RATE_LIMIT_STORAGE", "memory://"),
        "trusted_proxies": _safe_int_env("TEMPHOST_TRUSTED_PROXIES", 0, min_value=0),
        "public_url": public_url or None,
        "enable_scheduler": True if enable_scheduler is None else enable_scheduler,
    }
    if overrides:
        settings.update(overrides)
    for key in ("storage_root", "uploads_dir", "logs_dir"):
        settings[key] = Path(settings[key])
    return settings


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def format_file_size(num: float) -> str:
    if num >= 1024 ** 3:
        return f"{num / 1024 ** 3:.2f} GB"
    if num >= 1024 ** 2:
        return f"{num / 1024 ** 2:.2f} MB"
    if num >= 1024:
        return f"{num / 1024:.2f} KB"
    return f"{int(num)} bytes"


def format_time_remaining(seconds: float) -> str:
    total_seconds = int(seconds)
    if total_seconds <= 0:
        return "Expired"

    minutes, secs = divmod(total_seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours} hours, {minutes} minutes, {secs} seconds"
