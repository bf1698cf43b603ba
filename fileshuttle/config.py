import json
import logging
import math
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger("fileshuttle.config")

BYTES_PER_MB = 1024 * 1024
DEFAULT_PREVIEW_MAX_BYTES = 500 * 1024  # prefix served by /api/thumb

DEFAULT_CONFIG: Dict[str, Any] = {
    "root": str(Path.home()),
    "host": "0.0.0.0",
    "port": 8080,
    "scan_dirs": [
        "DCIM",
        "Pictures",
        "Download",
        "tencent/MicroMsg/WeiXin",
        "Movies",
        "Camera",
        "Screenshots",
    ],
    "image_extensions": ["jpg", "jpeg", "png", "gif", "webp", "heic", "heif", "bmp"],
    "video_extensions": ["mp4", "mkv", "avi", "mov", "wmv", "flv", "webm", "3gp", "m4v"],
    "upload_dir": "Download/FileShuttle",
    "logs_dir": "",
    "preview_cache_entries": 64,
    "preview_max_bytes": DEFAULT_PREVIEW_MAX_BYTES,
    "max_chunk_size_mb": 64,
    "max_upload_size_mb": 0,
    "upload_session_ttl_minutes": 0,
    "cleanup_interval_minutes": 5,
    "rate_limit_enabled": True,
    "rate_limit": "6000 per minute",
    "rate_limit_storage": "memory://",
}

CONFIG_INT_MINIMUMS = {
    "port": 0,
    "preview_cache_entries": 1,
    "preview_max_bytes": 1,
    "max_chunk_size_mb": 1,
    "max_upload_size_mb": 0,
    "upload_session_ttl_minutes": 0,
    "cleanup_interval_minutes": 1,
}

CONFIG_BOOLEAN_KEYS = {"rate_limit_enabled"}

CONFIG_STRING_KEYS = {"root", "host", "upload_dir", "logs_dir", "rate_limit", "rate_limit_storage"}

CONFIG_LIST_KEYS = {"scan_dirs", "image_extensions", "video_extensions"}

# Environment variable -> config key
ENV_OVERRIDES = {
    "FILESHUTTLE_ROOT": "root",
    "FILESHUTTLE_HOST": "host",
    "FILESHUTTLE_PORT": "port",
    "FILESHUTTLE_SCAN_DIRS": "scan_dirs",
    "FILESHUTTLE_IMAGE_EXTENSIONS": "image_extensions",
    "FILESHUTTLE_VIDEO_EXTENSIONS": "video_extensions",
    "FILESHUTTLE_UPLOAD_DIR": "upload_dir",
    "FILESHUTTLE_LOGS_DIR": "logs_dir",
    "FILESHUTTLE_PREVIEW_CACHE_ENTRIES": "preview_cache_entries",
    "FILESHUTTLE_PREVIEW_MAX_BYTES": "preview_max_bytes",
    "FILESHUTTLE_MAX_CHUNK_SIZE_MB": "max_chunk_size_mb",
    "FILESHUTTLE_MAX_UPLOAD_SIZE_MB": "max_upload_size_mb",
    "FILESHUTTLE_UPLOAD_SESSION_TTL_MINUTES": "upload_session_ttl_minutes",
    "FILESHUTTLE_CLEANUP_INTERVAL_MINUTES": "cleanup_interval_minutes",
    "FILESHUTTLE_RATE_LIMIT_ENABLED": "rate_limit_enabled",
    "FILESHUTTLE_RATE_LIMIT": "rate_limit",
    "FILESHUTTLE_RATE_LIMIT_STORAGE": "rate_limit_storage",
}


def _coerce_int(value: Any, default: int, min_value: int) -> int:
    """Coerce *value* to an int no smaller than *min_value*.

    NaN, infinity and unparsable values fall back to *default*.
    """
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            raise ValueError(value)
    except (TypeError, ValueError):
        logger.warning("config_value_invalid value=%r default=%s", value, default)
        return default
    return max(min_value, int(coerced))


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_list(value: Any) -> List[str]:
    if isinstance(value, str):
        items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        items = value
    else:
        return []
    result = []
    for item in items:
        text = str(item).strip()
        if text and text not in result:
            result.append(text)
    return result


def _normalize_config(raw_config: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    if not isinstance(raw_config, Mapping):
        raw_config = {}

    config = dict(DEFAULT_CONFIG)
    for key, minimum in CONFIG_INT_MINIMUMS.items():
        if key in raw_config:
            config[key] = _coerce_int(raw_config[key], DEFAULT_CONFIG[key], minimum)

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            config[key] = _coerce_bool(raw_config[key])

    for key in CONFIG_STRING_KEYS:
        value = raw_config.get(key)
        if value is not None:
            config[key] = str(value).strip()

    for key in CONFIG_LIST_KEYS:
        if key in raw_config:
            config[key] = _coerce_list(raw_config[key])

    config["image_extensions"] = [ext.lower().lstrip(".") for ext in config["image_extensions"]]
    config["video_extensions"] = [ext.lower().lstrip(".") for ext in config["video_extensions"]]
    config["scan_dirs"] = [entry.strip("/") for entry in config["scan_dirs"] if entry.strip("/")]
    if not config["root"]:
        config["root"] = DEFAULT_CONFIG["root"]
    if not config["rate_limit"]:
        config["rate_limit"] = DEFAULT_CONFIG["rate_limit"]
    return config


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as config_file:
            raw = json.load(config_file)
    except FileNotFoundError:
        logger.warning("config_file_missing path=%s", path)
        return {}
    except json.JSONDecodeError as error:
        logger.warning("config_file_invalid path=%s error=%s", path, error)
        return {}
    if not isinstance(raw, dict):
        logger.warning("config_file_not_object path=%s", path)
        return {}
    return raw


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for env_key, config_key in ENV_OVERRIDES.items():
        value = environ.get(env_key)
        if value is not None and value != "":
            overrides[config_key] = value
    return overrides


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Build the effective configuration.

    Layers, lowest priority first: ``DEFAULT_CONFIG``, the JSON file named by
    *config_path* (or ``FILESHUTTLE_CONFIG``), ``FILESHUTTLE_*`` environment
    variables, then *overrides* from the host application.
    """
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}

    if config_path is None and environ.get("FILESHUTTLE_CONFIG"):
        config_path = Path(environ["FILESHUTTLE_CONFIG"]).expanduser()
    if config_path is not None:
        raw.update(_read_config_file(config_path))

    raw.update(_env_overrides(environ))
    if overrides:
        raw.update(overrides)
    return _normalize_config(raw)


def resolve_under_root(config: Mapping[str, Any], key: str) -> Optional[Path]:
    """Resolve a directory setting, relative values being taken from ``root``."""

    value = config.get(key)
    if not value:
        return None
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = Path(config["root"]).expanduser() / path
    return path.resolve()
