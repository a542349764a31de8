"""Application configuration helpers."""

import math
import os


DEFAULT_INGEST_CHUNK_SIZE = 1_000_000
DEFAULT_PROGRESS_INTERVAL = 2_097_152
DEFAULT_Z_SCALE = 1.0
DEFAULT_BASE_HEIGHT = 2.0


def parse_env_bool(value, default=False):
    """Parse a boolean-like environment value with a fallback default."""
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


def parse_env_int(name, default):
    """Parse an integer environment value with fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def parse_env_float(name, default):
    """Parse a finite float environment value with fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return value


def get_cache_dir():
    """
    Directory for heightmap cache files.

    `LIDAR2STL_CACHE_DIR` overrides the per-user default.
    """
    raw = os.getenv("LIDAR2STL_CACHE_DIR", "").strip()
    if raw:
        return os.path.expanduser(raw)
    return os.path.join(os.path.expanduser("~"), ".cache", "lidar2stl")


def get_ingest_chunk_size():
    return max(1, parse_env_int("LIDAR2STL_INGEST_CHUNK_SIZE", DEFAULT_INGEST_CHUNK_SIZE))


def get_progress_interval():
    return max(1, parse_env_int("LIDAR2STL_PROGRESS_INTERVAL", DEFAULT_PROGRESS_INTERVAL))


def get_default_z_scale():
    return parse_env_float("LIDAR2STL_Z_SCALE", DEFAULT_Z_SCALE)


def get_default_base_height():
    return max(0.0, parse_env_float("LIDAR2STL_BASE_HEIGHT", DEFAULT_BASE_HEIGHT))


def get_use_cache():
    return parse_env_bool(os.getenv("LIDAR2STL_USE_CACHE"), True)
