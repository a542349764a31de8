"""Disk cache for ingested heightmaps.

Ingesting a large LAS survey is by far the slowest step, so the resulting
store is written next to a hash of everything that determines it: the LAS
files (path, size, modification time), the bounds, the cell size, the
classification filter and the zone the points are stored in. Changing any
of them gives a different file.
"""

import hashlib
import json
import logging
import os
import time

from .app_config import get_cache_dir
from .coordinates import Hemisphere
from .errors import CacheFormatError
from .heightmap_store import CACHE_VERSION, HeightmapStore

logger = logging.getLogger(__name__)


def _file_identity(path):
    stat = os.stat(path)
    return {
        "path": os.path.abspath(os.fspath(path)),
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def heightmap_cache_key(las_paths, min_corner, max_corner, cell_size, classification_filter, las_zone=None):
    """JSON-serializable payload identifying a heightmap build."""
    source_zone = None
    if las_zone is not None:
        zone, hemisphere = las_zone
        source_zone = [int(zone), Hemisphere.parse(hemisphere).value]
    return {
        "version": CACHE_VERSION,
        "files": sorted((_file_identity(p) for p in las_paths), key=lambda item: item["path"]),
        "zone": min_corner.zone,
        "hemisphere": min_corner.hemisphere.value,
        "las_zone": source_zone,
        "min": [min_corner.easting, min_corner.northing],
        "max": [max_corner.easting, max_corner.northing],
        "cell_size": cell_size,
        "classes": classification_filter.cache_key(),
    }


def _cache_file_path(namespace, key_payload, cache_dir=None):
    cache_dir = cache_dir or get_cache_dir()
    os.makedirs(cache_dir, exist_ok=True)
    serialized = json.dumps(key_payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
    return os.path.join(cache_dir, f"{namespace}_{digest}.l2sh")


def heightmap_cache_path(key_payload, cache_dir=None):
    return _cache_file_path("heightmap", key_payload, cache_dir=cache_dir)


def load_cached_heightmap(key_payload, max_age_seconds=None, cache_dir=None):
    """
    Load a cached heightmap if present and not expired.

    A file that cannot be decoded (older format, truncated write) is treated
    as a miss and logged; the caller re-ingests and overwrites it.
    """
    path = heightmap_cache_path(key_payload, cache_dir=cache_dir)
    if not os.path.exists(path):
        return None

    if max_age_seconds is not None:
        age_seconds = time.time() - os.path.getmtime(path)
        if age_seconds > max_age_seconds:
            logger.info(f"Heightmap cache {path} expired ({age_seconds:.0f}s old)")
            return None

    try:
        return HeightmapStore.load_file(path)
    except CacheFormatError as exc:
        logger.warning(f"Ignoring unreadable heightmap cache {path}: {exc}")
        return None


def save_cached_heightmap(key_payload, store, cache_dir=None):
    """Persist a heightmap in the disk cache and return its path."""
    path = heightmap_cache_path(key_payload, cache_dir=cache_dir)
    return store.save_file(path)
