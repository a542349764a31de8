"""
lidar2stl - LIDAR terrain to 3D printable model pipeline.

Turns LAS point clouds into a cached heightmap, applies masks and writes one
STL file per printable object.
"""

import glob
import logging
import os
import time
from dataclasses import dataclass, field

import numpy as np
from werkzeug.utils import secure_filename

from .utils.app_config import get_default_base_height, get_default_z_scale, get_use_cache
from .utils.coordinates import Hemisphere, UtmCoordinate, reproject_arrays
from .utils.disk_cache import heightmap_cache_key, load_cached_heightmap, save_cached_heightmap
from .utils.errors import IoFailureError, MalformedLasRecordError, NoValidInputError
from .utils.heightmap_store import HeightmapStore, cell_size_for_resolution
from .utils.las_ingest import ClassificationFilter, ingest, las_bounds, read_las_bounds
from .utils.mask_engine import apply_masks
from .utils.mesh_generator import build_mesh, export_stl_file
from .utils.mesh_validator import MeshValidator

logger = logging.getLogger(__name__)

# Fraction of a cell added past header extremes so the outermost points are inside
_MAX_CORNER_PAD = 1e-6

# Points per edge when reprojecting header bounds into another zone
_EDGE_SAMPLES = 33


@dataclass
class HeightmapBuild:
    store: HeightmapStore
    stats: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    from_cache: bool = False
    interrupted: bool = False
    cache_path: str = None


def resolve_las_paths(pattern_or_paths):
    """
    Expand glob patterns into a sorted, de-duplicated list of LAS paths.

    Accepts a single pattern or path, or a list of them.
    """
    if isinstance(pattern_or_paths, (str, os.PathLike)):
        patterns = [pattern_or_paths]
    else:
        patterns = list(pattern_or_paths)

    paths = []
    seen = set()
    for pattern in patterns:
        matches = sorted(glob.glob(os.fspath(pattern)))
        if not matches:
            logger.warning(f"No LAS files match {pattern}")
        for match in matches:
            if os.path.isfile(match) and match not in seen:
                seen.add(match)
                paths.append(match)

    if not paths:
        raise NoValidInputError(f"No LAS files found for {patterns}")
    return paths


def _failure(exc):
    return {'path': exc.path, 'record_index': exc.record_index, 'reason': exc.reason}


def _readable_paths(las_paths, failures):
    """Paths whose LAS header can be read; the rest are logged and recorded."""
    readable = []
    for path in las_paths:
        try:
            read_las_bounds(path)
        except MalformedLasRecordError as exc:
            logger.error(f"Skipping {path}: {exc}")
            failures.append(_failure(exc))
            continue
        readable.append(path)
    return readable


def _header_bounds(paths, zone, hemisphere, las_zone):
    """Union of LAS header bounds expressed in the heightmap zone."""
    if las_zone is None:
        return las_bounds(paths, zone, hemisphere)

    source_zone, source_hemisphere = las_zone
    source_min, source_max = las_bounds(paths, source_zone, source_hemisphere)
    # Straight edges bend and rotate in another zone; bound the sampled outline
    t = np.linspace(0.0, 1.0, _EDGE_SAMPLES)
    e0, e1 = source_min.easting, source_max.easting
    n0, n1 = source_min.northing, source_max.northing
    eastings = np.concatenate([e0 + t * (e1 - e0), np.full_like(t, e1), e1 - t * (e1 - e0), np.full_like(t, e0)])
    northings = np.concatenate([np.full_like(t, n0), n0 + t * (n1 - n0), np.full_like(t, n1), n1 - t * (n1 - n0)])
    eastings, northings = reproject_arrays(eastings, northings, source_zone, source_hemisphere, zone, hemisphere)
    logger.info(f"Reprojected LAS bounds from zone {source_min.zone}{source_min.hemisphere.value} "
                f"to {zone}{hemisphere.value}")
    return (UtmCoordinate(float(eastings.min()), float(northings.min()), zone, hemisphere),
            UtmCoordinate(float(eastings.max()), float(northings.max()), zone, hemisphere))


def build_heightmap(las_paths, zone, hemisphere=Hemisphere.NORTH, min_corner=None, max_corner=None,
                    cell_size=None, resolution_x=None, resolution_y=None, classification_filter=None,
                    cache_dir=None, use_cache=None, las_zone=None, chunk_size=None, should_stop=None):
    """
    Build (or load from cache) the heightmap for a set of LAS files.

    Args:
        las_paths: Glob pattern, path, or list of them
        zone, hemisphere: UTM zone of the heightmap
        min_corner, max_corner: UtmCoordinate bounds (default: union of LAS headers)
        cell_size: Cell edge in metres; alternatively resolution_x/resolution_y
        classification_filter: ClassificationFilter (default: ground only)
        cache_dir: Heightmap cache directory (default: LIDAR2STL_CACHE_DIR)
        use_cache: Read and write the cache (default: LIDAR2STL_USE_CACHE)
        las_zone: (zone, hemisphere) of the LAS data when it differs
        chunk_size: Points per read
        should_stop: Callable polled between chunks to interrupt ingestion

    Returns:
        HeightmapBuild

    Raises:
        NoValidInputError: No file could be found or ingested
    """
    paths = resolve_las_paths(las_paths)
    hemisphere = Hemisphere.parse(hemisphere)
    classification_filter = classification_filter or ClassificationFilter()
    use_cache = get_use_cache() if use_cache is None else use_cache
    failures = []

    if min_corner is None or max_corner is None:
        paths = _readable_paths(paths, failures)
        if not paths:
            raise NoValidInputError("None of the LAS files has a readable header")
        header_min, header_max = _header_bounds(paths, zone, hemisphere, las_zone)
        pad_min = min_corner is None and las_zone is not None
        min_corner = min_corner or header_min
        max_corner = max_corner or header_max
        if cell_size is None:
            cell_size = cell_size_for_resolution(min_corner, max_corner, resolution_x, resolution_y)
        max_corner = max_corner.offset(cell_size * _MAX_CORNER_PAD, cell_size * _MAX_CORNER_PAD)
        if pad_min:
            min_corner = min_corner.offset(-cell_size * _MAX_CORNER_PAD, -cell_size * _MAX_CORNER_PAD)
    elif cell_size is None:
        cell_size = cell_size_for_resolution(min_corner, max_corner, resolution_x, resolution_y)

    store = HeightmapStore.new(min_corner, max_corner, cell_size)
    logger.info(f"Heightmap grid: {store.width}x{store.height} cells of {store.cell_size:.3f}m")

    cache_key = None
    if use_cache:
        cache_key = heightmap_cache_key(paths, min_corner, max_corner, cell_size, classification_filter,
                                        las_zone=las_zone)
        cached = load_cached_heightmap(cache_key, cache_dir=cache_dir)
        if cached is not None and cached.same_grid(store):
            logger.info(f"Using cached heightmap for {len(paths)} LAS file(s)")
            return HeightmapBuild(cached, failures=failures, from_cache=True)

    build = HeightmapBuild(store, failures=failures)
    ingested = 0
    for count, path in enumerate(paths, start=1):
        logger.info(f"Ingesting {count} / {len(paths)}: {path}")
        try:
            stats = ingest(path, store, classification_filter, chunk_size=chunk_size,
                           las_zone=las_zone, should_stop=should_stop)
        except MalformedLasRecordError as exc:
            logger.error(f"Aborted {path}: {exc}")
            failures.append(_failure(exc))
            continue
        ingested += 1
        build.stats.append(stats)
        if stats.interrupted:
            build.interrupted = True
            break

    if ingested == 0:
        raise NoValidInputError(f"None of the {len(paths)} LAS file(s) could be ingested")

    if build.interrupted:
        logger.warning("Ingestion was interrupted; the partial heightmap is not cached")
    elif failures:
        logger.warning(f"{len(failures)} LAS file(s) failed; the heightmap is not cached")
    elif use_cache:
        build.cache_path = save_cached_heightmap(cache_key, store, cache_dir=cache_dir)
    return build


def _unique(name, taken):
    """`name`, or `name_2`, `name_3`... when already taken (case-insensitive)."""
    candidate = name
    suffix = 2
    while candidate.lower() in taken:
        candidate = f"{name}_{suffix}"
        suffix += 1
    taken.add(candidate.lower())
    return candidate


def export_models(store, splits=(), output_dir=".", basename="terrain", z_scale=None, base_height=None,
                  xy_scale=1.0, relative_to_min=True):
    """
    Mesh and export the terrain and every split-out object as separate STL files.

    All objects share one elevation datum so the printed parts fit together.
    Object names and file names are made unique with a `_2`, `_3`... suffix.

    Args:
        store: Remaining terrain heightmap
        splits: (name, HeightmapStore) pairs from SPLIT_OUT masks
        output_dir: Directory for the STL files
        basename: Prefix of every file name
        z_scale: Vertical exaggeration (default: LIDAR2STL_Z_SCALE)
        base_height: Floor thickness under the lowest point (default: LIDAR2STL_BASE_HEIGHT)
        xy_scale: Model units per metre horizontally
        relative_to_min: Put the lowest observed elevation at base_height

    Returns:
        dict: {'exports': [...], 'warnings': [...], 'validation': {name: report}}
    """
    z_scale = get_default_z_scale() if z_scale is None else z_scale
    base_height = get_default_base_height() if base_height is None else base_height

    taken_names = set()
    objects = []
    for name, object_store in [(basename, store)] + [(f"{basename}_{name}", split) for name, split in splits]:
        unique_name = _unique(name, taken_names)
        if unique_name != name:
            logger.warning(f"Object name {name} is used more than once; exporting it as {unique_name}")
        objects.append((unique_name, object_store))

    datum = None
    if relative_to_min:
        lows = [s.elevation_range()[0] for _, s in objects if s.elevation_range() is not None]
        datum = min(lows) if lows else None

    try:
        os.makedirs(output_dir, exist_ok=True)
    except OSError as exc:
        raise IoFailureError(output_dir, exc) from exc

    exports = []
    warnings = []
    validation = {}
    validator = MeshValidator()
    taken_files = set()
    for index, (name, object_store) in enumerate(objects):
        terrain_mesh = build_mesh(object_store, z_scale=z_scale, base_height=base_height,
                                  xy_scale=xy_scale, elevation_datum=datum, name=name)
        if terrain_mesh.triangle_count == 0:
            message = f"{name} has no complete 2x2 block of observed cells; nothing to export"
            logger.warning(message)
            warnings.append(message)
            continue

        report = validator.validate(terrain_mesh)
        validation[name] = report
        warnings.extend(report['warnings'])

        stem = _unique(secure_filename(name) or f"object_{index}", taken_files)
        filepath = os.path.join(output_dir, f"{stem}.stl")
        result = export_stl_file(terrain_mesh, filepath)
        result['name'] = name
        result['is_printable'] = report['is_printable']
        exports.append(result)

    return {'exports': exports, 'warnings': warnings, 'validation': validation}


def generate_model(las_paths, zone, hemisphere=Hemisphere.NORTH, masks=(), output_dir=".", basename="terrain",
                   min_corner=None, max_corner=None, cell_size=None, resolution_x=None, resolution_y=None,
                   classification_filter=None, z_scale=None, base_height=None, xy_scale=1.0,
                   relative_to_min=True, cache_dir=None, use_cache=None, las_zone=None,
                   should_stop=None, preview_path=None):
    """
    Run the whole flow: LAS files -> heightmap -> masks -> STL files.

    Returns:
        dict: exported files, warnings, per-file failures, validation
        reports, timings and grid metadata
    """
    t_start = time.time()
    build = build_heightmap(
        las_paths, zone, hemisphere,
        min_corner=min_corner, max_corner=max_corner, cell_size=cell_size,
        resolution_x=resolution_x, resolution_y=resolution_y,
        classification_filter=classification_filter, cache_dir=cache_dir,
        use_cache=use_cache, las_zone=las_zone, should_stop=should_stop,
    )
    t_heightmap = time.time() - t_start
    logger.info(f"Heightmap ready in {t_heightmap:.3f}s (cached: {build.from_cache})")

    store = build.store
    t_mask_start = time.time()
    application = apply_masks(store, masks)
    t_mask = time.time() - t_mask_start
    logger.info(f"Applied {len(masks)} mask(s) in {t_mask:.3f}s")

    if preview_path is not None:
        store.save_to_image(preview_path)

    t_export_start = time.time()
    exported = export_models(
        store, application.splits, output_dir=output_dir, basename=basename,
        z_scale=z_scale, base_height=base_height, xy_scale=xy_scale,
        relative_to_min=relative_to_min,
    )
    t_export = time.time() - t_export_start

    t_total = time.time() - t_start
    logger.info(f"Total generation time: {t_total:.3f}s")
    timings = {
        'heightmap_seconds': round(t_heightmap, 4),
        'mask_seconds': round(t_mask, 4),
        'export_seconds': round(t_export, 4),
        'total_seconds': round(t_total, 4)
    }

    return {
        'success': bool(exported['exports']),
        'exports': exported['exports'],
        'warnings': application.warnings + exported['warnings'],
        'failures': build.failures,
        'validation': exported['validation'],
        'timings': timings,
        'metadata': {
            'width': store.width,
            'height': store.height,
            'cell_size': store.cell_size,
            'zone': store.zone,
            'hemisphere': store.hemisphere.value,
            'origin': [store.origin.easting, store.origin.northing],
            'from_cache': build.from_cache,
            'interrupted': build.interrupted,
        }
    }
