"""Streaming LAS point cloud ingestion into a HeightmapStore.

Points are read from LAS or LAZ files (LAZ through the lazrs backend) by
laspy in fixed-size chunks, so memory stays bounded no matter how large the
file is. Ingestion is single-threaded; a countrywide
dataset can take the better part of an hour, which is why callers should
lean on the heightmap cache instead of re-ingesting.
"""

import logging
import os
import time
from dataclasses import dataclass
from enum import IntEnum

import laspy
import numpy as np
from laspy.errors import LaspyException

from .app_config import get_ingest_chunk_size, get_progress_interval
from .coordinates import Hemisphere, UtmCoordinate, reproject_arrays
from .errors import IoFailureError, MalformedLasRecordError, ZoneMismatchError

logger = logging.getLogger(__name__)

# Errors laspy (and numpy underneath it) raise on structurally broken input.
_DECODE_ERRORS = (LaspyException, ValueError, EOFError)


class LasClassification(IntEnum):
    """ASPRS standard point classes (LAS 1.4, point formats 6-10 superset)."""

    NEVER_CLASSIFIED = 0
    UNCLASSIFIED = 1
    GROUND = 2
    LOW_VEGETATION = 3
    MEDIUM_VEGETATION = 4
    HIGH_VEGETATION = 5
    BUILDING = 6
    LOW_NOISE = 7
    MODEL_KEY_POINT = 8
    WATER = 9
    RAIL = 10
    ROAD_SURFACE = 11
    OVERLAP = 12
    WIRE_GUARD = 13
    WIRE_CONDUCTOR = 14
    TRANSMISSION_TOWER = 15
    WIRE_CONNECTOR = 16
    BRIDGE_DECK = 17
    HIGH_NOISE = 18


@dataclass(frozen=True)
class ClassificationFilter:
    """Accepted classification codes; `classes=None` accepts every point."""

    classes: frozenset = frozenset({LasClassification.GROUND})

    @classmethod
    def ground_only(cls):
        return cls()

    @classmethod
    def all_points(cls):
        return cls(classes=None)

    @classmethod
    def of(cls, *codes):
        return cls(classes=frozenset(int(code) for code in codes))

    def accepts(self, classification):
        return self.classes is None or int(classification) in self.classes

    def mask(self, classifications):
        classifications = np.asarray(classifications)
        if self.classes is None:
            return np.ones(classifications.shape, dtype=bool)
        return np.isin(classifications, np.fromiter((int(c) for c in self.classes), dtype=np.int64))

    def cache_key(self):
        return "all" if self.classes is None else sorted(int(c) for c in self.classes)


@dataclass(frozen=True)
class PointCloudRecord:
    """The part of a LAS point record the pipeline uses."""

    position: UtmCoordinate
    elevation: float
    classification: int


@dataclass
class IngestStats:
    source: str
    points_read: int = 0
    points_accepted: int = 0
    points_filtered: int = 0
    points_out_of_bounds: int = 0
    interrupted: bool = False
    seconds: float = 0.0


def _describe(las_source):
    if isinstance(las_source, (str, os.PathLike)):
        return os.fspath(las_source)
    return getattr(las_source, "name", repr(las_source))


def _open(las_source, source_name):
    """Open a LAS path or binary stream, mapping failures to typed errors."""
    try:
        if isinstance(las_source, (str, os.PathLike)):
            return laspy.open(las_source)
        return laspy.open(las_source, closefd=False)
    except _DECODE_ERRORS as exc:
        raise MalformedLasRecordError(source_name, 0, f"invalid header: {exc}") from exc
    except OSError as exc:
        raise IoFailureError(source_name, exc) from exc


def _iter_chunks(reader, source_name, chunk_size):
    """Yield (x, y, z, classification) arrays, validating the record stream."""
    expected = int(reader.header.point_count)
    points_read = 0
    try:
        for chunk in reader.chunk_iterator(chunk_size):
            if len(chunk) == 0:
                break
            xs = np.array(chunk.x, dtype=np.float64)
            ys = np.array(chunk.y, dtype=np.float64)
            zs = np.array(chunk.z, dtype=np.float64)
            classes = np.array(chunk.classification, dtype=np.int64)
            points_read += len(xs)
            yield xs, ys, zs, classes
    except _DECODE_ERRORS as exc:
        raise MalformedLasRecordError(source_name, points_read, str(exc)) from exc
    except OSError as exc:
        raise IoFailureError(source_name, exc) from exc

    if points_read < expected:
        raise MalformedLasRecordError(
            source_name, points_read,
            f"header declares {expected} points but the record stream ends after {points_read}"
        )


def ingest(las_source, store, classification_filter=None, chunk_size=None, las_zone=None, should_stop=None):
    """
    Stream a LAS file into `store`.

    Args:
        las_source: Path or binary stream of a LAS file
        store: HeightmapStore to accumulate into
        classification_filter: ClassificationFilter (default: ground only)
        chunk_size: Points per read; defaults to LIDAR2STL_INGEST_CHUNK_SIZE
        las_zone: (zone, hemisphere) of the LAS coordinates when they differ
            from the store's zone. Points are reprojected explicitly.
        should_stop: Optional callable polled between chunks; returning True
            ends ingestion early with `interrupted` set.

    Returns:
        IngestStats for the file.

    Raises:
        MalformedLasRecordError: Bad header or broken record stream. Cells
            accumulated before the failure stay in the store.
        IoFailureError: The file could not be read.
    """
    classification_filter = classification_filter or ClassificationFilter()
    chunk_size = chunk_size or get_ingest_chunk_size()
    progress_interval = get_progress_interval()
    source_name = _describe(las_source)
    stats = IngestStats(source=source_name)
    t_start = time.time()

    with _open(las_source, source_name) as reader:
        num_points = int(reader.header.point_count)
        logger.info(f"Number of points: {num_points} in {source_name}")
        next_progress = progress_interval

        for xs, ys, zs, classes in _iter_chunks(reader, source_name, chunk_size):
            stats.points_read += len(xs)

            accepted = classification_filter.mask(classes)
            stats.points_filtered += int(np.count_nonzero(~accepted))
            xs, ys, zs = xs[accepted], ys[accepted], zs[accepted]

            if las_zone is not None and xs.size:
                zone, hemisphere = las_zone
                xs, ys = reproject_arrays(xs, ys, zone, hemisphere, store.zone, store.hemisphere)

            cols, rows, inside = store.cells_of(xs, ys)
            stats.points_out_of_bounds += int(np.count_nonzero(~inside))
            stats.points_accepted += int(np.count_nonzero(inside))
            store.accumulate_many(cols[inside], rows[inside], zs[inside])

            if stats.points_read >= next_progress:
                logger.info(f"{100.0 * stats.points_read / max(num_points, 1):.2f}% done with {source_name}")
                next_progress += progress_interval

            if should_stop is not None and should_stop():
                stats.interrupted = True
                logger.warning(f"Ingestion of {source_name} interrupted after {stats.points_read} points")
                break

    stats.seconds = time.time() - t_start
    logger.info(
        f"Ingested {source_name}: {stats.points_accepted} accepted, {stats.points_filtered} filtered, "
        f"{stats.points_out_of_bounds} outside the heightmap in {stats.seconds:.3f}s"
    )
    return stats


def iter_point_records(las_source, zone, hemisphere=Hemisphere.NORTH, chunk_size=None):
    """Lazily yield PointCloudRecord values, one at a time, in file order."""
    chunk_size = chunk_size or get_ingest_chunk_size()
    hemisphere = Hemisphere.parse(hemisphere)
    source_name = _describe(las_source)
    with _open(las_source, source_name) as reader:
        for xs, ys, zs, classes in _iter_chunks(reader, source_name, chunk_size):
            for x, y, z, c in zip(xs.tolist(), ys.tolist(), zs.tolist(), classes.tolist()):
                yield PointCloudRecord(UtmCoordinate(x, y, zone, hemisphere), z, c)


def ingest_records(records, store, classification_filter=None):
    """Accumulate an iterable of PointCloudRecord into `store`."""
    classification_filter = classification_filter or ClassificationFilter()
    stats = IngestStats(source="records")
    for record in records:
        stats.points_read += 1
        if not classification_filter.accepts(record.classification):
            stats.points_filtered += 1
            continue
        if record.position.zone_key != store.origin.zone_key:
            raise ZoneMismatchError(store.origin.zone_key, record.position.zone_key)
        cell = store.cell_of(record.position)
        if cell is None:
            stats.points_out_of_bounds += 1
            continue
        store.accumulate(cell, record.elevation)
        stats.points_accepted += 1
    return stats


def read_las_bounds(las_source):
    """Header bounds of a LAS file as ((min_x, min_y, min_z), (max_x, max_y, max_z))."""
    source_name = _describe(las_source)
    with _open(las_source, source_name) as reader:
        mins = tuple(float(v) for v in reader.header.mins)
        maxs = tuple(float(v) for v in reader.header.maxs)
    return mins, maxs


def las_bounds(las_paths, zone, hemisphere=Hemisphere.NORTH):
    """
    Union of the header bounds of every LAS file, as UTM min/max corners.

    Headers are cheap to read, so this is a quick pass even over many tiles.
    """
    hemisphere = Hemisphere.parse(hemisphere)
    min_x = min_y = float("inf")
    max_x = max_y = float("-inf")
    num_files = len(las_paths)
    logger.info(f"Finding bounds of {num_files} files")
    for count, path in enumerate(las_paths, start=1):
        logger.debug(f"Bounding... {count} / {num_files}")
        mins, maxs = read_las_bounds(path)
        min_x, min_y = min(min_x, mins[0]), min(min_y, mins[1])
        max_x, max_y = max(max_x, maxs[0]), max(max_y, maxs[1])

    min_corner = UtmCoordinate(min_x, min_y, zone, hemisphere)
    max_corner = UtmCoordinate(max_x, max_y, zone, hemisphere)
    if not (min_corner.in_zone_envelope and max_corner.in_zone_envelope):
        logger.warning(
            f"LAS bounds E {min_x:.1f}..{max_x:.1f}, N {min_y:.1f}..{max_y:.1f} fall outside the UTM "
            f"envelope of zone {zone}{hemisphere.value}; the data may be in another zone or not in UTM"
        )
    return min_corner, max_corner
