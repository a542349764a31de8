"""Select and adjust heightmap cells with polygon, line and point geometry.

A mask pairs a geometry with an effect. Masks are applied one after another
in the order given; every mask sees the result of the ones before it, so the
order matters (a SPLIT_OUT before an EXCLUDE of the same area keeps the
cells in the split; the reverse leaves the split empty).
A mask may carry several geometries; a cell matches when any of them does.

Cell membership is decided on cell centres:

- Polygon: even-odd ray casting. A centre lying on the boundary counts as
  inside (closed polygon). Holes are cut out, but their boundary still
  belongs to the polygon.
- Line string: distance to the nearest segment <= buffer radius.
- Point: distance to the vertex <= buffer radius.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .coordinates import (
    LatLonCoordinate,
    UtmCoordinate,
    latlon_arrays_to_utm,
    reproject_arrays,
)
from .errors import InvalidGeometryError, OutOfBoundsGeometryError

logger = logging.getLogger(__name__)

# Boundary tolerance, relative to the cell size.
BOUNDARY_EPSILON = 1e-9


class GeometryKind(Enum):
    POLYGON = "polygon"
    LINESTRING = "linestring"
    POINT = "point"


class EffectKind(Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"
    ADJUST_HEIGHT = "adjust_height"
    SPLIT_OUT = "split_out"


@dataclass(frozen=True)
class MaskGeometry:
    kind: GeometryKind
    vertices: tuple
    buffer_radius: float = 0.0
    holes: tuple = ()

    @classmethod
    def polygon(cls, exterior, holes=()):
        return cls(GeometryKind.POLYGON, tuple(exterior), 0.0, tuple(tuple(h) for h in holes))

    @classmethod
    def line_string(cls, vertices, buffer_radius):
        return cls(GeometryKind.LINESTRING, tuple(vertices), float(buffer_radius))

    @classmethod
    def point(cls, vertex, buffer_radius):
        return cls(GeometryKind.POINT, (vertex,), float(buffer_radius))


@dataclass(frozen=True)
class MaskEffect:
    kind: EffectKind
    delta: float = 0.0

    @classmethod
    def include(cls):
        return cls(EffectKind.INCLUDE)

    @classmethod
    def exclude(cls):
        return cls(EffectKind.EXCLUDE)

    @classmethod
    def adjust_height(cls, delta):
        return cls(EffectKind.ADJUST_HEIGHT, float(delta))

    @classmethod
    def split_out(cls):
        return cls(EffectKind.SPLIT_OUT)


@dataclass(frozen=True)
class Mask:
    """
    An effect applied to the cells matched by one geometry, or by any of
    several geometries when `geometry` is a tuple of them.
    """

    geometry: object
    effect: MaskEffect
    name: str = None

    @classmethod
    def union(cls, geometries, effect, name=None):
        geometries = tuple(geometries)
        if not geometries:
            raise InvalidGeometryError("A mask union needs at least one geometry")
        return cls(geometries, effect, name)

    @property
    def geometries(self):
        if isinstance(self.geometry, MaskGeometry):
            return (self.geometry,)
        return tuple(self.geometry)

    @property
    def label(self):
        return "+".join(sorted({geometry.kind.value for geometry in self.geometries}))


@dataclass
class MaskApplication:
    splits: list = field(default_factory=list)
    warnings: list = field(default_factory=list)


# ----------------------------------------------------------------------
# Geometry in the store's frame

def _ring_to_store_xy(vertices, store):
    """Convert a vertex sequence to an (N, 2) easting/northing array in the store's zone."""
    if not vertices:
        return np.zeros((0, 2), dtype=np.float64)

    if all(isinstance(v, LatLonCoordinate) for v in vertices):
        eastings, northings = latlon_arrays_to_utm(
            [v.lat for v in vertices], [v.lon for v in vertices], store.zone, store.hemisphere
        )
        return np.column_stack([eastings, northings])

    if all(isinstance(v, UtmCoordinate) for v in vertices):
        zone_keys = {v.zone_key for v in vertices}
        if len(zone_keys) != 1:
            raise InvalidGeometryError(f"Geometry mixes UTM zones {sorted(zone_keys)}")
        eastings = np.array([v.easting for v in vertices], dtype=np.float64)
        northings = np.array([v.northing for v in vertices], dtype=np.float64)
        zone, hemisphere = vertices[0].zone, vertices[0].hemisphere
        if vertices[0].zone_key != store.origin.zone_key:
            logger.info(
                f"Reprojecting {len(vertices)} mask vertices from zone {zone}{hemisphere.value} "
                f"to {store.zone}{store.hemisphere.value}"
            )
            eastings, northings = reproject_arrays(
                eastings, northings, zone, hemisphere, store.zone, store.hemisphere
            )
        return np.column_stack([eastings, northings])

    raise InvalidGeometryError("Geometry vertices must all be LatLonCoordinate or all UtmCoordinate")


def _close_ring(points):
    """Drop a repeated closing vertex; a ring needs three distinct corners."""
    if len(points) > 1 and np.array_equal(points[0], points[-1]):
        points = points[:-1]
    if len(points) < 3:
        raise InvalidGeometryError(f"Polygon ring needs at least 3 vertices, got {len(points)}")
    return points


def _validate(geometry):
    if geometry.kind is GeometryKind.POLYGON:
        return
    radius = geometry.buffer_radius
    if not math.isfinite(radius) or radius < 0:
        raise InvalidGeometryError(f"Buffer radius must be a non-negative finite number, got {radius}")
    if geometry.kind is GeometryKind.POINT and len(geometry.vertices) != 1:
        raise InvalidGeometryError(f"Point geometry needs exactly one vertex, got {len(geometry.vertices)}")
    if geometry.kind is GeometryKind.LINESTRING and len(geometry.vertices) < 1:
        raise InvalidGeometryError("Line string needs at least one vertex")


# ----------------------------------------------------------------------
# Per-cell tests (vectorized over cell centres)

def _segment_distance(px, py, ax, ay, bx, by):
    """Distance from points (px, py) to the segment a-b."""
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0.0:
        return np.hypot(px - ax, py - ay)
    t = np.clip(((px - ax) * dx + (py - ay) * dy) / length_sq, 0.0, 1.0)
    return np.hypot(px - (ax + t * dx), py - (ay + t * dy))


def _min_distance_to_path(px, py, points, closed):
    """Minimum distance from each point to a polyline (or closed ring)."""
    distance = np.full(px.shape, np.inf)
    if len(points) == 1:
        return np.hypot(px - points[0, 0], py - points[0, 1])
    count = len(points) if closed else len(points) - 1
    for i in range(count):
        a = points[i]
        b = points[(i + 1) % len(points)]
        np.minimum(distance, _segment_distance(px, py, a[0], a[1], b[0], b[1]), out=distance)
    return distance


def _ray_cast(px, py, ring):
    """Even-odd ray casting; boundary points may land on either side."""
    inside = np.zeros(px.shape, dtype=bool)
    n = len(ring)
    j = n - 1
    for i in range(n):
        xi, yi = ring[i]
        xj, yj = ring[j]
        crosses = (yi > py) != (yj > py)
        if yj != yi:
            x_cross = (xj - xi) * (py - yi) / (yj - yi) + xi
            inside ^= crosses & (px < x_cross)
        j = i
    return inside


def _on_boundary(px, py, ring, tolerance):
    return _min_distance_to_path(px, py, ring, closed=True) <= tolerance


def _geometry_window(points, radius, store):
    """Column/row slice of the store covered by the geometry's bounding box."""
    min_e, min_n = points.min(axis=0) - radius
    max_e, max_n = points.max(axis=0) + radius
    store_min_e, store_min_n, store_max_e, store_max_n = store.extent
    geometry_bounds = (float(min_e), float(min_n), float(max_e), float(max_n))
    if max_e < store_min_e or min_e > store_max_e or max_n < store_min_n or min_n > store_max_n:
        return None, geometry_bounds

    cell = store.cell_size
    x0 = max(0, int(math.floor((min_e - store_min_e) / cell - 0.5)))
    x1 = min(store.width, int(math.ceil((max_e - store_min_e) / cell + 0.5)))
    y0 = max(0, int(math.floor((min_n - store_min_n) / cell - 0.5)))
    y1 = min(store.height, int(math.ceil((max_n - store_min_n) / cell + 0.5)))
    return (slice(y0, y1), slice(x0, x1)), geometry_bounds


def compute_matches(store, geometry):
    """
    Boolean (height, width) array of cells whose centre matches `geometry`.

    Raises:
        InvalidGeometryError: geometry cannot be evaluated
        OutOfBoundsGeometryError: geometry lies entirely outside the store
    """
    _validate(geometry)
    points = _ring_to_store_xy(geometry.vertices, store)
    holes = []
    if geometry.kind is GeometryKind.POLYGON:
        points = _close_ring(points)
        holes = [_close_ring(_ring_to_store_xy(hole, store)) for hole in geometry.holes]
    radius = geometry.buffer_radius if geometry.kind is not GeometryKind.POLYGON else 0.0

    window, geometry_bounds = _geometry_window(points, radius, store)
    if window is None:
        raise OutOfBoundsGeometryError(geometry.kind.value, geometry_bounds, store.extent)

    # Origin-relative metres: absolute northings round at about the boundary tolerance
    local = np.array([store.origin.easting, store.origin.northing])
    points = points - local
    holes = [hole - local for hole in holes]
    xs, ys = np.meshgrid(
        (np.arange(store.width) + 0.5) * store.cell_size,
        (np.arange(store.height) + 0.5) * store.cell_size,
    )
    px = xs[window]
    py = ys[window]
    tolerance = BOUNDARY_EPSILON * store.cell_size

    if geometry.kind is GeometryKind.POLYGON:
        matched = _ray_cast(px, py, points) | _on_boundary(px, py, points, tolerance)
        for hole in holes:
            matched &= ~_ray_cast(px, py, hole) | _on_boundary(px, py, hole, tolerance)
    elif geometry.kind is GeometryKind.LINESTRING:
        matched = _min_distance_to_path(px, py, points, closed=False) <= radius + tolerance
    else:
        matched = np.hypot(px - points[0, 0], py - points[0, 1]) <= radius + tolerance

    result = np.zeros((store.height, store.width), dtype=bool)
    result[window] = matched
    return result


def compute_union_matches(store, geometries):
    """
    Cells matched by any of `geometries`.

    Geometries entirely outside the store add nothing.

    Raises:
        InvalidGeometryError: a geometry cannot be evaluated, or none was given
        OutOfBoundsGeometryError: every geometry lies outside the store
    """
    matched = None
    outside = None
    for geometry in geometries:
        try:
            part = compute_matches(store, geometry)
        except OutOfBoundsGeometryError as exc:
            logger.debug(str(exc))
            outside = exc
            continue
        matched = part if matched is None else matched | part
    if matched is None:
        if outside is None:
            raise InvalidGeometryError("Mask has no geometry")
        raise outside
    return matched


# ----------------------------------------------------------------------
# Effects

def apply(store, geometry, effect):
    """
    Apply one mask to `store`.

    Returns the split-out HeightmapStore for SPLIT_OUT, otherwise None (the
    store is changed in place). A geometry entirely outside the store is
    logged and ignored.
    """
    try:
        matched = compute_matches(store, geometry)
    except OutOfBoundsGeometryError as exc:
        logger.warning(str(exc))
        return None
    return _apply_matches(store, matched, geometry.kind.value, effect)


def _apply_matches(store, matched, label, effect):
    observed = store.observed_mask()
    kind = effect.kind
    if kind is EffectKind.INCLUDE:
        store.clear(~matched)
    elif kind is EffectKind.EXCLUDE:
        store.clear(matched)
    elif kind is EffectKind.ADJUST_HEIGHT:
        store.elevations[matched & observed] += effect.delta
    elif kind is EffectKind.SPLIT_OUT:
        taken = matched & observed
        split = store.empty_like()
        split.elevations[taken] = store.elevations[taken]
        split.counts[taken] = store.counts[taken]
        store.clear(taken)
        logger.info(f"Split out {int(np.count_nonzero(taken))} cells")
        return split
    else:
        raise ValueError(f"Unknown mask effect: {effect!r}")

    logger.debug(f"Applied {kind.value} {label} mask to {int(np.count_nonzero(matched))} cells")
    return None


def apply_masks(store, masks):
    """
    Apply masks in order. Later masks see the effects of earlier ones.

    Returns:
        MaskApplication with the split-out stores as (name, store) pairs and
        the warnings for masks that were skipped.
    """
    result = MaskApplication()
    for index, mask in enumerate(masks):
        name = mask.name or f"mask_{index}"
        try:
            matched = compute_union_matches(store, mask.geometries)
        except OutOfBoundsGeometryError as exc:
            logger.warning(f"{name}: {exc}")
            result.warnings.append(f"{name}: {exc}")
            continue

        split = _apply_matches(store, matched, mask.label, mask.effect)
        if split is not None:
            result.splits.append((name, split))
    return result
