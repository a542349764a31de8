"""Dense elevation grid over a UTM bounding box, with a binary cache format.

Row 0 is the southern-most row and column 0 the western-most column. Each
cell keeps the running average of the elevations binned into it and the
number of samples. A cell with no samples is unobserved: it has no elevation,
which is different from an elevation of zero.
"""

import logging
import math
import struct

import numpy as np
from PIL import Image

from .coordinates import Hemisphere, UtmCoordinate
from .errors import (
    CacheFormatError,
    CacheVersionMismatchError,
    CellIndexError,
    DegenerateBoundsError,
    InvalidResolutionError,
    InvalidZoneError,
    IoFailureError,
    ZoneMismatchError,
)

logger = logging.getLogger(__name__)

CACHE_MAGIC = b"L2SH"
CACHE_VERSION = 1

_PREAMBLE = struct.Struct("<4sH")
_HEADER = struct.Struct("<ddBBdII")
_CELL_DTYPE = np.dtype([("elevation", "<f8"), ("observed", "?"), ("count", "<u4")])
_HEMISPHERE_CODES = {Hemisphere.NORTH: 0, Hemisphere.SOUTH: 1}


def cell_size_for_resolution(min_corner, max_corner, resolution_x=None, resolution_y=None):
    """
    Cell size that gives `resolution_x` samples across (or `resolution_y` up).

    Only one axis needs to be given; the other follows from the aspect ratio
    of the bounds. When both are given the finer spacing wins so that both
    sample counts are met.
    """
    x_range = max_corner.easting - min_corner.easting
    y_range = max_corner.northing - min_corner.northing
    if x_range <= 0 or y_range <= 0:
        raise DegenerateBoundsError(f"Bounds have no area: x range {x_range}, y range {y_range}")

    candidates = []
    for resolution, extent in ((resolution_x, x_range), (resolution_y, y_range)):
        if resolution is None:
            continue
        if resolution <= 0:
            raise InvalidResolutionError(f"Resolution must be a positive sample count, got {resolution}")
        candidates.append(extent / resolution)

    if not candidates:
        raise InvalidResolutionError("Either resolution_x or resolution_y must be set")
    return min(candidates)


class HeightmapStore:
    """Grid of averaged elevation samples anchored at `origin` (the min corner)."""

    def __init__(self, origin, cell_size, width, height, elevations=None, counts=None):
        if not math.isfinite(cell_size) or cell_size <= 0:
            raise InvalidResolutionError(f"cell_size must be a positive finite number, got {cell_size}")
        if width <= 0 or height <= 0:
            raise DegenerateBoundsError(f"Grid must have at least one cell, got {width}x{height}")

        self.origin = origin
        self.cell_size = float(cell_size)
        self.width = int(width)
        self.height = int(height)

        shape = (self.height, self.width)
        self.elevations = np.zeros(shape, dtype=np.float64) if elevations is None else np.ascontiguousarray(elevations, dtype=np.float64)
        self.counts = np.zeros(shape, dtype=np.uint32) if counts is None else np.ascontiguousarray(counts, dtype=np.uint32)
        if self.elevations.shape != shape or self.counts.shape != shape:
            raise ValueError(f"Sample arrays must have shape {shape}")

    @classmethod
    def new(cls, min_corner, max_corner, cell_size):
        """Create an all-unobserved store covering min_corner..max_corner."""
        if min_corner.zone_key != max_corner.zone_key:
            raise ZoneMismatchError(min_corner.zone_key, max_corner.zone_key)
        if not isinstance(cell_size, (int, float)) or not math.isfinite(cell_size) or cell_size <= 0:
            raise InvalidResolutionError(f"cell_size must be a positive finite number, got {cell_size}")

        x_range = max_corner.easting - min_corner.easting
        y_range = max_corner.northing - min_corner.northing
        if not x_range > 0 or not y_range > 0:
            raise DegenerateBoundsError(
                f"max corner must be strictly north-east of min corner "
                f"(x range {x_range}, y range {y_range})"
            )

        width = max(1, math.ceil(x_range / cell_size))
        height = max(1, math.ceil(y_range / cell_size))
        return cls(min_corner, cell_size, width, height)

    # ------------------------------------------------------------------
    # Geometry of the grid

    @property
    def zone(self):
        return self.origin.zone

    @property
    def hemisphere(self):
        return self.origin.hemisphere

    @property
    def max_corner(self):
        return self.origin.offset(self.width * self.cell_size, self.height * self.cell_size)

    @property
    def extent(self):
        """(min_easting, min_northing, max_easting, max_northing)."""
        return (
            self.origin.easting,
            self.origin.northing,
            self.origin.easting + self.width * self.cell_size,
            self.origin.northing + self.height * self.cell_size,
        )

    def _check_zone(self, coordinate):
        if coordinate.zone_key != self.origin.zone_key:
            raise ZoneMismatchError(self.origin.zone_key, coordinate.zone_key)

    def cell_of(self, coordinate):
        """Grid cell (x, y) containing `coordinate`, or None when outside."""
        self._check_zone(coordinate)
        x = math.floor((coordinate.easting - self.origin.easting) / self.cell_size)
        y = math.floor((coordinate.northing - self.origin.northing) / self.cell_size)
        if 0 <= x < self.width and 0 <= y < self.height:
            return (x, y)
        return None

    def cells_of(self, eastings, northings):
        """Vectorized `cell_of`: returns (xs, ys, inside) for same-zone arrays."""
        eastings = np.asarray(eastings, dtype=np.float64)
        northings = np.asarray(northings, dtype=np.float64)
        xs = np.floor((eastings - self.origin.easting) / self.cell_size)
        ys = np.floor((northings - self.origin.northing) / self.cell_size)
        inside = (xs >= 0) & (xs < self.width) & (ys >= 0) & (ys < self.height)
        return xs.astype(np.int64), ys.astype(np.int64), inside

    def cell_center(self, cell):
        x, y = self._checked(cell)
        return self.origin.offset((x + 0.5) * self.cell_size, (y + 0.5) * self.cell_size)

    def cell_centers(self):
        """Easting and northing of every cell centre, each shaped (height, width)."""
        eastings = self.origin.easting + (np.arange(self.width) + 0.5) * self.cell_size
        northings = self.origin.northing + (np.arange(self.height) + 0.5) * self.cell_size
        return np.meshgrid(eastings, northings)

    def _checked(self, cell):
        x, y = cell
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise CellIndexError(cell, self.width, self.height)
        return int(x), int(y)

    # ------------------------------------------------------------------
    # Samples

    def accumulate(self, cell, elevation):
        """Fold one elevation sample into the running average of `cell`."""
        x, y = self._checked(cell)
        count = int(self.counts[y, x])
        self.elevations[y, x] = (self.elevations[y, x] * count + elevation) / (count + 1)
        self.counts[y, x] = count + 1

    def accumulate_many(self, xs, ys, elevations):
        """
        Batch form of `accumulate` for in-bounds cell indices.

        Samples are grouped per cell first, so the result is the same running
        average regardless of the order the samples arrive in.
        """
        xs = np.asarray(xs, dtype=np.int64)
        ys = np.asarray(ys, dtype=np.int64)
        elevations = np.asarray(elevations, dtype=np.float64)
        if xs.size == 0:
            return
        if xs.min() < 0 or xs.max() >= self.width or ys.min() < 0 or ys.max() >= self.height:
            raise CellIndexError((int(xs.max()), int(ys.max())), self.width, self.height)

        size = self.width * self.height
        flat = ys * self.width + xs
        sums = np.bincount(flat, weights=elevations, minlength=size)
        added = np.bincount(flat, minlength=size)
        touched = added > 0

        old_counts = self.counts.reshape(-1)[touched].astype(np.float64)
        old_avg = self.elevations.reshape(-1)[touched]
        new_counts = old_counts + added[touched]

        elevations_flat = self.elevations.reshape(-1)
        counts_flat = self.counts.reshape(-1)
        elevations_flat[touched] = (old_avg * old_counts + sums[touched]) / new_counts
        counts_flat[touched] = new_counts.astype(np.uint32)

    def get(self, cell):
        x, y = self._checked(cell)
        if self.counts[y, x] == 0:
            return None
        return float(self.elevations[y, x])

    def set(self, cell, value):
        """Overwrite a cell. None makes it unobserved."""
        x, y = self._checked(cell)
        if value is None:
            self.elevations[y, x] = 0.0
            self.counts[y, x] = 0
            return
        self.elevations[y, x] = value
        if self.counts[y, x] == 0:
            self.counts[y, x] = 1

    def clear(self, mask):
        """Make every cell selected by the boolean `mask` unobserved."""
        self.elevations[mask] = 0.0
        self.counts[mask] = 0

    def observed_mask(self):
        return self.counts > 0

    @property
    def observed_count(self):
        return int(np.count_nonzero(self.counts))

    def elevation_range(self):
        """(min, max) of observed elevations, or None when nothing is observed."""
        observed = self.observed_mask()
        if not observed.any():
            return None
        values = self.elevations[observed]
        return float(values.min()), float(values.max())

    def empty_like(self):
        return HeightmapStore(self.origin, self.cell_size, self.width, self.height)

    def copy(self):
        return HeightmapStore(self.origin, self.cell_size, self.width, self.height,
                              self.elevations.copy(), self.counts.copy())

    def same_grid(self, other):
        return (self.origin == other.origin and self.cell_size == other.cell_size
                and self.width == other.width and self.height == other.height)

    def __eq__(self, other):
        if not isinstance(other, HeightmapStore):
            return NotImplemented
        if not self.same_grid(other) or not np.array_equal(self.counts, other.counts):
            return False
        observed = self.observed_mask()
        return np.array_equal(self.elevations[observed], other.elevations[observed])

    __hash__ = None

    def __repr__(self):
        return (f"HeightmapStore(origin={self.origin}, cell_size={self.cell_size}, "
                f"width={self.width}, height={self.height}, observed={self.observed_count})")

    # ------------------------------------------------------------------
    # Persistence

    def save(self, writer):
        """Write the store to a binary stream (see CACHE_MAGIC layout)."""
        writer.write(_PREAMBLE.pack(CACHE_MAGIC, CACHE_VERSION))
        writer.write(_HEADER.pack(
            self.origin.easting,
            self.origin.northing,
            self.origin.zone,
            _HEMISPHERE_CODES[self.origin.hemisphere],
            self.cell_size,
            self.width,
            self.height,
        ))
        cells = np.zeros(self.width * self.height, dtype=_CELL_DTYPE)
        observed = self.observed_mask().reshape(-1)
        cells["elevation"] = np.where(observed, self.elevations.reshape(-1), 0.0)
        cells["observed"] = observed
        cells["count"] = self.counts.reshape(-1)
        writer.write(cells.tobytes())

    @classmethod
    def load(cls, reader):
        """Read a store written by `save`."""
        preamble = reader.read(_PREAMBLE.size)
        if len(preamble) != _PREAMBLE.size:
            raise CacheFormatError("Heightmap cache is truncated before its header")
        magic, version = _PREAMBLE.unpack(preamble)
        if magic != CACHE_MAGIC or version != CACHE_VERSION:
            raise CacheVersionMismatchError(magic, version, CACHE_VERSION)

        header = reader.read(_HEADER.size)
        if len(header) != _HEADER.size:
            raise CacheFormatError("Heightmap cache header is truncated")
        easting, northing, zone, hemisphere_code, cell_size, width, height = _HEADER.unpack(header)

        if hemisphere_code not in (0, 1):
            raise CacheFormatError(f"Invalid hemisphere code {hemisphere_code} in heightmap cache")
        hemisphere = Hemisphere.NORTH if hemisphere_code == 0 else Hemisphere.SOUTH
        try:
            origin = UtmCoordinate(easting, northing, zone, hemisphere)
        except InvalidZoneError as exc:
            raise CacheFormatError(f"Invalid zone in heightmap cache: {exc}") from exc

        expected = width * height * _CELL_DTYPE.itemsize
        payload = reader.read(expected)
        if len(payload) != expected:
            raise CacheFormatError(
                f"Heightmap cache payload is truncated: expected {expected} bytes, got {len(payload)}"
            )
        cells = np.frombuffer(payload, dtype=_CELL_DTYPE)
        if np.any(cells["observed"] != (cells["count"] > 0)):
            raise CacheFormatError("Heightmap cache has observed flags inconsistent with sample counts")

        try:
            return cls(
                origin,
                cell_size,
                width,
                height,
                cells["elevation"].reshape(height, width).copy(),
                cells["count"].reshape(height, width).copy(),
            )
        except (InvalidResolutionError, DegenerateBoundsError) as exc:
            raise CacheFormatError(f"Invalid grid in heightmap cache: {exc}") from exc

    def save_file(self, path):
        try:
            with open(path, "wb") as f:
                self.save(f)
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        logger.info(f"Saved {self.width}x{self.height} heightmap ({self.observed_count} observed cells) to {path}")
        return path

    @classmethod
    def load_file(cls, path):
        try:
            with open(path, "rb") as f:
                store = cls.load(f)
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        logger.info(f"Loaded {store.width}x{store.height} heightmap from {path}")
        return store

    def save_to_image(self, path):
        """
        Save a greyscale PNG preview: north up, brightness by relative height.

        Handy for checking a freshly ingested region against a map before
        spending time on meshing. Unobserved cells are black.
        """
        image = np.zeros((self.height, self.width), dtype=np.uint8)
        elevation_range = self.elevation_range()
        if elevation_range is not None:
            low, high = elevation_range
            span = high - low if high > low else 1.0
            observed = self.observed_mask()
            scaled = 1.0 + (self.elevations[observed] - low) / span * 254.0
            image[observed] = np.clip(np.round(scaled), 1, 255).astype(np.uint8)

        try:
            Image.fromarray(np.ascontiguousarray(np.flipud(image))).save(path, format="PNG")
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        return path

    def save_to_csv(self, path, precision=3):
        """
        Save elevations as CSV, north row first and west column first.

        Unobserved cells are empty fields.
        """
        fields = np.full((self.height, self.width), "", dtype=object)
        observed = self.observed_mask()
        fields[observed] = [f"{value:.{precision}f}" for value in self.elevations[observed].tolist()]
        try:
            np.savetxt(path, np.flipud(fields), fmt="%s", delimiter=",")
        except OSError as exc:
            raise IoFailureError(path, exc) from exc
        return path
