"""Error types raised by the lidar2stl pipeline."""


class Lidar2StlError(Exception):
    """Base class for every error raised by this package."""


class InvalidZoneError(Lidar2StlError, ValueError):
    """UTM zone outside [1, 60]."""

    def __init__(self, zone):
        super().__init__(f"UTM zone must be in [1, 60], got {zone!r}")
        self.zone = zone


class ZoneMismatchError(InvalidZoneError):
    """Two UTM values that must share a zone do not."""

    def __init__(self, expected, actual):
        Lidar2StlError.__init__(
            self,
            f"UTM zone mismatch: expected {expected[0]}{expected[1]}, got {actual[0]}{actual[1]}. "
            "Reproject explicitly with coordinates.reproject()"
        )
        self.zone = actual[0]
        self.expected = expected
        self.actual = actual


class InvalidLatitudeError(Lidar2StlError, ValueError):
    def __init__(self, lat):
        super().__init__(f"Latitude must be within [-90, 90], got {lat!r}")
        self.lat = lat


class DegenerateBoundsError(Lidar2StlError, ValueError):
    """Bounding box with no area."""


class InvalidResolutionError(Lidar2StlError, ValueError):
    """Cell size (or sample count) that cannot produce a grid."""


class CellIndexError(Lidar2StlError, IndexError):
    def __init__(self, cell, width, height):
        super().__init__(
            f"Cell {cell!r} is outside a {width}x{height} grid "
            "(x must be < width and y must be < height)"
        )
        self.cell = cell
        self.width = width
        self.height = height


class MalformedLasRecordError(Lidar2StlError):
    """LAS input that cannot be trusted; aborts ingestion of that file."""

    def __init__(self, path, record_index, reason):
        super().__init__(f"Malformed LAS data in {path} at record {record_index}: {reason}")
        self.path = path
        self.record_index = record_index
        self.reason = reason


class CacheFormatError(Lidar2StlError):
    """Heightmap cache file that cannot be decoded."""


class CacheVersionMismatchError(CacheFormatError):
    def __init__(self, found_magic, found_version, expected_version):
        super().__init__(
            f"Incompatible heightmap cache (magic={found_magic!r}, version={found_version}); "
            f"expected version {expected_version}"
        )
        self.found_magic = found_magic
        self.found_version = found_version
        self.expected_version = expected_version


class OutOfBoundsGeometryError(Lidar2StlError):
    """Mask geometry that lies entirely outside the heightmap. Never fatal."""

    def __init__(self, kind, geometry_bounds, store_bounds):
        super().__init__(
            f"{kind} mask with extent {_fmt_bounds(geometry_bounds)} lies entirely outside "
            f"heightmap extent {_fmt_bounds(store_bounds)}; skipping"
        )
        self.geometry_bounds = geometry_bounds
        self.store_bounds = store_bounds


class InvalidGeometryError(Lidar2StlError, ValueError):
    """Mask geometry that cannot be evaluated (too few vertices, bad radius)."""


class EmptyMeshError(Lidar2StlError, ValueError):
    """Export requested for a mesh without triangles."""


class NoValidInputError(Lidar2StlError):
    """No input file could be found or read."""


class IoFailureError(Lidar2StlError, OSError):
    """Wraps an underlying read/write failure with the path involved."""

    def __init__(self, path, cause):
        super().__init__(f"I/O failure on {path}: {cause}")
        self.path = path
        self.cause = cause


def _fmt_bounds(bounds):
    min_e, min_n, max_e, max_n = bounds
    return f"(E {min_e:.2f}..{max_e:.2f}, N {min_n:.2f}..{max_n:.2f})"
