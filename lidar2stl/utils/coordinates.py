"""UTM and latitude/longitude coordinate values and conversion between them.

Conversion uses the WGS84 Transverse Mercator definition of each UTM zone
(EPSG:326zz for the northern hemisphere, EPSG:327zz for the southern one).
The zone is always supplied by the caller: a whole dataset lives in one zone,
and moving data between zones is an explicit `reproject` step.
"""

import math
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

import numpy as np
from pyproj import Transformer

from .errors import InvalidLatitudeError, InvalidZoneError

# Envelope of plausible UTM values for a single zone. Data outside it almost
# always comes from a neighbouring zone.
UTM_EASTING_RANGE = (100_000.0, 900_000.0)
UTM_NORTHING_RANGE = (0.0, 10_000_000.0)


class Hemisphere(Enum):
    NORTH = "N"
    SOUTH = "S"

    @classmethod
    def parse(cls, value):
        """Accept a Hemisphere, "N"/"S" or "north"/"south" (any case)."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().upper()
        if normalized in {"N", "NORTH"}:
            return cls.NORTH
        if normalized in {"S", "SOUTH"}:
            return cls.SOUTH
        raise ValueError(f"Unknown hemisphere: {value!r}")


def validate_zone(zone):
    if isinstance(zone, bool) or not isinstance(zone, (int, np.integer)) or not 1 <= zone <= 60:
        raise InvalidZoneError(zone)
    return int(zone)


def validate_latitude(lat):
    if not math.isfinite(lat) or abs(lat) > 90.0:
        raise InvalidLatitudeError(lat)
    return lat


@dataclass(frozen=True)
class UtmCoordinate:
    easting: float
    northing: float
    zone: int
    hemisphere: Hemisphere = Hemisphere.NORTH

    def __post_init__(self):
        object.__setattr__(self, "zone", validate_zone(self.zone))
        object.__setattr__(self, "hemisphere", Hemisphere.parse(self.hemisphere))

    @property
    def zone_key(self):
        return (self.zone, self.hemisphere.value)

    @property
    def in_zone_envelope(self):
        """False when the value is implausible for its zone (cross-zone data)."""
        return (UTM_EASTING_RANGE[0] <= self.easting <= UTM_EASTING_RANGE[1]
                and UTM_NORTHING_RANGE[0] <= self.northing <= UTM_NORTHING_RANGE[1])

    def offset(self, d_easting, d_northing):
        return UtmCoordinate(self.easting + d_easting, self.northing + d_northing,
                             self.zone, self.hemisphere)


@dataclass(frozen=True)
class LatLonCoordinate:
    lat: float
    lon: float

    def __post_init__(self):
        validate_latitude(self.lat)


def epsg_for_zone(zone, hemisphere):
    zone = validate_zone(zone)
    base = 32600 if Hemisphere.parse(hemisphere) is Hemisphere.NORTH else 32700
    return base + zone


@lru_cache(maxsize=128)
def _transformer(source_epsg, target_epsg):
    return Transformer.from_crs(f"EPSG:{source_epsg}", f"EPSG:{target_epsg}", always_xy=True)


def to_utm(latlon, zone, hemisphere=Hemisphere.NORTH):
    """Project a lat/lon coordinate into the given UTM zone."""
    hemisphere = Hemisphere.parse(hemisphere)
    validate_latitude(latlon.lat)
    transformer = _transformer(4326, epsg_for_zone(zone, hemisphere))
    easting, northing = transformer.transform(latlon.lon, latlon.lat)
    return UtmCoordinate(float(easting), float(northing), zone, hemisphere)


def to_latlon(utm):
    """Inverse of `to_utm` for the coordinate's own zone."""
    transformer = _transformer(epsg_for_zone(utm.zone, utm.hemisphere), 4326)
    lon, lat = transformer.transform(utm.easting, utm.northing)
    return LatLonCoordinate(float(lat), float(lon))


def reproject(utm, zone, hemisphere=Hemisphere.NORTH):
    """Express a UTM coordinate in another zone."""
    hemisphere = Hemisphere.parse(hemisphere)
    if utm.zone_key == (validate_zone(zone), hemisphere.value):
        return utm
    return to_utm(to_latlon(utm), zone, hemisphere)


def latlon_arrays_to_utm(lats, lons, zone, hemisphere=Hemisphere.NORTH):
    """Vectorized `to_utm`. Returns (eastings, northings) as float64 arrays."""
    lats = np.asarray(lats, dtype=np.float64)
    lons = np.asarray(lons, dtype=np.float64)
    bad = ~np.isfinite(lats) | (np.abs(lats) > 90.0)
    if np.any(bad):
        raise InvalidLatitudeError(float(lats[bad][0]))
    transformer = _transformer(4326, epsg_for_zone(zone, hemisphere))
    eastings, northings = transformer.transform(lons, lats)
    return np.asarray(eastings, dtype=np.float64), np.asarray(northings, dtype=np.float64)


def utm_arrays_to_latlon(eastings, northings, zone, hemisphere=Hemisphere.NORTH):
    """Vectorized `to_latlon`. Returns (lats, lons) as float64 arrays."""
    transformer = _transformer(epsg_for_zone(zone, hemisphere), 4326)
    lons, lats = transformer.transform(np.asarray(eastings, dtype=np.float64),
                                       np.asarray(northings, dtype=np.float64))
    return np.asarray(lats, dtype=np.float64), np.asarray(lons, dtype=np.float64)


def reproject_arrays(eastings, northings, source_zone, source_hemisphere, target_zone, target_hemisphere):
    """Move bulk UTM data from one zone to another."""
    source_epsg = epsg_for_zone(source_zone, source_hemisphere)
    target_epsg = epsg_for_zone(target_zone, target_hemisphere)
    eastings = np.asarray(eastings, dtype=np.float64)
    northings = np.asarray(northings, dtype=np.float64)
    if source_epsg == target_epsg:
        return eastings, northings
    out_e, out_n = _transformer(source_epsg, target_epsg).transform(eastings, northings)
    return np.asarray(out_e, dtype=np.float64), np.asarray(out_n, dtype=np.float64)
