"""Load mask geometry from GPX files."""

import logging

import gpxpy
import gpxpy.gpx

from .coordinates import LatLonCoordinate
from .errors import InvalidGeometryError, IoFailureError
from .mask_engine import Mask, MaskEffect, MaskGeometry

logger = logging.getLogger(__name__)


def parse_gpx_file(filepath):
    """
    Parse a GPX file and extract tracks, routes and waypoints.

    Args:
        filepath: Path to GPX file

    Returns:
        dict: {
            'tracks': list of {'name', 'segments': [[LatLonCoordinate]]},
            'waypoints': list of {'name', 'coordinate': LatLonCoordinate},
            'bounds': {'north', 'south', 'east', 'west'} or None
        }
    """
    try:
        with open(filepath, 'r', encoding='utf-8') as gpx_file:
            gpx = gpxpy.parse(gpx_file)
    except OSError as exc:
        raise IoFailureError(filepath, exc) from exc
    except gpxpy.gpx.GPXException as exc:
        raise InvalidGeometryError(f"Cannot parse GPX file {filepath}: {exc}") from exc

    tracks = []
    for track in gpx.tracks:
        segments = [
            [LatLonCoordinate(point.latitude, point.longitude) for point in segment.points]
            for segment in track.segments
        ]
        tracks.append({'name': track.name, 'segments': [s for s in segments if s]})

    # Routes are planned tracks and mask the same way
    for route in gpx.routes:
        points = [LatLonCoordinate(point.latitude, point.longitude) for point in route.points]
        tracks.append({'name': route.name, 'segments': [points] if points else []})

    waypoints = [
        {'name': waypoint.name, 'coordinate': LatLonCoordinate(waypoint.latitude, waypoint.longitude)}
        for waypoint in gpx.waypoints
    ]

    bounds = gpx.get_bounds()
    logger.info(f"Parsed {filepath}: {len(tracks)} track(s), {len(waypoints)} waypoint(s)")

    return {
        'tracks': tracks,
        'waypoints': waypoints,
        'bounds': {
            'north': bounds.max_latitude,
            'south': bounds.min_latitude,
            'east': bounds.max_longitude,
            'west': bounds.min_longitude
        } if bounds else None
    }


def gpx_masks(filepath, trail_radius, waypoint_radius=None, trail_effect=None, waypoint_effect=None):
    """
    Turn a GPX file into an ordered list of masks.

    Every track becomes one mask over a buffered line string per segment,
    and every waypoint a buffered point. Tracks come first, then waypoints,
    each in file order.

    Args:
        filepath: Path to GPX file
        trail_radius: Buffer radius in metres around each track
        waypoint_radius: Buffer radius around each waypoint (default: trail_radius)
        trail_effect: MaskEffect for tracks (default: SPLIT_OUT)
        waypoint_effect: MaskEffect for waypoints (default: same as trail_effect)

    Returns:
        list of Mask
    """
    data = parse_gpx_file(filepath)
    trail_effect = trail_effect or MaskEffect.split_out()
    waypoint_effect = waypoint_effect or trail_effect
    waypoint_radius = trail_radius if waypoint_radius is None else waypoint_radius

    masks = []
    for index, track in enumerate(data['tracks']):
        if not track['segments']:
            logger.warning(f"Skipping empty track {track['name'] or index} in {filepath}")
            continue
        # One line per segment; gaps between segments are not bridged
        lines = [MaskGeometry.line_string(points, trail_radius) for points in track['segments']]
        masks.append(Mask.union(lines, trail_effect, track['name'] or f"track_{index}"))

    for index, waypoint in enumerate(data['waypoints']):
        masks.append(Mask(
            MaskGeometry.point(waypoint['coordinate'], waypoint_radius),
            waypoint_effect,
            waypoint['name'] or f"waypoint_{index}",
        ))

    return masks
