from math import radians, sin, cos, sqrt, asin

from binthere.models.dto import Coordinate

# Earth's mean radius in meters
EARTH_RADIUS_M = 6_371_000.0

# (minimum zoom, search radius in meters), highest zoom first
ZOOM_RADII = (
    (18, 500),
    (16, 1000),
    (14, 2000),
)
WIDEST_RADIUS_M = 5000

COORDINATE_PRECISION = 6


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points
    on the Earth (specified in decimal degrees) using the Haversine formula.

    Args:
        lat1: Latitude of point 1.
        lon1: Longitude of point 1.
        lat2: Latitude of point 2.
        lon2: Longitude of point 2.

    Returns:
        Distance between the two points in meters.
    """
    lat1, lon1, lat2, lon2 = map(radians, [lat1, lon1, lat2, lon2])

    dlon = lon2 - lon1
    dlat = lat2 - lat1

    a = sin(dlat / 2)**2 + cos(lat1) * cos(lat2) * sin(dlon / 2)**2
    c = 2 * asin(sqrt(min(1.0, a)))

    return EARTH_RADIUS_M * c


def distance(a: Coordinate, b: Coordinate) -> float:
    """Meters between two coordinates."""
    return haversine(a.lat, a.lng, b.lat, b.lng)


def radius_for_zoom(zoom: float) -> int:
    """Search radius for a map zoom level: the closer the view, the tighter the search."""
    for min_zoom, radius in ZOOM_RADII:
        if zoom >= min_zoom:
            return radius
    return WIDEST_RADIUS_M


def round_coordinate(value: float, precision: int = COORDINATE_PRECISION) -> float:
    """
    Rounds a coordinate for use as an aggregate key.

    6 decimal places is ~0.11 m at the equator, so repeated reports of the
    same physical bin collapse onto one key.
    """
    return round(value, precision)
