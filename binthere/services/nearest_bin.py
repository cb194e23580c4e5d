from typing import Sequence, Tuple

from binthere.models.dto import Bin, Coordinate
from binthere.utils.geo import distance


def nearest_with_distance(user_location: Coordinate, bins: Sequence[Bin]) -> Tuple[Bin, float]:
    """
    The bin closest to `user_location` and its distance in meters.

    Exact ties go to the bin that comes first in `bins`. Callers check for a
    known location and a non-empty list before asking.
    """
    if not bins:
        raise ValueError("nearest() needs at least one bin")

    best = bins[0]
    best_distance = distance(user_location, best.coordinates)
    for candidate in bins[1:]:
        d = distance(user_location, candidate.coordinates)
        # strict comparison keeps the earliest bin on ties
        if d < best_distance:
            best, best_distance = candidate, d
    return best, best_distance


def nearest(user_location: Coordinate, bins: Sequence[Bin]) -> Bin:
    return nearest_with_distance(user_location, bins)[0]
