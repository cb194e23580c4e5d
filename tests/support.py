"""Shared test doubles and builders."""
import math
from datetime import datetime, timezone
from typing import Dict, List, Optional

import httpx

from binthere.models.dto import Bin, Coordinate
from binthere.utils.geo import EARTH_RADIUS_M

METERS_PER_DEGREE = EARTH_RADIUS_M * math.pi / 180

GOOD_TOKEN = "good-token"
USER_ID = "user-1"


class FakeRedis:
    """Async counter store with the two commands the rate limiter uses."""

    def __init__(self):
        self.counters: Dict[str, int] = {}
        self.expiries: Dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key: str, ttl: int) -> bool:
        self.expiries[key] = ttl
        return True


class Clock:
    """Settable clock for services that take a `clock` callable."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def north_of(origin: Coordinate, meters: float) -> Coordinate:
    """A coordinate `meters` due north of `origin`."""
    return Coordinate(lng=origin.lng, lat=origin.lat + meters / METERS_PER_DEGREE)


def make_bins(origin: Coordinate, distances: List[float]) -> List[Bin]:
    return [
        Bin(id=index, coordinates=north_of(origin, d), name=f"Bin {index}")
        for index, d in enumerate(distances)
    ]


def overpass_element(element_id: int, lat: float, lon: float, name: Optional[str] = None) -> dict:
    element = {"type": "node", "id": element_id, "lat": lat, "lon": lon}
    if name:
        element["tags"] = {"amenity": "waste_basket", "name": name}
    return element


def overpass_handler(elements: List[dict]):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"elements": elements})
    return handler


def directions_handler(distance: float = 420, duration: float = 330):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "code": "Ok",
            "routes": [{
                "geometry": {"type": "LineString", "coordinates": [[13.404, 52.52], [13.4045, 52.5205]]},
                "distance": distance,
                "duration": duration,
            }],
        })
    return handler


def auth_handler(request: httpx.Request) -> httpx.Response:
    if request.headers.get("authorization") == f"Bearer {GOOD_TOKEN}":
        return httpx.Response(200, json={"id": USER_ID, "email": "someone@example.com"})
    return httpx.Response(401, json={"msg": "invalid JWT"})
