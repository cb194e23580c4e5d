# binthere/services/route_resolver.py
"""Walking directions between two coordinates via the Mapbox Directions API."""
from typing import Any, Dict, Optional

import httpx
import structlog

from binthere.core.config import settings
from binthere.core.errors import ConfigurationError, UpstreamUnavailable
from binthere.models.dto import Coordinate, Route

logger = structlog.get_logger(__name__)


class RouteResolver:
    def __init__(
        self,
        access_token: Optional[str] = settings.MAPBOX_TOKEN,
        url: str = settings.DIRECTIONS_URL,
        timeout: float = settings.DIRECTIONS_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.access_token = access_token
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def walking_route(self, start: Coordinate, end: Coordinate) -> Optional[Route]:
        """
        First pedestrian route from `start` to `end`, or None when the
        service has no route between them.

        Raises:
            ConfigurationError: no directions token is configured.
            UpstreamUnavailable: network failure or non-success response.
        """
        if not self.access_token:
            logger.error("directions_token_missing")
            raise ConfigurationError("MAPBOX_TOKEN")

        url = f"{self.url}/{start.lng},{start.lat};{end.lng},{end.lat}"
        params = {
            "geometries": "geojson",
            "overview": "full",
            "access_token": self.access_token,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(url, params=params)
        except httpx.TimeoutException as e:
            logger.warning("directions_timeout", error=str(e))
            raise UpstreamUnavailable("Directions timed out. Please try again.") from e
        except httpx.HTTPError as e:
            logger.warning("directions_request_failed", error=str(e))
            raise UpstreamUnavailable("Could not calculate a route. Please try again.") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        # "no route" may come back as 200 or 422, always with a NoRoute/NoSegment code
        if data.get("code") in ("NoRoute", "NoSegment"):
            logger.info("directions_no_route", code=data.get("code"))
            return None

        if response.status_code != 200:
            logger.error("directions_api_error", status_code=response.status_code, code=data.get("code"))
            raise UpstreamUnavailable("Could not calculate a route. Please try again.")

        return self.parse(data)

    def parse(self, data: Dict[str, Any]) -> Optional[Route]:
        routes = data.get("routes") or []
        if not routes:
            return None
        first = routes[0]
        coordinates = (first.get("geometry") or {}).get("coordinates") or []
        return Route(
            geometry=[Coordinate(lng=lng, lat=lat) for lng, lat, *_ in coordinates],
            distance_meters=first.get("distance", 0),
            duration_seconds=first.get("duration", 0),
        )
