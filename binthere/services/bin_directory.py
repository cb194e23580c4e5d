# binthere/services/bin_directory.py
"""Candidate bins around a coordinate.

Providers are tried in order and the first one that answers wins:
  1. Overpass (OpenStreetMap) live query for amenity=waste_basket
  2. community aggregate of bins people have actually used
"""
import asyncio
import random
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import structlog

from binthere.core.config import settings
from binthere.core.errors import UpstreamUnavailable
from binthere.models.dto import Bin, BinSearchResult, BinSource, Coordinate
from binthere.services.store import BinStore
from binthere.utils.geo import distance

logger = structlog.get_logger(__name__)

OVERPASS_QUERY = """
[out:json][timeout:{timeout}];
nwr["amenity"="waste_basket"](around:{radius},{lat},{lon});
out center;
"""

COMMUNITY_NOTICE = "Live bin data is unavailable right now. Showing popular bins from the community instead."

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class BinProvider(Protocol):
    source: BinSource

    async def fetch(self, center: Coordinate, radius_m: float) -> List[Bin]: ...


class OverpassBinProvider:
    """Queries the Overpass API, retrying transient failures with exponential backoff."""

    source = BinSource.LIVE

    def __init__(
        self,
        url: str = settings.OVERPASS_URL,
        timeout: float = settings.OVERPASS_TIMEOUT,
        max_attempts: int = settings.OVERPASS_MAX_ATTEMPTS,
        initial_backoff: float = settings.OVERPASS_INITIAL_BACKOFF,
        rate_limited_backoff: float = settings.OVERPASS_RATE_LIMITED_BACKOFF,
        default_name: str = settings.DEFAULT_BIN_NAME,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.initial_backoff = initial_backoff
        self.rate_limited_backoff = rate_limited_backoff
        self.default_name = default_name
        self.transport = transport

    def build_query(self, center: Coordinate, radius_m: float) -> str:
        return OVERPASS_QUERY.format(
            timeout=int(self.timeout),
            radius=int(radius_m),
            lat=center.lat,
            lon=center.lng,
        )

    async def fetch(self, center: Coordinate, radius_m: float) -> List[Bin]:
        query = self.build_query(center, radius_m)

        for attempt in range(self.max_attempts):
            is_last = attempt == self.max_attempts - 1
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    response = await client.post(self.url, data={"data": query})

                if response.status_code in RETRYABLE_STATUS:
                    logger.warning("overpass_retryable_status", status_code=response.status_code, attempt=attempt + 1)
                    if is_last:
                        break
                    await asyncio.sleep(self._backoff(attempt, response))
                    continue

                response.raise_for_status()
                bins = self.parse(response.json())
                logger.info("overpass_bins_fetched", count=len(bins), radius_m=radius_m)
                return bins

            except (httpx.TimeoutException, httpx.TransportError) as e:
                logger.warning("overpass_transient_error", error=str(e), attempt=attempt + 1)
                if is_last:
                    break
                await asyncio.sleep(self._backoff(attempt))
            except (httpx.HTTPStatusError, ValueError) as e:
                # 4xx other than 429, or a body that is not JSON: retrying will not help
                logger.error("overpass_request_failed", error=str(e))
                raise UpstreamUnavailable("Could not load bins from the map service.") from e

        raise UpstreamUnavailable("The map service is busy. Please try again in a moment.")

    def _backoff(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            base = self.rate_limited_backoff
            if retry_after and retry_after.isdigit():
                # honoured, but never beyond our own backoff or request timeout
                return min(float(retry_after), base * (2 ** attempt), self.timeout)
        else:
            base = self.initial_backoff
        wait_time = base * (2 ** attempt)
        if wait_time:
            wait_time += random.uniform(0, 0.2)
        logger.info("overpass_retry", wait_seconds=round(wait_time, 2), attempt=attempt + 1)
        return wait_time

    def parse(self, data: Dict[str, Any]) -> List[Bin]:
        bins: List[Bin] = []
        for element in data.get("elements", []):
            lat = element.get("lat")
            lon = element.get("lon")
            if lat is None or lon is None:
                center = element.get("center") or {}
                lat, lon = center.get("lat"), center.get("lon")
            if lat is None or lon is None:
                continue
            name = (element.get("tags") or {}).get("name") or self.default_name
            try:
                bins.append(Bin(id=element["id"], coordinates=Coordinate(lng=lon, lat=lat), name=name))
            except (KeyError, ValueError) as e:
                logger.warning("overpass_element_skipped", element_id=element.get("id"), error=str(e))
        return bins


class CommunityBinProvider:
    """Most-used bins from the shared usage aggregate. Ignores the search area."""

    source = BinSource.COMMUNITY

    def __init__(self, store: BinStore, limit: int = settings.MAX_BINS):
        self.store = store
        self.limit = limit

    async def fetch(self, center: Coordinate, radius_m: float) -> List[Bin]:
        rows = await self.store.top_bins(self.limit, min_usage=1)
        return [
            Bin(
                id=row.id if row.id is not None else f"{row.bin_lat},{row.bin_lng}",
                coordinates=Coordinate(lng=row.bin_lng, lat=row.bin_lat),
                name=row.bin_name,
            )
            for row in rows
        ]


def nearest_first(bins: Sequence[Bin], reference: Coordinate, limit: int) -> List[Bin]:
    """The `limit` bins closest to `reference`, closest first."""
    return sorted(bins, key=lambda b: distance(reference, b.coordinates))[:limit]


class BinDirectory:
    def __init__(self, providers: Sequence[BinProvider], max_results: int = settings.MAX_BINS):
        if not providers:
            raise ValueError("BinDirectory needs at least one provider")
        self.providers = list(providers)
        self.max_results = max_results

    async def search(
        self,
        center: Coordinate,
        radius_m: float,
        reference: Optional[Coordinate] = None,
    ) -> BinSearchResult:
        """
        Bins within `radius_m` of `center`.

        An empty list is a valid answer. UpstreamUnavailable means every
        provider failed and the caller should offer a retry.
        """
        for index, provider in enumerate(self.providers):
            try:
                bins = await provider.fetch(center, radius_m)
            except Exception as e:
                logger.warning("bin_provider_failed", source=provider.source.value, error=str(e))
                continue

            if len(bins) > self.max_results and reference is not None:
                bins = nearest_first(bins, reference, self.max_results)

            notice = COMMUNITY_NOTICE if index > 0 else None
            return BinSearchResult(bins=bins, source=provider.source, notice=notice)

        logger.error("bin_search_failed", lat=center.lat, lng=center.lng, radius_m=radius_m)
        raise UpstreamUnavailable("Could not search for bins. Please try again.")
