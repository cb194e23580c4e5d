# binthere/services/session.py
"""One user's find-walk-bin workflow, driven from an asyncio event loop.

Newer searches and route requests supersede older ones: every request
carries a sequence number and a response is only applied if nothing newer
was issued meanwhile.
"""
import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Set, Tuple

import structlog

from binthere.core.config import settings
from binthere.core.errors import (
    BinThereError,
    InvalidInputError,
    NoBinsNearby,
    RouteNotFound,
    WaitingForLocation,
)
from binthere.models.dto import Bin, BinSearchResult, BinSource, CompletionResult, Coordinate, Route
from binthere.services.activity_tracker import ActivityReporter
from binthere.services.bin_directory import BinDirectory
from binthere.services.bin_events import BinEventService
from binthere.services.location_tracker import ArrivalCallback, LiveLocationTracker, LocationWatch, PositionStream
from binthere.services.nearest_bin import nearest
from binthere.services.route_resolver import RouteResolver
from binthere.utils.geo import radius_for_zoom

logger = structlog.get_logger(__name__)


class Debouncer:
    """Runs `action` once triggers have been quiet for `delay` seconds."""

    def __init__(self, delay: float, action: Callable[..., Awaitable[Any]]):
        self.delay = delay
        self.action = action
        self._pending: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def trigger(self, *args, **kwargs) -> None:
        self.cancel()
        self._pending = asyncio.create_task(self._run(args, kwargs))

    def cancel(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def shutdown(self) -> None:
        """Cancels the pending trigger and any action already running."""
        self.cancel()
        running = list(self._running)
        for task in running:
            task.cancel()
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    async def _run(self, args, kwargs) -> None:
        await asyncio.sleep(self.delay)
        # a trigger during the action schedules a fresh run instead of cancelling this one
        task = asyncio.current_task()
        if self._pending is task:
            self._pending = None
        self._running.add(task)
        try:
            await self.action(*args, **kwargs)
        except Exception as e:
            logger.error("debounced_action_failed", error=str(e))
        finally:
            self._running.discard(task)


class BinFinderSession:
    def __init__(
        self,
        directory: BinDirectory,
        resolver: RouteResolver,
        completion: BinEventService,
        reporter: Optional[ActivityReporter] = None,
        user_id: Optional[str] = None,
        debounce_seconds: float = settings.SEARCH_DEBOUNCE_SECONDS,
        arrival_threshold_m: float = settings.ARRIVAL_THRESHOLD_METERS,
        on_arrived: Optional[ArrivalCallback] = None,
        zoom: float = settings.DEFAULT_ZOOM,
    ):
        self.directory = directory
        self.resolver = resolver
        self.completion = completion
        self.reporter = reporter
        self.user_id = user_id
        self.on_arrived = on_arrived
        self.zoom = zoom

        self.tracker = LiveLocationTracker(arrival_threshold_m, on_arrived=self._arrived)
        self.bins: List[Bin] = []
        self.search_source: Optional[BinSource] = None
        self.notice: Optional[str] = None
        self.route: Optional[Route] = None
        self.last_error: Optional[BinThereError] = None
        self.location_permission: Optional[bool] = None

        self._search_seq = 0
        self._route_intent = 0
        self._debouncer = Debouncer(debounce_seconds, self._search_from_map)
        self._watch: Optional[LocationWatch] = None
        self._closed = False

    # --- read-only view for the UI ---

    @property
    def user_location(self) -> Optional[Coordinate]:
        return self.tracker.position

    @property
    def selected_bin(self) -> Optional[Bin]:
        return self.tracker.target

    @property
    def has_active_route(self) -> bool:
        return self.tracker.has_active_route

    @property
    def has_arrived(self) -> bool:
        return self.tracker.has_arrived

    @property
    def distance_to_target(self) -> Optional[float]:
        return self.tracker.distance_to_target

    @property
    def route_info(self) -> Optional[Tuple[float, float]]:
        if self.route is None:
            return None
        return (self.route.distance_meters, self.route.duration_seconds)

    # --- location ---

    def locate(self, position: Coordinate) -> None:
        first_fix = self.location_permission is None
        self.location_permission = True
        self.tracker.update_position(position)
        if first_fix:
            self._report("location_event", True, position)

    def location_denied(self) -> None:
        self.location_permission = False
        self._report("location_event", False)

    def watch(self, stream: PositionStream) -> LocationWatch:
        """Starts continuous position updates; stopped by `close()`."""
        if self._watch is None:
            self._watch = LocationWatch(stream, self.tracker)
        self._watch.start()
        return self._watch

    # --- search ---

    async def search(
        self,
        center: Optional[Coordinate] = None,
        zoom: Optional[float] = None,
        radius_m: Optional[float] = None,
    ) -> BinSearchResult:
        center = center or self.user_location
        if center is None:
            raise WaitingForLocation()
        if radius_m is None:
            radius_m = radius_for_zoom(zoom if zoom is not None else self.zoom)

        self._search_seq += 1
        seq = self._search_seq
        result = await self.directory.search(center, radius_m, reference=self.user_location)

        if self._closed:
            return result
        if seq != self._search_seq:
            logger.info("stale_search_discarded", seq=seq, latest=self._search_seq)
            return result

        self.bins = result.bins
        self.search_source = result.source
        self.notice = result.notice
        self.last_error = None
        self._report("bin_searched", center, radius_m)
        return result

    def on_map_moved(self, center: Coordinate, zoom: float, user_originated: bool = True) -> bool:
        """Schedules a debounced search; returns False when the move is ignored."""
        self.zoom = zoom
        if not user_originated or self.has_active_route:
            return False
        self._debouncer.trigger(center, zoom)
        return True

    async def _search_from_map(self, center: Coordinate, zoom: float) -> None:
        if self.has_active_route:
            return
        try:
            await self.search(center, zoom=zoom)
        except BinThereError as e:
            logger.warning("map_search_failed", error=e.detail)
            self.last_error = e

    # --- navigation ---

    async def route_to_nearest(self) -> Optional[Route]:
        if self.user_location is None:
            raise WaitingForLocation()
        if not self.bins:
            raise NoBinsNearby()
        target = nearest(self.user_location, self.bins)
        self._report("bin_found", target.coordinates, target.name)
        return await self.route_to(target)

    async def route_to(self, target: Bin) -> Optional[Route]:
        """
        Requests a walking route to `target` and makes it the active route.

        Returns None when a newer request or a cancel made this one stale.
        Raises RouteNotFound, leaving the current route untouched, when the
        directions service has no route.
        """
        if self.user_location is None:
            raise WaitingForLocation()

        self._route_intent += 1
        intent = self._route_intent
        self._debouncer.cancel()

        route = await self.resolver.walking_route(self.user_location, target.coordinates)

        if self._closed or intent != self._route_intent:
            logger.info("stale_route_discarded", bin_id=target.id)
            return None
        if route is None:
            raise RouteNotFound()

        self.route = route
        self.tracker.start_route(target)
        self._report("route_calculated", route.distance_meters, route.duration_seconds)
        return route

    def cancel_route(self) -> None:
        self._route_intent += 1
        self.route = None
        self.tracker.clear_route()

    async def mark_binned(self, target: Optional[Bin] = None) -> CompletionResult:
        target = target or self.selected_bin
        if target is None:
            raise InvalidInputError("Select a bin first.")

        result = await self.completion.complete(self.user_id, target, self.route, self.user_location)
        self._report("bin_marked", target.coordinates, target.name)
        self.cancel_route()
        return result

    # --- lifecycle ---

    async def close(self) -> None:
        self._closed = True
        await self._debouncer.shutdown()
        if self._watch is not None:
            await self._watch.stop()
        if self.reporter is not None:
            await self.reporter.drain()

    async def __aenter__(self) -> "BinFinderSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _arrived(self, target: Bin, distance_m: float) -> None:
        if self.on_arrived:
            self.on_arrived(target, distance_m)

    def _report(self, name: str, *args) -> None:
        if self.reporter is not None and not self._closed:
            getattr(self.reporter, name)(*args)
