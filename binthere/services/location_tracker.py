"""Proximity tracking while the user walks to a bin."""
import asyncio
from dataclasses import dataclass, replace
from typing import AsyncIterator, Callable, Optional

import structlog

from binthere.core.config import settings
from binthere.models.dto import Bin, Coordinate
from binthere.utils.geo import distance

logger = structlog.get_logger(__name__)

ArrivalCallback = Callable[[Bin, float], None]


@dataclass(frozen=True)
class TrackerState:
    position: Optional[Coordinate] = None
    target: Optional[Bin] = None
    distance_to_target: Optional[float] = None
    has_arrived: bool = False

    @property
    def has_active_route(self) -> bool:
        return self.target is not None


class LiveLocationTracker:
    """
    Holds the latest position and, while a route is active, the distance to
    its bin.

    State is replaced as a whole on every transition, so readers never see a
    half-cleared route. `has_arrived` only goes false -> true while a route
    is active and is reset by `clear_route`.
    """

    def __init__(
        self,
        arrival_threshold_m: float = settings.ARRIVAL_THRESHOLD_METERS,
        on_arrived: Optional[ArrivalCallback] = None,
    ):
        self.arrival_threshold_m = arrival_threshold_m
        self.on_arrived = on_arrived
        self.state = TrackerState()

    @property
    def position(self) -> Optional[Coordinate]:
        return self.state.position

    @property
    def target(self) -> Optional[Bin]:
        return self.state.target

    @property
    def has_active_route(self) -> bool:
        return self.state.has_active_route

    @property
    def has_arrived(self) -> bool:
        return self.state.has_arrived

    @property
    def distance_to_target(self) -> Optional[float]:
        return self.state.distance_to_target

    def start_route(self, target: Bin) -> None:
        d = distance(self.state.position, target.coordinates) if self.state.position else None
        self.state = TrackerState(position=self.state.position, target=target, distance_to_target=d)
        # already standing at the bin when navigation starts
        if d is not None:
            self._check_arrival(d)

    def clear_route(self) -> None:
        self.state = TrackerState(position=self.state.position)

    def update_position(self, position: Coordinate) -> Optional[float]:
        """Records a fix; returns the distance to the target when a route is active."""
        if not self.state.has_active_route:
            self.state = replace(self.state, position=position)
            return None

        d = distance(position, self.state.target.coordinates)
        self.state = replace(self.state, position=position, distance_to_target=d)
        self._check_arrival(d)
        return d

    def _check_arrival(self, d: float) -> None:
        if self.state.has_arrived or d > self.arrival_threshold_m:
            return
        self.state = replace(self.state, has_arrived=True)
        logger.info("bin_arrived", bin_id=self.state.target.id, distance_m=round(d, 1))
        if self.on_arrived:
            self.on_arrived(self.state.target, d)


PositionStream = Callable[[], AsyncIterator[Coordinate]]


class LocationWatch:
    """
    Subscription that feeds a position stream into a tracker.

    `start` begins consuming, `stop` cancels and may be called any number of
    times. Use as an async context manager so teardown always stops it.
    """

    def __init__(self, stream: PositionStream, tracker: LiveLocationTracker,
                 on_position: Optional[Callable[[Coordinate], None]] = None):
        self.stream = stream
        self.tracker = tracker
        self.on_position = on_position
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.active:
            return
        self._task = asyncio.create_task(self._consume())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _consume(self) -> None:
        try:
            async for position in self.stream():
                self.tracker.update_position(position)
                if self.on_position:
                    self.on_position(position)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("location_watch_failed", error=str(e))

    async def __aenter__(self) -> "LocationWatch":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
