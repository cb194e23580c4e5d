# binthere/services/bin_events.py
"""Recording a "binned" completion and the gamification counters derived from it.

The bin_events row is the source of truth. Usage aggregates and profile
counters are best-effort: their failures are logged and the completion still
succeeds.
"""
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import structlog
from pydantic import ValidationError

from binthere.core.config import settings
from binthere.core.errors import InvalidInputError, PersistenceError
from binthere.models.dto import (
    Bin,
    BinEventRecord,
    BinEventRequest,
    CompletionResult,
    Coordinate,
    Route,
    UserProfileStats,
)
from binthere.services.activity_tracker import format_validation_errors
from binthere.services.store import BinStore
from binthere.utils.geo import round_coordinate

logger = structlog.get_logger(__name__)

STREAK_GRACE = timedelta(hours=48)


def next_streak(
    previous_streak: int,
    last_binned_at: Optional[datetime],
    now: datetime,
    tz: tzinfo = timezone.utc,
) -> int:
    """
    Streak after a bin at `now`.

    Counts calendar days in `tz`: a second bin on the same day leaves the
    streak alone, a bin on a later day within 48 hours extends it, anything
    older starts over at 1.
    """
    if last_binned_at is None:
        return 1
    if last_binned_at.astimezone(tz).date() == now.astimezone(tz).date():
        return previous_streak
    if now - last_binned_at < STREAK_GRACE:
        return previous_streak + 1
    return 1


def apply_bin(current: Optional[UserProfileStats], now: datetime, tz: tzinfo) -> UserProfileStats:
    current = current or UserProfileStats()
    return UserProfileStats(
        total_bins=current.total_bins + 1,
        streak_days=next_streak(current.streak_days, current.last_binned_at, now, tz),
        last_binned_at=now,
        created_at=current.created_at,
    )


class BinEventService:
    def __init__(
        self,
        store: BinStore,
        streak_timezone: str = settings.STREAK_TIMEZONE,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.tz = ZoneInfo(streak_timezone)
        self.clock = clock

    async def complete(
        self,
        user_id: Optional[str],
        bin: Bin,
        route: Optional[Route] = None,
        arrival: Optional[Coordinate] = None,
    ) -> CompletionResult:
        try:
            request = BinEventRequest(
                bin_lat=bin.coordinates.lat,
                bin_lng=bin.coordinates.lng,
                bin_name=bin.name,
                route_distance=route.distance_meters if route else None,
                route_duration=route.duration_seconds if route else None,
                arrival_lat=arrival.lat if arrival else None,
                arrival_lng=arrival.lng if arrival else None,
            )
        except ValidationError as e:
            raise InvalidInputError(details=format_validation_errors(e)) from e
        return await self.record(request, user_id)

    async def record(self, request: BinEventRequest, user_id: Optional[str] = None) -> CompletionResult:
        now = self.clock()
        logger.info("tracking_bin_event", user_id=user_id, bin_lat=request.bin_lat,
                    bin_lng=request.bin_lng, bin_name=request.bin_name)

        try:
            await self.store.insert_bin_event(BinEventRecord(
                user_id=user_id,
                bin_lat=request.bin_lat,
                bin_lng=request.bin_lng,
                bin_name=request.bin_name,
                route_distance=request.route_distance,
                route_duration=request.route_duration,
                arrival_lat=request.arrival_lat,
                arrival_lng=request.arrival_lng,
                created_at=now,
            ))
        except Exception as e:
            logger.error("bin_event_insert_failed", error=str(e))
            raise PersistenceError("An error occurred while tracking your bin event") from e

        await self._update_usage(request, now)

        if not user_id:
            return CompletionResult()
        return await self._update_profile(user_id, now)

    async def _update_usage(self, request: BinEventRequest, now: datetime) -> None:
        lat = round_coordinate(request.bin_lat)
        lng = round_coordinate(request.bin_lng)
        try:
            count = await self.store.increment_bin_usage(lat, lng, request.bin_name, now)
            logger.info("bin_usage_updated", bin_lat=lat, bin_lng=lng, usage_count=count)
        except Exception as e:
            logger.error("bin_usage_update_failed", bin_lat=lat, bin_lng=lng, error=str(e))

    async def _update_profile(self, user_id: str, now: datetime) -> CompletionResult:
        try:
            profile = await self.store.update_profile(user_id, lambda current: apply_bin(current, now, self.tz))
        except Exception as e:
            logger.error("profile_update_failed", user_id=user_id, error=str(e))
            return CompletionResult()
        logger.info("profile_updated", user_id=user_id, total_bins=profile.total_bins,
                    streak_days=profile.streak_days)
        return CompletionResult(total_bins=profile.total_bins, streak_days=profile.streak_days)
