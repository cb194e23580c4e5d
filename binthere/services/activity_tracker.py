# binthere/services/activity_tracker.py
"""Usage telemetry: validated, append-only activity events."""
import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Set

import structlog
from pydantic import ValidationError

from binthere.core.errors import InvalidInputError, PersistenceError
from binthere.models.dto import (
    ActivityEvent,
    ActivityType,
    Coordinate,
    TrackActivityRequest,
)
from binthere.services.store import BinStore

logger = structlog.get_logger(__name__)


def format_validation_errors(exc: ValidationError):
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


class ActivityService:
    """Writes one ActivityEvent per accepted request."""

    def __init__(self, store: BinStore, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.clock = clock

    async def record(
        self,
        request: TrackActivityRequest,
        user_id: Optional[str] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> ActivityEvent:
        event = ActivityEvent(
            user_id=user_id,
            activity_type=request.activity_type,
            location_lat=request.location_lat,
            location_lng=request.location_lng,
            metadata=request.metadata.model_dump(by_alias=True, exclude_none=True) if request.metadata else {},
            user_agent=user_agent,
            ip_address=ip_address,
            created_at=self.clock(),
        )
        logger.info(
            "tracking_activity",
            user_id=user_id,
            activity_type=event.activity_type.value,
            has_location=event.location_lat is not None and event.location_lng is not None,
        )
        try:
            await self.store.insert_activity(event)
        except Exception as e:
            logger.error("activity_insert_failed", error=str(e))
            raise PersistenceError("Failed to track activity") from e
        return event

    async def track(
        self,
        activity_type: Any,
        location: Optional[Coordinate] = None,
        metadata: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> ActivityEvent:
        """Validates loose input the way the HTTP endpoint does, then records it."""
        try:
            request = TrackActivityRequest(
                activity_type=activity_type,
                location_lat=location.lat if location else None,
                location_lng=location.lng if location else None,
                metadata=metadata,
            )
        except ValidationError as e:
            raise InvalidInputError(details=format_validation_errors(e)) from e
        return await self.record(request, user_id=user_id)


class ActivityReporter:
    """
    Fire-and-forget front for ActivityService.

    `track` schedules the write and returns at once. Failures of any kind are
    logged and never reach the caller.
    """

    def __init__(self, service: ActivityService, user_id: Optional[str] = None):
        self.service = service
        self.user_id = user_id
        self._pending: Set[asyncio.Task] = set()

    def track(
        self,
        activity_type: ActivityType,
        location: Optional[Coordinate] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Task]:
        try:
            task = asyncio.get_running_loop().create_task(
                self._safe_track(activity_type, location, metadata)
            )
        except RuntimeError:
            logger.warning("activity_not_tracked", reason="no_running_loop", activity_type=str(activity_type))
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _safe_track(self, activity_type, location, metadata) -> None:
        try:
            await self.service.track(activity_type, location, metadata, user_id=self.user_id)
        except InvalidInputError as e:
            logger.warning("activity_rejected", activity_type=str(activity_type), details=e.details)
        except Exception as e:
            logger.error("activity_tracking_error", activity_type=str(activity_type), error=str(e))

    async def drain(self) -> None:
        """Waits for every scheduled write. Used on teardown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Convenience reporters

    def app_opened(self, location: Optional[Coordinate] = None):
        return self.track(ActivityType.APP_OPENED, location)

    def bin_searched(self, location: Coordinate, radius: float):
        return self.track(ActivityType.BIN_SEARCHED, location, {"radius": radius})

    def bin_found(self, location: Coordinate, bin_name: str):
        return self.track(ActivityType.BIN_FOUND, location, {"binName": bin_name})

    def bin_marked(self, location: Coordinate, bin_name: str):
        return self.track(ActivityType.BIN_MARKED, location, {"binName": bin_name})

    def route_calculated(self, distance: float, duration: float):
        return self.track(ActivityType.ROUTE_CALCULATED, metadata={"routeDistance": distance, "routeDuration": duration})

    def auth_event(self, signup: bool):
        return self.track(ActivityType.AUTH_SIGNUP if signup else ActivityType.AUTH_LOGIN)

    def location_event(self, granted: bool, location: Optional[Coordinate] = None):
        return self.track(ActivityType.LOCATION_ENABLED if granted else ActivityType.LOCATION_DENIED, location)
