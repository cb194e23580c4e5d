# binthere/api/routes.py
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
import structlog

from binthere.api.deps import optional_user_id, rate_limited, require_user_id
from binthere.core.config import settings
from binthere.core.errors import ConfigurationError, PersistenceError, RouteNotFound
from binthere.models.dto import (
    BinEventRequest,
    BinEventResponse,
    BinSearchResult,
    BinUsageAggregate,
    Coordinate,
    ErrorResponse,
    RateLimitResult,
    Route,
    RoutingTokenResponse,
    TrackActivityRequest,
    TrackActivityResponse,
    UserStatsResponse,
)
from binthere.services.activity_tracker import ActivityService
from binthere.services.bin_directory import BinDirectory
from binthere.services.bin_events import BinEventService
from binthere.services.route_resolver import RouteResolver
from binthere.services.store import BinStore
from binthere.utils.geo import radius_for_zoom
from binthere.utils.security import get_client_ip

router = APIRouter()
logger = structlog.get_logger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

# ----------------------------------------------------------------------
# Activity tracking
# ----------------------------------------------------------------------
@router.post("/track-activity", response_model=TrackActivityResponse, responses=ERROR_RESPONSES)
async def track_activity(
    request: Request,
    data: TrackActivityRequest,
    _: RateLimitResult = Depends(rate_limited("track-activity", settings.TRACK_ACTIVITY_RATE_LIMIT)),
    user_id: Optional[str] = Depends(optional_user_id),
):
    """Append one usage event. Anonymous events are accepted."""
    service: ActivityService = request.app.state.activity_service
    await service.record(
        data,
        user_id=user_id,
        user_agent=request.headers.get("user-agent"),
        ip_address=get_client_ip(request),
    )
    return TrackActivityResponse(success=True)

# ----------------------------------------------------------------------
# Bin completion
# ----------------------------------------------------------------------
@router.post("/track-bin-event", response_model=BinEventResponse, responses=ERROR_RESPONSES)
async def track_bin_event(
    request: Request,
    data: BinEventRequest,
    _: RateLimitResult = Depends(rate_limited("track-bin-event", settings.TRACK_BIN_EVENT_RATE_LIMIT)),
    user_id: Optional[str] = Depends(optional_user_id),
):
    """Record a binned event; totals stay at zero for anonymous callers."""
    service: BinEventService = request.app.state.bin_event_service
    result = await service.record(data, user_id)
    return BinEventResponse(total_bins=result.total_bins, streak_days=result.streak_days)

# ----------------------------------------------------------------------
# Stats
# ----------------------------------------------------------------------
@router.get("/user-stats", response_model=UserStatsResponse, responses={401: {"model": ErrorResponse}})
async def user_stats(request: Request, user_id: str = Depends(require_user_id)):
    store: BinStore = request.app.state.store
    try:
        profile = await store.get_profile(user_id)
    except Exception as e:
        logger.error("profile_fetch_failed", user_id=user_id, error=str(e))
        raise PersistenceError("Failed to fetch user statistics") from e

    if profile is None:
        return UserStatsResponse(total_bins=0, streak_days=0)
    return UserStatsResponse(
        total_bins=profile.total_bins,
        streak_days=profile.streak_days,
        last_binned_at=profile.last_binned_at,
        member_since=profile.created_at,
    )


@router.get("/bin-stats", response_model=List[BinUsageAggregate], responses=ERROR_RESPONSES)
async def bin_stats(
    request: Request,
    limit: int = Query(50),
    min_usage: int = Query(2, alias="minUsage"),
    _: RateLimitResult = Depends(rate_limited("get-bin-stats", settings.BIN_STATS_RATE_LIMIT)),
):
    """Most-used bins across all users, busiest first."""
    limit = min(max(limit, 1), settings.MAX_BINS)
    min_usage = max(min_usage, 1)

    store: BinStore = request.app.state.store
    try:
        rows = await store.top_bins(limit, min_usage=min_usage)
    except Exception as e:
        logger.error("bin_stats_fetch_failed", error=str(e))
        raise PersistenceError("Failed to fetch bin statistics") from e
    logger.info("popular_bins_fetched", count=len(rows), limit=limit, min_usage=min_usage)
    return rows

# ----------------------------------------------------------------------
# Search & directions
# ----------------------------------------------------------------------
@router.get("/bins", response_model=BinSearchResult, responses={**ERROR_RESPONSES, 503: {"model": ErrorResponse}})
async def search_bins(
    request: Request,
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    zoom: Optional[float] = Query(None, ge=0, le=24),
    radius: Optional[float] = Query(None, gt=0, le=5000),
    ref_lat: Optional[float] = Query(None, alias="refLat", ge=-90, le=90),
    ref_lng: Optional[float] = Query(None, alias="refLng", ge=-180, le=180),
    _: RateLimitResult = Depends(rate_limited("search-bins", settings.SEARCH_BINS_RATE_LIMIT)),
):
    """Bins around a point. The radius follows the zoom level unless given explicitly."""
    if radius is None:
        radius = radius_for_zoom(zoom if zoom is not None else settings.DEFAULT_ZOOM)
    reference = None
    if ref_lat is not None and ref_lng is not None:
        reference = Coordinate(lng=ref_lng, lat=ref_lat)

    directory: BinDirectory = request.app.state.bin_directory
    return await directory.search(Coordinate(lng=lng, lat=lat), radius, reference=reference)


@router.get("/route", response_model=Route, responses={**ERROR_RESPONSES, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}})
async def walking_route(
    request: Request,
    start_lat: float = Query(..., alias="startLat", ge=-90, le=90),
    start_lng: float = Query(..., alias="startLng", ge=-180, le=180),
    end_lat: float = Query(..., alias="endLat", ge=-90, le=90),
    end_lng: float = Query(..., alias="endLng", ge=-180, le=180),
    _: RateLimitResult = Depends(rate_limited("walking-route", settings.WALKING_ROUTE_RATE_LIMIT)),
):
    resolver: RouteResolver = request.app.state.route_resolver
    route = await resolver.walking_route(
        Coordinate(lng=start_lng, lat=start_lat),
        Coordinate(lng=end_lng, lat=end_lat),
    )
    if route is None:
        raise RouteNotFound()
    return route


@router.get("/routing-token", response_model=RoutingTokenResponse, responses=ERROR_RESPONSES)
async def routing_token(
    response: Response,
    limit: RateLimitResult = Depends(rate_limited("routing-token", settings.ROUTING_TOKEN_RATE_LIMIT)),
):
    """Hands the public directions token to the map client."""
    if not settings.MAPBOX_TOKEN:
        raise ConfigurationError("MAPBOX_TOKEN")
    response.headers["X-RateLimit-Remaining"] = str(limit.remaining)
    return RoutingTokenResponse(token=settings.MAPBOX_TOKEN)
