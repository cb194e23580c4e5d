import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from binthere.core.config import settings


class CamelModel(BaseModel):
    """Base for everything that crosses the HTTP boundary (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Domain values ---

class Coordinate(CamelModel):
    """A (longitude, latitude) pair in decimal degrees."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    lng: float = Field(..., ge=-180, le=180, description="Longitude.")
    lat: float = Field(..., ge=-90, le=90, description="Latitude.")

    @classmethod
    def of(cls, lng: float, lat: float) -> "Coordinate":
        return cls(lng=lng, lat=lat)

    def as_tuple(self):
        return (self.lng, self.lat)


class Bin(CamelModel):
    """A public waste bin from one search result set."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: Union[int, str] = Field(..., description="Source-stable identifier.")
    coordinates: Coordinate
    name: str = Field(settings.DEFAULT_BIN_NAME, description="Display name.")


class Route(CamelModel):
    """A walking route, first candidate returned by the directions service."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    geometry: List[Coordinate] = Field(default_factory=list)
    distance_meters: float = Field(..., ge=0)
    duration_seconds: float = Field(..., ge=0)


class BinSource(str, Enum):
    LIVE = "live"
    COMMUNITY = "community"


class BinSearchResult(CamelModel):
    bins: List[Bin]
    source: BinSource
    notice: Optional[str] = Field(None, description="Set when the result did not come from a live query.")


# --- Persisted shapes ---

class BinUsageAggregate(CamelModel):
    id: Optional[int] = None
    bin_lat: float
    bin_lng: float
    bin_name: str
    usage_count: int = Field(1, ge=1)
    last_used_at: datetime


class UserProfileStats(CamelModel):
    total_bins: int = Field(0, ge=0)
    streak_days: int = Field(0, ge=0)
    last_binned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BinEventRecord(BaseModel):
    user_id: Optional[str] = None
    bin_lat: float
    bin_lng: float
    bin_name: str
    route_distance: Optional[float] = None
    route_duration: Optional[float] = None
    arrival_lat: Optional[float] = None
    arrival_lng: Optional[float] = None
    created_at: datetime


class ActivityType(str, Enum):
    APP_OPENED = "app_opened"
    BIN_SEARCHED = "bin_searched"
    BIN_FOUND = "bin_found"
    BIN_MARKED = "bin_marked"
    ROUTE_CALCULATED = "route_calculated"
    AUTH_SIGNUP = "auth_signup"
    AUTH_LOGIN = "auth_login"
    MAP_MOVED = "map_moved"
    LOCATION_ENABLED = "location_enabled"
    LOCATION_DENIED = "location_denied"


class ActivityEvent(BaseModel):
    user_id: Optional[str] = None
    activity_type: ActivityType
    location_lat: Optional[float] = None
    location_lng: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime


class RateLimitConfig(BaseModel):
    max_requests: int = Field(..., ge=1)
    window_seconds: int = Field(..., ge=1)


class RateLimitResult(BaseModel):
    allowed: bool
    remaining: int
    reset_at: int = Field(..., description="Epoch seconds at which the window ends.")
    limit: int


# --- API Request Models ---

class ActivityMetadata(CamelModel):
    """Closed allow-list of metadata accepted with an activity event."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    search_query: Optional[str] = Field(None, max_length=200)
    error_message: Optional[str] = Field(None, max_length=500)
    duration: Optional[float] = Field(None, ge=0, le=3_600_000)  # ms, one hour
    bin_id: Optional[str] = Field(None, max_length=64)
    bin_name: Optional[str] = Field(None, max_length=200)
    radius: Optional[float] = Field(None, ge=0, le=100_000)
    distance: Optional[float] = Field(None, ge=0, le=100_000)  # meters, 100 km
    route_distance: Optional[float] = Field(None, ge=0, le=100_000)
    route_duration: Optional[float] = Field(None, ge=0, le=7_200_000)
    provider: Optional[str] = Field(None, max_length=50)
    device_type: Optional[str] = Field(None, max_length=50)

    @model_validator(mode="before")
    @classmethod
    def check_serialized_size(cls, data: Any) -> Any:
        if isinstance(data, dict):
            size = len(json.dumps(data, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8"))
            if size > settings.METADATA_MAX_BYTES:
                raise ValueError(f"Metadata too large (max {settings.METADATA_MAX_BYTES // 1000}KB)")
        return data

    @field_validator("bin_id", mode="before")
    @classmethod
    def coerce_bin_id(cls, value: Any) -> Any:
        # OSM node ids arrive as integers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class TrackActivityRequest(CamelModel):
    activity_type: ActivityType
    location_lat: Optional[float] = Field(None, ge=-90, le=90)
    location_lng: Optional[float] = Field(None, ge=-180, le=180)
    metadata: Optional[ActivityMetadata] = None


class BinEventRequest(CamelModel):
    bin_lat: float = Field(..., ge=-90, le=90)
    bin_lng: float = Field(..., ge=-180, le=180)
    bin_name: str = Field(..., min_length=1, max_length=200)
    route_distance: Optional[float] = Field(None, ge=0)
    route_duration: Optional[float] = Field(None, ge=0)
    arrival_lat: Optional[float] = Field(None, ge=-90, le=90)
    arrival_lng: Optional[float] = Field(None, ge=-180, le=180)

    @field_validator("bin_name", mode="before")
    @classmethod
    def strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


# --- Public Data Transfer Objects (DTOs) ---

class TrackActivityResponse(CamelModel):
    success: bool


class BinEventResponse(CamelModel):
    success: bool = True
    total_bins: int
    streak_days: int
    message: str = "Bin event tracked successfully"


class CompletionResult(CamelModel):
    total_bins: int = 0
    streak_days: int = 0


class UserStatsResponse(CamelModel):
    total_bins: int
    streak_days: int
    last_binned_at: Optional[datetime] = None
    member_since: Optional[datetime] = None


class RoutingTokenResponse(CamelModel):
    token: str


# --- Error Response Model ---

class ErrorResponse(CamelModel):
    """Standardized error response model."""
    error: str = Field(..., description="A machine-readable error code.")
    detail: str = Field(..., description="A human-readable explanation.")
    retry_after: Optional[int] = Field(None, description="Seconds until retry is allowed (for rate-limiting).")
    details: Optional[List[str]] = Field(None, description="Field-level validation messages.")
    limit: Optional[int] = None
    remaining: Optional[int] = None
    error_id: Optional[str] = None
