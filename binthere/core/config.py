from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "bin there"
    VERSION: str = "0.3.0"
    BRIEF_DESCRIPTION: str = "Find the nearest public waste bin, walk to it, and keep your binning streak alive."

    # --- Backends (all optional so the service can boot locally) ---
    ENV: str = Field("development", description="Application environment (e.g., production, development)")
    LOG_LEVEL: str = Field("INFO", description="Root log level")
    REDIS_URL: Optional[str] = Field(None, description="Redis URL for the shared rate-limit counters")
    DATABASE_URL: Optional[str] = Field(None, description="PostgreSQL connection string; in-process store when unset")
    MAPBOX_TOKEN: Optional[str] = Field(None, description="Mapbox token for walking directions")
    AUTH_URL: Optional[str] = Field(None, description="Base URL of the identity provider")
    AUTH_API_KEY: Optional[str] = Field(None, description="Public API key sent to the identity provider")

    # --- Geodata (Overpass) ---
    OVERPASS_URL: str = "https://overpass-api.de/api/interpreter"
    OVERPASS_TIMEOUT: float = 25.0 # seconds
    OVERPASS_MAX_ATTEMPTS: int = 3
    OVERPASS_INITIAL_BACKOFF: float = 1.0 # seconds
    OVERPASS_RATE_LIMITED_BACKOFF: float = 5.0 # seconds, used after HTTP 429

    # --- Directions (Mapbox) ---
    DIRECTIONS_URL: str = "https://api.mapbox.com/directions/v5/mapbox/walking"
    DIRECTIONS_TIMEOUT: float = 10.0 # seconds

    # --- Search & navigation ---
    MAX_BINS: int = 50
    DEFAULT_BIN_NAME: str = "Public Bin"
    ARRIVAL_THRESHOLD_METERS: float = 30.0
    SEARCH_DEBOUNCE_SECONDS: float = 0.6
    DEFAULT_ZOOM: float = 15.0

    # --- Tracking ---
    METADATA_MAX_BYTES: int = 5000
    STREAK_TIMEZONE: str = Field("UTC", description="Timezone whose calendar days bound a streak")

    # --- Rate limits (requests per window, per client IP) ---
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    TRACK_ACTIVITY_RATE_LIMIT: int = 60
    TRACK_BIN_EVENT_RATE_LIMIT: int = 20
    BIN_STATS_RATE_LIMIT: int = 10
    ROUTING_TOKEN_RATE_LIMIT: int = 20
    SEARCH_BINS_RATE_LIMIT: int = 30
    WALKING_ROUTE_RATE_LIMIT: int = 30

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
