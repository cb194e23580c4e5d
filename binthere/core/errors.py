import time
from typing import List, Optional

from fastapi import status

from binthere.models.dto import RateLimitResult


class BinThereError(Exception):
    """Base for errors the API renders as an ErrorResponse."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "INTERNAL_SERVER_ERROR"
    detail = "An unexpected error occurred."

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail or self.detail)
        if detail:
            self.detail = detail


class InvalidInputError(BinThereError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "INVALID_INPUT"
    detail = "Invalid input data"

    def __init__(self, detail: Optional[str] = None, details: Optional[List[str]] = None):
        super().__init__(detail)
        self.details = details or []


class RateLimitedError(BinThereError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "TOO_MANY_REQUESTS"
    detail = "Too many requests"

    def __init__(self, result: RateLimitResult, now: Optional[float] = None):
        super().__init__()
        self.result = result
        now = int(now if now is not None else time.time())
        self.retry_after = max(0, result.reset_at - now)


class UpstreamUnavailable(BinThereError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "UPSTREAM_UNAVAILABLE"
    detail = "The service is temporarily unavailable. Please try again."


class RouteNotFound(BinThereError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "ROUTE_NOT_FOUND"
    detail = "No walking route could be found to this bin."


class AuthenticationRequired(BinThereError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "AUTHENTICATION_REQUIRED"
    detail = "Please sign in to view your stats"


class PersistenceError(BinThereError):
    error = "PERSISTENCE_ERROR"
    detail = "An error occurred while saving your data"


class ConfigurationError(BinThereError):
    """Raised with the name of the missing setting; never shown to clients."""

    error = "INTERNAL_SERVER_ERROR"

    def __init__(self, missing: str):
        super().__init__(f"{missing} is not configured")
        self.missing = missing


# --- Interactive session states the UI turns into a message ---

class WaitingForLocation(BinThereError):
    status_code = status.HTTP_409_CONFLICT
    error = "WAITING_FOR_LOCATION"
    detail = "Waiting for your location..."


class NoBinsNearby(BinThereError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "NO_BINS_NEARBY"
    detail = "No bins nearby. Try zooming out to search a wider area."
