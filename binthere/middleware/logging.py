import re
import time
import uuid
from typing import Callable
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars

from binthere.utils.security import get_client_ip

log = structlog.get_logger()

# liveness checks are not logged
UNLOGGED_PATHS = {"/health"}

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{8,64}$")


def request_id_for(request: Request) -> str:
    """Reuses a well-formed X-Request-ID from the proxy, otherwise mints one."""
    incoming = request.headers.get("x-request-id", "")
    if REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid.uuid4())


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        clear_contextvars()

        request_id = request_id_for(request)
        bind_contextvars(
            request_id=request_id,
            http_method=request.method,
            path=request.url.path,
            client_ip=get_client_ip(request),
        )
        request.state.request_id = request_id

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            log.exception(
                "http_request_failed",
                elapsed_ms=round((time.perf_counter() - start_time) * 1000, 2),
                error=str(e),
            )
            raise

        response.headers["X-Request-ID"] = request_id
        if request.url.path in UNLOGGED_PATHS:
            return response

        elapsed_ms = round((time.perf_counter() - start_time) * 1000, 2)
        if response.status_code >= 500:
            log.error("http_request", status_code=response.status_code, elapsed_ms=elapsed_ms)
        elif response.status_code == 429:
            log.warning("http_request_throttled", status_code=429, elapsed_ms=elapsed_ms)
        else:
            log.info("http_request", status_code=response.status_code, elapsed_ms=elapsed_ms)
        return response
