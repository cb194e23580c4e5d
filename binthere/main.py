from contextlib import asynccontextmanager
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import structlog

from binthere.api.routes import router as api_router
from binthere.core.config import settings
from binthere.core.errors import BinThereError, ConfigurationError, InvalidInputError, RateLimitedError
from binthere.logging import configure_logging
from binthere.middleware.logging import LoggingMiddleware
from binthere.models.dto import ErrorResponse
from binthere.services.activity_tracker import ActivityService
from binthere.services.bin_directory import BinDirectory, CommunityBinProvider, OverpassBinProvider
from binthere.services.bin_events import BinEventService
from binthere.services.identity import IdentityResolver
from binthere.services.rate_limiter import RateLimiter
from binthere.services.redis_client import close_redis_client, create_redis_client
from binthere.services.route_resolver import RouteResolver
from binthere.services.store import InMemoryBinStore, PostgresBinStore

configure_logging()
logger = structlog.get_logger(__name__)


def install_services(app: FastAPI, store) -> None:
    """Wires every service onto app.state around the given store."""
    app.state.store = store
    app.state.identity = IdentityResolver()
    app.state.bin_directory = BinDirectory([OverpassBinProvider(), CommunityBinProvider(store)])
    app.state.route_resolver = RouteResolver()
    app.state.activity_service = ActivityService(store)
    app.state.bin_event_service = BinEventService(store)

# --- Application Lifecycle Management ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("application_startup", version=settings.VERSION, env=settings.ENV)

    redis_client = create_redis_client()
    app.state.rate_limiter = RateLimiter(redis_client)

    if settings.DATABASE_URL:
        store = PostgresBinStore(settings.DATABASE_URL)
        await store.start()
    else:
        logger.warning("database_not_configured", detail="using in-memory store; data is lost on restart")
        store = InMemoryBinStore()
    install_services(app, store)

    yield

    logger.info("application_shutdown")
    if isinstance(store, PostgresBinStore):
        await store.stop()
    await close_redis_client(redis_client)

# --- FastAPI Application Initialization ---
app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description=settings.BRIEF_DESCRIPTION,
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

app.add_middleware(LoggingMiddleware)
app.include_router(api_router, prefix="/api")


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    return {
        "status": "ok",
        "version": settings.VERSION,
        "rate_limiter": "redis" if settings.REDIS_URL else "fail-open",
        "store": "postgres" if settings.DATABASE_URL else "memory",
        "directions": bool(settings.MAPBOX_TOKEN),
    }

# --- Exception Handlers ---
def error_response(status_code: int, body: ErrorResponse, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(by_alias=True, exclude_none=True),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        f"{'.'.join(str(part) for part in err['loc'] if part not in ('body', 'query'))}: {err['msg']}"
        for err in exc.errors()
    ]
    logger.info("request_validation_failed", details=details)
    return error_response(
        status.HTTP_400_BAD_REQUEST,
        ErrorResponse(error=InvalidInputError.error, detail=InvalidInputError.detail, details=details),
    )


@app.exception_handler(RateLimitedError)
async def rate_limited_exception_handler(request: Request, exc: RateLimitedError):
    result = exc.result
    return error_response(
        exc.status_code,
        ErrorResponse(
            error=exc.error,
            detail=exc.detail,
            retry_after=exc.retry_after,
            limit=result.limit,
            remaining=result.remaining,
        ),
        headers={
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(result.limit),
            "X-RateLimit-Remaining": str(result.remaining),
            "X-RateLimit-Reset": str(result.reset_at),
        },
    )


@app.exception_handler(ConfigurationError)
async def configuration_exception_handler(request: Request, exc: ConfigurationError):
    error_id = str(uuid.uuid4())
    logger.error("configuration_error", missing=exc.missing, error_id=error_id)
    return error_response(
        exc.status_code,
        ErrorResponse(
            error="INTERNAL_SERVER_ERROR",
            detail="An unexpected error occurred. Please report this error ID.",
            error_id=error_id,
        ),
    )


@app.exception_handler(BinThereError)
async def app_exception_handler(request: Request, exc: BinThereError):
    return error_response(
        exc.status_code,
        ErrorResponse(error=exc.error, detail=exc.detail, details=getattr(exc, "details", None) or None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    error_id = str(uuid.uuid4())
    logger.error("unhandled_exception", error_id=error_id, error=str(exc), exc_info=True)
    return error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        ErrorResponse(
            error="INTERNAL_SERVER_ERROR",
            detail="An unexpected error occurred. Please report this error ID.",
            error_id=error_id,
        ),
    )
