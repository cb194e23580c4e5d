import logging
import sys
from typing import Optional

import structlog
from binthere.core.config import settings

# held at WARNING; services log their own upstream calls
QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg")
UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _shared_processors(with_callsite: bool):
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if with_callsite:
        processors.append(structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.FUNC_NAME,
                structlog.processors.CallsiteParameter.LINENO,
            }
        ))
    return processors


def configure_logging(env: Optional[str] = None, level: Optional[str] = None):
    """
    Routes stdlib, uvicorn and service logs through structlog.

    Development renders to the console with call sites. Every other
    environment emits one JSON object per line.
    """
    env = (env or settings.ENV).lower()
    level = (level or settings.LOG_LEVEL).upper()
    is_local = env == "development"

    if is_local:
        processors = _shared_processors(with_callsite=True) + [structlog.dev.ConsoleRenderer()]
    else:
        processors = _shared_processors(with_callsite=False) + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = []
        uvicorn_logger.propagate = True
