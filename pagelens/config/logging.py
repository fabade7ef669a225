"""
Logging Configuration for PageLens Analytics

structlog on top of the stdlib logging tree so uvicorn, gunicorn and library
loggers share one renderer. Request middleware binds `request_id` and the
session check binds `shop` through structlog contextvars; every event logged
while serving a request carries both.
"""

import logging
import sys
from typing import Any, List, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter
from structlog.types import EventDict, Processor

from pagelens.config.settings import get_settings

# Event keys whose values must never reach a log sink
SECRET_KEYS = frozenset({"access_token", "api_secret", "client_secret", "cookie", "hmac", "session_token"})

SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "gunicorn.error", "gunicorn.access")

# Upstream client libraries log every request at INFO/DEBUG; the gateway
# already records each call with its operation name
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def redact_secrets(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    for key in SECRET_KEYS.intersection(event_dict):
        event_dict[key] = "[redacted]"
    return event_dict


def _shared_processors() -> List[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def _renderer(log_format: str, colors: bool) -> Processor:
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=colors)


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    structlog.configure(
        processors=shared + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(
        processor=_renderer(settings.monitoring.log_format, colors=sys.stdout.isatty()),
        foreign_pre_chain=shared,
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.setLevel(numeric_level)
        server_logger.propagate = False

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
        environment=settings.app_env,
    )


def bind_shop(shop: str) -> None:
    """Attach the shop domain to every event logged for the current request."""
    structlog.contextvars.bind_contextvars(shop=shop)
