import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from .settings import Settings


def service_context(settings: Settings, component: str) -> Processor:
    """Stamp every event with the service, environment and process role."""
    context = {
        "service": settings.app_name,
        "environment": settings.environment,
        "component": component,
    }

    def add_service_context(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
        for key, value in context.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def setup_logging(settings: Settings, component: str = "api") -> None:
    """Configure structured logging with structlog.

    ``component`` names the process emitting the logs (``api`` or ``worker``).
    """

    level = getattr(logging, settings.log_level)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    processors: list[Processor] = [
        # Add correlation IDs and timestamps
        structlog.contextvars.merge_contextvars,
        service_context(settings, component),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]

    # JSON formatting for production, pretty printing for development
    if settings.debug:
        processors += [
            structlog.processors.CallsiteParameterAdder(
                parameters=[structlog.processors.CallsiteParameter.FUNC_NAME]
            ),
            structlog.dev.ConsoleRenderer(),
        ]
    else:
        processors += [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = __name__) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def add_request_context(request_id: str, **context: Any) -> None:
    """Add request-specific context to all log messages."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, **context)


def job_logger(
    logger: structlog.BoundLogger, job_type: str, item_id: str, job_id: str | None
) -> structlog.BoundLogger:
    """Bind the identifiers that tie one engine item to its job record."""
    return logger.bind(job_type=job_type, item_id=item_id, job_id=job_id)
