from __future__ import annotations

import logging
import sys
from contextlib import AbstractContextManager

import structlog


def configure_logging(service_name: str, log_level: str = "INFO") -> None:
    """Configure structlog for structured JSON output.

    Must be called once at startup before any logging occurs.
    Binds service_name to all subsequent log entries via contextvars.
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.ExceptionRenderer(),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    structlog.contextvars.bind_contextvars(service=service_name)


def check_context(
    check_id: str,
    correlation_id: str | None = None,
    tenant_id: str | None = None,
) -> AbstractContextManager[None]:
    """Bind per-check context variables for the duration of one check.

    Values that were bound before are restored on exit, so a caller's
    correlation_id survives the check. None values are not bound.
    """
    values = {
        "check_id": check_id,
        "correlation_id": correlation_id,
        "tenant_id": tenant_id,
    }
    return structlog.contextvars.bound_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )
