# app/core/logging_config.py
import logging
import sys

import structlog

from app.config import settings


def setup_logging() -> None:
    """
    Configure structlog + stdlib logging.
    Logs go to stdout as JSON; tenant/job ids bound through contextvars
    show up on every event emitted while a pipeline runs.
    """
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def bind_job_context(**fields) -> None:
    """Bind ids (tenant_id, location_id, job_id, ...) for the current task."""
    structlog.contextvars.bind_contextvars(
        **{k: v for k, v in fields.items() if v is not None}
    )


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


# Global logger, importable anywhere
logger = structlog.get_logger("prophet")
