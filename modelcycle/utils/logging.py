"""
Structured logging for the lifecycle orchestrator, built on structlog.

Every entry emitted during one evaluation cycle or poll tick carries the same
``cycle_id``; entries emitted while a family is being worked on also carry
``family_id`` (and ``job_id`` once a job exists). Both live in structlog's
context variables, so they follow the ``asyncio.gather`` fan-out and the
worker threads store work is offloaded to.

Usage:
    logger = get_logger(__name__)
    with cycle_context("poll_tick"), family_context("content_performance", job_id=job.id):
        logger.info("job_dispatched", handle=handle)
"""

import logging
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any, cast

import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError
from structlog.types import EventDict, Processor

REDACTED = "***REDACTED***"

# Never logged, whatever the value
_SECRET_KEYS = frozenset({"password", "secret", "token", "api_key", "credentials"})

# Store URLs are logged with the password masked
_URL_KEYS = frozenset({"database_url", "store_url"})


@contextmanager
def cycle_context(kind: str, cycle_id: str | None = None) -> Iterator[str]:
    """Attach a fresh ``cycle_id`` (and the cycle kind) to entries logged inside the block.

    Yields:
        The cycle id
    """
    cycle_id = cycle_id or uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(cycle_id=cycle_id, cycle=kind):
        yield cycle_id


def current_cycle() -> str | None:
    return structlog.contextvars.get_contextvars().get("cycle_id")


@contextmanager
def family_context(family_id: str, job_id: str | None = None) -> Iterator[None]:
    """Attach ``family_id`` (and ``job_id``) to entries logged inside the block."""
    ids = {"family_id": family_id}
    if job_id is not None:
        ids["job_id"] = job_id
    with structlog.contextvars.bound_contextvars(**ids):
        yield


def redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Drop credentials and mask the password of store URLs."""
    for key in _SECRET_KEYS & event_dict.keys():
        event_dict[key] = REDACTED

    for key in _URL_KEYS & event_dict.keys():
        event_dict[key] = mask_url(str(event_dict[key]))

    return event_dict


def mask_url(url: str) -> str:
    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return REDACTED


def add_service(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    from modelcycle import __version__

    event_dict.setdefault("service", "modelcycle")
    event_dict.setdefault("version", __version__)
    return event_dict


def configure_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: JSON lines for log aggregation instead of console output
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_service,
        redact_secrets,
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
        force=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return cast(structlog.stdlib.BoundLogger, structlog.get_logger(name))


@contextmanager
def log_duration(
    operation: str, logger: structlog.stdlib.BoundLogger, **fields: Any
) -> Iterator[None]:
    """Log ``<operation>_completed`` or ``<operation>_failed`` with the elapsed time.

    Exceptions are logged and re-raised.
    """
    started = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(
            f"{operation}_failed",
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            error=str(e),
            error_type=type(e).__name__,
            **fields,
        )
        raise
    logger.info(
        f"{operation}_completed",
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        **fields,
    )
