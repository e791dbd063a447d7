"""Durable store facade: atomic units of work over the lifecycle repositories.

Every state change in the orchestrator is expressed as a function of a
``UnitOfWork`` and executed through ``LifecycleStore.run``. The whole function
either commits or is rolled back, so a failure never leaves a partial
transition behind. Transient database errors are retried locally before
``StoreUnavailableError`` is raised to the caller.

Example:
    >>> store = LifecycleStore.from_url("sqlite:///./modelcycle.db")
    >>> def claim(uow: UnitOfWork) -> bool:
    ...     return uow.families.claim("content_performance", trigger_id)
    >>> store.run(claim)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from typing import Any, TypeVar

from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from modelcycle.exceptions import StoreUnavailableError
from modelcycle.storage.database.base import create_session_factory, is_memory_url
from modelcycle.storage.repository import (
    AuditRepository,
    FamilyRepository,
    JobRepository,
    ObservationRepository,
    TriggerRepository,
    ValidationRepository,
    VersionRepository,
)
from modelcycle.storage.session import db_session
from modelcycle.utils.logging import get_logger
from modelcycle.utils.retry import STORE_RETRY, RetryConfig, retry_sync

logger = get_logger(__name__)

T = TypeVar("T")

# Connection-level failures worth retrying (locked database, dropped connection)
TRANSIENT_ERRORS: tuple[type[Exception], ...] = (OperationalError, InterfaceError)


class UnitOfWork:
    """Repositories sharing one session (one transaction)."""

    def __init__(self, session: Session):
        self.session = session
        self.families = FamilyRepository(session)
        self.observations = ObservationRepository(session)
        self.triggers = TriggerRepository(session)
        self.jobs = JobRepository(session)
        self.versions = VersionRepository(session)
        self.validations = ValidationRepository(session)
        self.audit = AuditRepository(session)


class LifecycleStore:
    """Runs units of work atomically with local retries on transient errors."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        retry_config: RetryConfig | None = None,
        threaded: bool = True,
    ):
        """Initialize the store.

        Args:
            session_factory: Session factory (None uses the global ``init_db`` one)
            retry_config: Retry policy for transient database errors
            threaded: Let ``offload`` run store work in worker threads
                (False for a single shared connection)
        """
        self._factory = session_factory
        self.threaded = threaded
        base = retry_config or STORE_RETRY
        self._retry = replace(base, retryable_exceptions=TRANSIENT_ERRORS)

    @classmethod
    def from_url(cls, database_url: str, retry_config: RetryConfig | None = None) -> LifecycleStore:
        """Create tables (if needed) and a store bound to ``database_url``."""
        return cls(
            create_session_factory(database_url),
            retry_config=retry_config,
            threaded=not is_memory_url(database_url),
        )

    def run(self, work: Callable[[UnitOfWork], T]) -> T:
        """Execute ``work`` in one transaction and commit it.

        Raises:
            StoreUnavailableError: If the store keeps failing after retries
        """
        return self._execute(work, commit=True)

    def read(self, work: Callable[[UnitOfWork], T]) -> T:
        """Execute a read-only ``work`` (never commits)."""
        return self._execute(work, commit=False)

    async def offload(self, func: Callable[..., T], *args: Any) -> T:
        """Run blocking store-bound ``func`` without stalling the event loop."""
        if not self.threaded:
            return func(*args)
        return await asyncio.to_thread(func, *args)

    def _execute(self, work: Callable[[UnitOfWork], T], commit: bool) -> T:
        def attempt() -> T:
            with db_session(self._factory) as db:
                result = work(UnitOfWork(db))
                if commit:
                    db.commit()
                return result

        try:
            return retry_sync(attempt, config=self._retry)
        except TRANSIENT_ERRORS as e:
            logger.error(
                "store_unavailable",
                error=str(e),
                error_type=type(e).__name__,
                attempts=self._retry.max_retries + 1,
            )
            raise StoreUnavailableError(
                "Durable store unavailable",
                context={"attempts": self._retry.max_retries + 1},
                original_error=e,
            ) from e
