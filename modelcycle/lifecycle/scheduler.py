"""Lifecycle Scheduler.

APScheduler-based driver that periodically runs the orchestrator's evaluation
cycle (drift and schedule checks) and poll tick (training job progress).

Example:
    >>> from modelcycle.lifecycle.scheduler import LifecycleScheduler
    >>>
    >>> # Start scheduler
    >>> scheduler = LifecycleScheduler(orchestrator)
    >>> scheduler.start()
    >>>
    >>> # Check status
    >>> status = scheduler.get_status()
    >>> print(status)
    >>>
    >>> # Stop scheduler
    >>> scheduler.stop()
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

from modelcycle.lifecycle.config import LifecycleSettings
from modelcycle.lifecycle.orchestrator import LifecycleOrchestrator
from modelcycle.utils.datetime import utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)

EVALUATION_JOB_ID = "lifecycle_evaluation"
POLL_JOB_ID = "lifecycle_poll"


class LifecycleScheduler:
    """Periodic driver of a LifecycleOrchestrator.

    Uses APScheduler BackgroundScheduler for non-blocking execution. Both jobs
    run with ``max_instances=1`` so a slow cycle is never overlapped by the
    next one.

    Example:
        >>> scheduler = LifecycleScheduler(orchestrator)
        >>> scheduler.start()
        >>>
        >>> # Scheduler runs in background
        >>> status = scheduler.get_status()
        >>>
        >>> # Stop when done
        >>> scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: LifecycleOrchestrator,
        settings: LifecycleSettings | None = None,
    ):
        """Initialize lifecycle scheduler."""
        self.orchestrator = orchestrator
        self.settings = settings or orchestrator.settings

        # APScheduler instance
        self.scheduler = BackgroundScheduler(timezone="UTC")

        # State tracking
        self.running = False
        self.last_evaluation_time: datetime | None = None
        self.last_poll_time: datetime | None = None
        self.last_error: str | None = None
        self._lock = threading.Lock()

        logger.info("lifecycle_scheduler_initialized", enabled=self.settings.enabled)

    def start(self) -> None:
        """Start the scheduler.

        Schedules evaluation cycles every ``check_interval_hours`` and poll
        ticks every ``poll_interval_seconds``.
        """
        if not self.settings.enabled:
            logger.warning(
                "lifecycle_scheduler_disabled",
                message="Set MODELCYCLE_ENABLED=true to enable",
            )
            return

        if self.running:
            logger.warning("scheduler_already_running")
            return

        self.scheduler.add_job(
            func=self.run_evaluation_now,
            trigger=IntervalTrigger(hours=self.settings.check_interval_hours),
            id=EVALUATION_JOB_ID,
            name="Evaluate Retrain Triggers",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            func=self.run_poll_now,
            trigger=IntervalTrigger(seconds=self.settings.poll_interval_seconds),
            id=POLL_JOB_ID,
            name="Poll Training Jobs",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        self.running = True

        logger.info(
            "lifecycle_scheduler_started",
            interval_hours=self.settings.check_interval_hours,
            poll_interval_seconds=self.settings.poll_interval_seconds,
            dry_run=self.settings.dry_run,
        )

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self.running:
            logger.warning("scheduler_not_running")
            return

        self.scheduler.shutdown(wait=True)
        self.running = False

        logger.info("lifecycle_scheduler_stopped")

    def run_evaluation_now(self) -> None:
        """Run one evaluation cycle in the calling thread."""
        self.last_evaluation_time = utc_now()
        self._run("evaluation_cycle", self.orchestrator.run_evaluation_cycle)

    def run_poll_now(self) -> None:
        """Run one poll tick in the calling thread."""
        self.last_poll_time = utc_now()
        self._run("poll_tick", self.orchestrator.poll_jobs)

    def _run(self, name: str, job: Callable[[], Awaitable[Any]]) -> None:
        # Serialize evaluation and poll: both drive the same families
        with self._lock:
            logger.debug("scheduled_run_started", job=name)

            # APScheduler runs in a background thread, so we need an explicit event loop
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(job())
                self.last_error = None
            except Exception as e:
                self.last_error = f"{name}: {e}"
                logger.error("scheduled_run_failed", job=name, error=str(e), exc_info=True)
            finally:
                asyncio.set_event_loop(None)
                loop.close()

    def get_status(self) -> dict[str, Any]:
        """Get scheduler status.

        Returns:
            Dictionary with scheduler status and next run times
        """
        next_runs: dict[str, str | None] = {}
        if self.running:
            for job_id in (EVALUATION_JOB_ID, POLL_JOB_ID):
                job = self.scheduler.get_job(job_id)
                next_runs[job_id] = (
                    job.next_run_time.isoformat() if job and job.next_run_time else None
                )

        return {
            "enabled": self.settings.enabled,
            "running": self.running,
            "dry_run": self.settings.dry_run,
            "interval_hours": self.settings.check_interval_hours,
            "poll_interval_seconds": self.settings.poll_interval_seconds,
            "last_evaluation_time": (
                self.last_evaluation_time.isoformat() if self.last_evaluation_time else None
            ),
            "last_poll_time": self.last_poll_time.isoformat() if self.last_poll_time else None,
            "last_error": self.last_error,
            "next_run_times": next_runs,
        }
