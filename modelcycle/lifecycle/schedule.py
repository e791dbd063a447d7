"""Time-based forced retraining.

A family is due for a forced retrain once ``schedule_interval`` has elapsed
since its last deployment. A family that has never deployed is always due
(initial training).
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from modelcycle.lifecycle.config import LifecycleSettings
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)


def is_due(last_deployed_at: datetime | None, interval: timedelta, now: datetime) -> bool:
    """``now - last_deployed_at >= interval``; never deployed counts as due."""
    if last_deployed_at is None:
        return True
    return ensure_utc(now) - ensure_utc(last_deployed_at) >= interval


class ScheduleEvaluator:
    """Decides whether a time-based retrain is due for a family."""

    def __init__(
        self,
        store: LifecycleStore,
        settings: LifecycleSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings
        self.clock = clock

    def due_for_forced_retrain(self, family_id: str, now: datetime | None = None) -> bool:
        """Whether the schedule interval has elapsed since the last deployment.

        Raises:
            RecordNotFoundError: If the family is not registered
        """
        return bool(self.explain(family_id, now)["due"])

    def explain(self, family_id: str, now: datetime | None = None) -> dict[str, Any]:
        """Elapsed time and interval, for logs and audit detail."""
        now = ensure_utc(now or self.clock())
        last_deployed_at, interval = self.store.read(lambda uow: self._load(uow, family_id))

        due = is_due(last_deployed_at, interval, now)
        elapsed = now - last_deployed_at if last_deployed_at is not None else None

        explanation = {
            "due": due,
            "initial_training": last_deployed_at is None,
            "last_deployed_at": last_deployed_at.isoformat() if last_deployed_at else None,
            "elapsed_seconds": elapsed.total_seconds() if elapsed is not None else None,
            "interval_seconds": interval.total_seconds(),
        }

        if due:
            logger.info("forced_retrain_due", family_id=family_id, **explanation)

        return explanation

    def _load(self, uow: UnitOfWork, family_id: str) -> tuple[datetime | None, timedelta]:
        family = uow.families.require(family_id)
        policy = self.settings.policy_for(family.overrides())
        return family.last_deployed_at, policy.schedule_interval
