"""Contracts of the external collaborators the orchestrator consumes.

Adapters for a concrete metrics backend, training platform or notification
channel implement these protocols; nothing in the lifecycle package depends
on a specific backend.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from modelcycle.lifecycle.domain import DataWindow, Observation, TrainingStatus
from modelcycle.lifecycle.enums import TriggerCause

if TYPE_CHECKING:
    from modelcycle.lifecycle.notifications import LifecycleNotification


@runtime_checkable
class MetricsSource(Protocol):
    """Supplies live performance observations of deployed models."""

    def get_observations(self, family_id: str, since: datetime) -> Sequence[Observation]:
        """Observations recorded for ``family_id`` at or after ``since``."""
        ...


@runtime_checkable
class TrainingOperation(Protocol):
    """Long-running training computation on an external platform.

    ``submit_training`` returns an opaque handle that is later passed to
    ``poll_status`` and ``cancel``. Adapters signal submission problems by
    raising ``TrainingTransientFailure`` (retried with backoff) or
    ``TrainingFatalFailure`` (terminal).
    """

    async def submit_training(
        self,
        family_id: str,
        cause: TriggerCause,
        data_window: DataWindow,
        scope: Sequence[str] | None,
    ) -> str:
        """Start training and return the operation handle."""
        ...

    async def poll_status(self, handle: str) -> TrainingStatus:
        """Current status of the operation behind ``handle``."""
        ...

    async def cancel(self, handle: str) -> None:
        """Best-effort cancellation."""
        ...


@runtime_checkable
class NotificationSink(Protocol):
    """Delivery channel for lifecycle notifications (fire-and-forget)."""

    def notify(self, notification: LifecycleNotification) -> None: ...
