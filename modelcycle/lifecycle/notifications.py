"""Lifecycle notifications.

The orchestrator emits a notification for every outcome a human may need to
act on (failed training, rejected candidate, approval required, deployment).
The ``Notifier`` fans each notification out to the registered sinks in
priority order. Sink failures are isolated: they are logged and never block
or roll back a lifecycle transition.

Example:
    >>> notifier = Notifier()
    >>> notifier.register(LoggingSink())
    >>> notifier.register(slack_sink, priority=10)
    >>> notifier.notify(
    ...     NotificationType.APPROVAL_REQUIRED,
    ...     "content_performance",
    ...     version_id="9f1c...",
    ...     delta=0.005,
    ... )
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from modelcycle.lifecycle.interfaces import NotificationSink
from modelcycle.utils.datetime import utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)


class NotificationType(str, Enum):
    """Kinds of lifecycle notifications."""

    RETRAIN_TRIGGERED = "retrain_triggered"
    TRAINING_FAILED = "training_failed"
    CANDIDATE_REJECTED = "candidate_rejected"
    APPROVAL_REQUIRED = "approval_required"
    MODEL_DEPLOYED = "model_deployed"
    JOB_CANCELLED = "job_cancelled"
    MODEL_ROLLED_BACK = "model_rolled_back"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class LifecycleNotification:
    """Immutable notification payload.

    Attributes:
        type: Notification kind
        family_id: Family the notification is about
        detail: Structured detail (ids, scores, reasons)
        event_id: Unique identifier of this notification
        occurred_at: Emission time (UTC)
    """

    type: NotificationType
    family_id: str
    detail: dict[str, Any] = field(default_factory=dict)
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "family_id": self.family_id,
            "detail": self.detail,
            "event_id": str(self.event_id),
            "occurred_at": self.occurred_at.isoformat(),
        }


@dataclass
class _SinkRegistration:
    sink: NotificationSink
    priority: int


class Notifier:
    """Fans notifications out to sinks, isolating sink failures.

    Sinks with a higher priority are called first.
    """

    def __init__(self, sinks: list[NotificationSink] | None = None) -> None:
        self._sinks: list[_SinkRegistration] = []
        self._sent: dict[str, int] = defaultdict(int)
        for sink in sinks or []:
            self.register(sink)

    def register(self, sink: NotificationSink, priority: int = 0) -> None:
        """Add a sink.

        Args:
            sink: Object implementing ``NotificationSink``
            priority: Higher = called first. Default: 0
        """
        self._sinks.append(_SinkRegistration(sink=sink, priority=priority))
        self._sinks.sort(key=lambda r: r.priority, reverse=True)

        logger.debug(
            "notification_sink_registered",
            sink=type(sink).__name__,
            priority=priority,
        )

    def unregister(self, sink: NotificationSink) -> None:
        self._sinks = [r for r in self._sinks if r.sink is not sink]

    @property
    def sinks(self) -> list[NotificationSink]:
        return [r.sink for r in self._sinks]

    def notify(
        self, notification_type: NotificationType, family_id: str, **detail: Any
    ) -> LifecycleNotification:
        """Build a notification and deliver it to every sink.

        Returns:
            The delivered notification
        """
        notification = LifecycleNotification(
            type=notification_type, family_id=family_id, detail=detail
        )
        self.publish(notification)
        return notification

    def publish(self, notification: LifecycleNotification) -> None:
        """Deliver an already-built notification."""
        self._sent[notification.type.value] += 1

        logger.info(
            "notification_published",
            notification_type=notification.type.value,
            family_id=notification.family_id,
            event_id=str(notification.event_id),
        )

        for registration in self._sinks:
            try:
                registration.sink.notify(notification)
            except Exception as e:
                # Isolate sink failures - log but don't propagate
                logger.error(
                    "notification_sink_failed",
                    notification_type=notification.type.value,
                    sink=type(registration.sink).__name__,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

    def get_stats(self) -> dict[str, int]:
        """Notifications published per type since startup."""
        return dict(self._sent)


class LoggingSink:
    """Writes every notification to the structured log."""

    def notify(self, notification: LifecycleNotification) -> None:
        logger.info(
            "lifecycle_notification",
            notification_type=notification.type.value,
            family_id=notification.family_id,
            event_id=str(notification.event_id),
            occurred_at=notification.occurred_at.isoformat(),
            detail=notification.detail,
        )
