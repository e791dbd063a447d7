"""Test doubles and helpers shared by the test suite."""

from collections import defaultdict, deque
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from modelcycle.lifecycle.config import LifecycleSettings
from modelcycle.lifecycle.domain import DataWindow, Observation, TrainingStatus
from modelcycle.lifecycle.enums import TriggerCause
from modelcycle.lifecycle.notifications import LifecycleNotification, NotificationType
from modelcycle.lifecycle.orchestrator import LifecycleOrchestrator

START = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeTrainingOperation:
    """Scripted training backend.

    Each submission consumes the next scripted outcome of its family:

    - an exception: raised by ``submit_training``
    - a TrainingStatus: returned by every ``poll_status`` of that attempt
    - a list of TrainingStatus: returned one per poll, the last one repeating

    Families without a script train successfully with ``default_metrics``.
    """

    def __init__(self, default_metrics: dict[str, float] | None = None):
        self.default_metrics = default_metrics or {"accuracy": 0.85}
        self.submissions: list[dict] = []
        self.polls: list[str] = []
        self.cancelled: list[str] = []
        self.cancel_error: Exception | None = None
        self.poll_error: Exception | None = None
        self._scripts: dict[str, deque] = defaultdict(deque)
        self._attempts: dict[str, deque[TrainingStatus]] = {}

    def script(self, family_id: str, *outcomes) -> None:
        self._scripts[family_id].extend(outcomes)

    async def submit_training(
        self,
        family_id: str,
        cause: TriggerCause,
        data_window: DataWindow,
        scope: Sequence[str] | None,
    ) -> str:
        outcome = (
            self._scripts[family_id].popleft()
            if self._scripts[family_id]
            else TrainingStatus.succeeded(
                f"s3://models/{family_id}/{len(self.submissions)}", self.default_metrics
            )
        )
        self.submissions.append(
            {"family_id": family_id, "cause": cause, "data_window": data_window, "scope": scope}
        )
        if isinstance(outcome, Exception):
            raise outcome

        handle = f"{family_id}-op-{len(self.submissions)}"
        statuses = outcome if isinstance(outcome, list) else [outcome]
        self._attempts[handle] = deque(statuses)
        return handle

    async def poll_status(self, handle: str) -> TrainingStatus:
        self.polls.append(handle)
        if self.poll_error is not None:
            raise self.poll_error
        statuses = self._attempts[handle]
        if len(statuses) > 1:
            return statuses.popleft()
        return statuses[0]

    async def cancel(self, handle: str) -> None:
        self.cancelled.append(handle)
        if self.cancel_error is not None:
            raise self.cancel_error


class RecordingSink:
    """Notification sink that keeps every notification."""

    def __init__(self) -> None:
        self.received: list[LifecycleNotification] = []

    def notify(self, notification: LifecycleNotification) -> None:
        self.received.append(notification)

    @property
    def types(self) -> list[NotificationType]:
        return [n.type for n in self.received]

    def of_type(self, notification_type: NotificationType) -> list[LifecycleNotification]:
        return [n for n in self.received if n.type is notification_type]


def succeeded(accuracy: float, artifact: str = "s3://models/candidate") -> TrainingStatus:
    return TrainingStatus.succeeded(artifact, {"accuracy": accuracy})


def ingest_scores(
    orchestrator: LifecycleOrchestrator,
    family_id: str,
    scores: Sequence[float],
    *,
    spacing: timedelta = timedelta(minutes=10),
) -> None:
    """Record scores ending at the orchestrator's current time."""
    now = orchestrator.clock()
    observations = [
        Observation(timestamp=now - spacing * (len(scores) - 1 - i), score=score)
        for i, score in enumerate(scores)
    ]
    orchestrator.metrics.ingest(family_id, observations)


def make_settings(**overrides) -> LifecycleSettings:
    """Test settings independent of the environment and any .env file."""
    values = {
        "drift_threshold": 0.03,
        "drift_window": timedelta(days=7),
        "min_training_samples": 5,
        "schedule_interval": timedelta(days=7),
        "min_quality_score": 0.5,
        "regression_tolerance": 0.01,
        "auto_deploy_threshold": 0.02,
        "max_retries": 3,
        "retry_base_delay_seconds": 60.0,
        "retry_max_delay_seconds": 3600.0,
        "training_timeout": timedelta(hours=6),
        "cancel_timeout_seconds": 0.5,
        "max_concurrent_families": 4,
        "dry_run": False,
    }
    values.update(overrides)
    return LifecycleSettings(_env_file=None, **values)

