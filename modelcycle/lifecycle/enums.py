"""Domain enums for the model lifecycle."""

from collections.abc import Iterable
from enum import Enum


class TriggerCause(str, Enum):
    """Why a retraining was requested.

    Causes form a closed set with an explicit precedence used when several
    fire in the same evaluation cycle: manual > performance_drift > schedule.
    """

    MANUAL = "manual"
    PERFORMANCE_DRIFT = "performance_drift"
    SCHEDULE = "schedule"

    def __str__(self) -> str:
        return self.value

    @property
    def precedence(self) -> int:
        """Higher wins the tie-break."""
        return _CAUSE_PRECEDENCE[self]

    @classmethod
    def strongest(cls, causes: Iterable["TriggerCause"]) -> "TriggerCause":
        """Pick the cause reported when several concur.

        Raises:
            ValueError: If no cause is given
        """
        ordered = sorted(causes, key=lambda c: c.precedence, reverse=True)
        if not ordered:
            raise ValueError("at least one trigger cause is required")
        return ordered[0]


_CAUSE_PRECEDENCE = {
    TriggerCause.MANUAL: 3,
    TriggerCause.PERFORMANCE_DRIFT: 2,
    TriggerCause.SCHEDULE: 1,
}


class TriggerStatus(str, Enum):
    """Retrain trigger status.

    Lifecycle:
        ACTIVE → RESOLVED (pipeline finished: deployed, held, rejected or failed)
    """

    ACTIVE = "active"
    RESOLVED = "resolved"

    def __str__(self) -> str:
        return self.value


class JobState(str, Enum):
    """Training job state.

    Lifecycle:
        PENDING → RUNNING (dispatch acknowledged)
        RUNNING → SUCCEEDED (candidate produced, terminal)
        RUNNING → FAILED (retryable or terminal)
        FAILED → PENDING (automatic retry while retries remain)
        FAILED → FAILED (scheduled retry abandoned by cancellation, terminal)
        PENDING → FAILED (submission error or cancellation; terminal unless transient)
    """

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    def __str__(self) -> str:
        return self.value


ALLOWED_JOB_TRANSITIONS: dict[JobState | None, frozenset[JobState]] = {
    None: frozenset({JobState.PENDING}),
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.SUCCEEDED, JobState.FAILED}),
    JobState.FAILED: frozenset({JobState.PENDING, JobState.FAILED}),
    JobState.SUCCEEDED: frozenset(),
}


class VersionStatus(str, Enum):
    """Model version status.

    Lifecycle:
        CANDIDATE → VALIDATED | REJECTED
        VALIDATED → DEPLOYED (auto or manual approval) | REJECTED (manual)
        DEPLOYED → RETIRED (superseded)
        RETIRED → DEPLOYED (manual rollback only)
    """

    CANDIDATE = "candidate"
    VALIDATED = "validated"
    REJECTED = "rejected"
    DEPLOYED = "deployed"
    RETIRED = "retired"

    def __str__(self) -> str:
        return self.value


class VerdictReason(str, Enum):
    """Reason code attached to a drift verdict."""

    DRIFT_DETECTED = "drift_detected"
    WITHIN_THRESHOLD = "within_threshold"
    INSUFFICIENT_DATA = "insufficient_data"
    NO_CHAMPION = "no_champion"
    NO_BASELINE = "no_baseline"

    def __str__(self) -> str:
        return self.value


class ValidationVerdict(str, Enum):
    """Outcome of the champion/challenger gate."""

    PASS = "pass"
    FAIL = "fail"

    def __str__(self) -> str:
        return self.value


class ValidationReason(str, Enum):
    """Enumerated reasons recorded on a validation result."""

    MISSING_METRIC = "missing_metric"
    BELOW_QUALITY_FLOOR = "below_quality_floor"
    REGRESSION = "regression"

    def __str__(self) -> str:
        return self.value


class DeploymentAction(str, Enum):
    """Deployment decision for a validated candidate."""

    DEPLOY = "deploy"
    HOLD_FOR_APPROVAL = "hold_for_approval"

    def __str__(self) -> str:
        return self.value


class RejectionReason(str, Enum):
    """Why a retrain request was not accepted."""

    ALREADY_ACTIVE = "already_active"
    NOT_NEEDED = "not_needed"
    UNKNOWN_FAMILY = "unknown_family"
    DRY_RUN = "dry_run"
    INSUFFICIENT_DATA = "insufficient_data"
    EVALUATION_FAILED = "evaluation_failed"

    def __str__(self) -> str:
        return self.value
