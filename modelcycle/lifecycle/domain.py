"""Decision and value objects exchanged between lifecycle components.

All objects are immutable. Decisions carry an enumerated reason code that
callers can branch on, plus free-form detail for logs and the audit trail.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from modelcycle.lifecycle.enums import (
    DeploymentAction,
    RejectionReason,
    TriggerCause,
    ValidationReason,
    ValidationVerdict,
    VerdictReason,
)

# Absolute tolerance for threshold boundaries: 0.82 - 0.80 must count as 0.02
SCORE_EPSILON = 1e-9


def at_least(value: float, threshold: float) -> bool:
    """Inclusive ``value >= threshold`` that is robust to float noise."""
    return value >= threshold or math.isclose(value, threshold, abs_tol=SCORE_EPSILON)


def strictly_above(value: float, bound: float) -> bool:
    """Exclusive ``value > bound`` that treats float-noise equality as equal."""
    return value > bound and not math.isclose(value, bound, abs_tol=SCORE_EPSILON)


@dataclass(frozen=True)
class Observation:
    """A timestamped performance sample for a deployed model."""

    timestamp: datetime
    score: float
    version_id: str | None = None


@dataclass(frozen=True)
class DataWindow:
    """Time range of data handed to the training operation."""

    start: datetime
    end: datetime

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class DriftVerdict:
    """Result of a drift evaluation.

    Attributes:
        family_id: Evaluated family
        retrain: Whether retraining is warranted
        current_score: Mean score over the window (None without enough data)
        baseline_score: Champion score recorded at deployment time
        delta: baseline - current (positive means degradation)
        reason: Enumerated reason code
        sample_count: Observations found in the window
        threshold: Drift threshold that was applied
        detail: Human-readable explanation
    """

    family_id: str
    retrain: bool
    current_score: float | None
    baseline_score: float | None
    delta: float | None
    reason: VerdictReason
    sample_count: int
    threshold: float
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "retrain": self.retrain,
            "current_score": self.current_score,
            "baseline_score": self.baseline_score,
            "delta": self.delta,
            "reason": self.reason.value,
            "sample_count": self.sample_count,
            "threshold": self.threshold,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class TrainingStatus:
    """Status reported by the external training operation."""

    state: Literal["running", "succeeded", "failed"]
    artifact_ref: str | None = None
    metrics: dict[str, float] = field(default_factory=dict)
    reason: str | None = None
    retryable: bool = False

    @classmethod
    def running(cls) -> TrainingStatus:
        return cls(state="running")

    @classmethod
    def succeeded(cls, artifact_ref: str, metrics: dict[str, float]) -> TrainingStatus:
        return cls(state="succeeded", artifact_ref=artifact_ref, metrics=dict(metrics))

    @classmethod
    def failed(cls, reason: str, retryable: bool) -> TrainingStatus:
        return cls(state="failed", reason=reason, retryable=retryable)


@dataclass(frozen=True)
class SubmitResult:
    """Immediate answer to a retrain request."""

    family_id: str
    accepted: bool
    cause: TriggerCause | None = None
    trigger_id: str | None = None
    job_id: str | None = None
    reason: RejectionReason | None = None
    detail: str = ""

    @classmethod
    def accept(
        cls, family_id: str, cause: TriggerCause, trigger_id: str, job_id: str
    ) -> SubmitResult:
        return cls(
            family_id=family_id,
            accepted=True,
            cause=cause,
            trigger_id=trigger_id,
            job_id=job_id,
        )

    @classmethod
    def reject(
        cls, family_id: str, reason: RejectionReason, detail: str = ""
    ) -> SubmitResult:
        return cls(family_id=family_id, accepted=False, reason=reason, detail=detail)

    def to_dict(self) -> dict[str, Any]:
        if self.accepted:
            return {
                "accepted": True,
                "job_id": self.job_id,
                "trigger_id": self.trigger_id,
                "cause": self.cause.value if self.cause else None,
            }
        return {
            "accepted": False,
            "reason": self.reason.value if self.reason else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Champion/challenger comparison for one candidate."""

    family_id: str
    candidate_version_id: str
    champion_version_id: str | None
    candidate_score: float | None
    champion_score: float | None
    delta: float | None
    regression_tolerance: float
    min_quality_score: float
    verdict: ValidationVerdict
    reasons: tuple[ValidationReason, ...] = ()
    detail: str = ""

    @property
    def passed(self) -> bool:
        return self.verdict is ValidationVerdict.PASS

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "candidate_version_id": self.candidate_version_id,
            "champion_version_id": self.champion_version_id,
            "candidate_score": self.candidate_score,
            "champion_score": self.champion_score,
            "delta": self.delta,
            "regression_tolerance": self.regression_tolerance,
            "min_quality_score": self.min_quality_score,
            "verdict": self.verdict.value,
            "reasons": [r.value for r in self.reasons],
            "detail": self.detail,
        }


@dataclass(frozen=True)
class DeploymentDecision:
    """Deploy or hold, with the numbers that justified it."""

    family_id: str
    version_id: str
    action: DeploymentAction
    delta: float | None
    threshold: float
    previous_champion_id: str | None
    champion_score_before: float | None
    champion_score_after: float | None
    reason: str = ""

    @property
    def deployed(self) -> bool:
        return self.action is DeploymentAction.DEPLOY

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "version_id": self.version_id,
            "action": self.action.value,
            "delta": self.delta,
            "threshold": self.threshold,
            "previous_champion_id": self.previous_champion_id,
            "champion_score_before": self.champion_score_before,
            "champion_score_after": self.champion_score_after,
            "reason": self.reason,
        }
