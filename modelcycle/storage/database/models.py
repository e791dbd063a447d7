"""SQLAlchemy models for the model lifecycle store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Boolean, Enum, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ...lifecycle.enums import (
    JobState,
    TriggerCause,
    TriggerStatus,
    ValidationVerdict,
    VersionStatus,
)
from ...utils.datetime import utc_now
from .base import Base, IntPKMixin, TimestampMixin, UTCDateTime


class ModelFamily(TimestampMixin, Base):
    """Logical identity of a model type and its per-family thresholds.

    ``champion_version_id`` and ``active_trigger_id`` are only ever written
    through compare-and-set updates (see ``FamilyRepository``).
    """

    __tablename__ = "model_families"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    description: Mapped[str | None] = mapped_column(Text)

    # Pointers (compare-and-set only)
    champion_version_id: Mapped[str | None] = mapped_column(String(36))
    active_trigger_id: Mapped[str | None] = mapped_column(String(36))
    last_deployed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    # Threshold overrides (NULL = system default)
    drift_threshold: Mapped[float | None] = mapped_column(Float)
    drift_window_seconds: Mapped[int | None] = mapped_column(Integer)
    min_training_samples: Mapped[int | None] = mapped_column(Integer)
    schedule_interval_seconds: Mapped[int | None] = mapped_column(Integer)
    min_quality_score: Mapped[float | None] = mapped_column(Float)
    regression_tolerance: Mapped[float | None] = mapped_column(Float)
    auto_deploy_threshold: Mapped[float | None] = mapped_column(Float)
    max_retries: Mapped[int | None] = mapped_column(Integer)

    def overrides(self) -> dict[str, Any]:
        """Non-null threshold overrides in ``FamilyConfig`` field names."""
        values: dict[str, Any] = {
            "drift_threshold": self.drift_threshold,
            "drift_window": (
                timedelta(seconds=self.drift_window_seconds)
                if self.drift_window_seconds is not None
                else None
            ),
            "min_training_samples": self.min_training_samples,
            "schedule_interval": (
                timedelta(seconds=self.schedule_interval_seconds)
                if self.schedule_interval_seconds is not None
                else None
            ),
            "min_quality_score": self.min_quality_score,
            "regression_tolerance": self.regression_tolerance,
            "auto_deploy_threshold": self.auto_deploy_threshold,
            "max_retries": self.max_retries,
        }
        return {k: v for k, v in values.items() if v is not None}

    def __repr__(self) -> str:
        return f"<ModelFamily(id='{self.id}', champion='{self.champion_version_id}', active_trigger='{self.active_trigger_id}')>"


class PerformanceObservation(IntPKMixin, Base):
    """Timestamped live score of a deployed model. Immutable once written."""

    __tablename__ = "performance_observations"

    family_id: Mapped[str] = mapped_column(
        ForeignKey("model_families.id"), nullable=False, index=True
    )
    version_id: Mapped[str | None] = mapped_column(String(36))
    observed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)

    def __repr__(self) -> str:
        return f"<PerformanceObservation(family='{self.family_id}', observed_at='{self.observed_at}', score={self.score})>"


class RetrainTrigger(Base):
    """A request to retrain a family."""

    __tablename__ = "retrain_triggers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    family_id: Mapped[str] = mapped_column(
        ForeignKey("model_families.id"), nullable=False, index=True
    )
    cause: Mapped[TriggerCause] = mapped_column(Enum(TriggerCause), nullable=False)

    # JSON list of sub-model types, NULL = whole family
    scope_json: Mapped[str | None] = mapped_column(Text)
    requested_by: Mapped[str | None] = mapped_column(String(100))
    reason: Mapped[str | None] = mapped_column(Text)

    status: Mapped[TriggerStatus] = mapped_column(
        Enum(TriggerStatus), nullable=False, default=TriggerStatus.ACTIVE
    )
    outcome: Mapped[str | None] = mapped_column(String(50))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    @property
    def scope(self) -> list[str] | None:
        return json.loads(self.scope_json) if self.scope_json else None

    def __repr__(self) -> str:
        return f"<RetrainTrigger(id='{self.id}', family='{self.family_id}', cause='{self.cause.value}', status='{self.status.value}')>"


class TrainingJob(Base):
    """One retraining attempt sequence. Owned by the job manager."""

    __tablename__ = "training_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    family_id: Mapped[str] = mapped_column(
        ForeignKey("model_families.id"), nullable=False, index=True
    )
    trigger_id: Mapped[str] = mapped_column(ForeignKey("retrain_triggers.id"), nullable=False)
    cause: Mapped[TriggerCause] = mapped_column(Enum(TriggerCause), nullable=False)

    state: Mapped[JobState] = mapped_column(
        Enum(JobState), nullable=False, default=JobState.PENDING, index=True
    )
    terminal: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    # External training operation handle of the current attempt
    handle: Mapped[str | None] = mapped_column(String(200))
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    data_window_start: Mapped[datetime | None] = mapped_column(UTCDateTime)
    data_window_end: Mapped[datetime | None] = mapped_column(UTCDateTime)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    attempt_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    next_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    ended_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    candidate_version_id: Mapped[str | None] = mapped_column(String(36))
    failure_reason: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<TrainingJob(id='{self.id}', family='{self.family_id}', state='{self.state.value}', retry_count={self.retry_count})>"


class ModelVersion(Base):
    """A trained artifact and its lifecycle status."""

    __tablename__ = "model_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    family_id: Mapped[str] = mapped_column(
        ForeignKey("model_families.id"), nullable=False, index=True
    )
    job_id: Mapped[str | None] = mapped_column(String(36))
    artifact_ref: Mapped[str] = mapped_column(String(500), nullable=False)

    status: Mapped[VersionStatus] = mapped_column(
        Enum(VersionStatus), nullable=False, default=VersionStatus.CANDIDATE, index=True
    )

    # Primary metric (self-reported at training, recorded as baseline at deployment)
    score: Mapped[float | None] = mapped_column(Float)
    metrics_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)
    validated_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    deployed_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    retired_at: Mapped[datetime | None] = mapped_column(UTCDateTime)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime)

    @property
    def metrics(self) -> dict[str, float]:
        return json.loads(self.metrics_json or "{}")

    def __repr__(self) -> str:
        return f"<ModelVersion(id='{self.id}', family='{self.family_id}', status='{self.status.value}', score={self.score})>"


class ValidationRecord(IntPKMixin, Base):
    """Persisted champion/challenger comparison. One per candidate."""

    __tablename__ = "validation_results"

    family_id: Mapped[str] = mapped_column(
        ForeignKey("model_families.id"), nullable=False, index=True
    )
    candidate_version_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    champion_version_id: Mapped[str | None] = mapped_column(String(36))

    candidate_score: Mapped[float | None] = mapped_column(Float)
    champion_score: Mapped[float | None] = mapped_column(Float)
    delta: Mapped[float | None] = mapped_column(Float)
    regression_tolerance: Mapped[float] = mapped_column(Float, nullable=False)
    min_quality_score: Mapped[float] = mapped_column(Float, nullable=False)

    verdict: Mapped[ValidationVerdict] = mapped_column(Enum(ValidationVerdict), nullable=False)
    reasons_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utc_now)

    def __repr__(self) -> str:
        return f"<ValidationRecord(candidate='{self.candidate_version_id}', verdict='{self.verdict.value}', delta={self.delta})>"


class AuditEntry(IntPKMixin, Base):
    """Append-only, hash-chained audit record.

    Entries of one family form a chain: ``entry_hash`` covers the entry's
    content and ``prev_hash``, so any edit or deletion breaks verification.
    """

    __tablename__ = "audit_log"

    occurred_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    actor: Mapped[str] = mapped_column(String(50), nullable=False)
    family_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    subject_type: Mapped[str] = mapped_column(String(20), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    detail_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    prev_hash: Mapped[str | None] = mapped_column(String(64))
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    @property
    def detail(self) -> dict[str, Any]:
        return json.loads(self.detail_json or "{}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
            "actor": self.actor,
            "family_id": self.family_id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "action": self.action,
            "outcome": self.outcome,
            "detail": self.detail,
            "entry_hash": self.entry_hash,
        }

    def __repr__(self) -> str:
        return f"<AuditEntry(id={self.id}, actor='{self.actor}', action='{self.action}', outcome='{self.outcome}', subject={self.subject_type}:{self.subject_id})>"
