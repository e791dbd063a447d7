"""Repository implementations for lifecycle entities.

Every repository works on a session owned by the caller (a ``LifecycleStore``
unit of work), so several repositories can take part in one atomic
transaction. Pointer updates on ``ModelFamily`` are compare-and-set UPDATE
statements: they succeed for exactly one concurrent writer.
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from modelcycle.exceptions import RecordNotFoundError
from modelcycle.lifecycle.enums import JobState, VersionStatus
from modelcycle.storage.database.models import (
    AuditEntry,
    ModelFamily,
    ModelVersion,
    PerformanceObservation,
    RetrainTrigger,
    TrainingJob,
    ValidationRecord,
)
from modelcycle.utils.datetime import ensure_utc


class FamilyRepository:
    """Repository for ModelFamily entities and their CAS pointers."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, family: ModelFamily) -> ModelFamily:
        self.session.add(family)
        self.session.flush()
        return family

    def get(self, family_id: str) -> ModelFamily | None:
        return self.session.get(ModelFamily, family_id)

    def require(self, family_id: str) -> ModelFamily:
        """Get a family or raise RecordNotFoundError."""
        family = self.get(family_id)
        if family is None:
            raise RecordNotFoundError(
                f"Unknown model family '{family_id}'",
                entity_type="ModelFamily",
                entity_id=family_id,
            )
        return family

    def list_ids(self) -> list[str]:
        stmt = select(ModelFamily.id).order_by(ModelFamily.id)
        return list(self.session.execute(stmt).scalars())

    def list_claimed(self) -> list[str]:
        """Families that currently hold an active trigger."""
        stmt = (
            select(ModelFamily.id)
            .where(ModelFamily.active_trigger_id.is_not(None))
            .order_by(ModelFamily.id)
        )
        return list(self.session.execute(stmt).scalars())

    def claim(self, family_id: str, trigger_id: str) -> bool:
        """Set the active trigger iff none is active."""
        return self._compare_and_set(
            ModelFamily.active_trigger_id.is_(None),
            family_id,
            active_trigger_id=trigger_id,
        )

    def release(self, family_id: str, trigger_id: str) -> bool:
        """Clear the active trigger iff it is still ``trigger_id``."""
        return self._compare_and_set(
            ModelFamily.active_trigger_id == trigger_id,
            family_id,
            active_trigger_id=None,
        )

    def swap_champion(
        self,
        family_id: str,
        expected_version_id: str | None,
        new_version_id: str,
        deployed_at: datetime,
    ) -> bool:
        """Point the family at a new champion iff the current one is as expected."""
        if expected_version_id is None:
            condition = ModelFamily.champion_version_id.is_(None)
        else:
            condition = ModelFamily.champion_version_id == expected_version_id
        return self._compare_and_set(
            condition,
            family_id,
            champion_version_id=new_version_id,
            last_deployed_at=deployed_at,
        )

    def _compare_and_set(self, condition: Any, family_id: str, **values: Any) -> bool:
        self.session.flush()
        stmt = (
            update(ModelFamily)
            .where(ModelFamily.id == family_id, condition)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        # Identity map may hold the pre-update row
        self.session.expire_all()
        return result.rowcount == 1


class ObservationRepository:
    """Repository for PerformanceObservation entities (insert/read only)."""

    def __init__(self, session: Session):
        self.session = session

    def add_many(self, observations: Iterable[PerformanceObservation]) -> int:
        items = list(observations)
        self.session.add_all(items)
        self.session.flush()
        return len(items)

    def recent(
        self, family_id: str, since: datetime, until: datetime | None = None
    ) -> list[PerformanceObservation]:
        """Observations in ``[since, until]`` ordered by timestamp."""
        stmt = select(PerformanceObservation).where(
            PerformanceObservation.family_id == family_id,
            PerformanceObservation.observed_at >= ensure_utc(since),
        )
        if until is not None:
            stmt = stmt.where(PerformanceObservation.observed_at <= ensure_utc(until))
        stmt = stmt.order_by(PerformanceObservation.observed_at, PerformanceObservation.id)
        return list(self.session.execute(stmt).scalars())

    def latest_timestamp(self, family_id: str) -> datetime | None:
        stmt = select(func.max(PerformanceObservation.observed_at)).where(
            PerformanceObservation.family_id == family_id
        )
        latest = self.session.execute(stmt).scalar_one_or_none()
        # Aggregates bypass the column type on some dialects
        if isinstance(latest, str):
            latest = datetime.fromisoformat(latest)
        return ensure_utc(latest) if latest is not None else None


class TriggerRepository:
    """Repository for RetrainTrigger entities."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, trigger: RetrainTrigger) -> RetrainTrigger:
        self.session.add(trigger)
        self.session.flush()
        return trigger

    def get(self, trigger_id: str) -> RetrainTrigger | None:
        return self.session.get(RetrainTrigger, trigger_id)


class JobRepository:
    """Repository for TrainingJob entities."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, job: TrainingJob) -> TrainingJob:
        self.session.add(job)
        self.session.flush()
        return job

    def get(self, job_id: str) -> TrainingJob | None:
        return self.session.get(TrainingJob, job_id)

    def require(self, job_id: str) -> TrainingJob:
        job = self.get(job_id)
        if job is None:
            raise RecordNotFoundError(
                f"Unknown training job '{job_id}'", entity_type="TrainingJob", entity_id=job_id
            )
        return job

    def active_for_family(self, family_id: str) -> TrainingJob | None:
        """The non-terminal job of a family, if any."""
        stmt = select(TrainingJob).where(
            TrainingJob.family_id == family_id,
            TrainingJob.terminal.is_(False),
        )
        return self.session.execute(stmt).scalars().first()

    def list_active(self) -> list[TrainingJob]:
        stmt = (
            select(TrainingJob)
            .where(TrainingJob.terminal.is_(False))
            .order_by(TrainingJob.created_at)
        )
        return list(self.session.execute(stmt).scalars())

    def for_trigger(self, trigger_id: str) -> TrainingJob | None:
        stmt = select(TrainingJob).where(TrainingJob.trigger_id == trigger_id)
        return self.session.execute(stmt).scalars().first()

    def count_active(self, family_id: str) -> int:
        stmt = select(func.count(TrainingJob.id)).where(
            TrainingJob.family_id == family_id,
            TrainingJob.terminal.is_(False),
        )
        return int(self.session.execute(stmt).scalar_one())

    def transition(self, job_id: str, expected_state: JobState, **values: Any) -> bool:
        """Update a non-terminal job iff it is still in ``expected_state``."""
        self.session.flush()
        stmt = (
            update(TrainingJob)
            .where(
                TrainingJob.id == job_id,
                TrainingJob.state == expected_state,
                TrainingJob.terminal.is_(False),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        self.session.expire_all()
        return result.rowcount == 1

    def count_by_state(self, family_id: str) -> dict[str, int]:
        stmt = (
            select(TrainingJob.state, TrainingJob.terminal, func.count(TrainingJob.id))
            .where(TrainingJob.family_id == family_id)
            .group_by(TrainingJob.state, TrainingJob.terminal)
        )
        counts: dict[str, int] = {}
        for state, terminal, count in self.session.execute(stmt):
            key = state.value
            if state is JobState.FAILED and not terminal:
                key = "retry_scheduled"
            counts[key] = counts.get(key, 0) + int(count)
        return counts


class VersionRepository:
    """Repository for ModelVersion entities."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, version: ModelVersion) -> ModelVersion:
        self.session.add(version)
        self.session.flush()
        return version

    def get(self, version_id: str) -> ModelVersion | None:
        return self.session.get(ModelVersion, version_id)

    def require(self, version_id: str) -> ModelVersion:
        version = self.get(version_id)
        if version is None:
            raise RecordNotFoundError(
                f"Unknown model version '{version_id}'",
                entity_type="ModelVersion",
                entity_id=version_id,
            )
        return version

    def champion(self, family: ModelFamily) -> ModelVersion | None:
        if family.champion_version_id is None:
            return None
        return self.get(family.champion_version_id)

    def list_for_family(
        self, family_id: str, statuses: Sequence[VersionStatus] | None = None
    ) -> list[ModelVersion]:
        stmt = select(ModelVersion).where(ModelVersion.family_id == family_id)
        if statuses:
            stmt = stmt.where(ModelVersion.status.in_(list(statuses)))
        stmt = stmt.order_by(ModelVersion.created_at)
        return list(self.session.execute(stmt).scalars())

    def count_deployed(self, family_id: str) -> int:
        stmt = select(func.count(ModelVersion.id)).where(
            ModelVersion.family_id == family_id,
            ModelVersion.status == VersionStatus.DEPLOYED,
        )
        return int(self.session.execute(stmt).scalar_one())


class ValidationRepository:
    """Repository for persisted validation results."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, record: ValidationRecord) -> ValidationRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def for_candidate(self, version_id: str) -> ValidationRecord | None:
        stmt = select(ValidationRecord).where(ValidationRecord.candidate_version_id == version_id)
        return self.session.execute(stmt).scalar_one_or_none()


def compute_entry_hash(
    prev_hash: str | None,
    occurred_at: datetime,
    actor: str,
    family_id: str,
    subject_type: str,
    subject_id: str,
    action: str,
    outcome: str,
    detail_json: str,
) -> str:
    """SHA-256 over the canonical entry content chained to the previous hash."""
    payload = json.dumps(
        {
            "prev_hash": prev_hash,
            "occurred_at": ensure_utc(occurred_at).isoformat(),
            "actor": actor,
            "family_id": family_id,
            "subject_type": subject_type,
            "subject_id": subject_id,
            "action": action,
            "outcome": outcome,
            "detail": detail_json,
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class AuditRepository:
    """Append-only access to the audit log. Entries are never updated or deleted."""

    def __init__(self, session: Session):
        self.session = session

    def append(
        self,
        *,
        actor: str,
        family_id: str,
        subject_type: str,
        subject_id: str,
        action: str,
        outcome: str,
        occurred_at: datetime,
        detail: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Insert an entry chained to the family's previous entry."""
        # Serialize appends per family on engines with row locks
        self.session.execute(
            select(ModelFamily.id).where(ModelFamily.id == family_id).with_for_update()
        )
        prev_hash = self.session.execute(
            select(AuditEntry.entry_hash)
            .where(AuditEntry.family_id == family_id)
            .order_by(AuditEntry.id.desc())
            .limit(1)
        ).scalar_one_or_none()

        detail_json = json.dumps(detail or {}, sort_keys=True, default=str)
        occurred_at = ensure_utc(occurred_at)
        entry = AuditEntry(
            occurred_at=occurred_at,
            actor=actor,
            family_id=family_id,
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            outcome=outcome,
            detail_json=detail_json,
            prev_hash=prev_hash,
            entry_hash=compute_entry_hash(
                prev_hash,
                occurred_at,
                actor,
                family_id,
                subject_type,
                subject_id,
                action,
                outcome,
                detail_json,
            ),
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def page(self, family_id: str, limit: int, before_id: int | None = None) -> list[AuditEntry]:
        """Most recent first, strictly older than ``before_id`` when given."""
        stmt = select(AuditEntry).where(AuditEntry.family_id == family_id)
        if before_id is not None:
            stmt = stmt.where(AuditEntry.id < before_id)
        stmt = stmt.order_by(AuditEntry.id.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars())

    def for_subject(self, subject_type: str, subject_id: str) -> list[AuditEntry]:
        """Entries of one subject in causal (insertion) order."""
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.subject_type == subject_type, AuditEntry.subject_id == subject_id)
            .order_by(AuditEntry.id)
        )
        return list(self.session.execute(stmt).scalars())

    def chain(self, family_id: str) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(AuditEntry.family_id == family_id).order_by(AuditEntry.id)
        return list(self.session.execute(stmt).scalars())

    def latest(self, family_id: str, actions: Sequence[str]) -> AuditEntry | None:
        stmt = (
            select(AuditEntry)
            .where(AuditEntry.family_id == family_id, AuditEntry.action.in_(list(actions)))
            .order_by(AuditEntry.id.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def by_action(
        self, family_id: str, action: str, outcome: str | None = None
    ) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(
            AuditEntry.family_id == family_id, AuditEntry.action == action
        )
        if outcome is not None:
            stmt = stmt.where(AuditEntry.outcome == outcome)
        stmt = stmt.order_by(AuditEntry.id)
        return list(self.session.execute(stmt).scalars())

    def count_actions(self, family_id: str) -> dict[tuple[str, str], int]:
        stmt = (
            select(AuditEntry.action, AuditEntry.outcome, func.count(AuditEntry.id))
            .where(AuditEntry.family_id == family_id)
            .group_by(AuditEntry.action, AuditEntry.outcome)
        )
        return {(a, o): int(c) for a, o, c in self.session.execute(stmt)}
