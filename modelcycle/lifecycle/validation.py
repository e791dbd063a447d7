"""Champion/challenger validation gate.

Compares a freshly trained candidate against the deployed champion using the
candidate's self-reported primary metric (default ``accuracy``, higher is
better). A candidate passes when:

- it reports the primary metric,
- ``candidate_score >= min_quality_score`` (quality floor), and
- ``candidate_score - champion_score > -regression_tolerance``.

Every failed condition is listed in ``ValidationResult.reasons``. A family
without a champion is only held to the quality floor.

Example:
    >>> gate = ValidationGate(store, audit, notifier, settings)
    >>> result = gate.validate(candidate_version_id)
    >>> result.passed, result.delta
    (True, 0.03)
"""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime

from modelcycle.exceptions import InvalidStateTransitionError
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.audit import AuditLog
from modelcycle.lifecycle.config import FamilyPolicy, LifecycleSettings
from modelcycle.lifecycle.coordinator import release_trigger
from modelcycle.lifecycle.domain import ValidationResult, at_least, strictly_above
from modelcycle.lifecycle.enums import ValidationReason, ValidationVerdict, VersionStatus
from modelcycle.lifecycle.notifications import NotificationType, Notifier
from modelcycle.storage.database.models import ValidationRecord
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)

ACTOR = "validation_gate"


def compare(
    *,
    family_id: str,
    candidate_version_id: str,
    candidate_metrics: dict[str, float],
    champion_version_id: str | None,
    champion_score: float | None,
    policy: FamilyPolicy,
    primary_metric: str,
) -> ValidationResult:
    """Pure champion/challenger comparison."""
    reasons: list[ValidationReason] = []
    notes: list[str] = []

    raw_score = candidate_metrics.get(primary_metric)
    candidate_score = float(raw_score) if raw_score is not None else None

    if candidate_score is None:
        reasons.append(ValidationReason.MISSING_METRIC)
        notes.append(f"candidate did not report '{primary_metric}'")
    elif not at_least(candidate_score, policy.min_quality_score):
        reasons.append(ValidationReason.BELOW_QUALITY_FLOOR)
        notes.append(f"{candidate_score:.4f} below floor {policy.min_quality_score:.4f}")

    delta = None
    if candidate_score is not None and champion_score is not None:
        delta = candidate_score - champion_score
        if not strictly_above(delta, -policy.regression_tolerance):
            reasons.append(ValidationReason.REGRESSION)
            notes.append(
                f"delta {delta:+.4f} not above -{policy.regression_tolerance:.4f} tolerance"
            )

    verdict = ValidationVerdict.FAIL if reasons else ValidationVerdict.PASS
    if verdict is ValidationVerdict.PASS:
        if champion_version_id is None:
            notes.append("no champion to compare against; quality floor met")
        elif delta is None:
            notes.append(f"champion {champion_version_id} has no recorded score")
        else:
            notes.append(f"delta {delta:+.4f} within tolerance")

    return ValidationResult(
        family_id=family_id,
        candidate_version_id=candidate_version_id,
        champion_version_id=champion_version_id,
        candidate_score=candidate_score,
        champion_score=champion_score,
        delta=delta,
        regression_tolerance=policy.regression_tolerance,
        min_quality_score=policy.min_quality_score,
        verdict=verdict,
        reasons=tuple(reasons),
        detail="; ".join(notes),
    )


def result_from_record(record: ValidationRecord) -> ValidationResult:
    """Rebuild the value object from its persisted form."""
    return ValidationResult(
        family_id=record.family_id,
        candidate_version_id=record.candidate_version_id,
        champion_version_id=record.champion_version_id,
        candidate_score=record.candidate_score,
        champion_score=record.champion_score,
        delta=record.delta,
        regression_tolerance=record.regression_tolerance,
        min_quality_score=record.min_quality_score,
        verdict=record.verdict,
        reasons=tuple(ValidationReason(r) for r in json.loads(record.reasons_json or "[]")),
    )


class ValidationGate:
    """Validates candidates and records the verdict."""

    def __init__(
        self,
        store: LifecycleStore,
        audit: AuditLog,
        notifier: Notifier,
        settings: LifecycleSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.audit = audit
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def validate(self, version_id: str) -> ValidationResult:
        """Validate a candidate version against the current champion.

        Pass: the version becomes ``validated``. Fail: it becomes ``rejected``,
        the family's trigger is released and a notification is sent. The
        champion is never touched here. Validating the same candidate twice
        returns the recorded result.

        Raises:
            RecordNotFoundError: If the version does not exist
            InvalidStateTransitionError: If the version is not a candidate
        """
        now = ensure_utc(self.clock())
        result, fresh = self.store.run(lambda uow: self._validate(uow, version_id, now))

        if not fresh:
            return result

        logger.info(
            "candidate_validated",
            family_id=result.family_id,
            version_id=version_id,
            verdict=result.verdict.value,
            reasons=[r.value for r in result.reasons],
            candidate_score=result.candidate_score,
            champion_score=result.champion_score,
            delta=result.delta,
        )

        if not result.passed:
            self.notifier.notify(
                NotificationType.CANDIDATE_REJECTED,
                result.family_id,
                version_id=version_id,
                reasons=[r.value for r in result.reasons],
                candidate_score=result.candidate_score,
                champion_score=result.champion_score,
                delta=result.delta,
            )

        return result

    def result_for(self, version_id: str) -> ValidationResult | None:
        """Recorded validation result of a candidate, if any."""

        def work(uow: UnitOfWork) -> ValidationResult | None:
            record = uow.validations.for_candidate(version_id)
            return result_from_record(record) if record else None

        return self.store.read(work)

    def _validate(
        self, uow: UnitOfWork, version_id: str, now: datetime
    ) -> tuple[ValidationResult, bool]:
        existing = uow.validations.for_candidate(version_id)
        if existing is not None:
            return result_from_record(existing), False

        version = uow.versions.require(version_id)
        if version.status is not VersionStatus.CANDIDATE:
            raise InvalidStateTransitionError(
                f"Version {version_id} is not a candidate",
                entity_id=version_id,
                current_state=version.status.value,
                attempted_state=VersionStatus.VALIDATED.value,
            )

        family = uow.families.require(version.family_id)
        policy = self.settings.policy_for(family.overrides())
        champion = uow.versions.champion(family)

        result = compare(
            family_id=family.id,
            candidate_version_id=version.id,
            candidate_metrics=version.metrics,
            champion_version_id=champion.id if champion else None,
            champion_score=champion.score if champion else None,
            policy=policy,
            primary_metric=self.settings.primary_metric,
        )

        uow.validations.add(
            ValidationRecord(
                family_id=result.family_id,
                candidate_version_id=result.candidate_version_id,
                champion_version_id=result.champion_version_id,
                candidate_score=result.candidate_score,
                champion_score=result.champion_score,
                delta=result.delta,
                regression_tolerance=result.regression_tolerance,
                min_quality_score=result.min_quality_score,
                verdict=result.verdict,
                reasons_json=json.dumps([r.value for r in result.reasons]),
                created_at=now,
            )
        )

        new_status = VersionStatus.VALIDATED if result.passed else VersionStatus.REJECTED
        version.status = new_status
        if result.passed:
            version.validated_at = now
        else:
            version.rejected_at = now

        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=result.family_id,
            subject_type="version",
            subject_id=version_id,
            action=actions.VALIDATION,
            outcome=result.verdict.value,
            detail=result.to_dict(),
            occurred_at=now,
        )
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=result.family_id,
            subject_type="version",
            subject_id=version_id,
            action=actions.VERSION_TRANSITION,
            outcome=new_status.value,
            detail={"from_status": VersionStatus.CANDIDATE.value, "to_status": new_status.value},
            occurred_at=now,
        )

        if not result.passed and version.job_id is not None:
            job = uow.jobs.get(version.job_id)
            if job is not None:
                release_trigger(
                    uow,
                    self.audit,
                    family_id=result.family_id,
                    trigger_id=job.trigger_id,
                    outcome="rejected",
                    actor=ACTOR,
                    now=now,
                )

        return result, True
