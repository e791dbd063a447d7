"""Retrain trigger coordination.

Merges manual requests, drift verdicts and schedule checks into at most one
retraining per family. Acceptance is a single store transaction:

1. compare-and-set claim of ``ModelFamily.active_trigger_id``
2. insert the ``RetrainTrigger``
3. open the ``TrainingJob`` in ``pending``
4. audit the acceptance

Concurrent submissions for one family therefore yield exactly one
acceptance; the others are rejected with ``already_active`` and audited.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from modelcycle.exceptions import AlreadyInProgressError, RecordNotFoundError
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.audit import AuditLog
from modelcycle.lifecycle.config import LifecycleSettings
from modelcycle.lifecycle.domain import SubmitResult
from modelcycle.lifecycle.drift import DriftEvaluator
from modelcycle.lifecycle.enums import RejectionReason, TriggerCause, TriggerStatus
from modelcycle.lifecycle.notifications import NotificationType, Notifier
from modelcycle.lifecycle.schedule import ScheduleEvaluator
from modelcycle.storage.database.models import RetrainTrigger
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

if TYPE_CHECKING:
    from modelcycle.lifecycle.jobs import TrainingJobManager

logger = get_logger(__name__)

ACTOR = "trigger_coordinator"


@dataclass(frozen=True)
class RetrainRequest:
    """A request to retrain one family."""

    family_id: str
    cause: TriggerCause
    scope: Sequence[str] | None = None
    requested_by: str | None = None
    reason: str = ""
    detail: dict[str, Any] = field(default_factory=dict)


def release_trigger(
    uow: UnitOfWork,
    audit: AuditLog,
    *,
    family_id: str,
    trigger_id: str,
    outcome: str,
    actor: str,
    now: datetime,
) -> bool:
    """Resolve a trigger and release the family claim within ``uow``.

    The claim is only cleared if it still points at ``trigger_id``.

    Returns:
        True if the claim was released by this call
    """
    released = uow.families.release(family_id, trigger_id)
    trigger = uow.triggers.get(trigger_id)
    if trigger is not None and trigger.status is TriggerStatus.ACTIVE:
        trigger.status = TriggerStatus.RESOLVED
        trigger.outcome = outcome
        trigger.resolved_at = now
        audit.record(
            uow,
            actor=actor,
            family_id=family_id,
            subject_type="trigger",
            subject_id=trigger_id,
            action=actions.TRIGGER_RESOLVED,
            outcome=outcome,
            detail={"claim_released": released},
            occurred_at=now,
        )
    return released


class TriggerCoordinator:
    """Single entry point for retrain requests of any cause."""

    def __init__(
        self,
        store: LifecycleStore,
        jobs: TrainingJobManager,
        drift: DriftEvaluator,
        schedule: ScheduleEvaluator,
        audit: AuditLog,
        notifier: Notifier,
        settings: LifecycleSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.jobs = jobs
        self.drift = drift
        self.schedule = schedule
        self.audit = audit
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def submit(self, request: RetrainRequest) -> SubmitResult:
        """Submit a retrain request subject to mutual exclusion.

        Returns:
            SubmitResult accepted with trigger and job ids, or rejected with
            ``already_active`` / ``unknown_family``
        """
        now = ensure_utc(self.clock())
        trigger_id = uuid4().hex

        try:
            result = self.store.run(lambda uow: self._submit(uow, request, trigger_id, now))
        except AlreadyInProgressError as e:
            # A non-terminal job exists without a claim: reject and record it
            active_id = e.context.get("active_id")
            result = self.store.run(
                lambda uow: self._reject_active(uow, request, active_id, now)
            )

        if result.accepted:
            logger.info(
                "retrain_trigger_accepted",
                family_id=request.family_id,
                cause=request.cause.value,
                trigger_id=result.trigger_id,
                job_id=result.job_id,
            )
            self.notifier.notify(
                NotificationType.RETRAIN_TRIGGERED,
                request.family_id,
                cause=request.cause.value,
                trigger_id=result.trigger_id,
                job_id=result.job_id,
                requested_by=request.requested_by,
            )
        else:
            logger.info(
                "retrain_trigger_rejected",
                family_id=request.family_id,
                cause=request.cause.value,
                reason=result.reason.value if result.reason else None,
            )

        return result

    def _submit(
        self, uow: UnitOfWork, request: RetrainRequest, trigger_id: str, now: datetime
    ) -> SubmitResult:
        family = uow.families.get(request.family_id)
        if family is None:
            return SubmitResult.reject(
                request.family_id,
                RejectionReason.UNKNOWN_FAMILY,
                f"Unknown model family '{request.family_id}'",
            )

        # Claim first: the UPDATE takes the write lock before anything is read
        if not uow.families.claim(request.family_id, trigger_id):
            active_id = uow.families.require(request.family_id).active_trigger_id
            return self._reject_active(uow, request, active_id, now)

        policy = self.settings.policy_for(family.overrides())
        uow.triggers.add(
            RetrainTrigger(
                id=trigger_id,
                family_id=request.family_id,
                cause=request.cause,
                scope_json=json.dumps(list(request.scope)) if request.scope else None,
                requested_by=request.requested_by,
                reason=request.reason or None,
                status=TriggerStatus.ACTIVE,
                created_at=now,
            )
        )
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=request.family_id,
            subject_type="trigger",
            subject_id=trigger_id,
            action=actions.TRIGGER_SUBMITTED,
            outcome="accepted",
            detail={
                "cause": request.cause.value,
                "requested_by": request.requested_by,
                "scope": list(request.scope) if request.scope else None,
                "reason": request.reason,
                **request.detail,
            },
            occurred_at=now,
        )
        job = self.jobs.open_job(
            uow,
            family_id=request.family_id,
            trigger_id=trigger_id,
            cause=request.cause,
            policy=policy,
            now=now,
        )
        return SubmitResult.accept(request.family_id, request.cause, trigger_id, job.id)

    def _reject_active(
        self,
        uow: UnitOfWork,
        request: RetrainRequest,
        active_id: str | None,
        now: datetime,
    ) -> SubmitResult:
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=request.family_id,
            subject_type="family",
            subject_id=request.family_id,
            action=actions.TRIGGER_SUBMITTED,
            outcome="rejected",
            detail={
                "cause": request.cause.value,
                "requested_by": request.requested_by,
                "reason": RejectionReason.ALREADY_ACTIVE.value,
                "active_id": active_id,
            },
            occurred_at=now,
        )
        return SubmitResult.reject(
            request.family_id,
            RejectionReason.ALREADY_ACTIVE,
            f"Retraining already in progress ({active_id})",
        )

    def request(
        self,
        family_id: str,
        cause: TriggerCause = TriggerCause.MANUAL,
        *,
        force: bool = False,
        scope: Sequence[str] | None = None,
        requested_by: str | None = None,
    ) -> SubmitResult:
        """Submit an explicit request without consulting the evaluators.

        Unless ``force`` is set, the family needs ``min_training_samples``
        observations in its drift window; otherwise the request is rejected
        with ``insufficient_data`` and audited.
        """
        if not force:
            now = ensure_utc(self.clock())
            try:
                available, required = self.drift.sample_count(family_id, now)
            except RecordNotFoundError:
                return SubmitResult.reject(
                    family_id, RejectionReason.UNKNOWN_FAMILY, f"Unknown model family '{family_id}'"
                )

            if available < required:
                self.store.run(
                    lambda uow: self.audit.record(
                        uow,
                        actor=ACTOR,
                        family_id=family_id,
                        subject_type="family",
                        subject_id=family_id,
                        action=actions.TRIGGER_SUBMITTED,
                        outcome="rejected",
                        detail={
                            "cause": cause.value,
                            "requested_by": requested_by,
                            "reason": RejectionReason.INSUFFICIENT_DATA.value,
                            "sample_count": available,
                            "min_training_samples": required,
                        },
                        occurred_at=now,
                    )
                )
                logger.info(
                    "retrain_trigger_rejected",
                    family_id=family_id,
                    cause=cause.value,
                    reason=RejectionReason.INSUFFICIENT_DATA.value,
                    sample_count=available,
                    required=required,
                )
                return SubmitResult.reject(
                    family_id,
                    RejectionReason.INSUFFICIENT_DATA,
                    f"{available} observations in window, {required} required",
                )

        return self.submit(
            RetrainRequest(
                family_id=family_id,
                cause=cause,
                scope=scope,
                requested_by=requested_by,
                reason="forced" if force else "requested",
            )
        )

    def evaluate_family(
        self,
        family_id: str,
        now: datetime | None = None,
        *,
        requested: TriggerCause | None = None,
        scope: Sequence[str] | None = None,
        requested_by: str | None = None,
        dry_run: bool | None = None,
    ) -> SubmitResult:
        """Run the drift and schedule evaluators and submit if either fires.

        Concurring causes are merged into a single trigger carrying the
        strongest cause; all of them are listed in the audit detail.

        Args:
            family_id: Family to evaluate
            now: Evaluation time (default: clock)
            requested: Cause of an explicit (non-forced) request, merged with
                the evaluated causes when they fire
            scope: Optional sub-model scope
            requested_by: Requester recorded on the trigger
            dry_run: Evaluate and audit without submitting (default: settings)

        Returns:
            SubmitResult (rejected with ``not_needed`` when nothing fires)
        """
        now = ensure_utc(now or self.clock())
        dry_run = self.settings.dry_run if dry_run is None else dry_run

        snapshot = self.store.read(lambda uow: _claim_snapshot(uow, family_id))
        if snapshot is None:
            return SubmitResult.reject(
                family_id, RejectionReason.UNKNOWN_FAMILY, f"Unknown model family '{family_id}'"
            )
        if snapshot:
            logger.debug("evaluation_skipped_active_trigger", family_id=family_id, trigger_id=snapshot)
            return SubmitResult.reject(
                family_id,
                RejectionReason.ALREADY_ACTIVE,
                f"Retraining already in progress ({snapshot})",
            )

        verdict = self.drift.evaluate(family_id, now=now)
        schedule = self.schedule.explain(family_id, now=now)

        fired: list[TriggerCause] = []
        if verdict.retrain:
            fired.append(TriggerCause.PERFORMANCE_DRIFT)
        if schedule["due"]:
            fired.append(TriggerCause.SCHEDULE)

        if not fired:
            outcome = "not_needed"
        elif dry_run:
            outcome = "dry_run"
        else:
            outcome = "fired"

        detail = {
            "causes": [c.value for c in fired],
            "requested": requested.value if requested else None,
            "drift": verdict.to_dict(),
            "schedule": schedule,
        }
        self.store.run(
            lambda uow: self.audit.record(
                uow,
                actor=ACTOR,
                family_id=family_id,
                subject_type="family",
                subject_id=family_id,
                action=actions.RETRAIN_EVALUATED,
                outcome=outcome,
                detail=detail,
                occurred_at=now,
            )
        )

        if outcome == "not_needed":
            logger.debug("retraining_not_needed", family_id=family_id, drift=verdict.reason.value)
            return SubmitResult.reject(
                family_id, RejectionReason.NOT_NEEDED, verdict.detail or "No trigger fired"
            )

        if outcome == "dry_run":
            logger.info(
                "retraining_skipped_dry_run",
                family_id=family_id,
                causes=detail["causes"],
            )
            return SubmitResult.reject(
                family_id, RejectionReason.DRY_RUN, "Dry run mode: trigger not submitted"
            )

        cause = TriggerCause.strongest(fired + ([requested] if requested else []))
        return self.submit(
            RetrainRequest(
                family_id=family_id,
                cause=cause,
                scope=scope,
                requested_by=requested_by,
                reason=verdict.detail if cause is TriggerCause.PERFORMANCE_DRIFT else "",
                detail={"causes": detail["causes"]},
            )
        )

    def resolve(self, family_id: str, trigger_id: str, outcome: str) -> bool:
        """Release the family claim held by ``trigger_id``.

        Returns:
            True if the claim was still held and has been released
        """
        now = ensure_utc(self.clock())
        released = self.store.run(
            lambda uow: release_trigger(
                uow,
                self.audit,
                family_id=family_id,
                trigger_id=trigger_id,
                outcome=outcome,
                actor=ACTOR,
                now=now,
            )
        )
        logger.info(
            "retrain_trigger_resolved",
            family_id=family_id,
            trigger_id=trigger_id,
            outcome=outcome,
            released=released,
        )
        return released


def _claim_snapshot(uow: UnitOfWork, family_id: str) -> str | None:
    """Active trigger id, "" when unclaimed, None for an unknown family."""
    family = uow.families.get(family_id)
    if family is None:
        return None
    return family.active_trigger_id or ""
