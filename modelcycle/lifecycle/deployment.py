"""Deployment decisions and the atomic champion swap.

A validated candidate is deployed automatically when it improves on the
champion by at least ``auto_deploy_threshold`` (inclusive) or when the
family has no champion yet. Otherwise it is held for manual approval; a held
candidate never expires.

Deploying is one store transaction: a compare-and-set of
``ModelFamily.champion_version_id`` from the expected champion to the
candidate, the candidate moving to ``deployed``, the previous champion to
``retired``, and the audit entries. If the pointer moved concurrently, the
current champion is re-read and the swap retried once; a second conflict
raises ``DeploymentConflictError``. An automatic deployment re-checks the
threshold against the champion read in each attempt, so a candidate that no
longer beats it is held instead.

The same swap backs manual approval and rollback.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from modelcycle.exceptions import DeploymentConflictError, InvalidStateTransitionError
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.audit import AuditLog
from modelcycle.lifecycle.config import FamilyPolicy, LifecycleSettings
from modelcycle.lifecycle.coordinator import release_trigger
from modelcycle.lifecycle.domain import DeploymentDecision, ValidationResult, at_least
from modelcycle.lifecycle.enums import DeploymentAction, VersionStatus
from modelcycle.lifecycle.notifications import NotificationType, Notifier
from modelcycle.storage.database.models import ModelVersion
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)

ACTOR = "deployment_decider"

# Read the expected champion inside the swap transaction
_CURRENT = object()


def decide(result: ValidationResult, policy: FamilyPolicy) -> DeploymentDecision:
    """Pure deploy-or-hold decision for a validated candidate."""
    threshold = policy.auto_deploy_threshold

    if result.champion_version_id is None:
        action = DeploymentAction.DEPLOY
        reason = "initial_deployment"
    elif result.delta is None:
        action = DeploymentAction.HOLD_FOR_APPROVAL
        reason = "champion_without_score"
    elif at_least(result.delta, threshold):
        action = DeploymentAction.DEPLOY
        reason = "improvement_meets_threshold"
    else:
        action = DeploymentAction.HOLD_FOR_APPROVAL
        reason = "improvement_below_threshold"

    deployed = action is DeploymentAction.DEPLOY
    return DeploymentDecision(
        family_id=result.family_id,
        version_id=result.candidate_version_id,
        action=action,
        delta=result.delta,
        threshold=threshold,
        previous_champion_id=result.champion_version_id,
        champion_score_before=result.champion_score,
        champion_score_after=result.candidate_score if deployed else result.champion_score,
        reason=reason,
    )


@dataclass(frozen=True)
class _SwapAttempt:
    swapped: bool
    current_champion_id: str | None
    decision: DeploymentDecision | None = None


class DeploymentDecider:
    """Deploys or holds validated candidates; performs manual promotions."""

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

    def decide(self, result: ValidationResult) -> DeploymentDecision:
        """Deploy-or-hold decision using the family's thresholds."""
        policy = self.store.read(
            lambda uow: self.settings.policy_for(uow.families.require(result.family_id).overrides())
        )
        return decide(result, policy)

    def apply(self, result: ValidationResult) -> DeploymentDecision:
        """Act on a passed validation: swap the champion or hold the candidate.

        Raises:
            InvalidStateTransitionError: If the validation did not pass
            DeploymentConflictError: If the champion changed concurrently twice
        """
        if not result.passed:
            raise InvalidStateTransitionError(
                f"Version {result.candidate_version_id} did not pass validation",
                entity_id=result.candidate_version_id,
                current_state=VersionStatus.REJECTED.value,
                attempted_state=VersionStatus.DEPLOYED.value,
            )

        decision = self.decide(result)

        if decision.deployed:
            promoted = self._promote(
                family_id=result.family_id,
                version_id=result.candidate_version_id,
                expected=result.champion_version_id,
                allowed=(VersionStatus.VALIDATED,),
                reason=decision.reason,
                audit_action=actions.DEPLOYMENT_DECISION,
                audit_detail={},
                release_outcome="deployed",
                enforce_threshold=True,
            )
            if not promoted.deployed:
                # A stronger champion was swapped in concurrently
                self._announce_hold(promoted)
                return promoted

            self.notifier.notify(
                NotificationType.MODEL_DEPLOYED,
                result.family_id,
                version_id=promoted.version_id,
                previous_champion_id=promoted.previous_champion_id,
                delta=promoted.delta,
                champion_score=promoted.champion_score_after,
            )
            return promoted

        now = ensure_utc(self.clock())
        self.store.run(lambda uow: self._hold(uow, decision, now))
        self._announce_hold(decision)
        return decision

    def _announce_hold(self, decision: DeploymentDecision) -> None:
        logger.info(
            "candidate_held_for_approval",
            family_id=decision.family_id,
            version_id=decision.version_id,
            delta=decision.delta,
            threshold=decision.threshold,
            reason=decision.reason,
        )
        self.notifier.notify(
            NotificationType.APPROVAL_REQUIRED,
            decision.family_id,
            version_id=decision.version_id,
            champion_version_id=decision.previous_champion_id,
            delta=decision.delta,
            threshold=decision.threshold,
        )

    def approve(self, version_id: str, approver: str) -> DeploymentDecision:
        """Deploy a held (validated) candidate on manual approval.

        Raises:
            RecordNotFoundError: If the version does not exist
            InvalidStateTransitionError: If the version is not validated
            DeploymentConflictError: If the champion changed concurrently twice
        """
        family_id = self._family_of(version_id)
        decision = self._promote(
            family_id=family_id,
            version_id=version_id,
            expected=_CURRENT,
            allowed=(VersionStatus.VALIDATED,),
            reason=f"approved_by:{approver}",
            audit_action=actions.CANDIDATE_APPROVED,
            audit_detail={"approver": approver},
            release_outcome=None,
        )
        self.notifier.notify(
            NotificationType.MODEL_DEPLOYED,
            family_id,
            version_id=version_id,
            previous_champion_id=decision.previous_champion_id,
            delta=decision.delta,
            champion_score=decision.champion_score_after,
            approver=approver,
        )
        return decision

    def reject(self, version_id: str, reason: str, rejected_by: str | None = None) -> None:
        """Reject a held (validated) candidate. The champion is unchanged.

        Raises:
            RecordNotFoundError: If the version does not exist
            InvalidStateTransitionError: If the version is not validated
        """
        now = ensure_utc(self.clock())

        def work(uow: UnitOfWork) -> str:
            version = uow.versions.require(version_id)
            self._check_status(version, (VersionStatus.VALIDATED,), VersionStatus.REJECTED)
            version.status = VersionStatus.REJECTED
            version.rejected_at = now
            self._record_version_transition(
                uow, version, VersionStatus.VALIDATED, VersionStatus.REJECTED, now
            )
            self.audit.record(
                uow,
                actor=ACTOR,
                family_id=version.family_id,
                subject_type="version",
                subject_id=version_id,
                action=actions.CANDIDATE_REJECTED,
                outcome=VersionStatus.REJECTED.value,
                detail={"reason": reason, "rejected_by": rejected_by},
                occurred_at=now,
            )
            return version.family_id

        family_id = self.store.run(work)
        logger.info(
            "candidate_rejected_manually",
            family_id=family_id,
            version_id=version_id,
            reason=reason,
            rejected_by=rejected_by,
        )
        self.notifier.notify(
            NotificationType.CANDIDATE_REJECTED,
            family_id,
            version_id=version_id,
            reasons=[reason],
            rejected_by=rejected_by,
        )

    def rollback(
        self, family_id: str, version_id: str, requested_by: str | None = None
    ) -> DeploymentDecision:
        """Re-deploy a retired version of the family.

        Raises:
            RecordNotFoundError: If the version does not exist
            InvalidStateTransitionError: If the version is not a retired
                version of ``family_id``
            DeploymentConflictError: If the champion changed concurrently twice
        """
        decision = self._promote(
            family_id=family_id,
            version_id=version_id,
            expected=_CURRENT,
            allowed=(VersionStatus.RETIRED,),
            reason="rollback",
            audit_action=actions.ROLLBACK,
            audit_detail={"requested_by": requested_by},
            release_outcome=None,
        )
        self.notifier.notify(
            NotificationType.MODEL_ROLLED_BACK,
            family_id,
            version_id=version_id,
            previous_champion_id=decision.previous_champion_id,
            champion_score=decision.champion_score_after,
            requested_by=requested_by,
        )
        return decision

    # ------------------------------------------------------------------
    # Swap
    # ------------------------------------------------------------------

    def _promote(
        self,
        *,
        family_id: str,
        version_id: str,
        expected: Any,
        allowed: Collection[VersionStatus],
        reason: str,
        audit_action: str,
        audit_detail: dict[str, Any],
        release_outcome: str | None,
        enforce_threshold: bool = False,
    ) -> DeploymentDecision:
        for attempt in range(2):
            now = ensure_utc(self.clock())
            outcome = self.store.run(
                lambda uow, expected=expected, now=now: self._swap(
                    uow,
                    family_id=family_id,
                    version_id=version_id,
                    expected=expected,
                    allowed=allowed,
                    reason=reason,
                    audit_action=audit_action,
                    audit_detail=audit_detail,
                    release_outcome=release_outcome,
                    enforce_threshold=enforce_threshold,
                    now=now,
                )
            )
            if outcome.decision is not None and not outcome.decision.deployed:
                logger.info(
                    "champion_swap_abandoned",
                    family_id=family_id,
                    version_id=version_id,
                    current=outcome.current_champion_id,
                    delta=outcome.decision.delta,
                    threshold=outcome.decision.threshold,
                    attempt=attempt + 1,
                )
                return outcome.decision

            if outcome.swapped and outcome.decision is not None:
                logger.info(
                    "champion_swapped",
                    family_id=family_id,
                    version_id=version_id,
                    previous_champion_id=outcome.decision.previous_champion_id,
                    delta=outcome.decision.delta,
                    reason=reason,
                    attempt=attempt + 1,
                )
                return outcome.decision

            logger.warning(
                "champion_swap_conflict",
                family_id=family_id,
                version_id=version_id,
                expected=expected if isinstance(expected, str) else None,
                current=outcome.current_champion_id,
                attempt=attempt + 1,
            )
            expected = outcome.current_champion_id

        raise DeploymentConflictError(
            f"Champion of '{family_id}' changed concurrently while deploying {version_id}",
            family_id=family_id,
            version_id=version_id,
        )

    def _swap(
        self,
        uow: UnitOfWork,
        *,
        family_id: str,
        version_id: str,
        expected: Any,
        allowed: Collection[VersionStatus],
        reason: str,
        audit_action: str,
        audit_detail: dict[str, Any],
        release_outcome: str | None,
        enforce_threshold: bool,
        now: datetime,
    ) -> _SwapAttempt:
        version = uow.versions.require(version_id)
        if version.family_id != family_id:
            raise InvalidStateTransitionError(
                f"Version {version_id} does not belong to '{family_id}'",
                entity_id=version_id,
                current_state=version.status.value,
                attempted_state=VersionStatus.DEPLOYED.value,
            )
        self._check_status(version, allowed, VersionStatus.DEPLOYED)
        from_status = version.status

        family = uow.families.require(family_id)
        policy = self.settings.policy_for(family.overrides())
        expected_id: str | None = (
            family.champion_version_id if expected is _CURRENT else expected
        )

        previous = uow.versions.get(expected_id) if expected_id else None
        decision = _decision(version, previous, policy, reason, enforce_threshold)
        if not decision.deployed:
            self._hold(uow, decision, now)
            return _SwapAttempt(swapped=False, current_champion_id=expected_id, decision=decision)

        if not uow.families.swap_champion(family_id, expected_id, version_id, now):
            current = uow.families.require(family_id).champion_version_id
            self.audit.record(
                uow,
                actor=ACTOR,
                family_id=family_id,
                subject_type="version",
                subject_id=version_id,
                action=actions.DEPLOYMENT_CONFLICT,
                outcome="retry",
                detail={"expected_champion_id": expected_id, "current_champion_id": current},
                occurred_at=now,
            )
            return _SwapAttempt(swapped=False, current_champion_id=current)

        # swap_champion expired the identity map
        version = uow.versions.require(version_id)
        version.status = VersionStatus.DEPLOYED
        version.deployed_at = now
        version.retired_at = None
        self._record_version_transition(uow, version, from_status, VersionStatus.DEPLOYED, now)

        if expected_id is not None:
            old = uow.versions.get(expected_id)
            if old is not None and old.status is VersionStatus.DEPLOYED:
                old.status = VersionStatus.RETIRED
                old.retired_at = now
                self._record_version_transition(
                    uow, old, VersionStatus.DEPLOYED, VersionStatus.RETIRED, now
                )

        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=family_id,
            subject_type="version",
            subject_id=version_id,
            action=audit_action,
            outcome=DeploymentAction.DEPLOY.value,
            detail={**decision.to_dict(), **audit_detail},
            occurred_at=now,
        )

        if release_outcome is not None:
            trigger_id = _trigger_of(uow, version)
            if trigger_id is not None:
                release_trigger(
                    uow,
                    self.audit,
                    family_id=family_id,
                    trigger_id=trigger_id,
                    outcome=release_outcome,
                    actor=ACTOR,
                    now=now,
                )

        return _SwapAttempt(swapped=True, current_champion_id=version_id, decision=decision)

    def _hold(self, uow: UnitOfWork, decision: DeploymentDecision, now: datetime) -> None:
        version = uow.versions.require(decision.version_id)
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=decision.family_id,
            subject_type="version",
            subject_id=decision.version_id,
            action=actions.DEPLOYMENT_DECISION,
            outcome=DeploymentAction.HOLD_FOR_APPROVAL.value,
            detail=decision.to_dict(),
            occurred_at=now,
        )
        trigger_id = _trigger_of(uow, version)
        if trigger_id is not None:
            release_trigger(
                uow,
                self.audit,
                family_id=decision.family_id,
                trigger_id=trigger_id,
                outcome="held_for_approval",
                actor=ACTOR,
                now=now,
            )

    def _family_of(self, version_id: str) -> str:
        return self.store.read(lambda uow: uow.versions.require(version_id).family_id)

    @staticmethod
    def _check_status(
        version: ModelVersion, allowed: Collection[VersionStatus], target: VersionStatus
    ) -> None:
        if version.status not in allowed:
            raise InvalidStateTransitionError(
                f"Version {version.id} is {version.status.value}",
                entity_id=version.id,
                current_state=version.status.value,
                attempted_state=target.value,
            )

    def _record_version_transition(
        self,
        uow: UnitOfWork,
        version: ModelVersion,
        from_status: VersionStatus,
        to_status: VersionStatus,
        now: datetime,
    ) -> None:
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=version.family_id,
            subject_type="version",
            subject_id=version.id,
            action=actions.VERSION_TRANSITION,
            outcome=to_status.value,
            detail={"from_status": from_status.value, "to_status": to_status.value},
            occurred_at=now,
        )


def _decision(
    version: ModelVersion,
    previous: ModelVersion | None,
    policy: FamilyPolicy,
    reason: str,
    enforce_threshold: bool = False,
) -> DeploymentDecision:
    """Swap decision against the champion read inside the swap transaction.

    With ``enforce_threshold`` the candidate must still beat that champion by
    ``auto_deploy_threshold``; otherwise the decision is a hold.
    """
    before = previous.score if previous is not None else None
    delta = (
        version.score - before
        if version.score is not None and before is not None
        else None
    )
    threshold = policy.auto_deploy_threshold

    action = DeploymentAction.DEPLOY
    if enforce_threshold and previous is not None:
        if delta is None:
            action, reason = DeploymentAction.HOLD_FOR_APPROVAL, "champion_without_score"
        elif not at_least(delta, threshold):
            action, reason = DeploymentAction.HOLD_FOR_APPROVAL, "improvement_below_threshold"

    deployed = action is DeploymentAction.DEPLOY
    return DeploymentDecision(
        family_id=version.family_id,
        version_id=version.id,
        action=action,
        delta=delta,
        threshold=threshold,
        previous_champion_id=previous.id if previous is not None else None,
        champion_score_before=before,
        champion_score_after=version.score if deployed else before,
        reason=reason,
    )


def _trigger_of(uow: UnitOfWork, version: ModelVersion) -> str | None:
    if version.job_id is None:
        return None
    job = uow.jobs.get(version.job_id)
    return job.trigger_id if job is not None else None
