"""Model Lifecycle Orchestrator.

The exposed boundary of the lifecycle system. It wires the components and
drives the pipeline of each family:

    trigger → train → validate → deploy | hold

Evaluation cycles and poll ticks fan out over families with ``asyncio.gather``
bounded by ``max_concurrent_families``. Within a family the active-trigger
claim serializes the whole pipeline; it is released once the job is terminal
and the candidate is deployed, held or rejected.

Only store unavailability and configuration errors propagate from the
automatic paths; every decision outcome is returned as a value and recorded
in the audit log.

Example:
    >>> orchestrator = LifecycleOrchestrator.from_settings(training=my_training_backend)
    >>> orchestrator.register_family(
    ...     "content_performance",
    ...     FamilyConfig(drift_threshold=0.03),
    ...     champion=BootstrapChampion(artifact_ref="s3://models/cp/v1", score=0.80),
    ... )
    >>> results = await orchestrator.trigger_retraining(["content_performance"], force=True)
    >>> await orchestrator.poll_jobs()
    >>> orchestrator.get_status("content_performance").to_dict()
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, TypeVar
from uuid import uuid4

import numpy as np

from modelcycle.exceptions import (
    ConfigurationError,
    DeploymentConflictError,
    StoreUnavailableError,
)
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.audit import AuditLog, AuditPage, ChainVerification
from modelcycle.lifecycle.config import FamilyConfig, LifecycleSettings, get_lifecycle_settings
from modelcycle.lifecycle.coordinator import TriggerCoordinator
from modelcycle.lifecycle.deployment import DeploymentDecider
from modelcycle.lifecycle.domain import (
    DeploymentDecision,
    DriftVerdict,
    SubmitResult,
    TrainingStatus,
)
from modelcycle.lifecycle.drift import DriftEvaluator
from modelcycle.lifecycle.enums import (
    DeploymentAction,
    RejectionReason,
    TriggerCause,
    VersionStatus,
)
from modelcycle.lifecycle.interfaces import MetricsSource, TrainingOperation
from modelcycle.lifecycle.jobs import JobSnapshot, TrainingJobManager
from modelcycle.lifecycle.metrics import MetricsGateway
from modelcycle.lifecycle.notifications import LoggingSink, Notifier
from modelcycle.lifecycle.schedule import ScheduleEvaluator
from modelcycle.lifecycle.validation import ValidationGate
from modelcycle.storage.database.models import ModelFamily, ModelVersion
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import (
    configure_logging,
    cycle_context,
    family_context,
    get_logger,
    log_duration,
)

logger = get_logger(__name__)

ACTOR = "orchestrator"

T = TypeVar("T")


@dataclass(frozen=True)
class BootstrapChampion:
    """An already-deployed model adopted as champion at registration."""

    artifact_ref: str
    score: float
    metrics: dict[str, float] = field(default_factory=dict)
    deployed_at: datetime | None = None


@dataclass(frozen=True)
class FamilyStatus:
    """Point-in-time view of one family."""

    family_id: str
    active_trigger_id: str | None
    active_job: dict[str, Any] | None
    champion_version: dict[str, Any] | None
    last_decision: dict[str, Any] | None
    pending_approvals: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "active_trigger_id": self.active_trigger_id,
            "active_job": self.active_job,
            "champion_version": self.champion_version,
            "last_decision": self.last_decision,
            "pending_approvals": self.pending_approvals,
        }


def _version_dict(version: ModelVersion) -> dict[str, Any]:
    return {
        "version_id": version.id,
        "family_id": version.family_id,
        "job_id": version.job_id,
        "artifact_ref": version.artifact_ref,
        "status": version.status.value,
        "score": version.score,
        "metrics": version.metrics,
        "created_at": version.created_at.isoformat(),
        "deployed_at": version.deployed_at.isoformat() if version.deployed_at else None,
    }


def _override_columns(config: FamilyConfig | None) -> dict[str, Any]:
    """FamilyConfig overrides mapped onto ModelFamily columns."""
    overrides = config.model_dump_overrides() if config else {}
    columns: dict[str, Any] = {
        "drift_threshold": None,
        "drift_window_seconds": None,
        "min_training_samples": None,
        "schedule_interval_seconds": None,
        "min_quality_score": None,
        "regression_tolerance": None,
        "auto_deploy_threshold": None,
        "max_retries": None,
    }
    for name, value in overrides.items():
        if isinstance(value, timedelta):
            columns[f"{name}_seconds"] = int(value.total_seconds())
        else:
            columns[name] = value
    return columns


class LifecycleOrchestrator:
    """Public API of the model lifecycle system."""

    def __init__(
        self,
        store: LifecycleStore,
        training: TrainingOperation,
        *,
        settings: LifecycleSettings | None = None,
        notifier: Notifier | None = None,
        metrics_source: MetricsSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Wire the lifecycle components.

        Args:
            store: Durable store
            training: External training operation adapter
            settings: Lifecycle settings (default: global settings)
            notifier: Notification fan-out (default: structured-log sink only)
            metrics_source: Optional source pulled before each evaluation
            clock: Time source (injectable for tests)
        """
        self.store = store
        self.settings = settings or get_lifecycle_settings()
        self.notifier = notifier or Notifier([LoggingSink()])
        self.clock = clock

        self.audit = AuditLog(store, clock)
        self.metrics = MetricsGateway(store, metrics_source, clock)
        self.drift = DriftEvaluator(store, self.metrics, self.settings, clock)
        self.schedule = ScheduleEvaluator(store, self.settings, clock)
        self.jobs = TrainingJobManager(
            store, training, self.audit, self.notifier, self.settings, clock
        )
        self.coordinator = TriggerCoordinator(
            store,
            self.jobs,
            self.drift,
            self.schedule,
            self.audit,
            self.notifier,
            self.settings,
            clock,
        )
        self.validation = ValidationGate(store, self.audit, self.notifier, self.settings, clock)
        self.deployment = DeploymentDecider(store, self.audit, self.notifier, self.settings, clock)

        logger.info(
            "lifecycle_orchestrator_initialized",
            max_concurrent_families=self.settings.max_concurrent_families,
            dry_run=self.settings.dry_run,
        )

    @classmethod
    def from_settings(
        cls,
        training: TrainingOperation,
        settings: LifecycleSettings | None = None,
        **kwargs: Any,
    ) -> LifecycleOrchestrator:
        """Configure logging and build an orchestrator on ``settings.database_url``."""
        settings = settings or get_lifecycle_settings()
        configure_logging(settings.log_level, json_logs=settings.log_json)
        logger.info("lifecycle_store_opening", database_url=settings.database_url)
        store = LifecycleStore.from_url(settings.database_url)
        return cls(store, training, settings=settings, **kwargs)

    # ------------------------------------------------------------------
    # Families
    # ------------------------------------------------------------------

    def register_family(
        self,
        family_id: str,
        config: FamilyConfig | None = None,
        champion: BootstrapChampion | None = None,
    ) -> None:
        """Create or update a family from configuration.

        Re-registering replaces the threshold overrides. A bootstrap champion
        is only adopted while the family has none.
        """
        now = ensure_utc(self.clock())
        columns = _override_columns(config)

        def work(uow: UnitOfWork) -> str | None:
            family = uow.families.get(family_id)
            created = family is None
            if family is None:
                family = uow.families.add(
                    ModelFamily(
                        id=family_id,
                        description=config.description if config else None,
                        created_at=now,
                        updated_at=now,
                        **columns,
                    )
                )
            else:
                for name, value in columns.items():
                    setattr(family, name, value)
                if config is not None and config.description is not None:
                    family.description = config.description

            self.audit.record(
                uow,
                actor=ACTOR,
                family_id=family_id,
                subject_type="family",
                subject_id=family_id,
                action=actions.FAMILY_REGISTERED,
                outcome="created" if created else "updated",
                detail={"overrides": config.model_dump_overrides() if config else {}},
                occurred_at=now,
            )

            if champion is None or family.champion_version_id is not None:
                return None
            return self._adopt_champion(uow, family_id, champion, now)

        champion_id = self.store.run(work)
        logger.info(
            "family_registered",
            family_id=family_id,
            champion_version_id=champion_id,
        )

    def register_families(
        self,
        configs: dict[str, FamilyConfig],
        champions: dict[str, BootstrapChampion] | None = None,
    ) -> None:
        """Register every family of a ``load_family_configs`` mapping."""
        champions = champions or {}
        for family_id, config in configs.items():
            self.register_family(family_id, config, champions.get(family_id))

    def _adopt_champion(
        self, uow: UnitOfWork, family_id: str, champion: BootstrapChampion, now: datetime
    ) -> str:
        deployed_at = ensure_utc(champion.deployed_at or now)
        metrics = {self.settings.primary_metric: champion.score, **champion.metrics}
        version = uow.versions.add(
            ModelVersion(
                id=uuid4().hex,
                family_id=family_id,
                job_id=None,
                artifact_ref=champion.artifact_ref,
                status=VersionStatus.DEPLOYED,
                score=float(champion.score),
                metrics_json=json.dumps(metrics, sort_keys=True),
                created_at=now,
                validated_at=now,
                deployed_at=deployed_at,
            )
        )
        version_id = version.id
        uow.families.swap_champion(family_id, None, version_id, deployed_at)
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=family_id,
            subject_type="version",
            subject_id=version_id,
            action=actions.VERSION_TRANSITION,
            outcome=VersionStatus.DEPLOYED.value,
            detail={
                "from_status": None,
                "to_status": VersionStatus.DEPLOYED.value,
                "bootstrap": True,
                "artifact_ref": champion.artifact_ref,
                "champion_score_after": float(champion.score),
            },
            occurred_at=now,
        )
        return version_id

    # ------------------------------------------------------------------
    # Exposed operations
    # ------------------------------------------------------------------

    async def trigger_retraining(
        self,
        family_ids: Iterable[str],
        cause: TriggerCause = TriggerCause.MANUAL,
        force: bool = False,
        scope: Sequence[str] | None = None,
        requested_by: str | None = None,
    ) -> dict[str, SubmitResult]:
        """Request retraining of several families.

        Manual requests bypass the drift and schedule evaluators and are only
        subject to mutual exclusion. An explicit drift or schedule cause is
        still confirmed by the evaluators unless ``force`` is set.

        Args:
            family_ids: Families to retrain
            cause: Cause recorded on the trigger
            force: Skip the minimum data check (and the evaluators)
            scope: Optional sub-model types to retrain
            requested_by: Requester recorded on the trigger and audit log

        Returns:
            Mapping family id → SubmitResult. Without ``force`` a family with
            fewer than ``min_training_samples`` observations in its window is
            rejected with ``insufficient_data``.
        """

        def submit(family_id: str) -> SubmitResult:
            if force or cause is TriggerCause.MANUAL:
                return self.coordinator.request(
                    family_id, cause, force=force, scope=scope, requested_by=requested_by
                )
            return self.coordinator.evaluate_family(
                family_id, requested=cause, scope=scope, requested_by=requested_by
            )

        async def one(family_id: str) -> SubmitResult:
            result = await self.store.offload(submit, family_id)
            if result.accepted and result.job_id is not None:
                job = await self.jobs.dispatch(result.job_id)
                await self.store.offload(self._after_job, job)
            return result

        with cycle_context("retrain_request"):
            results = await self._fan_out(family_ids, one)
        logger.info(
            "retraining_requested",
            families=len(results),
            accepted=sorted(f for f, r in results.items() if r.accepted),
            force=force,
            cause=cause.value,
            requested_by=requested_by,
        )
        return results

    def check_performance(
        self,
        family_ids: Iterable[str],
        threshold: float | None = None,
        window: timedelta | None = None,
    ) -> dict[str, DriftVerdict]:
        """Drift verdicts without side effects.

        Raises:
            RecordNotFoundError: If a family is not registered
        """
        return {
            family_id: self.drift.evaluate(family_id, window=window, threshold=threshold)
            for family_id in dict.fromkeys(family_ids)
        }

    def get_status(self, family_id: str) -> FamilyStatus:
        """Active job, champion, last decision and pending approvals.

        Raises:
            RecordNotFoundError: If the family is not registered
        """

        def work(uow: UnitOfWork) -> FamilyStatus:
            family = uow.families.require(family_id)
            active = uow.jobs.active_for_family(family_id)
            champion = uow.versions.champion(family)
            last = self.audit.last_decision(uow, family_id)
            pending = uow.versions.list_for_family(family_id, [VersionStatus.VALIDATED])
            return FamilyStatus(
                family_id=family_id,
                active_trigger_id=family.active_trigger_id,
                active_job=JobSnapshot.of(uow, active).to_dict() if active else None,
                champion_version=_version_dict(champion) if champion else None,
                last_decision=last.to_dict() if last else None,
                pending_approvals=[_version_dict(v) for v in pending],
            )

        return self.store.read(work)

    def list_history(
        self, family_id: str, limit: int = 50, cursor: int | None = None
    ) -> AuditPage:
        """Audit history of a family, most recent first."""
        return self.audit.history(family_id, limit=limit, cursor=cursor)

    # ------------------------------------------------------------------
    # Periodic drivers
    # ------------------------------------------------------------------

    async def run_evaluation_cycle(
        self, family_ids: Iterable[str] | None = None
    ) -> dict[str, SubmitResult]:
        """Evaluate drift and schedule for every family and submit what fires.

        A family whose evaluation fails (e.g. its metrics source is down) is
        reported as ``evaluation_failed`` without affecting the others; only
        store unavailability and configuration errors abort the cycle.
        """
        ids = list(family_ids) if family_ids is not None else self._all_families()

        async def one(family_id: str) -> SubmitResult:
            result = await self.store.offload(self._evaluate_family, family_id)
            if result.accepted and result.job_id is not None:
                job = await self.jobs.dispatch(result.job_id)
                await self.store.offload(self._after_job, job)
            return result

        with cycle_context("evaluation_cycle"), log_duration("evaluation_cycle", logger):
            results = await self._fan_out(ids, one)

        logger.info(
            "evaluation_cycle_summary",
            families=len(results),
            submitted=sorted(f for f, r in results.items() if r.accepted),
            rejected={f: r.reason.value for f, r in results.items() if r.reason},
        )
        return results

    async def poll_jobs(
        self, family_ids: Iterable[str] | None = None
    ) -> dict[str, JobSnapshot | None]:
        """Advance the active job of each claimed family by one step."""
        if family_ids is None:
            ids = self.store.read(lambda uow: uow.families.list_claimed())
        else:
            ids = list(family_ids)

        with cycle_context("poll_tick"), log_duration("poll_tick", logger, families=len(ids)):
            return await self._fan_out(ids, self._advance_family)

    def _evaluate_family(self, family_id: str) -> SubmitResult:
        try:
            if self.metrics.source is not None:
                self.metrics.sync(family_id)
            return self.coordinator.evaluate_family(family_id)
        except (StoreUnavailableError, ConfigurationError):
            raise
        except Exception as e:
            logger.error(
                "family_evaluation_failed",
                family_id=family_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return SubmitResult.reject(family_id, RejectionReason.EVALUATION_FAILED, str(e))

    async def _advance_family(self, family_id: str) -> JobSnapshot | None:
        job_id = await self.store.offload(
            self.store.read, lambda uow: _claimed_job_id(uow, family_id)
        )
        if job_id is None:
            return None
        with family_context(family_id, job_id=job_id):
            job = await self.jobs.tick(job_id)
            await self.store.offload(self._after_job, job)
        return job

    # ------------------------------------------------------------------
    # Pipeline continuation
    # ------------------------------------------------------------------

    def on_training_update(self, job_id: str, status: TrainingStatus) -> JobSnapshot:
        """Completion callback for push-style training backends."""
        job = self.jobs.on_training_update(job_id, status)
        self._after_job(job)
        return job

    def _after_job(self, job: JobSnapshot) -> None:
        if not job.terminal:
            return

        if job.succeeded and job.candidate_version_id is not None:
            self._complete_candidate(job, job.candidate_version_id)
            return

        # Failed jobs release their trigger when they fail; this covers a
        # crash between the failure and the release
        self.coordinator.resolve(job.family_id, job.trigger_id, "training_failed")

    def _complete_candidate(self, job: JobSnapshot, version_id: str) -> None:
        status = self.store.read(lambda uow: uow.versions.require(version_id).status)
        if status is VersionStatus.CANDIDATE:
            result = self.validation.validate(version_id)
        elif status is VersionStatus.VALIDATED:
            # Validated before an interruption; the deployment decision is still owed
            result = self.validation.result_for(version_id)
        else:
            self.coordinator.resolve(job.family_id, job.trigger_id, status.value)
            return

        if result is None or not result.passed:
            return

        try:
            self.deployment.apply(result)
        except DeploymentConflictError as e:
            logger.error(
                "deployment_conflict",
                family_id=job.family_id,
                version_id=version_id,
                error=str(e),
            )
            self.coordinator.resolve(job.family_id, job.trigger_id, "deployment_conflict")

    # ------------------------------------------------------------------
    # Manual operations
    # ------------------------------------------------------------------

    async def cancel_job(self, job_id: str, requested_by: str | None = None) -> JobSnapshot:
        """Cancel a non-terminal job and release the family claim."""
        return await self.jobs.cancel(job_id, requested_by=requested_by)

    def approve_candidate(self, version_id: str, approver: str) -> DeploymentDecision:
        """Deploy a candidate held for approval."""
        return self.deployment.approve(version_id, approver)

    def reject_candidate(
        self, version_id: str, reason: str, rejected_by: str | None = None
    ) -> None:
        """Reject a candidate held for approval."""
        self.deployment.reject(version_id, reason, rejected_by=rejected_by)

    def rollback(
        self, family_id: str, version_id: str, requested_by: str | None = None
    ) -> DeploymentDecision:
        """Re-deploy a retired version."""
        return self.deployment.rollback(family_id, version_id, requested_by=requested_by)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def summary(self, family_id: str) -> dict[str, Any]:
        """Lifecycle statistics of a family, computed from jobs and the audit log."""

        def work(uow: UnitOfWork) -> dict[str, Any]:
            uow.families.require(family_id)
            counts = uow.audit.count_actions(family_id)
            deploy = DeploymentAction.DEPLOY.value

            improvements = [
                e.detail["delta"]
                for action in (actions.DEPLOYMENT_DECISION, actions.CANDIDATE_APPROVED)
                for e in uow.audit.by_action(family_id, action, deploy)
                if e.detail.get("delta") is not None
            ]

            return {
                "family_id": family_id,
                "jobs_by_state": uow.jobs.count_by_state(family_id),
                "retrains_accepted": counts.get((actions.TRIGGER_SUBMITTED, "accepted"), 0),
                "retrains_rejected": counts.get((actions.TRIGGER_SUBMITTED, "rejected"), 0),
                "deployments": counts.get((actions.DEPLOYMENT_DECISION, deploy), 0)
                + counts.get((actions.CANDIDATE_APPROVED, deploy), 0),
                "holds": counts.get(
                    (actions.DEPLOYMENT_DECISION, DeploymentAction.HOLD_FOR_APPROVAL.value), 0
                ),
                "rejections": counts.get((actions.VALIDATION, "fail"), 0)
                + counts.get((actions.CANDIDATE_REJECTED, VersionStatus.REJECTED.value), 0),
                "rollbacks": counts.get((actions.ROLLBACK, deploy), 0),
                "mean_accepted_improvement": (
                    float(np.mean(improvements)) if improvements else None
                ),
            }

        return self.store.read(work)

    def verify_audit(self, family_id: str) -> ChainVerification:
        """Recompute the family's audit hash chain."""
        return self.audit.verify_chain(family_id)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _all_families(self) -> list[str]:
        return self.store.read(lambda uow: uow.families.list_ids())

    async def _fan_out(
        self, family_ids: Iterable[str], work: Callable[[str], Awaitable[T]]
    ) -> dict[str, T]:
        semaphore = asyncio.Semaphore(self.settings.max_concurrent_families)

        async def guarded(family_id: str) -> tuple[str, T]:
            async with semaphore:
                with family_context(family_id):
                    return family_id, await work(family_id)

        pairs = await asyncio.gather(*(guarded(f) for f in dict.fromkeys(family_ids)))
        return dict(pairs)


def _claimed_job_id(uow: UnitOfWork, family_id: str) -> str | None:
    family = uow.families.get(family_id)
    if family is None or family.active_trigger_id is None:
        return None
    job = uow.jobs.for_trigger(family.active_trigger_id)
    return job.id if job is not None else None
