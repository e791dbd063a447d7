"""Training job state machine.

States::

    pending ──dispatch──▶ running ──▶ succeeded (terminal, candidate created)
       ▲                     │
       │ retry due           ▼
       └──────────────── failed (retryable, next_attempt_at set)
                             │ retries exhausted / fatal / cancelled
                             ▼
                          failed (terminal, trigger released)

The manager never blocks a worker on training. Each ``tick`` performs at most
one step (dispatch, one ``poll_status`` call, or a due retry) and returns.
Push-style backends report completion through ``on_training_update``.

Every transition is a compare-and-set on the job's current state and writes
exactly one ``job_transition`` audit entry in the same transaction, so the
job's final state can be replayed from the audit log alone.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from modelcycle.exceptions import (
    AlreadyInProgressError,
    InvalidStateTransitionError,
    TrainingFatalFailure,
)
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.audit import AuditLog
from modelcycle.lifecycle.config import FamilyPolicy, LifecycleSettings
from modelcycle.lifecycle.coordinator import release_trigger
from modelcycle.lifecycle.domain import DataWindow, TrainingStatus
from modelcycle.lifecycle.enums import (
    ALLOWED_JOB_TRANSITIONS,
    JobState,
    TriggerCause,
    VersionStatus,
)
from modelcycle.lifecycle.interfaces import TrainingOperation
from modelcycle.lifecycle.notifications import NotificationType, Notifier
from modelcycle.storage.database.models import ModelVersion, TrainingJob
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import ensure_utc, utc_now
from modelcycle.utils.logging import get_logger
from modelcycle.utils.retry import TRAINING_BACKOFF, RetryConfig

logger = get_logger(__name__)

ACTOR = "training_job_manager"


@dataclass(frozen=True)
class JobSnapshot:
    """Detached view of a training job."""

    job_id: str
    family_id: str
    trigger_id: str
    cause: TriggerCause
    state: JobState
    terminal: bool
    retry_count: int
    handle: str | None = None
    data_window: DataWindow | None = None
    scope: list[str] | None = None
    started_at: datetime | None = None
    attempt_started_at: datetime | None = None
    next_attempt_at: datetime | None = None
    ended_at: datetime | None = None
    candidate_version_id: str | None = None
    failure_reason: str | None = None

    @classmethod
    def of(cls, uow: UnitOfWork, job: TrainingJob) -> JobSnapshot:
        trigger = uow.triggers.get(job.trigger_id)
        window = None
        if job.data_window_start is not None and job.data_window_end is not None:
            window = DataWindow(start=job.data_window_start, end=job.data_window_end)
        return cls(
            job_id=job.id,
            family_id=job.family_id,
            trigger_id=job.trigger_id,
            cause=job.cause,
            state=job.state,
            terminal=job.terminal,
            retry_count=job.retry_count,
            handle=job.handle,
            data_window=window,
            scope=trigger.scope if trigger else None,
            started_at=job.started_at,
            attempt_started_at=job.attempt_started_at,
            next_attempt_at=job.next_attempt_at,
            ended_at=job.ended_at,
            candidate_version_id=job.candidate_version_id,
            failure_reason=job.failure_reason,
        )

    @property
    def succeeded(self) -> bool:
        return self.state is JobState.SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "family_id": self.family_id,
            "trigger_id": self.trigger_id,
            "cause": self.cause.value,
            "state": self.state.value,
            "terminal": self.terminal,
            "retry_count": self.retry_count,
            "handle": self.handle,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "candidate_version_id": self.candidate_version_id,
            "failure_reason": self.failure_reason,
        }


class TrainingJobManager:
    """Owns training job transitions, retries, timeouts and cancellation."""

    def __init__(
        self,
        store: LifecycleStore,
        training: TrainingOperation,
        audit: AuditLog,
        notifier: Notifier,
        settings: LifecycleSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.training = training
        self.audit = audit
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def open_job(
        self,
        uow: UnitOfWork,
        *,
        family_id: str,
        trigger_id: str,
        cause: TriggerCause,
        policy: FamilyPolicy,
        now: datetime,
    ) -> TrainingJob:
        """Create a pending job within the caller's transaction.

        Raises:
            AlreadyInProgressError: If the family already has a non-terminal job
        """
        active = uow.jobs.active_for_family(family_id)
        if active is not None:
            raise AlreadyInProgressError(
                f"Family '{family_id}' already has an active training job",
                family_id=family_id,
                active_id=active.id,
            )

        job = uow.jobs.add(
            TrainingJob(
                id=uuid4().hex,
                family_id=family_id,
                trigger_id=trigger_id,
                cause=cause,
                state=JobState.PENDING,
                terminal=False,
                retry_count=0,
                data_window_start=now - policy.drift_window,
                data_window_end=now,
                created_at=now,
            )
        )
        self._record_transition(
            uow,
            job_id=job.id,
            family_id=family_id,
            from_state=None,
            to_state=JobState.PENDING,
            retry_count=0,
            terminal=False,
            reason="accepted",
            now=now,
        )
        return job

    # ------------------------------------------------------------------
    # Driving the state machine
    # ------------------------------------------------------------------

    def snapshot(self, job_id: str) -> JobSnapshot:
        """Current state of a job.

        Raises:
            RecordNotFoundError: If the job does not exist
        """
        return self.store.read(lambda uow: JobSnapshot.of(uow, uow.jobs.require(job_id)))

    async def tick(self, job_id: str) -> JobSnapshot:
        """Advance a job by at most one step."""
        job = self.snapshot(job_id)
        if job.terminal:
            return job

        if job.state is JobState.PENDING:
            return await self.dispatch(job_id)
        if job.state is JobState.RUNNING:
            return await self.poll(job_id)

        # Retryable failure waiting for its backoff
        job = self.resume_due(job_id)
        if job.state is JobState.PENDING:
            return await self.dispatch(job_id)
        return job

    async def dispatch(self, job_id: str) -> JobSnapshot:
        """Submit a pending job to the training operation."""
        job = self.snapshot(job_id)
        if job.terminal or job.state is not JobState.PENDING:
            return job

        if job.data_window is None:
            raise InvalidStateTransitionError(
                f"Job {job_id} has no data window",
                entity_id=job_id,
                current_state=job.state.value,
                attempted_state=JobState.RUNNING.value,
            )

        try:
            handle = await self.training.submit_training(
                job.family_id, job.cause, job.data_window, job.scope
            )
        except TrainingFatalFailure as e:
            logger.error("training_submission_fatal", job_id=job_id, error=str(e))
            return self._fail(job, reason=f"submission_failed: {e}", retryable=False)
        except Exception as e:
            # TrainingTransientFailure and unexpected adapter errors
            logger.warning(
                "training_submission_failed",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return self._fail(job, reason=f"submission_failed: {e}", retryable=True)

        now = ensure_utc(self.clock())
        dispatched = self.store.run(
            lambda uow: self._transition(
                uow,
                job,
                JobState.RUNNING,
                reason="dispatched",
                now=now,
                handle=handle,
                started_at=job.started_at or now,
                attempt_started_at=now,
                next_attempt_at=None,
            )
        )

        if not dispatched:
            # Job changed while submitting (e.g. cancelled): drop the new operation
            logger.warning("job_dispatch_superseded", job_id=job_id, handle=handle)
            await self._cancel_quietly(job_id, handle)
        else:
            logger.info(
                "training_dispatched",
                job_id=job_id,
                family_id=job.family_id,
                handle=handle,
                attempt=job.retry_count + 1,
            )

        return self.snapshot(job_id)

    async def poll(self, job_id: str) -> JobSnapshot:
        """Check a running job once (timeout, then ``poll_status``)."""
        job = self.snapshot(job_id)
        if job.terminal or job.state is not JobState.RUNNING or job.handle is None:
            return job

        now = ensure_utc(self.clock())
        if (
            job.attempt_started_at is not None
            and now - job.attempt_started_at > self.settings.training_timeout
        ):
            logger.warning(
                "training_attempt_timed_out",
                job_id=job_id,
                attempt_started_at=job.attempt_started_at.isoformat(),
                timeout_seconds=self.settings.training_timeout.total_seconds(),
            )
            await self._cancel_quietly(job_id, job.handle)
            return self._fail(job, reason="training_timeout", retryable=True)

        try:
            status = await self.training.poll_status(job.handle)
        except Exception as e:
            # Polling problems are not job failures; the timeout bounds them
            logger.warning(
                "training_poll_failed",
                job_id=job_id,
                handle=job.handle,
                error=str(e),
                error_type=type(e).__name__,
            )
            return job

        return self.apply_status(job_id, status)

    def on_training_update(self, job_id: str, status: TrainingStatus) -> JobSnapshot:
        """Completion callback for push-style training backends."""
        logger.info("training_update_received", job_id=job_id, state=status.state)
        return self.apply_status(job_id, status)

    def apply_status(self, job_id: str, status: TrainingStatus) -> JobSnapshot:
        """Apply a status reported by the training operation."""
        job = self.snapshot(job_id)
        if job.terminal or job.state is not JobState.RUNNING:
            logger.debug(
                "training_update_ignored",
                job_id=job_id,
                state=job.state.value,
                terminal=job.terminal,
                reported=status.state,
            )
            return job

        if status.state == "running":
            return job
        if status.state == "succeeded":
            return self._succeed(job, status)
        return self._fail(job, reason=status.reason or "training_failed", retryable=status.retryable)

    def resume_due(self, job_id: str) -> JobSnapshot:
        """Move a retryable failure back to pending once its backoff elapsed."""
        job = self.snapshot(job_id)
        now = ensure_utc(self.clock())
        if (
            job.terminal
            or job.state is not JobState.FAILED
            or job.next_attempt_at is None
            or now < job.next_attempt_at
        ):
            return job

        resumed = self.store.run(
            lambda uow: self._transition(
                uow,
                job,
                JobState.PENDING,
                reason="retry",
                now=now,
                retry_count=job.retry_count + 1,
                next_attempt_at=None,
                attempt_started_at=None,
                handle=None,
            )
        )
        if resumed:
            logger.info(
                "training_retry_resumed",
                job_id=job_id,
                retry_count=job.retry_count + 1,
            )
        return self.snapshot(job_id)

    async def cancel(self, job_id: str, requested_by: str | None = None) -> JobSnapshot:
        """Cancel a non-terminal job.

        The training operation is signalled best-effort (bounded by
        ``cancel_timeout_seconds``); regardless of its answer the job becomes
        terminal ``failed(cancelled)`` and the family claim is released.

        Raises:
            InvalidStateTransitionError: If the job is already terminal
        """
        job = self.snapshot(job_id)
        if job.terminal:
            raise InvalidStateTransitionError(
                f"Job {job_id} is already terminal",
                entity_id=job_id,
                current_state=job.state.value,
                attempted_state=JobState.FAILED.value,
            )

        now = ensure_utc(self.clock())
        self.store.run(
            lambda uow: self.audit.record(
                uow,
                actor=ACTOR,
                family_id=job.family_id,
                subject_type="job",
                subject_id=job_id,
                action=actions.JOB_CANCEL_REQUESTED,
                outcome="requested",
                detail={"requested_by": requested_by, "state": job.state.value},
                occurred_at=now,
            )
        )

        if job.state is JobState.RUNNING and job.handle is not None:
            await self._cancel_quietly(job_id, job.handle)

        # The job may have moved while the backend was being signalled
        job = self.snapshot(job_id)
        if job.terminal:
            return job

        now = ensure_utc(self.clock())

        def work(uow: UnitOfWork) -> bool:
            if not self._transition(
                uow,
                job,
                JobState.FAILED,
                reason="cancelled",
                now=now,
                terminal=True,
                ended_at=now,
                next_attempt_at=None,
                failure_reason="cancelled",
            ):
                return False
            release_trigger(
                uow,
                self.audit,
                family_id=job.family_id,
                trigger_id=job.trigger_id,
                outcome="cancelled",
                actor=ACTOR,
                now=now,
            )
            return True

        if self.store.run(work):
            logger.info("training_job_cancelled", job_id=job_id, requested_by=requested_by)
            self.notifier.notify(
                NotificationType.JOB_CANCELLED,
                job.family_id,
                job_id=job_id,
                requested_by=requested_by,
            )
        return self.snapshot(job_id)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _succeed(self, job: JobSnapshot, status: TrainingStatus) -> JobSnapshot:
        now = ensure_utc(self.clock())
        version_id = uuid4().hex
        score = status.metrics.get(self.settings.primary_metric)

        def work(uow: UnitOfWork) -> bool:
            if not self._transition(
                uow,
                job,
                JobState.SUCCEEDED,
                reason="training_succeeded",
                now=now,
                terminal=True,
                ended_at=now,
                candidate_version_id=version_id,
            ):
                return False
            uow.versions.add(
                ModelVersion(
                    id=version_id,
                    family_id=job.family_id,
                    job_id=job.job_id,
                    artifact_ref=status.artifact_ref or "",
                    status=VersionStatus.CANDIDATE,
                    score=float(score) if score is not None else None,
                    metrics_json=json.dumps(status.metrics, sort_keys=True),
                    created_at=now,
                )
            )
            self.audit.record(
                uow,
                actor=ACTOR,
                family_id=job.family_id,
                subject_type="version",
                subject_id=version_id,
                action=actions.VERSION_CREATED,
                outcome=VersionStatus.CANDIDATE.value,
                detail={
                    "job_id": job.job_id,
                    "artifact_ref": status.artifact_ref,
                    "metrics": status.metrics,
                },
                occurred_at=now,
            )
            return True

        if self.store.run(work):
            logger.info(
                "training_succeeded",
                job_id=job.job_id,
                family_id=job.family_id,
                candidate_version_id=version_id,
                score=score,
                attempts=job.retry_count + 1,
            )
        return self.snapshot(job.job_id)

    def _fail(self, job: JobSnapshot, *, reason: str, retryable: bool) -> JobSnapshot:
        now = ensure_utc(self.clock())

        def work(uow: UnitOfWork) -> tuple[bool, bool]:
            family = uow.families.require(job.family_id)
            policy = self.settings.policy_for(family.overrides())
            will_retry = retryable and job.retry_count < policy.max_retries

            if will_retry:
                delay = self._backoff(policy).calculate_delay(job.retry_count)
                changed = self._transition(
                    uow,
                    job,
                    JobState.FAILED,
                    reason=reason,
                    now=now,
                    next_attempt_at=now + timedelta(seconds=delay),
                    failure_reason=reason,
                )
                return changed, True

            changed = self._transition(
                uow,
                job,
                JobState.FAILED,
                reason=reason,
                now=now,
                terminal=True,
                ended_at=now,
                next_attempt_at=None,
                failure_reason=reason,
            )
            if changed:
                release_trigger(
                    uow,
                    self.audit,
                    family_id=job.family_id,
                    trigger_id=job.trigger_id,
                    outcome="training_failed",
                    actor=ACTOR,
                    now=now,
                )
            return changed, False

        changed, will_retry = self.store.run(work)
        snapshot = self.snapshot(job.job_id)

        if not changed:
            return snapshot

        if will_retry:
            logger.warning(
                "training_attempt_failed",
                job_id=job.job_id,
                family_id=job.family_id,
                reason=reason,
                retry_count=job.retry_count,
                next_attempt_at=snapshot.next_attempt_at.isoformat()
                if snapshot.next_attempt_at
                else None,
            )
        else:
            logger.error(
                "training_failed",
                job_id=job.job_id,
                family_id=job.family_id,
                reason=reason,
                retryable=retryable,
                attempts=job.retry_count + 1,
            )
            self.notifier.notify(
                NotificationType.TRAINING_FAILED,
                job.family_id,
                job_id=job.job_id,
                reason=reason,
                retryable=retryable,
                attempts=job.retry_count + 1,
            )
        return snapshot

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _backoff(self, policy: FamilyPolicy) -> RetryConfig:
        base = self.settings.retry_base_delay_seconds
        return replace(
            TRAINING_BACKOFF,
            max_retries=policy.max_retries,
            base_delay=base,
            max_delay=max(self.settings.retry_max_delay_seconds, base),
        )

    def _transition(
        self,
        uow: UnitOfWork,
        job: JobSnapshot,
        to_state: JobState,
        *,
        reason: str,
        now: datetime,
        terminal: bool = False,
        retry_count: int | None = None,
        **values: Any,
    ) -> bool:
        """Compare-and-set the job from ``job.state`` to ``to_state`` and audit it.

        Returns:
            False if the job is no longer in ``job.state`` (nothing written)
        """
        if to_state not in ALLOWED_JOB_TRANSITIONS[job.state]:
            raise InvalidStateTransitionError(
                f"Job {job.job_id} cannot move from {job.state.value} to {to_state.value}",
                entity_id=job.job_id,
                current_state=job.state.value,
                attempted_state=to_state.value,
            )

        count = job.retry_count if retry_count is None else retry_count
        if not uow.jobs.transition(
            job.job_id,
            job.state,
            state=to_state,
            terminal=terminal,
            retry_count=count,
            **values,
        ):
            logger.debug(
                "job_transition_lost",
                job_id=job.job_id,
                expected_state=job.state.value,
                to_state=to_state.value,
            )
            return False

        self._record_transition(
            uow,
            job_id=job.job_id,
            family_id=job.family_id,
            from_state=job.state,
            to_state=to_state,
            retry_count=count,
            terminal=terminal,
            reason=reason,
            now=now,
        )
        return True

    def _record_transition(
        self,
        uow: UnitOfWork,
        *,
        job_id: str,
        family_id: str,
        from_state: JobState | None,
        to_state: JobState,
        retry_count: int,
        terminal: bool,
        reason: str,
        now: datetime,
    ) -> None:
        self.audit.record(
            uow,
            actor=ACTOR,
            family_id=family_id,
            subject_type="job",
            subject_id=job_id,
            action=actions.JOB_TRANSITION,
            outcome=to_state.value,
            detail={
                "from_state": from_state.value if from_state else None,
                "to_state": to_state.value,
                "retry_count": retry_count,
                "terminal": terminal,
                "reason": reason,
            },
            occurred_at=now,
        )

    async def _cancel_quietly(self, job_id: str, handle: str) -> None:
        try:
            await asyncio.wait_for(
                self.training.cancel(handle), timeout=self.settings.cancel_timeout_seconds
            )
            logger.info("training_cancel_acknowledged", job_id=job_id, handle=handle)
        except TimeoutError:
            logger.warning(
                "training_cancel_timeout",
                job_id=job_id,
                handle=handle,
                timeout_seconds=self.settings.cancel_timeout_seconds,
            )
        except Exception as e:
            logger.warning(
                "training_cancel_failed",
                job_id=job_id,
                handle=handle,
                error=str(e),
                error_type=type(e).__name__,
            )
