"""Property-based tests of the lifecycle invariants."""

import asyncio
from concurrent.futures import ThreadPoolExecutor

from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from sqlalchemy import select

from modelcycle.lifecycle.coordinator import RetrainRequest
from modelcycle.lifecycle.deployment import decide
from modelcycle.lifecycle.domain import TrainingStatus, at_least
from modelcycle.lifecycle.enums import DeploymentAction, TriggerCause, VerdictReason
from modelcycle.lifecycle.notifications import Notifier
from modelcycle.lifecycle.orchestrator import BootstrapChampion, LifecycleOrchestrator
from modelcycle.lifecycle.validation import compare
from modelcycle.storage.database.models import TrainingJob
from modelcycle.storage.store import LifecycleStore
from tests.helpers import (
    FakeClock,
    FakeTrainingOperation,
    RecordingSink,
    ingest_scores,
    make_settings,
    succeeded,
)

FAMILY = "content_performance"
POLICY = make_settings().policy_for()

scores = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)

training_outcomes = st.one_of(
    st.builds(succeeded, st.floats(min_value=0.0, max_value=1.0)),
    st.builds(TrainingStatus.failed, st.just("oom"), st.booleans()),
    st.just(TrainingStatus.running()),
)

operations = st.lists(
    st.sampled_from(["trigger", "poll", "cancel", "advance", "approve", "evaluate"]),
    max_size=25,
)


def _orchestrator(database_url: str = "sqlite://") -> tuple[LifecycleOrchestrator, FakeClock]:
    clock = FakeClock()
    orchestrator = LifecycleOrchestrator(
        LifecycleStore.from_url(database_url),
        FakeTrainingOperation(),
        settings=make_settings(),
        notifier=Notifier([RecordingSink()]),
        clock=clock,
    )
    orchestrator.register_family(
        FAMILY, champion=BootstrapChampion(artifact_ref="s3://models/content/v1", score=0.80)
    )
    return orchestrator, clock


def _all_job_ids(orchestrator: LifecycleOrchestrator) -> list[str]:
    return orchestrator.store.read(
        lambda uow: list(uow.session.execute(select(TrainingJob.id)).scalars())
    )


class TestPureRules:
    @given(candidate=scores, champion=scores)
    def test_decide_deploys_iff_improvement_meets_threshold(self, candidate, champion):
        result = compare(
            family_id=FAMILY,
            candidate_version_id="v2",
            candidate_metrics={"accuracy": candidate},
            champion_version_id="v1",
            champion_score=champion,
            policy=POLICY,
            primary_metric="accuracy",
        )

        decision = decide(result, POLICY)

        expected = at_least(candidate - champion, POLICY.auto_deploy_threshold)
        assert (decision.action is DeploymentAction.DEPLOY) == expected

    @given(candidate=scores, champion=scores)
    def test_validation_never_passes_below_floor(self, candidate, champion):
        result = compare(
            family_id=FAMILY,
            candidate_version_id="v2",
            candidate_metrics={"accuracy": candidate},
            champion_version_id="v1",
            champion_score=champion,
            policy=POLICY,
            primary_metric="accuracy",
        )

        if result.passed:
            assert at_least(candidate, POLICY.min_quality_score)
            assert result.champion_version_id == "v1"

    @given(causes=st.lists(st.sampled_from(list(TriggerCause)), min_size=1))
    def test_strongest_cause_is_a_member(self, causes):
        strongest = TriggerCause.strongest(causes)

        assert strongest in causes
        assert all(strongest.precedence >= c.precedence for c in causes)


class TestStoreBackedProperties:
    @settings(deadline=None, max_examples=25, suppress_health_check=[HealthCheck.too_slow])
    @given(window_scores=st.lists(scores, max_size=4))
    def test_drift_never_retrains_without_enough_samples(self, window_scores):
        orchestrator, _ = _orchestrator()
        ingest_scores(orchestrator, FAMILY, window_scores)

        verdict = orchestrator.drift.evaluate(FAMILY, threshold=0.0)

        assert verdict.retrain is False
        assert verdict.reason is VerdictReason.INSUFFICIENT_DATA

    @settings(deadline=None, max_examples=30, suppress_health_check=[HealthCheck.too_slow])
    @given(ops=operations, outcomes=st.lists(training_outcomes, max_size=10))
    def test_lifecycle_invariants_hold_under_any_sequence(self, ops, outcomes):
        orchestrator, clock = _orchestrator()
        training = orchestrator.jobs.training
        training.script(FAMILY, *outcomes)

        async def step(op: str) -> None:
            if op == "trigger":
                await orchestrator.trigger_retraining([FAMILY], force=True)
            elif op == "poll":
                await orchestrator.poll_jobs()
            elif op == "cancel":
                active = orchestrator.get_status(FAMILY).active_job
                if active is not None:
                    await orchestrator.cancel_job(active["job_id"])
            elif op == "advance":
                clock.advance(hours=1)
            elif op == "approve":
                pending = orchestrator.get_status(FAMILY).pending_approvals
                if pending:
                    orchestrator.approve_candidate(pending[0]["version_id"], approver="prop")
            elif op == "evaluate":
                await orchestrator.run_evaluation_cycle()

        async def run() -> None:
            for op in ops:
                await step(op)
                active = orchestrator.store.read(lambda uow: uow.jobs.count_active(FAMILY))
                deployed = orchestrator.store.read(lambda uow: uow.versions.count_deployed(FAMILY))
                assert active <= 1
                assert deployed == 1

        asyncio.run(run())

        for job_id in _all_job_ids(orchestrator):
            replay = orchestrator.audit.replay_job(job_id)
            job = orchestrator.jobs.snapshot(job_id)
            assert replay.consistent is True
            assert replay.state == job.state.value
            assert replay.terminal is job.terminal
            assert replay.retry_count == job.retry_count

        assert orchestrator.verify_audit(FAMILY).valid is True


class TestConcurrentSubmission:
    def test_exactly_one_of_concurrent_submissions_is_accepted(self, tmp_path):
        orchestrator, _ = _orchestrator(f"sqlite:///{tmp_path / 'concurrent.db'}")

        def submit(i: int):
            return orchestrator.coordinator.submit(
                RetrainRequest(family_id=FAMILY, cause=TriggerCause.MANUAL, requested_by=f"u{i}")
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(submit, range(16)))

        assert sum(r.accepted for r in results) == 1
        assert orchestrator.store.read(lambda uow: uow.jobs.count_active(FAMILY)) == 1
        assert orchestrator.verify_audit(FAMILY).valid is True
