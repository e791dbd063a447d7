"""End-to-end tests of the LifecycleOrchestrator."""

from dataclasses import replace
from datetime import timedelta

import pytest

from modelcycle.exceptions import RecordNotFoundError
from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.config import FamilyConfig, load_family_configs
from modelcycle.lifecycle.domain import TrainingStatus
from modelcycle.lifecycle.enums import JobState, RejectionReason, TriggerCause, VersionStatus
from modelcycle.lifecycle.notifications import NotificationType
from modelcycle.lifecycle.orchestrator import BootstrapChampion, LifecycleOrchestrator
from tests.helpers import ingest_scores, make_settings, succeeded


class TestRegistration:
    def test_register_creates_family_with_champion(self, orchestrator, family):
        status = orchestrator.get_status(family)

        assert status.active_trigger_id is None
        assert status.active_job is None
        assert status.champion_version["status"] == VersionStatus.DEPLOYED.value
        assert status.champion_version["score"] == pytest.approx(0.80)
        assert status.champion_version["metrics"] == {"accuracy": 0.80}
        assert status.pending_approvals == []

    def test_reregistering_keeps_champion_and_replaces_overrides(self, orchestrator, family):
        champion = orchestrator.get_status(family).champion_version["version_id"]

        orchestrator.register_family(
            family,
            FamilyConfig(drift_threshold=0.10),
            champion=BootstrapChampion(artifact_ref="s3://other", score=0.5),
        )

        assert orchestrator.get_status(family).champion_version["version_id"] == champion
        assert orchestrator.drift.evaluate(family).threshold == 0.10

        orchestrator.register_family(family)
        assert orchestrator.drift.evaluate(family).threshold == 0.03

        registered = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.FAMILY_REGISTERED)
        )
        assert [e.outcome for e in registered] == ["created", "updated", "updated"]

    def test_register_families_from_yaml(self, orchestrator, tmp_path):
        path = tmp_path / "families.yaml"
        path.write_text(
            "ranker:\n  drift_threshold: 0.05\nclassifier:\n  auto_deploy_threshold: 0.04\n"
        )

        orchestrator.register_families(
            load_family_configs(path),
            champions={"ranker": BootstrapChampion(artifact_ref="s3://ranker/v1", score=0.7)},
        )

        assert orchestrator.get_status("ranker").champion_version is not None
        assert orchestrator.get_status("classifier").champion_version is None
        assert orchestrator.drift.evaluate("ranker").threshold == 0.05

    def test_unknown_family_status(self, orchestrator):
        with pytest.raises(RecordNotFoundError):
            orchestrator.get_status("missing")

    def test_from_settings(self, tmp_path, training):
        settings = make_settings(database_url=f"sqlite:///{tmp_path / 'other.db'}")

        orchestrator = LifecycleOrchestrator.from_settings(training, settings)
        orchestrator.register_family("ranker")

        assert orchestrator.get_status("ranker").family_id == "ranker"
        assert (tmp_path / "other.db").exists()


class TestPipeline:
    """Drift → train → validate → deploy."""

    @pytest.mark.asyncio
    async def test_drift_to_deployment(self, orchestrator, family, training, sink):
        ingest_scores(orchestrator, family, [0.75, 0.77, 0.76, 0.76, 0.76])
        training.script(family, [TrainingStatus.running(), succeeded(0.83)])

        submitted = await orchestrator.run_evaluation_cycle()

        result = submitted[family]
        assert result.accepted is True
        assert result.cause is TriggerCause.PERFORMANCE_DRIFT
        assert orchestrator.get_status(family).active_job["state"] == JobState.RUNNING.value

        polled = await orchestrator.poll_jobs()
        assert polled[family].state is JobState.RUNNING

        polled = await orchestrator.poll_jobs()
        job = polled[family]
        assert job.state is JobState.SUCCEEDED

        status = orchestrator.get_status(family)
        assert status.champion_version["version_id"] == job.candidate_version_id
        assert status.active_trigger_id is None
        assert sink.types == [
            NotificationType.RETRAIN_TRIGGERED,
            NotificationType.MODEL_DEPLOYED,
        ]

        # Nothing left to poll
        assert await orchestrator.poll_jobs() == {}

    @pytest.mark.asyncio
    async def test_audit_trail_of_a_deployment(self, orchestrator, family):
        results = await orchestrator.trigger_retraining([family], force=True, requested_by="alice")
        await orchestrator.poll_jobs()

        trigger_id = results[family].trigger_id
        entries = orchestrator.audit.for_subject("trigger", trigger_id)
        assert [(e.action, e.outcome) for e in entries] == [
            (actions.TRIGGER_SUBMITTED, "accepted"),
            (actions.TRIGGER_RESOLVED, "deployed"),
        ]
        assert entries[0].detail["requested_by"] == "alice"
        assert orchestrator.verify_audit(family).valid is True

    @pytest.mark.asyncio
    async def test_manual_trigger_bypasses_evaluators(self, orchestrator, family):
        """No drift and no schedule due: a manual request is still accepted."""
        ingest_scores(orchestrator, family, [0.80] * 5)
        assert orchestrator.drift.evaluate(family).retrain is False

        results = await orchestrator.trigger_retraining([family])

        assert results[family].accepted is True
        assert results[family].cause is TriggerCause.MANUAL
        evaluated = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.RETRAIN_EVALUATED)
        )
        assert evaluated == []

    @pytest.mark.asyncio
    async def test_manual_trigger_needs_enough_data(self, orchestrator, family, training):
        ingest_scores(orchestrator, family, [0.80] * 4)

        results = await orchestrator.trigger_retraining([family], requested_by="alice")

        assert results[family].accepted is False
        assert results[family].reason is RejectionReason.INSUFFICIENT_DATA
        assert training.submissions == []
        rejected = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.TRIGGER_SUBMITTED, "rejected")
        )
        assert rejected[0].detail["reason"] == "insufficient_data"
        assert rejected[0].detail["sample_count"] == 4

        forced = await orchestrator.trigger_retraining([family], force=True)
        assert forced[family].accepted is True

    @pytest.mark.asyncio
    async def test_manual_trigger_for_unknown_family(self, orchestrator):
        results = await orchestrator.trigger_retraining(["missing"])

        assert results["missing"].reason is RejectionReason.UNKNOWN_FAMILY

    @pytest.mark.asyncio
    async def test_drift_cause_is_confirmed_by_evaluators(self, orchestrator, family):
        ingest_scores(orchestrator, family, [0.80] * 5)

        results = await orchestrator.trigger_retraining(
            [family], cause=TriggerCause.PERFORMANCE_DRIFT
        )

        assert results[family].accepted is False
        assert results[family].reason is RejectionReason.NOT_NEEDED

    @pytest.mark.asyncio
    async def test_fan_out_over_families(self, orchestrator, family, bare_family):
        results = await orchestrator.trigger_retraining(
            [family, bare_family, family, "missing"], force=True
        )

        assert set(results) == {family, bare_family, "missing"}
        assert results[family].accepted is True
        assert results[bare_family].accepted is True
        assert results["missing"].reason is RejectionReason.UNKNOWN_FAMILY

        polled = await orchestrator.poll_jobs()
        assert set(polled) == {family, bare_family}

    @pytest.mark.asyncio
    async def test_evaluation_cycle_skips_claimed_family(self, orchestrator, family, training):
        training.script(family, TrainingStatus.running())
        await orchestrator.trigger_retraining([family], force=True)
        ingest_scores(orchestrator, family, [0.5] * 5)

        results = await orchestrator.run_evaluation_cycle([family])

        assert results[family].reason is RejectionReason.ALREADY_ACTIVE
        assert len(training.submissions) == 1

    @pytest.mark.asyncio
    async def test_dry_run_never_submits(self, store, training, notifier, clock):
        orchestrator = LifecycleOrchestrator(
            store, training, settings=make_settings(dry_run=True), notifier=notifier, clock=clock
        )
        orchestrator.register_family("ranker")

        results = await orchestrator.run_evaluation_cycle()

        assert results["ranker"].reason is RejectionReason.DRY_RUN
        assert training.submissions == []

    @pytest.mark.asyncio
    async def test_validated_candidate_is_deployed_after_interruption(
        self, orchestrator, family, training
    ):
        """A candidate validated before a crash still gets its deployment decision."""
        training.script(family, TrainingStatus.running())
        results = await orchestrator.trigger_retraining([family], force=True)
        job = orchestrator.jobs.apply_status(results[family].job_id, succeeded(0.9))
        orchestrator.validation.validate(job.candidate_version_id)
        assert orchestrator.get_status(family).active_trigger_id is not None

        await orchestrator.poll_jobs()

        status = orchestrator.get_status(family)
        assert status.champion_version["version_id"] == job.candidate_version_id
        assert status.active_trigger_id is None

    @pytest.mark.asyncio
    async def test_succeeded_job_without_candidate_releases_claim(
        self, orchestrator, family, training
    ):
        training.script(family, TrainingStatus.running())
        results = await orchestrator.trigger_retraining([family], force=True)
        job = replace(
            orchestrator.jobs.snapshot(results[family].job_id),
            state=JobState.SUCCEEDED,
            terminal=True,
            candidate_version_id=None,
        )

        orchestrator._after_job(job)

        assert orchestrator.get_status(family).active_trigger_id is None


class TestReporting:
    def test_check_performance(self, orchestrator, family, bare_family):
        ingest_scores(orchestrator, family, [0.70] * 5)

        verdicts = orchestrator.check_performance([family, bare_family, family], threshold=0.2)

        assert set(verdicts) == {family, bare_family}
        assert verdicts[family].retrain is False
        assert verdicts[family].threshold == 0.2

    def test_check_performance_window(self, orchestrator, family):
        ingest_scores(orchestrator, family, [0.70] * 5, spacing=timedelta(hours=1))

        verdicts = orchestrator.check_performance([family], window=timedelta(hours=2))

        assert verdicts[family].sample_count == 3

    def test_check_performance_unknown_family(self, orchestrator):
        with pytest.raises(RecordNotFoundError):
            orchestrator.check_performance(["missing"])

    @pytest.mark.asyncio
    async def test_summary(self, orchestrator, family, training):
        training.script(family, succeeded(0.83))
        await orchestrator.trigger_retraining([family], force=True)
        await orchestrator.poll_jobs()

        training.script(family, succeeded(0.835))
        results = await orchestrator.trigger_retraining([family], force=True)
        await orchestrator.poll_jobs()
        held = orchestrator.jobs.snapshot(results[family].job_id).candidate_version_id
        orchestrator.reject_candidate(held, "marginal")

        summary = orchestrator.summary(family)

        assert summary["jobs_by_state"] == {"succeeded": 2}
        assert summary["retrains_accepted"] == 2
        assert summary["deployments"] == 1
        assert summary["holds"] == 1
        assert summary["rejections"] == 1
        assert summary["rollbacks"] == 0
        assert summary["mean_accepted_improvement"] == pytest.approx(0.03)

    def test_summary_of_new_family(self, orchestrator, bare_family):
        summary = orchestrator.summary(bare_family)

        assert summary["jobs_by_state"] == {}
        assert summary["mean_accepted_improvement"] is None

    def test_status_to_dict(self, orchestrator, family):
        data = orchestrator.get_status(family).to_dict()

        assert data["family_id"] == family
        assert data["last_decision"] is None
        assert data["champion_version"]["artifact_ref"] == "s3://models/content/v1"
