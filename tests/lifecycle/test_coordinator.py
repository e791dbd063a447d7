"""Tests for TriggerCoordinator."""

import pytest

from modelcycle.lifecycle import audit as actions
from modelcycle.lifecycle.coordinator import RetrainRequest
from modelcycle.lifecycle.enums import JobState, RejectionReason, TriggerCause
from modelcycle.lifecycle.notifications import NotificationType
from tests.helpers import ingest_scores


def _request(family_id: str, cause: TriggerCause = TriggerCause.MANUAL, **kwargs) -> RetrainRequest:
    return RetrainRequest(family_id=family_id, cause=cause, **kwargs)


class TestSubmit:
    """Mutual exclusion of retrain requests."""

    def test_accepts_first_request(self, orchestrator, family, sink):
        result = orchestrator.coordinator.submit(_request(family, requested_by="alice"))

        assert result.accepted is True
        assert result.cause is TriggerCause.MANUAL
        assert result.trigger_id is not None
        assert result.job_id is not None

        status = orchestrator.get_status(family)
        assert status.active_trigger_id == result.trigger_id
        assert status.active_job["job_id"] == result.job_id
        assert status.active_job["state"] == JobState.PENDING.value

        triggered = sink.of_type(NotificationType.RETRAIN_TRIGGERED)
        assert len(triggered) == 1
        assert triggered[0].detail["requested_by"] == "alice"

    def test_second_request_is_rejected_while_active(self, orchestrator, family):
        """Scenario: a manual request arrives while a drift retrain is running."""
        first = orchestrator.coordinator.submit(_request(family, TriggerCause.PERFORMANCE_DRIFT))

        second = orchestrator.coordinator.submit(_request(family, requested_by="bob"))

        assert second.accepted is False
        assert second.reason is RejectionReason.ALREADY_ACTIVE
        assert orchestrator.get_status(family).active_trigger_id == first.trigger_id

        rejected = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.TRIGGER_SUBMITTED, "rejected")
        )
        assert len(rejected) == 1
        assert rejected[0].detail["active_id"] == first.trigger_id
        assert rejected[0].detail["requested_by"] == "bob"

    def test_unknown_family(self, orchestrator):
        result = orchestrator.coordinator.submit(_request("missing"))

        assert result.accepted is False
        assert result.reason is RejectionReason.UNKNOWN_FAMILY

    def test_open_job_without_claim_is_rejected(self, orchestrator, family):
        """A non-terminal job blocks acceptance even if the claim was lost."""
        first = orchestrator.coordinator.submit(_request(family))
        orchestrator.store.run(lambda uow: uow.families.release(family, first.trigger_id))

        second = orchestrator.coordinator.submit(_request(family))

        assert second.accepted is False
        assert second.reason is RejectionReason.ALREADY_ACTIVE
        # The claim taken by the rejected request was rolled back
        assert orchestrator.get_status(family).active_trigger_id is None
        assert orchestrator.store.read(lambda uow: uow.jobs.count_active(family)) == 1

    def test_accepted_request_is_audited(self, orchestrator, family):
        result = orchestrator.coordinator.submit(
            _request(family, scope=["ranker"], requested_by="alice", reason="forced")
        )

        entries = orchestrator.audit.for_subject("trigger", result.trigger_id)

        assert [e.action for e in entries] == [actions.TRIGGER_SUBMITTED]
        assert entries[0].outcome == "accepted"
        assert entries[0].detail["cause"] == "manual"
        assert entries[0].detail["scope"] == ["ranker"]

    def test_resolve_releases_only_matching_claim(self, orchestrator, family):
        result = orchestrator.coordinator.submit(_request(family))

        assert orchestrator.coordinator.resolve(family, "other-trigger", "stale") is False
        assert orchestrator.get_status(family).active_trigger_id == result.trigger_id

        assert orchestrator.coordinator.resolve(family, result.trigger_id, "cancelled") is True
        assert orchestrator.get_status(family).active_trigger_id is None

        # Second resolve is a no-op
        assert orchestrator.coordinator.resolve(family, result.trigger_id, "cancelled") is False


class TestEvaluateFamily:
    """Drift and schedule evaluation merged into one trigger."""

    def test_not_needed(self, orchestrator, family):
        ingest_scores(orchestrator, family, [0.80] * 5)

        result = orchestrator.coordinator.evaluate_family(family)

        assert result.accepted is False
        assert result.reason is RejectionReason.NOT_NEEDED
        assert orchestrator.get_status(family).active_trigger_id is None

        evaluated = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.RETRAIN_EVALUATED)
        )
        assert [e.outcome for e in evaluated] == ["not_needed"]

    def test_drift_fires(self, orchestrator, family):
        ingest_scores(orchestrator, family, [0.70] * 5)

        result = orchestrator.coordinator.evaluate_family(family)

        assert result.accepted is True
        assert result.cause is TriggerCause.PERFORMANCE_DRIFT

    def test_schedule_fires(self, orchestrator, family, clock):
        clock.advance(days=8)

        result = orchestrator.coordinator.evaluate_family(family)

        assert result.accepted is True
        assert result.cause is TriggerCause.SCHEDULE

    def test_never_deployed_family_fires_initial_training(self, orchestrator, bare_family):
        result = orchestrator.coordinator.evaluate_family(bare_family)

        assert result.accepted is True
        assert result.cause is TriggerCause.SCHEDULE

    def test_drift_takes_precedence_over_schedule(self, orchestrator, family, clock):
        clock.advance(days=8)
        ingest_scores(orchestrator, family, [0.70] * 5)

        result = orchestrator.coordinator.evaluate_family(family)

        assert result.cause is TriggerCause.PERFORMANCE_DRIFT
        entry = orchestrator.audit.for_subject("trigger", result.trigger_id)[0]
        assert entry.detail["causes"] == ["performance_drift", "schedule"]

    def test_manual_request_takes_precedence(self, orchestrator, family, clock):
        clock.advance(days=8)
        ingest_scores(orchestrator, family, [0.70] * 5)

        result = orchestrator.coordinator.evaluate_family(family, requested=TriggerCause.MANUAL)

        assert result.cause is TriggerCause.MANUAL

    def test_dry_run_audits_without_submitting(self, orchestrator, family, sink):
        ingest_scores(orchestrator, family, [0.70] * 5)

        result = orchestrator.coordinator.evaluate_family(family, dry_run=True)

        assert result.accepted is False
        assert result.reason is RejectionReason.DRY_RUN
        assert orchestrator.get_status(family).active_trigger_id is None
        assert sink.of_type(NotificationType.RETRAIN_TRIGGERED) == []

        evaluated = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.RETRAIN_EVALUATED)
        )
        assert evaluated[-1].outcome == "dry_run"
        assert evaluated[-1].detail["causes"] == ["performance_drift"]

    def test_active_claim_short_circuits(self, orchestrator, family):
        ingest_scores(orchestrator, family, [0.70] * 5)
        first = orchestrator.coordinator.evaluate_family(family)

        second = orchestrator.coordinator.evaluate_family(family)

        assert first.accepted is True
        assert second.reason is RejectionReason.ALREADY_ACTIVE
        evaluated = orchestrator.store.read(
            lambda uow: uow.audit.by_action(family, actions.RETRAIN_EVALUATED)
        )
        assert len(evaluated) == 1

    def test_unknown_family(self, orchestrator):
        result = orchestrator.coordinator.evaluate_family("missing")

        assert result.reason is RejectionReason.UNKNOWN_FAMILY


class TestTriggerCause:
    def test_strongest(self):
        causes = [TriggerCause.SCHEDULE, TriggerCause.MANUAL, TriggerCause.PERFORMANCE_DRIFT]

        assert TriggerCause.strongest(causes) is TriggerCause.MANUAL
        assert TriggerCause.strongest([TriggerCause.SCHEDULE]) is TriggerCause.SCHEDULE

    def test_strongest_requires_a_cause(self):
        with pytest.raises(ValueError):
            TriggerCause.strongest([])
