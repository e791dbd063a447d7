"""Tests for the lifecycle audit log."""

import pytest
from sqlalchemy import update

from modelcycle.lifecycle import audit as actions
from modelcycle.storage.database.models import AuditEntry


def _record_many(store, audit, family_id: str, count: int) -> None:
    def work(uow):
        for i in range(count):
            audit.record(
                uow,
                actor="test",
                family_id=family_id,
                subject_type="family",
                subject_id=family_id,
                action="note",
                outcome=str(i),
                detail={"index": i},
            )

    store.run(work)


class TestHistory:
    def test_most_recent_first(self, orchestrator, family):
        page = orchestrator.list_history(family)

        assert [e.action for e in page.entries] == [
            actions.VERSION_TRANSITION,
            actions.FAMILY_REGISTERED,
        ]
        assert page.entries[0].detail["bootstrap"] is True
        assert page.next_cursor is None

    def test_paging_with_cursor(self, store, audit, orchestrator, family):
        _record_many(store, audit, family, 5)

        first = orchestrator.list_history(family, limit=3)
        second = orchestrator.list_history(family, limit=3, cursor=first.next_cursor)

        assert [e.outcome for e in first.entries] == ["4", "3", "2"]
        assert first.next_cursor == first.entries[-1].id
        assert [e.outcome for e in second.entries] == ["1", "0", "deployed"]
        assert second.next_cursor is not None

        last = orchestrator.list_history(family, limit=3, cursor=second.next_cursor)
        assert [e.action for e in last.entries] == [actions.FAMILY_REGISTERED]
        assert last.next_cursor is None

    def test_exact_page_has_no_cursor(self, orchestrator, family):
        page = orchestrator.list_history(family, limit=2)

        assert len(page.entries) == 2
        assert page.next_cursor is None

    def test_history_is_per_family(self, orchestrator, family, bare_family):
        page = orchestrator.list_history(bare_family)

        assert {e.family_id for e in page.entries} == {bare_family}

    def test_invalid_limit(self, audit, family):
        with pytest.raises(ValueError):
            audit.history(family, limit=0)

    def test_to_dict(self, orchestrator, family):
        data = orchestrator.list_history(family, limit=1).to_dict()

        assert data["next_cursor"] is not None
        assert data["entries"][0]["action"] == actions.VERSION_TRANSITION
        assert isinstance(data["entries"][0]["occurred_at"], str)


class TestChainVerification:
    def test_intact_chain(self, store, audit, orchestrator, family):
        _record_many(store, audit, family, 3)

        verification = orchestrator.verify_audit(family)

        assert verification.valid is True
        assert verification.checked == 5
        assert verification.broken_at is None

    def test_entries_are_linked(self, store, family):
        entries = store.read(lambda uow: uow.audit.chain(family))

        assert entries[0].prev_hash is None
        assert entries[1].prev_hash == entries[0].entry_hash

    def test_modified_entry_breaks_chain(self, store, audit, orchestrator, family, bare_family):
        _record_many(store, audit, family, 3)
        target = orchestrator.list_history(family, limit=2).entries[1].id

        store.run(
            lambda uow: uow.session.execute(
                update(AuditEntry).where(AuditEntry.id == target).values(outcome="tampered")
            )
        )

        verification = orchestrator.verify_audit(family)
        assert verification.valid is False
        assert verification.broken_at == target
        assert verification.checked == 3

        # Other families keep their own chain
        assert orchestrator.verify_audit(bare_family).valid is True

    def test_empty_chain_is_valid(self, audit):
        verification = audit.verify_chain("nobody")

        assert verification.valid is True
        assert verification.checked == 0


class TestJobReplay:
    @pytest.mark.asyncio
    async def test_replay_matches_job(self, orchestrator, family):
        results = await orchestrator.trigger_retraining([family], force=True)
        await orchestrator.poll_jobs()
        job_id = results[family].job_id

        replay = orchestrator.audit.replay_job(job_id)
        job = orchestrator.jobs.snapshot(job_id)

        assert replay.consistent is True
        assert replay.state == job.state.value
        assert replay.terminal is job.terminal
        assert replay.transitions == [
            (None, "pending"),
            ("pending", "running"),
            ("running", "succeeded"),
        ]

    def test_gap_in_transitions_is_inconsistent(self, store, audit, family):
        def work(uow):
            for from_state, to_state in [(None, "pending"), ("running", "succeeded")]:
                audit.record(
                    uow,
                    actor="test",
                    family_id=family,
                    subject_type="job",
                    subject_id="job-1",
                    action=actions.JOB_TRANSITION,
                    outcome=to_state,
                    detail={"from_state": from_state, "to_state": to_state, "terminal": False},
                )

        store.run(work)

        replay = audit.replay_job("job-1")
        assert replay.consistent is False
        assert replay.state == "succeeded"

    def test_unknown_job_replays_empty(self, audit):
        replay = audit.replay_job("missing")

        assert replay.state is None
        assert replay.transitions == []
