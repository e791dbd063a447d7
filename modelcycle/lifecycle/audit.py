"""Tamper-evident lifecycle audit log.

Every decision and state transition is appended as an ``AuditEntry`` inside
the same store transaction as the change it describes, so the log and the
lifecycle state can never disagree. Entries of a family are hash-chained:
``verify_chain`` recomputes the chain and reports the first broken link.

Query helpers return detached ``AuditRecord`` values, never ORM rows.

Example:
    >>> audit = AuditLog(store)
    >>> page = audit.history("content_performance", limit=20)
    >>> for entry in page.entries:
    ...     print(entry.action, entry.outcome)
    >>> older = audit.history("content_performance", limit=20, cursor=page.next_cursor)
    >>>
    >>> replay = audit.replay_job(job_id)
    >>> replay.state, replay.retry_count
    ('succeeded', 2)
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from modelcycle.storage.database.models import AuditEntry
from modelcycle.storage.repository import compute_entry_hash
from modelcycle.storage.store import LifecycleStore, UnitOfWork
from modelcycle.utils.datetime import utc_now
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)

# Action names written by the lifecycle components
JOB_TRANSITION = "job_transition"
TRIGGER_SUBMITTED = "trigger_submitted"
TRIGGER_RESOLVED = "trigger_resolved"
RETRAIN_EVALUATED = "retrain_evaluated"
VERSION_CREATED = "version_created"
VERSION_TRANSITION = "version_transition"
VALIDATION = "validation"
DEPLOYMENT_DECISION = "deployment_decision"
DEPLOYMENT_CONFLICT = "deployment_conflict"
CANDIDATE_APPROVED = "candidate_approved"
CANDIDATE_REJECTED = "candidate_rejected"
ROLLBACK = "rollback"
JOB_CANCEL_REQUESTED = "job_cancel_requested"
FAMILY_REGISTERED = "family_registered"

# Actions that represent a decision (as opposed to bookkeeping)
DECISION_ACTIONS = (
    RETRAIN_EVALUATED,
    TRIGGER_SUBMITTED,
    VALIDATION,
    DEPLOYMENT_DECISION,
    CANDIDATE_APPROVED,
    CANDIDATE_REJECTED,
    ROLLBACK,
)


@dataclass(frozen=True)
class AuditRecord:
    """Detached, read-only view of an audit entry."""

    id: int
    occurred_at: datetime
    actor: str
    family_id: str
    subject_type: str
    subject_id: str
    action: str
    outcome: str
    detail: dict[str, Any]
    entry_hash: str

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> AuditRecord:
        return cls(
            id=entry.id,
            occurred_at=entry.occurred_at,
            actor=entry.actor,
            family_id=entry.family_id,
            subject_type=entry.subject_type,
            subject_id=entry.subject_id,
            action=entry.action,
            outcome=entry.outcome,
            detail=entry.detail,
            entry_hash=entry.entry_hash,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "occurred_at": self.occurred_at.isoformat(),
            "actor": self.actor,
            "family_id": self.family_id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "action": self.action,
            "outcome": self.outcome,
            "detail": self.detail,
            "entry_hash": self.entry_hash,
        }


@dataclass(frozen=True)
class AuditPage:
    """One page of history, most recent first.

    ``next_cursor`` is passed back to fetch the next (older) page; it is
    None on the last page.
    """

    entries: list[AuditRecord]
    next_cursor: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entries": [e.to_dict() for e in self.entries],
            "next_cursor": self.next_cursor,
        }


@dataclass(frozen=True)
class JobReplay:
    """Job state reconstructed from its ``job_transition`` entries alone."""

    job_id: str
    state: str | None
    terminal: bool
    retry_count: int
    transitions: list[tuple[str | None, str]] = field(default_factory=list)
    consistent: bool = True


@dataclass(frozen=True)
class ChainVerification:
    """Result of recomputing a family's audit hash chain."""

    family_id: str
    valid: bool
    checked: int
    broken_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "family_id": self.family_id,
            "valid": self.valid,
            "checked": self.checked,
            "broken_at": self.broken_at,
        }


class AuditLog:
    """Append-only decision log with paging, replay and integrity checks."""

    def __init__(self, store: LifecycleStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    def record(
        self,
        uow: UnitOfWork,
        *,
        actor: str,
        family_id: str,
        subject_type: str,
        subject_id: str,
        action: str,
        outcome: str,
        detail: dict[str, Any] | None = None,
        occurred_at: datetime | None = None,
    ) -> AuditEntry:
        """Append an entry within the caller's unit of work."""
        entry = uow.audit.append(
            actor=actor,
            family_id=family_id,
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            outcome=outcome,
            occurred_at=occurred_at or self.clock(),
            detail=detail,
        )
        logger.debug(
            "audit_entry_recorded",
            actor=actor,
            family_id=family_id,
            subject=f"{subject_type}:{subject_id}",
            action=action,
            outcome=outcome,
        )
        return entry

    def history(self, family_id: str, limit: int = 50, cursor: int | None = None) -> AuditPage:
        """Page through a family's history, most recent first.

        Args:
            family_id: Family whose history to list
            limit: Maximum entries per page
            cursor: ``next_cursor`` of the previous page (None = newest)

        Returns:
            AuditPage with a cursor for the next older page
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")

        def work(uow: UnitOfWork) -> AuditPage:
            rows = uow.audit.page(family_id, limit + 1, before_id=cursor)
            entries = [AuditRecord.from_entry(r) for r in rows[:limit]]
            next_cursor = entries[-1].id if len(rows) > limit else None
            return AuditPage(entries=entries, next_cursor=next_cursor)

        return self.store.read(work)

    def for_subject(self, subject_type: str, subject_id: str) -> list[AuditRecord]:
        """All entries of one subject in causal order."""
        return self.store.read(
            lambda uow: [
                AuditRecord.from_entry(e) for e in uow.audit.for_subject(subject_type, subject_id)
            ]
        )

    def last_decision(self, uow: UnitOfWork, family_id: str) -> AuditRecord | None:
        entry = uow.audit.latest(family_id, DECISION_ACTIONS)
        return AuditRecord.from_entry(entry) if entry else None

    def replay_job(self, job_id: str) -> JobReplay:
        """Fold a job's transition entries into its final state.

        ``consistent`` is False when an entry's ``from_state`` does not match
        the previous entry's ``to_state``.
        """
        entries = [e for e in self.for_subject("job", job_id) if e.action == JOB_TRANSITION]

        state: str | None = None
        terminal = False
        retry_count = 0
        consistent = True
        transitions: list[tuple[str | None, str]] = []

        for entry in entries:
            from_state = entry.detail.get("from_state")
            to_state = entry.detail["to_state"]
            if from_state != state:
                consistent = False
            transitions.append((from_state, to_state))
            state = to_state
            terminal = bool(entry.detail.get("terminal", False))
            retry_count = int(entry.detail.get("retry_count", retry_count))

        return JobReplay(
            job_id=job_id,
            state=state,
            terminal=terminal,
            retry_count=retry_count,
            transitions=transitions,
            consistent=consistent,
        )

    def verify_chain(self, family_id: str) -> ChainVerification:
        """Recompute the family's hash chain.

        Returns:
            ChainVerification with the id of the first entry whose link or
            content hash does not match (None if the chain is intact)
        """

        def work(uow: UnitOfWork) -> ChainVerification:
            prev_hash: str | None = None
            checked = 0
            for entry in uow.audit.chain(family_id):
                expected = compute_entry_hash(
                    prev_hash,
                    entry.occurred_at,
                    entry.actor,
                    entry.family_id,
                    entry.subject_type,
                    entry.subject_id,
                    entry.action,
                    entry.outcome,
                    entry.detail_json,
                )
                if entry.prev_hash != prev_hash or entry.entry_hash != expected:
                    logger.warning(
                        "audit_chain_broken",
                        family_id=family_id,
                        entry_id=entry.id,
                        checked=checked,
                    )
                    return ChainVerification(
                        family_id=family_id, valid=False, checked=checked, broken_at=entry.id
                    )
                prev_hash = entry.entry_hash
                checked += 1
            return ChainVerification(family_id=family_id, valid=True, checked=checked)

        return self.store.read(work)
