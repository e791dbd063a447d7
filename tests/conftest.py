"""
Pytest configuration and global fixtures.

This module provides shared fixtures used across all tests:
a file-backed SQLite store per test, a controllable clock, a scripted fake
training backend and a notification sink that records what it receives.
"""

from pathlib import Path

import pytest

from modelcycle.lifecycle.audit import AuditLog
from modelcycle.lifecycle.config import FamilyConfig, LifecycleSettings
from modelcycle.lifecycle.notifications import Notifier
from modelcycle.lifecycle.orchestrator import BootstrapChampion, LifecycleOrchestrator
from modelcycle.storage.store import LifecycleStore
from tests.helpers import FakeClock, FakeTrainingOperation, RecordingSink, make_settings


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "lifecycle.db"


@pytest.fixture
def store(db_path: Path) -> LifecycleStore:
    """File-backed SQLite store, fresh for every test."""
    return LifecycleStore.from_url(f"sqlite:///{db_path}")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> LifecycleSettings:
    return make_settings()


@pytest.fixture
def training() -> FakeTrainingOperation:
    return FakeTrainingOperation()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def notifier(sink: RecordingSink) -> Notifier:
    return Notifier([sink])


@pytest.fixture
def audit(store: LifecycleStore, clock: FakeClock) -> AuditLog:
    return AuditLog(store, clock)


@pytest.fixture
def orchestrator(
    store: LifecycleStore,
    training: FakeTrainingOperation,
    settings: LifecycleSettings,
    notifier: Notifier,
    clock: FakeClock,
) -> LifecycleOrchestrator:
    return LifecycleOrchestrator(
        store, training, settings=settings, notifier=notifier, clock=clock
    )


@pytest.fixture
def family(orchestrator: LifecycleOrchestrator) -> str:
    """Registered family with a deployed champion scoring 0.80."""
    orchestrator.register_family(
        "content_performance",
        FamilyConfig(description="Content performance predictor"),
        champion=BootstrapChampion(artifact_ref="s3://models/content/v1", score=0.80),
    )
    return "content_performance"


@pytest.fixture
def bare_family(orchestrator: LifecycleOrchestrator) -> str:
    """Registered family that has never deployed."""
    orchestrator.register_family("engagement_prediction")
    return "engagement_prediction"
