"""Model lifecycle orchestration.

Drift detection, retrain triggering, training job supervision, champion /
challenger validation and deployment decisions.

The heavy components (orchestrator, scheduler) are imported from their
modules directly so that the storage layer can depend on the enums here
without import cycles:

    >>> from modelcycle.lifecycle.orchestrator import LifecycleOrchestrator
"""

from modelcycle.lifecycle.config import (
    FamilyConfig,
    FamilyPolicy,
    LifecycleSettings,
    get_lifecycle_settings,
    load_family_configs,
)
from modelcycle.lifecycle.domain import (
    DataWindow,
    DeploymentDecision,
    DriftVerdict,
    Observation,
    SubmitResult,
    TrainingStatus,
    ValidationResult,
)
from modelcycle.lifecycle.enums import (
    DeploymentAction,
    JobState,
    RejectionReason,
    TriggerCause,
    TriggerStatus,
    ValidationReason,
    ValidationVerdict,
    VerdictReason,
    VersionStatus,
)

__all__ = [
    # Configuration
    "FamilyConfig",
    "FamilyPolicy",
    "LifecycleSettings",
    "get_lifecycle_settings",
    "load_family_configs",
    # Value objects
    "DataWindow",
    "DeploymentDecision",
    "DriftVerdict",
    "Observation",
    "SubmitResult",
    "TrainingStatus",
    "ValidationResult",
    # Enums
    "DeploymentAction",
    "JobState",
    "RejectionReason",
    "TriggerCause",
    "TriggerStatus",
    "ValidationReason",
    "ValidationVerdict",
    "VerdictReason",
    "VersionStatus",
]
