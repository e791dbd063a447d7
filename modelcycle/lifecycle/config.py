"""Lifecycle Configuration.

Pydantic-based configuration for drift detection, retraining, validation and
deployment. System-wide defaults come from environment variables; each model
family can override the decision thresholds.

Environment Variables:
- MODELCYCLE_ENABLED: Enable the background scheduler (default: false)
- MODELCYCLE_DRIFT_THRESHOLD: Score drop that triggers retraining (default: 0.03)
- MODELCYCLE_AUTO_DEPLOY_THRESHOLD: Improvement required to auto-deploy (default: 0.02)
- MODELCYCLE_REGRESSION_TOLERANCE: Allowed candidate regression (default: 0.01)
- MODELCYCLE_SCHEDULE_INTERVAL: Forced retrain interval (default: 7 days)
- MODELCYCLE_MIN_TRAINING_SAMPLES: Observations required in the window (default: 50)
- MODELCYCLE_MAX_RETRIES: Automatic training retries (default: 3)
- MODELCYCLE_DATABASE_URL: SQLAlchemy URL of the durable store
- MODELCYCLE_LOG_LEVEL / MODELCYCLE_LOG_JSON: Logging level and JSON output (default: INFO, false)
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from modelcycle.exceptions import ConfigurationError
from modelcycle.utils.logging import get_logger

logger = get_logger(__name__)


class LifecycleSettings(BaseSettings):
    """System-wide lifecycle configuration.

    All settings can be overridden via environment variables with prefix:
    MODELCYCLE_*

    Example:
        >>> settings = LifecycleSettings()
        >>> settings.drift_threshold
        0.03
        >>>
        >>> os.environ['MODELCYCLE_DRIFT_THRESHOLD'] = '0.05'
        >>> LifecycleSettings().drift_threshold
        0.05
    """

    model_config = SettingsConfigDict(
        env_prefix="MODELCYCLE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Scheduler Settings
    enabled: bool = Field(
        default=False,
        description="Enable the background scheduler (disabled by default for safety)",
    )

    check_interval_hours: int = Field(
        default=24,
        ge=1,
        le=168,
        description="Hours between performance/schedule evaluation cycles",
    )

    poll_interval_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Seconds between training job poll ticks",
    )

    max_concurrent_families: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Families evaluated or polled concurrently",
    )

    # Drift Detection
    drift_threshold: float = Field(
        default=0.03,
        description="Score drop below the champion baseline that triggers retraining",
    )

    drift_window: timedelta = Field(
        default=timedelta(days=7),
        description="Lookback window for recent performance observations",
    )

    min_training_samples: int = Field(
        default=50,
        ge=1,
        description="Minimum observations in the window before drift is evaluated",
    )

    # Forced Retraining
    schedule_interval: timedelta = Field(
        default=timedelta(days=7),
        description="Maximum time since last deployment before a forced retrain",
    )

    # Validation & Deployment
    primary_metric: str = Field(
        default="accuracy",
        description="Metric name compared between candidate and champion (higher is better)",
    )

    min_quality_score: float = Field(
        default=0.5,
        description="Absolute quality floor a candidate must reach",
    )

    regression_tolerance: float = Field(
        default=0.01,
        description="Candidate may be at most this much worse than the champion",
    )

    auto_deploy_threshold: float = Field(
        default=0.02,
        description="Minimum improvement over the champion to deploy without approval",
    )

    # Training Jobs
    max_retries: int = Field(
        default=3,
        ge=0,
        le=20,
        description="Automatic retries for transient training failures",
    )

    retry_base_delay_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Base delay of the exponential training retry backoff",
    )

    retry_max_delay_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Cap of the training retry backoff",
    )

    training_timeout: timedelta = Field(
        default=timedelta(hours=6),
        description="Attempts running longer than this are failed as retryable",
    )

    cancel_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long to wait for the training backend to acknowledge a cancel",
    )

    # Store
    database_url: str = Field(
        default="sqlite:///./modelcycle.db",
        description="SQLAlchemy URL of the durable store",
    )

    # Safety Settings
    dry_run: bool = Field(
        default=False,
        description="Dry run mode: evaluate and audit but never submit triggers",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(
        default=False,
        description="Emit JSON lines instead of console output",
    )

    @field_validator(
        "drift_threshold", "min_quality_score", "regression_tolerance", "auto_deploy_threshold"
    )
    @classmethod
    def validate_fraction(cls, v: float) -> float:
        """Thresholds are fractions of a [0, 1] score."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"must be a fraction between 0 and 1, got {v}")
        return v

    @field_validator("drift_window", "schedule_interval", "training_timeout")
    @classmethod
    def validate_positive_duration(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("duration must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v!r}")
        return level

    @field_validator("primary_metric")
    @classmethod
    def validate_primary_metric(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("primary_metric must not be empty")
        return v.strip().lower()

    def policy_for(
        self, overrides: FamilyConfig | Mapping[str, Any] | None = None
    ) -> FamilyPolicy:
        """Resolve effective thresholds for a family.

        Args:
            overrides: Family-level overrides, either a FamilyConfig or the
                mapping stored on the family record (None uses system defaults)

        Returns:
            FamilyPolicy with every field populated
        """
        values: dict[str, Any] = {name: getattr(self, name) for name in FamilyPolicy.model_fields}
        if isinstance(overrides, FamilyConfig):
            values.update(overrides.model_dump_overrides())
        elif overrides:
            values.update({k: v for k, v in overrides.items() if v is not None})
        return FamilyPolicy(**values)

    def get_scheduler_params(self) -> dict[str, Any]:
        """Get scheduler parameters."""
        return {
            "enabled": self.enabled,
            "check_interval_hours": self.check_interval_hours,
            "poll_interval_seconds": self.poll_interval_seconds,
            "dry_run": self.dry_run,
        }


class FamilyConfig(BaseModel):
    """Per-family overrides. ``None`` means "use the system default"."""

    model_config = ConfigDict(extra="forbid")

    description: str | None = None
    drift_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    drift_window: timedelta | None = None
    min_training_samples: int | None = Field(default=None, ge=1)
    schedule_interval: timedelta | None = None
    min_quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    regression_tolerance: float | None = Field(default=None, ge=0.0, le=1.0)
    auto_deploy_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    max_retries: int | None = Field(default=None, ge=0, le=20)

    def model_dump_overrides(self) -> dict[str, Any]:
        """Threshold overrides only, without descriptive fields."""
        return self.model_dump(exclude_none=True, exclude={"description"})


class FamilyPolicy(BaseModel):
    """Effective thresholds for one family (overrides resolved over defaults)."""

    model_config = ConfigDict(frozen=True)

    drift_threshold: float
    drift_window: timedelta
    min_training_samples: int
    schedule_interval: timedelta
    min_quality_score: float
    regression_tolerance: float
    auto_deploy_threshold: float
    max_retries: int


def load_family_configs(path: Path) -> dict[str, FamilyConfig]:
    """Load per-family overrides from a YAML file.

    Expected layout::

        content_performance:
          drift_threshold: 0.03
          schedule_interval: P7D
        engagement_prediction:
          auto_deploy_threshold: 0.05

    Raises:
        ConfigurationError: If the file is unreadable or a family is invalid
    """
    try:
        with path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Cannot read family configuration {path}", setting="families", original_error=e
        ) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(
            "Family configuration must be a mapping", setting="families", expected="mapping"
        )

    families: dict[str, FamilyConfig] = {}
    for family_id, values in raw.items():
        try:
            families[str(family_id)] = FamilyConfig(**(values or {}))
        except (ValidationError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid configuration for family '{family_id}'",
                setting=str(family_id),
                original_error=e,
            ) from e

    logger.info("family_configs_loaded", path=str(path), families=sorted(families))
    return families


# Global settings instance (singleton pattern)
_settings: LifecycleSettings | None = None


def get_lifecycle_settings(force_reload: bool = False) -> LifecycleSettings:
    """Get or create lifecycle settings.

    Args:
        force_reload: Force reload from environment

    Returns:
        LifecycleSettings instance

    Raises:
        ConfigurationError: If environment values are malformed
    """
    global _settings

    if _settings is None or force_reload:
        try:
            _settings = LifecycleSettings()
        except ValidationError as e:
            raise ConfigurationError(
                "Invalid lifecycle settings", setting="MODELCYCLE_*", original_error=e
            ) from e

        logger.info(
            "lifecycle_settings_initialized",
            enabled=_settings.enabled,
            drift_threshold=_settings.drift_threshold,
            auto_deploy_threshold=_settings.auto_deploy_threshold,
            max_retries=_settings.max_retries,
            dry_run=_settings.dry_run,
        )

    return _settings
