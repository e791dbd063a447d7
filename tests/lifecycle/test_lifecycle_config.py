"""Tests for lifecycle configuration."""

import os
from datetime import timedelta
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from modelcycle.exceptions import ConfigurationError
from modelcycle.lifecycle.config import (
    FamilyConfig,
    LifecycleSettings,
    get_lifecycle_settings,
    load_family_configs,
)


class TestLifecycleSettings:
    """Test LifecycleSettings model."""

    def test_defaults(self):
        """Test LifecycleSettings with default values."""
        with patch.dict(os.environ, {}, clear=True):
            settings = LifecycleSettings(_env_file=None)

        assert settings.enabled is False
        assert settings.drift_threshold == 0.03
        assert settings.drift_window == timedelta(days=7)
        assert settings.min_training_samples == 50
        assert settings.schedule_interval == timedelta(days=7)
        assert settings.primary_metric == "accuracy"
        assert settings.min_quality_score == 0.5
        assert settings.regression_tolerance == 0.01
        assert settings.auto_deploy_threshold == 0.02
        assert settings.max_retries == 3
        assert settings.training_timeout == timedelta(hours=6)
        assert settings.dry_run is False

    def test_environment_overrides(self):
        """Test MODELCYCLE_* environment variables."""
        env = {
            "MODELCYCLE_DRIFT_THRESHOLD": "0.05",
            "MODELCYCLE_MAX_RETRIES": "5",
            "MODELCYCLE_SCHEDULE_INTERVAL": "P1D",
            "MODELCYCLE_DRY_RUN": "true",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = LifecycleSettings(_env_file=None)

        assert settings.drift_threshold == 0.05
        assert settings.max_retries == 5
        assert settings.schedule_interval == timedelta(days=1)
        assert settings.dry_run is True

    def test_threshold_must_be_fraction(self):
        """Test threshold validation."""
        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None, drift_threshold=1.5)

        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None, auto_deploy_threshold=-0.1)

    def test_durations_must_be_positive(self):
        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None, drift_window=timedelta(0))

    def test_primary_metric_is_normalized(self):
        settings = LifecycleSettings(_env_file=None, primary_metric=" AUC ")

        assert settings.primary_metric == "auc"

        with pytest.raises(ValidationError):
            LifecycleSettings(_env_file=None, primary_metric="  ")

    def test_get_scheduler_params(self):
        settings = LifecycleSettings(_env_file=None, enabled=True, check_interval_hours=12)

        params = settings.get_scheduler_params()

        assert params["enabled"] is True
        assert params["check_interval_hours"] == 12
        assert "poll_interval_seconds" in params


class TestFamilyPolicy:
    """Test resolution of per-family overrides over system defaults."""

    def test_defaults_without_overrides(self):
        settings = LifecycleSettings(_env_file=None)

        policy = settings.policy_for()

        assert policy.drift_threshold == settings.drift_threshold
        assert policy.max_retries == settings.max_retries

    def test_family_config_overrides(self):
        settings = LifecycleSettings(_env_file=None)

        policy = settings.policy_for(
            FamilyConfig(drift_threshold=0.1, schedule_interval=timedelta(days=1))
        )

        assert policy.drift_threshold == 0.1
        assert policy.schedule_interval == timedelta(days=1)
        assert policy.auto_deploy_threshold == settings.auto_deploy_threshold

    def test_stored_overrides_ignore_none(self):
        settings = LifecycleSettings(_env_file=None)

        policy = settings.policy_for({"max_retries": 0, "drift_threshold": None})

        assert policy.max_retries == 0
        assert policy.drift_threshold == settings.drift_threshold

    def test_family_config_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            FamilyConfig(drift_treshold=0.1)

    def test_overrides_exclude_description(self):
        config = FamilyConfig(description="Ranker", max_retries=1)

        assert config.model_dump_overrides() == {"max_retries": 1}


class TestLoadFamilyConfigs:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "families.yaml"
        path.write_text(
            "content_performance:\n"
            "  drift_threshold: 0.03\n"
            "  schedule_interval: P7D\n"
            "engagement_prediction:\n"
        )

        configs = load_family_configs(path)

        assert set(configs) == {"content_performance", "engagement_prediction"}
        assert configs["content_performance"].schedule_interval == timedelta(days=7)
        assert configs["engagement_prediction"].model_dump_overrides() == {}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_family_configs(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "families.yaml"
        path.write_text("content_performance: [unclosed\n")

        with pytest.raises(ConfigurationError):
            load_family_configs(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "families.yaml"
        path.write_text("- content_performance\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_family_configs(path)

    def test_invalid_family(self, tmp_path):
        path = tmp_path / "families.yaml"
        path.write_text("content_performance:\n  drift_threshold: 2.0\n")

        with pytest.raises(ConfigurationError) as exc_info:
            load_family_configs(path)

        assert exc_info.value.context["setting"] == "content_performance"


class TestGetLifecycleSettings:
    def test_singleton_and_reload(self):
        with patch.dict(os.environ, {"MODELCYCLE_MAX_RETRIES": "7"}, clear=True):
            first = get_lifecycle_settings(force_reload=True)
            second = get_lifecycle_settings()

        assert first is second
        assert first.max_retries == 7

    def test_malformed_environment(self):
        with patch.dict(os.environ, {"MODELCYCLE_DRIFT_THRESHOLD": "lots"}, clear=True):
            with pytest.raises(ConfigurationError):
                get_lifecycle_settings(force_reload=True)
