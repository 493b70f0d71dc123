"""Unit tests for configuration management."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from waypoint.config import Settings
from waypoint.parsing.result_parser import PlanDefaults


class TestSettings:
    """Tests for Settings model."""

    def test_settings_from_env(self) -> None:
        """Test loading settings from environment variables."""
        with patch.dict(
            os.environ,
            {
                "ANTHROPIC_API_KEY": "test_anthropic_key",
                "ANTHROPIC_MODEL": "claude-opus-4-5-20251101",
                "DATABASE_URL": "postgresql://localhost/waypoint",
                "ENABLE_HYBRID_LOOP": "true",
                "HYBRID_MAX_ITERATIONS": "2",
                "ENGINE_TIMEOUT_SECONDS": "30",
            },
            clear=True,
        ):
            settings = Settings(_env_file=None)

            assert settings.anthropic_api_key == "test_anthropic_key"
            assert settings.anthropic_model == "claude-opus-4-5-20251101"
            assert settings.database_url == "postgresql://localhost/waypoint"
            assert settings.enable_hybrid_loop is True
            assert settings.hybrid_max_iterations == 2
            assert settings.engine_timeout_seconds == 30.0

    def test_settings_defaults(self) -> None:
        """Test default settings values."""
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test_key"}, clear=True):
            settings = Settings(_env_file=None)

            assert settings.anthropic_max_tokens == 4096
            assert settings.database_url == "sqlite:///.waypoint/waypoint.sqlite"
            assert settings.enable_hybrid_loop is False
            assert settings.hybrid_max_iterations == 3
            assert settings.generator_attempts == 3
            assert settings.reflection_limit == 5
            assert settings.task_pool_limit == 200
            assert settings.confidence_high == 0.90
            assert settings.confidence_low == 0.55
            assert settings.backfill_confidence == 0.5
            assert settings.backfill_alignment_score == 5.0
            assert settings.wave_chunk_size == 5
            assert settings.log_level == "INFO"
            assert settings.log_format == "json"

    def test_settings_missing_required(self) -> None:
        """Test that a missing API key raises a validation error."""
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ValidationError):
                Settings(_env_file=None)

    def test_confidence_range_validated(self) -> None:
        """Test that confidence_low may not exceed confidence_high."""
        with pytest.raises(ValidationError, match="confidence_low"):
            Settings(
                anthropic_api_key="key",
                confidence_high=0.5,
                confidence_low=0.8,
                _env_file=None,
            )

    def test_plan_defaults_follow_settings(self) -> None:
        """Test that repair constants are read from settings."""
        settings = Settings(
            anthropic_api_key="key",
            confidence_high=0.8,
            confidence_low=0.4,
            wave_chunk_size=3,
            _env_file=None,
        )

        defaults = PlanDefaults.from_settings(settings)

        assert defaults.confidence_high == 0.8
        assert defaults.confidence_low == 0.4
        assert defaults.dependency_confidence == 0.4
        assert defaults.wave_chunk_size == 3
