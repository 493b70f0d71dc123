"""Configuration management for Waypoint."""

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_parse_none_str="",
    )

    # Anthropic Configuration
    anthropic_api_key: str = Field(..., description="Anthropic API Key")
    anthropic_model: str = Field(default="claude-sonnet-4-5-20250929", description="Claude model")
    anthropic_max_tokens: int = Field(default=4096, description="Max tokens per request")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///.waypoint/waypoint.sqlite", description="SQLAlchemy connection URL"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or console")

    # Feature Flags
    enable_hybrid_loop: bool = Field(
        default=False,
        description="Run the hybrid iterative engine alongside the legacy engine",
    )

    # Engine Configuration
    hybrid_max_iterations: int = Field(
        default=3, description="Maximum generator/evaluator rounds (clamped to 1-3)"
    )
    generator_attempts: int = Field(
        default=3, description="Attempts per generator draft when its payload fails validation"
    )
    engine_timeout_seconds: float = Field(
        default=120.0, description="Wall-clock budget for a single engine run"
    )

    # Context Configuration
    reflection_limit: int = Field(default=5, description="Recent reflections loaded when none are selected")
    reflection_window_days: int = Field(default=30, description="Only reflections newer than this are recent")
    task_pool_limit: int = Field(default=200, description="Maximum candidate tasks per run")
    fallback_document_limit: int = Field(
        default=50, description="Documents scanned when the task pool is empty"
    )

    # Plan Repair Configuration
    confidence_high: float = Field(
        default=0.90, ge=0.0, le=1.0, description="Positional confidence for the first ordered task"
    )
    confidence_low: float = Field(
        default=0.55, ge=0.0, le=1.0, description="Positional confidence for the last ordered task"
    )
    backfill_confidence: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Confidence given to synthesized per-task scores"
    )
    backfill_alignment_score: float = Field(
        default=5.0, ge=0.0, le=10.0, description="Impact proxy when an included task has no alignment score"
    )
    wave_chunk_size: int = Field(default=5, ge=1, description="Tasks per default execution wave")

    @model_validator(mode="after")
    def _check_confidence_range(self) -> "Settings":
        if self.confidence_low > self.confidence_high:
            raise ValueError(
                f"confidence_low ({self.confidence_low}) must not exceed "
                f"confidence_high ({self.confidence_high})"
            )
        return self


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
