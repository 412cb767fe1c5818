"""
Configuration settings for the exam session engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Result Store (SQLAlchemy)
    # ========================================
    database_url: str = Field(
        default="sqlite:///data/exam_engine.db",
        description="Result Store connection string",
    )

    # ========================================
    # Snapshot persistence
    # ========================================
    session_dir: Path = Field(
        default=Path.home() / ".exam_engine" / "sessions",
        description="Directory for JSON session snapshots",
    )
    session_expiry_hours: int = Field(
        default=24,
        description="Snapshots older than this are not offered for resume",
    )

    # ========================================
    # Question Store (HTTP)
    # ========================================
    question_api_url: str = Field(
        default="http://localhost:3000",
        description="Base URL of the question API",
    )
    question_api_key: str = Field(
        default="",
        description="Bearer token for the question API",
    )
    question_api_timeout_seconds: float = Field(
        default=10.0,
        description="HTTP timeout for question API calls",
    )

    # ========================================
    # Scoring
    # ========================================
    default_passing_score: float = Field(
        default=0.85,
        description="Passing threshold (fraction) when the exam does not set one",
    )
    weak_objective_threshold: float = Field(
        default=0.6,
        description="Objectives below this accuracy are weak",
    )
    strong_objective_threshold: float = Field(
        default=0.75,
        description="Objectives at or above this accuracy are strong",
    )

    # ========================================
    # Timing
    # ========================================
    warning_fractions: str = Field(
        default="0.5,0.1,0.05",
        description="Remaining-time fractions that trigger a warning (comma-separated)",
    )
    tick_interval_seconds: float = Field(
        default=1.0,
        description="Clock driver tick period",
    )

    # ========================================
    # Integrity monitoring
    # ========================================
    devtools_size_threshold_px: int = Field(
        default=160,
        description="Outer/inner window size delta that suggests open devtools",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: str = Field(default="INFO", description="Log level for the CLI sink")

    def get_warning_fractions(self) -> tuple[float, ...]:
        """Parsed warning thresholds, largest first, each strictly between 0 and 1."""
        fractions = set()
        for part in self.warning_fractions.split(","):
            part = part.strip()
            if not part:
                continue
            value = float(part)
            if 0 < value < 1:
                fractions.add(value)
        return tuple(sorted(fractions, reverse=True))

    def get_scoring_config(self) -> dict[str, float]:
        """Get scoring thresholds as a dictionary."""
        return {
            "passing_score": self.default_passing_score,
            "weak_threshold": self.weak_objective_threshold,
            "strong_threshold": self.strong_objective_threshold,
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
