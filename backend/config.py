"""
Application configuration using pydantic-settings.

Loads configuration from environment variables with sensible defaults.
"""
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database (SQLite for local dev, PostgreSQL for production)
    database_url: str = "sqlite:///./statement_audit.db"

    # Application
    debug: bool = False
    log_level: str = "INFO"
    json_logs: bool = True

    # Audit engine thresholds
    balance_tolerance: float = 0.01
    large_amount_threshold: float = 10_000_000

    # Learning store thresholds
    auto_apply_confidence: float = 0.7
    high_confidence_threshold: float = 0.8
    high_confidence_pattern_count: int = 10

    # Feedback workflow
    feedback_learning_window: int = 50
    bulk_feedback_learning_window: int = 100
    improvement_window_days: int = 30

    # Optional override for the bank profile table
    bank_profiles_path: Optional[Path] = None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

# Clear cache on module load
get_settings.cache_clear()
