"""Centralized configuration using pydantic-settings. All values are env-configurable."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="RUNMET_")

    # Storage
    database_url: str = "sqlite:///runmet.db"

    # Calendar
    timezone: str = "UTC"
    week_start: int = 6  # Python weekday numbering, 6 = Sunday

    # Cache and integrity
    drift_error_threshold: int = 10
    best_task_min_runs: int = 5
    recent_runs_window: int = 10

    # Queries
    top_runs_limit: int = 3

    # Monitoring
    log_level: str = "INFO"
