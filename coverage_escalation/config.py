"""Service configuration using Pydantic Settings."""

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from ESCALATION_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="ESCALATION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_format: str = "json"  # 'json' or 'text'
    log_level: str = "INFO"
    service_name: str = "coverage-escalation"

    # Scheduler loop
    scheduler_enabled: bool = True
    scheduler_interval_seconds: int = Field(default=60, gt=0)
    max_conflict_retries: int = Field(default=3, ge=0)

    # Off by default: expiry is normally an external decision
    auto_expire_on_deadline: bool = False

    # JSON file with per-location rule sets; built-in defaults when unset
    rules_path: Path | None = None

    # Defaults for new broadcasts
    default_max_tiers: int = Field(default=3, ge=1)
    default_response_deadline_minutes: int = Field(default=240, gt=0)


settings = Settings()
