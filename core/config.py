"""
RecallEngine – Configuration
=============================
Settings are read from ``SRS_*`` environment variables or a ``.env`` file
in the project root.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _default_database_url() -> str:
    return f"sqlite:///{PROJECT_ROOT / 'data' / 'recall.db'}"


class Settings(BaseSettings):
    """Engine configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SRS_",
        env_file=str(PROJECT_ROOT / ".env"),
        extra="ignore",
    )

    database_url: str = Field(default_factory=_default_database_url)

    # Session coordinator
    idle_timeout_minutes: float = Field(default=30.0, gt=0)

    # Scheduler / harness acceptance targets
    snapshot_target_ms: float = Field(default=1000.0, gt=0)
    sm2_target_ms: float = Field(default=10.0, gt=0)
    memory_target_mb: float = Field(default=50.0, gt=0)

    log_level: str = "INFO"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
