"""Claw Control Center settings.

Values come from (highest first) CLAW_* environment variables, a .env file
in the working directory, then the defaults below.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Board server and dispatcher knobs."""

    model_config = SettingsConfigDict(
        env_prefix="CLAW_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    data_dir: Path = Field(default=Path.home() / ".clawhub")

    # HTTP bridge
    host: str = "127.0.0.1"
    port: int = Field(default=8787, ge=1, le=65535)
    log_level: str = "INFO"

    # Agent registry
    heartbeat_stale_seconds: int = Field(default=300, gt=0)

    # Notification dispatcher
    dispatcher_enabled: bool = True
    notification_poll_interval: float = Field(default=5.0, gt=0)
    delivery_timeout: float = Field(default=10.0, gt=0)
    notification_retention_days: int = Field(default=7, gt=0)
    delivery_max_attempts: int = Field(default=8, ge=1)
    delivery_backoff_base: float = Field(default=5.0, gt=0)
    delivery_backoff_max: float = Field(default=300.0, gt=0)
    agent_port: int = 18789
    agent_token: str = ""

    @field_validator("data_dir", mode="before")
    @classmethod
    def _expand_data_dir(cls, value: str | Path) -> Path:
        return Path(value).expanduser()

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def load(cls, **overrides) -> "Settings":
        """Build settings from the environment, with keyword overrides on top."""
        return cls(**overrides)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return Settings.load()


def get_config_dir(settings: Settings | None = None) -> Path:
    """Data directory, created on first use."""
    path = (settings or get_settings()).data_dir
    path.mkdir(parents=True, exist_ok=True)
    return path
