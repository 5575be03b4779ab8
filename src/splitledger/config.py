"""Configuration management for SplitLedger."""

import socket
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SPLITLEDGER_",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote authoritative store (None = local-only mode)
    remote_url: str | None = None
    remote_token: str | None = None
    device_id: str = Field(default_factory=socket.gethostname)

    # Sync timing (seconds)
    sync_timeout: float = Field(default=30.0, gt=0)
    sync_interval: float = Field(default=60.0, gt=0)
    backoff_initial: float = Field(default=5.0, gt=0)
    backoff_max: float = Field(default=900.0, gt=0)
    backoff_factor: float = Field(default=2.0, ge=1.0)

    # Database path
    database_path: Path = Path.home() / ".splitledger" / "splitledger.db"

    def __init__(self, **kwargs):
        """Initialize settings and create database directory if needed."""
        super().__init__(**kwargs)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def sync_enabled(self) -> bool:
        """True when a remote store is configured."""
        return bool(self.remote_url)


def load_settings() -> Settings:
    """Load application settings from environment variables."""
    try:
        return Settings()
    except Exception as e:
        raise ConfigurationError(
            f"Failed to load settings. Check your SPLITLEDGER_* environment "
            f"variables or .env file.\n"
            f"Error: {e}"
        ) from e
