"""Configuration for daemontop.

The dashboard is configured from a JSON file:

    {
        "channel_url": "ws://localhost:8080/ws/daemons",
        "poll_rate": 2.0,
        "daemons": [
            {
                "id": "5a1c",
                "name": "build_01",
                "host": "build-01.example.org",
                "cadvisor_api": "http://build-01.example.org:8080/api/v1.3",
                "containers": ["3f2a9c"]
            }
        ]
    }

Every field has a default, so an empty object is a valid configuration.
"""

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from daemontop.exceptions import ConfigurationError
from daemontop.models import DaemonRef

DEFAULT_CHANNEL_URL = "ws://localhost:8080/ws/daemons"

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})


class DaemonConfig(BaseModel):
    """A monitored daemon and the containers to sample on it."""

    id: str = Field(min_length=1)
    name: str | None = None
    host: str = "localhost"
    cadvisor_api: str | None = None
    containers: list[str] = Field(default_factory=list)

    @property
    def is_local(self) -> bool:
        """Check if the daemon runs on this machine."""
        return self.host in LOCAL_HOSTS or self.host.startswith("unix:")

    def to_ref(self) -> DaemonRef:
        """Identity used on the channel."""
        return DaemonRef(id=self.id, name=self.name)


class DashboardConfig(BaseModel):
    """Top-level dashboard configuration."""

    channel_url: str = DEFAULT_CHANNEL_URL
    poll_rate: float = Field(default=2.0, ge=0.1)
    http_timeout: float = Field(default=5.0, gt=0)
    open_timeout: float = Field(default=10.0, gt=0)
    # Clears stalled fetching flags; None keeps them until a response arrives
    fetch_timeout: float | None = Field(default=None, gt=0)
    log_file: Path | None = None
    log_level: str = "INFO"
    daemons: list[DaemonConfig] = Field(default_factory=list)

    @field_validator("channel_url")
    @classmethod
    def _check_channel_url(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            raise ValueError("channel_url must be a ws:// or wss:// URL")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level: {value}")
        return level

    @classmethod
    def default(cls) -> "DashboardConfig":
        """Configuration used when no file is given."""
        return cls()


def load_config(path: Path) -> DashboardConfig:
    """
    Load and validate a configuration file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

    try:
        return DashboardConfig.model_validate_json(text)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid config file {path}:\n{e}") from e
