"""Configuration management for fleeting-proxmox."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from fleeting_proxmox.core.exceptions import ConfigurationError


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    output: str = "stderr"


class Settings(BaseModel):
    """Instance group settings."""

    url: str = Field(..., description="Proxmox VE base URL, e.g. https://pve.example.com:8006")
    pool: str = Field(..., description="Pool holding the group's virtual machines")
    credentials_file_path: str = Field(..., description="Path to the JSON credentials file")
    # Disables certificate checks for self-signed cluster endpoints
    insecure_skip_tls_verify: bool = False
    request_timeout_seconds: float = Field(30.0, gt=0)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str | Path) -> "Settings":
        """Load settings from YAML file.

        Args:
            path: Path to settings file

        Returns:
            Settings instance

        Raises:
            ConfigurationError: If file cannot be loaded or parsed
        """
        settings_path = Path(path).expanduser()

        if not settings_path.exists():
            raise ConfigurationError(f"Settings file not found: {settings_path}")

        try:
            with settings_path.open() as f:
                data = yaml.safe_load(f)
        except Exception as e:
            raise ConfigurationError(f"Failed to load settings: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid settings: expected a mapping in {settings_path}")

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(f"Invalid settings: {e}") from e
