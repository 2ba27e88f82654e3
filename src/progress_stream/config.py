"""
Configuration management for progress-stream.

Handles:
- Config file loading from the path in PROGRESS_STREAM_CONFIG
- Environment variable overrides for the wait timeout
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field


class ProgressConfig(BaseModel):
    """Tracker and registry behaviour."""
    default_wait_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds wait_for_signal blocks when the caller's scope has no deadline.",
    )
    send_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds a single WebSocket send may take before the observer is dropped.",
    )
    tracker_ttl: Optional[float] = Field(
        default=None,
        gt=0,
        description="Idle seconds after which an unobserved tracker is swept. None disables sweeping.",
    )
    sweep_interval: float = Field(default=30.0, gt=0)


class ServerConfig(BaseModel):
    """HTTP/WebSocket endpoint settings."""
    host: str = "127.0.0.1"
    port: int = 8765
    route_path: str = "/api/v1/progress/{progress_id}"
    max_streams: int = Field(
        default=64,
        ge=1,
        description="Open observer streams allowed at once; extra connections are closed with 1013.",
    )


class Config(BaseModel):
    """Main configuration model."""
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


class ConfigManager:
    """Manages configuration loading and access."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config: Optional[Config] = None
        self._config_path = config_path

    @property
    def config_path(self) -> Optional[Path]:
        """Get the config file path."""
        if self._config_path is None:
            env_path = get_env_var("PROGRESS_STREAM_CONFIG")
            if env_path:
                self._config_path = Path(env_path)
        return self._config_path

    def load(self) -> Config:
        """Load configuration from file, or return defaults."""
        if self._config is not None:
            return self._config

        data = {}
        if self.config_path and self.config_path.exists():
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f) or {}

        timeout = get_env_var("PROGRESS_STREAM_DEFAULT_WAIT_TIMEOUT")
        if timeout:
            data.setdefault("progress", {})["default_wait_timeout"] = float(timeout)

        self._config = Config(**data)
        return self._config

    def save(self, config: Config) -> None:
        """Save configuration to file."""
        if self.config_path is None:
            raise ValueError("Cannot save config: no config path set")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w') as f:
            yaml.dump(config.model_dump(), f, default_flow_style=False, sort_keys=False)

        self._config = config

    @property
    def config(self) -> Config:
        """Get the current configuration (loads if needed)."""
        return self.load()


def get_env_var(name: str, required: bool = False) -> Optional[str]:
    """Get an environment variable, optionally raising if missing."""
    value = os.environ.get(name)
    if required and not value:
        raise ValueError(f"Required environment variable {name} is not set")
    return value


# Global config manager instance
config_manager = ConfigManager()
