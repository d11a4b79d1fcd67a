"""Flotilla configuration management.

Configuration sources (in priority order):
1. Environment variables (FLOTILLA_ prefix, `__` for nesting)
2. Config file (flotilla.yaml)
3. Defaults
"""

from __future__ import annotations

import os
import tempfile
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


class DockerConfig(BaseModel):
    """Docker driver configuration."""

    socket: str = "unix:///var/run/docker.sock"

    # Prefix for network and container names created by the driver
    network_prefix: str = "flotilla"

    # Image pull policy for service containers
    # - "always": pull before every start
    # - "if_not_present": pull only when the image is missing locally
    # - "never": fail when the image is missing locally
    image_pull_policy: Literal["always", "if_not_present", "never"] = "if_not_present"

    # Publish exposed ports on the host (ephemeral host ports)
    publish_ports: bool = False

    # Address used to reach published ports bound on all interfaces
    host_address: str = "127.0.0.1"

    # Written into the flotilla.instance_id label of everything the driver creates.
    # Default derivation order:
    #   1. FLOTILLA_DRIVER__DOCKER__INSTANCE_ID
    #   2. HOSTNAME env var
    #   3. "flotilla"
    instance_id: str | None = None

    def get_instance_id(self) -> str:
        if self.instance_id:
            return self.instance_id
        return os.environ.get("HOSTNAME", "flotilla")


class DriverConfig(BaseModel):
    """Driver layer configuration."""

    type: Literal["docker"] = "docker"
    docker: DockerConfig = Field(default_factory=DockerConfig)


class NetworkConfig(BaseModel):
    """Per-test network configuration."""

    # Supernet that per-test subnets are carved from. Must not overlap
    # networks already known to the container runtime.
    subnet_pool: str = "172.24.0.0/13"

    # Host directory holding generated files for services (one subdirectory per network)
    shared_dir: str = Field(
        default_factory=lambda: str(Path(tempfile.gettempdir()) / "flotilla")
    )

    # Where the per-service shared directory is mounted inside containers
    shared_mount: str = "/flotilla-shared"

    @field_validator("shared_mount")
    @classmethod
    def _absolute_mount(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("shared_mount must be an absolute container path")
        return value.rstrip("/") or "/"


class ReadinessConfig(BaseModel):
    """Framework-wide readiness polling defaults (overridable per service)."""

    poll_interval: float = Field(default=1.0, gt=0)
    deadline: float = Field(default=60.0, gt=0)

    # 1.0 keeps the interval constant; >1.0 backs off exponentially up to max_interval
    backoff_factor: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=5.0, gt=0)


class ExecutionConfig(BaseModel):
    """Suite runner and executor configuration."""

    parallelism: int = Field(default=4, ge=1)

    # Wall-clock deadline covering setup, initialize and run
    test_timeout: float = Field(default=300.0, gt=0)

    # Grace period given to a container before it is killed
    stop_grace: float = Field(default=10.0, ge=0)

    # How long an interrupted stage may take to unwind on its own before its
    # task is cancelled outright
    cancel_grace: float = Field(default=5.0, ge=0)


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    # Directory for per-test JSON-lines logs (None = keep captured logs in memory)
    capture_dir: str | None = None


class Settings(BaseSettings):
    """Flotilla settings."""

    model_config = SettingsConfigDict(
        env_prefix="FLOTILLA_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    driver: DriverConfig = Field(default_factory=DriverConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    readiness: ReadinessConfig = Field(default_factory=ReadinessConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # init kwargs carry the YAML file; environment variables must win over it
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file(path: str | Path | None = None) -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. Explicit path argument
    2. FLOTILLA_CONFIG_FILE environment variable
    3. ./flotilla.yaml
    4. /etc/flotilla/config.yaml
    """
    config_paths = [
        path,
        os.environ.get("FLOTILLA_CONFIG_FILE"),
        Path("flotilla.yaml"),
        Path("/etc/flotilla/config.yaml"),
    ]

    for candidate in config_paths:
        if candidate is None:
            continue
        candidate = Path(candidate)
        if candidate.exists():
            with open(candidate) as f:
                return yaml.safe_load(f) or {}

    return {}


def load_settings(path: str | Path | None = None) -> Settings:
    """Build settings from a YAML file (if any) overridden by environment variables."""
    file_config = _load_config_file(path)
    return Settings(**file_config)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    return load_settings()
