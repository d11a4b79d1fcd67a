"""Driver layer - container runtime abstraction."""

from flotilla.drivers.base import (
    ContainerHandle,
    ContainerInfo,
    ContainerStatus,
    Driver,
    ExecResult,
    Mount,
    NetworkHandle,
)
from flotilla.drivers.docker import DockerDriver
from flotilla.drivers.serialized import SerializedDriver

__all__ = [
    "ContainerHandle",
    "ContainerInfo",
    "ContainerStatus",
    "DockerDriver",
    "Driver",
    "ExecResult",
    "Mount",
    "NetworkHandle",
    "SerializedDriver",
]


def create_driver(config=None) -> Driver:
    """Build the driver selected by configuration."""
    from flotilla.config import get_settings

    driver_cfg = config or get_settings().driver
    if driver_cfg.type == "docker":
        return DockerDriver(driver_cfg.docker)
    raise ValueError(f"Unsupported driver type: {driver_cfg.type}")
