"""Docker driver."""

from flotilla.drivers.docker.docker import DockerDriver

__all__ = ["DockerDriver"]
