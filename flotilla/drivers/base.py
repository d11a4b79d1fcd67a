"""Driver base class - container runtime abstraction.

Driver is responsible ONLY for network and container lifecycle.
It does NOT handle:
- Address allocation (the caller picks every IP)
- Readiness polling
- Retry or teardown ordering

Every driver call may take seconds; callers await them to completion and
never spin on them.

All resources created by a driver SHOULD be labeled with:
- flotilla.managed
- flotilla.instance_id
- flotilla.network (network name)
"""

from __future__ import annotations

import ipaddress
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

# Container path -> file content (raw bytes, text, or a host file to copy)
FileManifest = Mapping[str, bytes | str | Path]


class ContainerStatus(str, Enum):
    """Container status from driver's perspective."""

    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    REMOVING = "removing"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class NetworkHandle:
    """Opaque reference to a network created by a driver."""

    id: str
    name: str
    subnet: IPNetwork
    gateway: IPAddress


@dataclass(frozen=True)
class Mount:
    """Bind mount of a host directory into a container."""

    source: str  # host path
    target: str  # container path
    read_only: bool = False


@dataclass
class ContainerHandle:
    """Reference to a service container started by a driver."""

    id: str
    name: str
    ip: IPAddress
    network_id: str
    # Logical port name -> (host, port), only when ports are published
    host_ports: dict[str, tuple[str, int]] = field(default_factory=dict)


@dataclass
class ContainerInfo:
    """Container information from driver."""

    container_id: str
    status: ContainerStatus
    exit_code: int | None = None


@dataclass(frozen=True)
class ExecResult:
    """Result of a command executed inside a container."""

    exit_code: int
    output: str


class Driver(ABC):
    """Abstract driver interface for networks and service containers."""

    # Whether concurrent calls from several executors are safe.
    # When False the suite runner serializes every call through one lock.
    thread_safe: bool = True

    @abstractmethod
    async def create_network(
        self,
        name: str,
        subnet: IPNetwork,
        *,
        gateway: IPAddress,
        labels: dict[str, str] | None = None,
    ) -> NetworkHandle:
        """Create an isolated network over exactly `subnet`.

        Raises:
            NetworkCreateFailedError: If the runtime refuses the network
        """
        ...

    @abstractmethod
    async def destroy_network(self, network: NetworkHandle) -> None:
        """Destroy a network.

        Idempotent: destroying an unknown network is not an error. Succeeds
        only once no container is attached.

        Raises:
            NetworkDestroyFailedError: If the runtime refuses to remove it
        """
        ...

    @abstractmethod
    async def start_service(
        self,
        network: NetworkHandle,
        *,
        name: str,
        image: str,
        ip: IPAddress,
        ports: Mapping[str, int],
        mounts: Sequence[Mount] = (),
        entrypoint: Sequence[str] | None = None,
        cmd: Sequence[str] | None = None,
        env: Mapping[str, str] | None = None,
        labels: dict[str, str] | None = None,
        alias: str | None = None,
    ) -> ContainerHandle:
        """Create and start a container bound to `ip` on `network`.

        Args:
            network: Network from create_network()
            name: Container name (unique per runtime)
            image: Image reference
            ip: Address to bind on the network (chosen by the caller)
            ports: Logical port name -> exposed container port (tcp)
            mounts: Bind mounts
            entrypoint: Entrypoint override
            cmd: Command override
            env: Environment variables
            labels: Additional labels
            alias: DNS alias on the network

        Raises:
            ImagePullFailedError: If the image is unavailable
            AddressInUseError: If `ip` is already taken on the network
            StartFailedError: For any other create/start failure
        """
        ...

    @abstractmethod
    async def stop_service(self, container: ContainerHandle, *, grace: float) -> None:
        """Stop and remove a container.

        Best-effort: escalates to forced termination after `grace` seconds.
        Idempotent: stopping a container that is already gone is not an error.

        Raises:
            StopFailedError: If the runtime could not remove the container
        """
        ...

    @abstractmethod
    async def copy_files_into(self, container: ContainerHandle, manifest: FileManifest) -> None:
        """Copy files into a running container.

        Raises:
            CopyFilesFailedError: If any file could not be written
        """
        ...

    @abstractmethod
    async def inspect(self, container: ContainerHandle) -> ContainerInfo:
        """Get container status."""
        ...

    async def exec_command(self, container: ContainerHandle, command: Sequence[str]) -> ExecResult:
        """Run a command inside a container and wait for it to exit.

        Raises:
            ExecFailedError: If the command could not be run
        """
        raise NotImplementedError("Command execution not supported by this driver")

    async def logs(self, container: ContainerHandle, tail: int = 100) -> str:
        """Get container logs."""
        raise NotImplementedError("Log retrieval not supported by this driver")

    async def close(self) -> None:
        """Release client resources held by the driver."""
        return None
