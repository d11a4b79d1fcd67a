"""Service descriptors and service contexts.

A ServiceSpec is what a test initializer submits to NetworkContext.add_service.
The network realizes it into a ServiceContext: a per-service handle with a
stable ID, the address assigned from the network's allocator, shared-folder
paths and a lifecycle state machine:

    PROVISIONING -> STARTING -> READY -> STOPPED
          \\______________\\________\\-> FAILED

Only the owning NetworkContext drives transitions. Terminal states (STOPPED,
FAILED) accept no further transitions.
"""

from __future__ import annotations

import asyncio
import inspect
import re
import weakref
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import structlog

from flotilla.drivers.base import ContainerHandle, ExecResult, FileManifest, IPAddress
from flotilla.errors import (
    FlotillaError,
    InvalidStateTransitionError,
    ServiceNotFoundError,
)
from flotilla.utils.calls import is_async_callable

if TYPE_CHECKING:
    from flotilla.networks.network import NetworkContext

logger = structlog.get_logger()

_SERVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@runtime_checkable
class Service(Protocol):
    """What the core requires of every service: identity, address, availability."""

    @property
    def service_id(self) -> str: ...

    @property
    def ip_address(self) -> str: ...

    def is_available(self) -> bool | Awaitable[bool]: ...


# Availability check: receives the service's context, returns (or resolves to) a bool
AvailabilityCheck = Callable[["ServiceContext"], "bool | Awaitable[bool]"]

# Generated file content: raw bytes, text, or a factory given the service IP
GeneratedFile = bytes | str | Callable[[str], bytes | str]


@dataclass(frozen=True)
class ServiceLaunch:
    """Launch-time facts handed to a command factory."""

    ip: str
    # Generated file ID -> path inside the container
    shared_paths: Mapping[str, str]


CommandFactory = Callable[[ServiceLaunch], Sequence[str]]


@dataclass(frozen=True)
class ServiceSpec:
    """Service descriptor submitted by a test initializer. Immutable."""

    service_id: str
    image: str

    # Logical port name -> exposed container port (tcp)
    ports: Mapping[str, int] = field(default_factory=dict)

    entrypoint: Sequence[str] | None = None
    # Static command, or a factory given the assigned IP and generated file paths
    command: Sequence[str] | CommandFactory | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    # Container path -> content, copied in after the container starts
    files: FileManifest = field(default_factory=dict)

    # File ID -> content, written on the host before start and bind-mounted
    generated_files: Mapping[str, GeneratedFile] = field(default_factory=dict)

    # None means "ready as soon as the container runs"
    availability: AvailabilityCheck | None = None

    # Per-service readiness overrides (None = framework default)
    poll_interval: float | None = None
    readiness_deadline: float | None = None

    # Per-service stop grace override (None = framework default)
    stop_grace: float | None = None

    labels: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.service_id:
            raise ValueError("service_id must be a non-empty string")
        if not _SERVICE_ID_PATTERN.match(self.service_id):
            raise ValueError(
                f"service_id {self.service_id!r} may only contain letters, digits, '_', '.' and '-'"
            )
        if not self.image:
            raise ValueError("image must be a non-empty string")
        for name, port in self.ports.items():
            if not 0 < int(port) < 65536:
                raise ValueError(f"Port {name!r} out of range: {port}")
        for path in self.files:
            if not path.startswith("/"):
                raise ValueError(f"File path must be absolute: {path!r}")
        for file_id in self.generated_files:
            if not file_id or "/" in file_id or file_id in (".", ".."):
                raise ValueError(f"Generated file ID must be a plain file name: {file_id!r}")
        for value, label in ((self.poll_interval, "poll_interval"), (self.readiness_deadline, "readiness_deadline")):
            if value is not None and value <= 0:
                raise ValueError(f"{label} must be positive")
        # Freeze caller-owned mappings so the descriptor cannot change after submission
        for name in ("ports", "env", "files", "generated_files", "labels"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))
        for name in ("entrypoint",):
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, tuple(value))
        if self.command is not None and not callable(self.command):
            object.__setattr__(self, "command", tuple(self.command))

    def resolve_command(self, launch: ServiceLaunch) -> list[str] | None:
        if self.command is None:
            return None
        if callable(self.command):
            return list(self.command(launch))
        return list(self.command)


class ServiceState(str, Enum):
    """Service lifecycle state."""

    PROVISIONING = "provisioning"
    STARTING = "starting"
    READY = "ready"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ServiceState.STOPPED, ServiceState.FAILED)


_ALLOWED_TRANSITIONS: dict[ServiceState, frozenset[ServiceState]] = {
    ServiceState.PROVISIONING: frozenset({ServiceState.STARTING, ServiceState.FAILED}),
    ServiceState.STARTING: frozenset({ServiceState.READY, ServiceState.FAILED}),
    ServiceState.READY: frozenset({ServiceState.STOPPED, ServiceState.FAILED}),
    ServiceState.STOPPED: frozenset(),
    ServiceState.FAILED: frozenset(),
}


class ServiceContext:
    """Handle on one realized service.

    User code sees a read-only view (service_id, ip_address, ports, shared
    paths) plus helpers that act on the container. The `_transition` family
    is reserved for the owning NetworkContext.

    The back-reference to the network is weak: a ServiceContext never keeps
    its network alive.
    """

    def __init__(
        self,
        spec: ServiceSpec,
        ip: IPAddress,
        network: NetworkContext,
        *,
        shared_paths: Mapping[str, str] | None = None,
        host_paths: Mapping[str, str] | None = None,
    ) -> None:
        self._spec = spec
        self._ip = ip
        self._network_ref = weakref.ref(network)
        self._shared_paths = MappingProxyType(dict(shared_paths or {}))
        self._host_paths = MappingProxyType(dict(host_paths or {}))
        self._state = ServiceState.PROVISIONING
        self._error: BaseException | None = None
        self._container: ContainerHandle | None = None
        self._address_released = False
        self._log = logger.bind(service_id=spec.service_id, ip=str(ip))

    def __repr__(self) -> str:
        return (
            f"ServiceContext(service_id={self.service_id!r}, ip={self.ip_address!r}, "
            f"state={self._state.value})"
        )

    # Read-only view

    @property
    def service_id(self) -> str:
        return self._spec.service_id

    @property
    def ip_address(self) -> str:
        return str(self._ip)

    @property
    def ip(self) -> IPAddress:
        return self._ip

    @property
    def spec(self) -> ServiceSpec:
        return self._spec

    @property
    def ports(self) -> Mapping[str, int]:
        return self._spec.ports

    @property
    def host_ports(self) -> Mapping[str, tuple[str, int]]:
        if self._container is None:
            return MappingProxyType({})
        return MappingProxyType(dict(self._container.host_ports))

    @property
    def shared_paths(self) -> Mapping[str, str]:
        """Generated file ID -> path inside the container."""
        return self._shared_paths

    @property
    def host_paths(self) -> Mapping[str, str]:
        """Generated file ID -> path on the host."""
        return self._host_paths

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def error(self) -> BaseException | None:
        return self._error

    @property
    def container(self) -> ContainerHandle | None:
        return self._container

    @property
    def network(self) -> NetworkContext | None:
        """The owning network, or None once it has been garbage collected."""
        return self._network_ref()

    def port(self, name: str) -> int:
        try:
            return self._spec.ports[name]
        except KeyError:
            raise KeyError(f"Service {self.service_id!r} exposes no port named {name!r}") from None

    def url(self, port: str, path: str = "", *, scheme: str = "http") -> str:
        """URL of a logical port on this service's network address."""
        host = self.ip_address if self._ip.version == 4 else f"[{self.ip_address}]"
        return f"{scheme}://{host}:{self.port(port)}/{path.lstrip('/')}"

    async def is_available(self) -> bool:
        """Run the service's availability check once."""
        check = self._spec.availability
        if check is None:
            return self._state in (ServiceState.STARTING, ServiceState.READY)
        if is_async_callable(check):
            result = await check(self)
        else:
            # Blocking checks run off the event loop so peer tests keep moving
            result = await asyncio.to_thread(check, self)
            if inspect.isawaitable(result):
                result = await result
        return bool(result)

    # Container helpers

    def _require_running(self) -> tuple[NetworkContext, ContainerHandle]:
        network = self.network
        if network is None or self._container is None or self._state.is_terminal:
            raise ServiceNotFoundError(
                f"Service {self.service_id!r} has no running container",
                details={"service_id": self.service_id, "state": self._state.value},
            )
        return network, self._container

    async def copy_files(self, manifest: FileManifest) -> None:
        """Copy files into the running container."""
        network, container = self._require_running()
        await network.driver.copy_files_into(container, manifest)

    async def exec_command(self, command: Sequence[str]) -> ExecResult:
        """Run a command inside the container and wait for it."""
        network, container = self._require_running()
        return await network.driver.exec_command(container, command)

    async def logs(self, tail: int = 100) -> str:
        network, container = self._require_running()
        return await network.driver.logs(container, tail)

    # Transitions (owning NetworkContext only)

    def _attach(self, container: ContainerHandle) -> None:
        self._container = container

    def _detach(self) -> ContainerHandle | None:
        container, self._container = self._container, None
        return container

    def _release_address(self) -> bool:
        """Mark the address as handed back. False if it already was."""
        if self._address_released:
            return False
        self._address_released = True
        return True

    def _transition(self, target: ServiceState, error: BaseException | None = None) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise InvalidStateTransitionError(
                f"Service {self.service_id!r} cannot go from {self._state.value} to {target.value}",
                details={
                    "service_id": self.service_id,
                    "from": self._state.value,
                    "to": target.value,
                },
            )
        self._log.debug("service.transition", from_state=self._state.value, to_state=target.value)
        self._state = target
        if error is not None:
            self._error = error

    def _mark_starting(self) -> None:
        self._transition(ServiceState.STARTING)

    def _mark_ready(self) -> None:
        self._transition(ServiceState.READY)

    def _mark_stopped(self) -> None:
        self._transition(ServiceState.STOPPED)

    def _mark_failed(self, error: BaseException) -> None:
        """Move to FAILED unless already terminal."""
        if self._state.is_terminal:
            return
        self._transition(ServiceState.FAILED, error)

    def describe(self) -> dict[str, Any]:
        error = self._error
        return {
            "service_id": self.service_id,
            "ip": self.ip_address,
            "state": self._state.value,
            "ports": dict(self.ports),
            "container": self._container.name if self._container else None,
            "error": error.to_dict() if isinstance(error, FlotillaError) else (str(error) if error else None),
        }
