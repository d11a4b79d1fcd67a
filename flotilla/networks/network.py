"""NetworkContext - one isolated subnet and the services living on it.

A NetworkContext is owned by exactly one test executor. It owns:
- the driver-level network created over its subnet
- an AddressAllocator over that subnet
- an insertion-ordered mapping of service ID -> ServiceContext

State machine: OPEN -> CLOSING -> CLOSED. Once CLOSING no service may be
added, and in-flight readiness polling returns promptly. close() stops
services in reverse insertion order, releases every address and only then
destroys the network.
"""

from __future__ import annotations

import asyncio
import shutil
import uuid
from collections.abc import Iterator, Mapping
from enum import Enum
from pathlib import Path
from typing import Any

import structlog

from flotilla.drivers.base import (
    ContainerHandle,
    Driver,
    IPAddress,
    IPNetwork,
    Mount,
    NetworkHandle,
)
from flotilla.errors import (
    DuplicateServiceError,
    ExecutionCancelledError,
    NetworkClosedError,
    ServiceNotFoundError,
    TeardownFailedError,
)
from flotilla.networks.allocator import AddressAllocator, width_bits_of
from flotilla.readiness.poller import PollOutcome, ReadinessPoller
from flotilla.services.service import ServiceContext, ServiceLaunch, ServiceSpec, ServiceState

logger = structlog.get_logger()

DEFAULT_SHARED_MOUNT = "/flotilla-shared"


class NetworkState(str, Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


class NetworkContext:
    """Isolated network for a single test.

    Usage:
        network = NetworkContext(driver, subnet, name="flotilla-t1-1a2b3c4d")
        await network.open()
        try:
            api = await network.add_service(ServiceSpec("api", "nginx:alpine"))
            ...
        finally:
            await network.close()
    """

    def __init__(
        self,
        driver: Driver,
        subnet: IPNetwork,
        *,
        name: str,
        poller: ReadinessPoller | None = None,
        stop_grace: float = 10.0,
        shared_dir: str | Path | None = None,
        shared_mount: str = DEFAULT_SHARED_MOUNT,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        self._driver = driver
        self._allocator = AddressAllocator(subnet)
        self._name = name
        self._poller = poller or ReadinessPoller()
        self._stop_grace = stop_grace
        self._shared_root = Path(shared_dir) / name if shared_dir is not None else None
        self._shared_mount = shared_mount
        self._labels = dict(labels or {})

        self._handle: NetworkHandle | None = None
        self._opening: asyncio.Future | None = None
        self._state = NetworkState.OPEN
        self._sealed = False
        self._destroyed = False
        self._services: dict[str, ServiceContext] = {}
        # IDs between the duplicate check and registration
        self._reserved: set[str] = set()
        self._pending_starts: set[asyncio.Future] = set()

        self._closing = asyncio.Event()
        self._close_lock = asyncio.Lock()
        self._log = logger.bind(network=name, subnet=str(subnet))

    def __repr__(self) -> str:
        return (
            f"NetworkContext(name={self._name!r}, subnet={str(self.subnet)!r}, "
            f"state={self._state.value}, services={len(self._services)})"
        )

    # Read-only view

    @property
    def name(self) -> str:
        return self._name

    @property
    def subnet(self) -> IPNetwork:
        return self._allocator.subnet

    @property
    def width_bits(self) -> int:
        return width_bits_of(self.subnet)

    @property
    def gateway(self) -> IPAddress:
        return self._allocator.gateway

    @property
    def allocator(self) -> AddressAllocator:
        return self._allocator

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def handle(self) -> NetworkHandle | None:
        return self._handle

    @property
    def state(self) -> NetworkState:
        return self._state

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def destroyed(self) -> bool:
        """True once the driver-level network is gone (or was never created)."""
        return self._destroyed

    @property
    def services(self) -> Mapping[str, ServiceContext]:
        return dict(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._services

    def __iter__(self) -> Iterator[ServiceContext]:
        return iter(list(self._services.values()))

    def get_service(self, service_id: str) -> ServiceContext:
        try:
            return self._services[service_id]
        except KeyError:
            raise ServiceNotFoundError(
                f"Service {service_id!r} not found in network {self._name!r}",
                details={"service_id": service_id, "network": self._name},
            ) from None

    # Lifecycle

    async def open(self) -> NetworkHandle:
        """Create the driver-level network over this context's subnet."""
        if self._handle is not None:
            return self._handle
        if self._state is not NetworkState.OPEN:
            raise NetworkClosedError(
                f"Network {self._name!r} is {self._state.value}",
                details={"network": self._name},
            )
        if self._opening is None:
            self._log.info("network.create")
            labels = {"flotilla.network": self._name, **self._labels}
            self._opening = asyncio.ensure_future(
                self._driver.create_network(
                    self._name,
                    self.subnet,
                    gateway=self.gateway,
                    labels=labels,
                )
            )
            self._opening.add_done_callback(self._on_opened)
        # A create already handed to the driver finishes so close() can destroy it
        self._handle = await asyncio.shield(self._opening)
        return self._handle

    def _on_opened(self, future: asyncio.Future) -> None:
        if not future.cancelled() and future.exception() is None:
            self._handle = future.result()

    def seal(self) -> None:
        """Refuse further add_service calls while leaving running services alone."""
        self._sealed = True

    def begin_closing(self) -> None:
        """Enter CLOSING: reject new services and stop in-flight readiness polling."""
        if self._state is NetworkState.OPEN:
            self._log.info("network.closing")
            self._state = NetworkState.CLOSING
        self._closing.set()

    def _ensure_accepting(self, service_id: str) -> None:
        if self._state is not NetworkState.OPEN:
            reason = self._state.value
        elif self._handle is None:
            reason = "not open"
        elif self._sealed:
            reason = "sealed"
        else:
            return
        raise NetworkClosedError(
            f"Network {self._name!r} does not accept new services ({reason})",
            details={"network": self._name, "service_id": service_id, "reason": reason},
        )

    async def add_service(self, spec: ServiceSpec) -> ServiceContext:
        """Start a service and wait until it is ready.

        Returns only once the service is READY. On any failure the service is
        left FAILED, its container (if one was started) is stopped, and the
        error is raised.

        Raises:
            NetworkClosedError: Network is closing, closed or sealed
            DuplicateServiceError: service_id already exists in this network
            PoolExhaustedError: No free address left in the subnet
            ImagePullFailedError / AddressInUseError / StartFailedError: From the driver
            CopyFilesFailedError: Injecting `spec.files` failed
            ReadinessTimeoutError: Availability check never passed
            ExecutionCancelledError: Network started closing while polling
        """
        self._ensure_accepting(spec.service_id)
        if spec.service_id in self._services or spec.service_id in self._reserved:
            raise DuplicateServiceError(
                f"Service {spec.service_id!r} already exists in network {self._name!r}",
                details={"service_id": spec.service_id, "network": self._name},
            )

        ip = self._allocator.allocate()
        log = self._log.bind(service_id=spec.service_id, ip=str(ip))

        self._reserved.add(spec.service_id)
        try:
            host_dir, shared_paths, host_paths = await self._write_generated_files(spec, ip)
        except BaseException:
            if ip in self._allocator:
                self._allocator.release(ip)
            raise
        finally:
            # Registration below does not yield
            self._reserved.discard(spec.service_id)

        service = ServiceContext(
            spec,
            ip,
            self,
            shared_paths=shared_paths,
            host_paths=host_paths,
        )
        # Registered before anything can fail so close() always sees it
        self._services[spec.service_id] = service
        log.info("network.add_service", image=spec.image)

        service._mark_starting()
        try:
            await self._start_container(service, host_dir)
        except ExecutionCancelledError:
            raise
        except Exception as e:
            if not service.state.is_terminal:
                service._mark_failed(e)
            log.warning("network.add_service.start_failed", error=str(e))
            raise

        try:
            if spec.files:
                await self._driver.copy_files_into(service.container, spec.files)
        except Exception as e:
            if not service.state.is_terminal:
                service._mark_failed(e)
            log.warning("network.add_service.copy_failed", error=str(e))
            await self._stop_quietly(service)
            raise

        if service.state.is_terminal:
            await self._stop_quietly(service)
            raise self._not_ready_error(service)

        if spec.availability is None:
            service._mark_ready()
            log.info("network.add_service.ready")
            return service

        result = await self._poller.poll(service, closing=self._closing)
        # The service may have been removed or torn down while polling
        if result.outcome is PollOutcome.READY and service.state is ServiceState.READY:
            log.info("network.add_service.ready", attempts=result.attempts)
            return service

        # Container must be gone before the readiness error surfaces
        await self._stop_quietly(service)
        raise self._not_ready_error(service)

    def _not_ready_error(self, service: ServiceContext) -> BaseException:
        return service.error or ExecutionCancelledError(
            f"Service {service.service_id!r} did not become ready",
            details={"service_id": service.service_id},
        )

    async def _start_container(self, service: ServiceContext, host_dir: Path | None) -> None:
        spec = service.spec
        launch = ServiceLaunch(ip=service.ip_address, shared_paths=service.shared_paths)
        env = {
            **spec.env,
            "FLOTILLA_SERVICE_ID": spec.service_id,
            "FLOTILLA_SERVICE_IP": service.ip_address,
        }
        mounts: list[Mount] = []
        if host_dir is not None:
            env["FLOTILLA_SHARED_DIR"] = self._shared_mount
            mounts.append(Mount(source=str(host_dir), target=self._shared_mount))
        labels = {"flotilla.service_id": spec.service_id, **spec.labels}

        assert self._handle is not None
        start = asyncio.ensure_future(
            self._driver.start_service(
                self._handle,
                name=f"{self._name}-{spec.service_id}",
                image=spec.image,
                ip=service.ip,
                ports=spec.ports,
                mounts=mounts,
                entrypoint=spec.entrypoint,
                cmd=spec.resolve_command(launch),
                env=env,
                labels=labels,
                alias=spec.service_id,
            )
        )
        self._pending_starts.add(start)

        def _adopt(future: asyncio.Future) -> None:
            self._pending_starts.discard(future)
            if not future.cancelled() and future.exception() is None:
                service._attach(future.result())

        start.add_done_callback(_adopt)

        # A start already handed to the driver is allowed to finish so that
        # its container is adopted and later stopped by close()
        await asyncio.shield(start)

        if service.state.is_terminal:
            # Removed or torn down while its container was starting
            await self._stop_quietly(service)
            raise self._not_ready_error(service)

        if self._closing.is_set():
            error = ExecutionCancelledError(
                f"Network {self._name!r} started closing while {spec.service_id!r} was starting",
                details={"service_id": spec.service_id},
            )
            service._mark_failed(error)
            await self._stop_quietly(service)
            raise error

    async def _write_generated_files(
        self, spec: ServiceSpec, ip: IPAddress
    ) -> tuple[Path | None, dict[str, str], dict[str, str]]:
        if self._shared_root is None:
            if spec.generated_files:
                raise ValueError("Generated files require a shared directory")
            return None, {}, {}

        host_dir = self._shared_root / f"{spec.service_id}-{uuid.uuid4().hex[:8]}"
        contents: dict[str, bytes] = {}
        for file_id, content in spec.generated_files.items():
            if callable(content):
                content = content(str(ip))
            contents[file_id] = content.encode() if isinstance(content, str) else bytes(content)

        def _write() -> None:
            host_dir.mkdir(parents=True, exist_ok=True)
            for file_id, data in contents.items():
                (host_dir / file_id).write_bytes(data)

        await asyncio.to_thread(_write)
        shared_paths = {file_id: f"{self._shared_mount}/{file_id}" for file_id in contents}
        host_paths = {file_id: str(host_dir / file_id) for file_id in contents}
        return host_dir, shared_paths, host_paths

    def _grace_for(self, service: ServiceContext, grace: float | None = None) -> float:
        if grace is not None:
            return grace
        if service.spec.stop_grace is not None:
            return service.spec.stop_grace
        return self._stop_grace

    async def _stop_container(self, service: ServiceContext, grace: float | None = None) -> None:
        """Stop the service's container and free its address.

        The container is detached before the driver call so a concurrent
        close() never stops it a second time.
        """
        container: ContainerHandle | None = service._detach()
        if container is not None:
            try:
                await self._driver.stop_service(container, grace=self._grace_for(service, grace))
            except BaseException:
                service._attach(container)
                raise
        # Only the service's own release counts: the address may already be reused
        if service._release_address() and service.ip in self._allocator:
            self._allocator.release(service.ip)

    async def _stop_quietly(self, service: ServiceContext) -> None:
        """Stop after a failed add_service. Errors are left for close() to report."""
        try:
            await asyncio.shield(self._stop_container(service))
        except Exception as e:
            self._log.warning(
                "network.stop_after_failure.failed",
                service_id=service.service_id,
                error=str(e),
            )

    async def remove_service(self, service_id: str, grace: float | None = None) -> None:
        """Stop a service's container, release its address and forget it.

        Raises:
            ServiceNotFoundError: No such service in this network
            StopFailedError: The driver could not stop the container (service stays registered)
        """
        service = self.get_service(service_id)
        self._log.info("network.remove_service", service_id=service_id)
        try:
            await self._stop_container(service, grace)
        except Exception as e:
            service._mark_failed(e)
            raise
        if service.state is ServiceState.READY:
            service._mark_stopped()
        else:
            service._mark_failed(
                ExecutionCancelledError(f"Service {service_id!r} removed before it was ready")
            )
        del self._services[service_id]
        await self._remove_shared_dir(service)

    async def _remove_shared_dir(self, service: ServiceContext) -> None:
        if not service.host_paths:
            return
        host_dir = Path(next(iter(service.host_paths.values()))).parent
        await asyncio.to_thread(shutil.rmtree, host_dir, True)

    async def close(self) -> None:
        """Stop every service in reverse insertion order, then destroy the network.

        Idempotent. Every step runs even when earlier steps fail; failures are
        collected and raised together as TeardownFailedError once the network
        is CLOSED.
        """
        async with self._close_lock:
            if self._state is NetworkState.CLOSED:
                return
            self.begin_closing()
            errors: list[BaseException] = []

            if self._opening is not None and not self._opening.done():
                await asyncio.gather(self._opening, return_exceptions=True)

            if self._pending_starts:
                self._log.info("network.close.await_starts", count=len(self._pending_starts))
                await asyncio.gather(*self._pending_starts, return_exceptions=True)

            for service in reversed(list(self._services.values())):
                try:
                    await self._stop_container(service)
                except Exception as e:
                    self._log.error(
                        "network.close.stop_failed",
                        service_id=service.service_id,
                        error=str(e),
                    )
                    errors.append(e)
                    service._mark_failed(e)
                    continue
                if service.state is ServiceState.READY:
                    service._mark_stopped()
                else:
                    service._mark_failed(
                        ExecutionCancelledError(
                            f"Network closed before {service.service_id!r} was ready"
                        )
                    )

            # Every address goes back before the network itself is destroyed
            for ip in list(self._allocator):
                self._allocator.release(ip)

            if self._handle is None:
                self._destroyed = True
            else:
                try:
                    await self._driver.destroy_network(self._handle)
                    self._destroyed = True
                except Exception as e:
                    self._log.error("network.close.destroy_failed", error=str(e))
                    errors.append(e)

            if self._shared_root is not None:
                try:
                    await asyncio.to_thread(self._remove_shared_root)
                except OSError as e:
                    errors.append(e)

            self._state = NetworkState.CLOSED
            self._log.info("network.closed", errors=len(errors))

            if errors:
                raise TeardownFailedError(
                    f"Teardown of network {self._name!r} failed: {len(errors)} error(s)",
                    errors=errors,
                )

    def _remove_shared_root(self) -> None:
        if self._shared_root is not None and self._shared_root.exists():
            shutil.rmtree(self._shared_root)

    def describe(self) -> dict[str, Any]:
        return {
            "name": self._name,
            "subnet": str(self.subnet),
            "state": self._state.value,
            "services": [service.describe() for service in self._services.values()],
        }
