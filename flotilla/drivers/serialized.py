"""SerializedDriver - funnels every call of a non-thread-safe driver through one lock."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping, Sequence

from flotilla.drivers.base import (
    ContainerHandle,
    ContainerInfo,
    Driver,
    ExecResult,
    FileManifest,
    IPAddress,
    IPNetwork,
    Mount,
    NetworkHandle,
)


class SerializedDriver(Driver):
    """Proxy that allows at most one in-flight call on the wrapped driver."""

    thread_safe = True

    def __init__(self, inner: Driver) -> None:
        self._inner = inner
        self._lock = asyncio.Lock()

    @property
    def inner(self) -> Driver:
        return self._inner

    async def create_network(
        self,
        name: str,
        subnet: IPNetwork,
        *,
        gateway: IPAddress,
        labels: dict[str, str] | None = None,
    ) -> NetworkHandle:
        async with self._lock:
            return await self._inner.create_network(name, subnet, gateway=gateway, labels=labels)

    async def destroy_network(self, network: NetworkHandle) -> None:
        async with self._lock:
            await self._inner.destroy_network(network)

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
        async with self._lock:
            return await self._inner.start_service(
                network,
                name=name,
                image=image,
                ip=ip,
                ports=ports,
                mounts=mounts,
                entrypoint=entrypoint,
                cmd=cmd,
                env=env,
                labels=labels,
                alias=alias,
            )

    async def stop_service(self, container: ContainerHandle, *, grace: float) -> None:
        async with self._lock:
            await self._inner.stop_service(container, grace=grace)

    async def copy_files_into(self, container: ContainerHandle, manifest: FileManifest) -> None:
        async with self._lock:
            await self._inner.copy_files_into(container, manifest)

    async def inspect(self, container: ContainerHandle) -> ContainerInfo:
        async with self._lock:
            return await self._inner.inspect(container)

    async def exec_command(self, container: ContainerHandle, command: Sequence[str]) -> ExecResult:
        async with self._lock:
            return await self._inner.exec_command(container, command)

    async def logs(self, container: ContainerHandle, tail: int = 100) -> str:
        async with self._lock:
            return await self._inner.logs(container, tail)

    async def close(self) -> None:
        async with self._lock:
            await self._inner.close()
