"""Docker driver implementation using aiodocker.

Each test network is a user-defined bridge network with an explicit IPAM
subnet and gateway; service containers are attached with a static address
(EndpointsConfig.IPAMConfig) chosen by the caller.

Runtime errors are mapped onto the flotilla driver error kinds:
- image missing / pull refused       -> ImagePullFailedError
- static address already taken       -> AddressInUseError
- anything else during create/start  -> StartFailedError
"""

from __future__ import annotations

import io
import tarfile
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import aiodocker
import structlog
from aiodocker.exceptions import DockerError

from flotilla.config import DockerConfig, get_settings
from flotilla.drivers.base import (
    ContainerHandle,
    ContainerInfo,
    ContainerStatus,
    Driver,
    ExecResult,
    FileManifest,
    IPAddress,
    IPNetwork,
    Mount,
    NetworkHandle,
)
from flotilla.errors import (
    AddressInUseError,
    CopyFilesFailedError,
    ExecFailedError,
    ImagePullFailedError,
    NetworkCreateFailedError,
    NetworkDestroyFailedError,
    StartFailedError,
    StopFailedError,
)

logger = structlog.get_logger()

_ADDRESS_IN_USE_MARKERS = ("address already in use", "is already in use", "address in use")


def _is_address_in_use(error: DockerError) -> bool:
    text = str(error.message).lower()
    return any(marker in text for marker in _ADDRESS_IN_USE_MARKERS)


def _status_from_docker(docker_status: str) -> ContainerStatus:
    if docker_status == "running":
        return ContainerStatus.RUNNING
    if docker_status == "created":
        return ContainerStatus.CREATED
    if docker_status == "removing":
        return ContainerStatus.REMOVING
    return ContainerStatus.EXITED


def build_archive(manifest: FileManifest) -> bytes:
    """Pack a container-path -> content manifest into a tar archive rooted at '/'."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for container_path, content in manifest.items():
            if not container_path.startswith("/"):
                raise ValueError(f"Container path must be absolute: {container_path!r}")
            if isinstance(content, Path):
                data = content.read_bytes()
            elif isinstance(content, str):
                data = content.encode()
            else:
                data = bytes(content)
            info = tarfile.TarInfo(name=container_path.lstrip("/"))
            info.size = len(data)
            info.mode = 0o644
            info.mtime = int(time.time())
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class DockerDriver(Driver):
    """Docker driver implementation using aiodocker."""

    thread_safe = True

    def __init__(self, config: DockerConfig | None = None) -> None:
        docker_cfg = config or get_settings().driver.docker
        # Parse socket URL
        socket_url = docker_cfg.socket
        if "://" in socket_url:
            self._socket = socket_url
        else:
            self._socket = f"unix://{socket_url}"

        self._pull_policy = docker_cfg.image_pull_policy
        self._publish_ports = docker_cfg.publish_ports
        self._host_address = docker_cfg.host_address
        self._instance_id = docker_cfg.get_instance_id()

        self._log = logger.bind(driver="docker")
        self._client: aiodocker.Docker | None = None

    async def _get_client(self) -> aiodocker.Docker:
        """Get or create the aiodocker client."""
        if self._client is None:
            self._client = aiodocker.Docker(url=self._socket)
        return self._client

    async def close(self) -> None:
        """Close the docker client."""
        if self._client is not None:
            await self._client.close()
            self._client = None

    def _base_labels(self, network_name: str) -> dict[str, str]:
        return {
            "flotilla.managed": "true",
            "flotilla.instance_id": self._instance_id,
            "flotilla.network": network_name,
        }

    # Networks

    async def create_network(
        self,
        name: str,
        subnet: IPNetwork,
        *,
        gateway: IPAddress,
        labels: dict[str, str] | None = None,
    ) -> NetworkHandle:
        client = await self._get_client()
        network_labels = self._base_labels(name)
        if labels:
            network_labels.update(labels)

        self._log.info("docker.create_network", network=name, subnet=str(subnet))

        config: dict[str, Any] = {
            "Name": name,
            "Driver": "bridge",
            "CheckDuplicate": True,
            "EnableIPv6": subnet.version == 6,
            "IPAM": {
                "Driver": "default",
                "Config": [{"Subnet": str(subnet), "Gateway": str(gateway)}],
            },
            "Labels": network_labels,
        }

        try:
            network = await client.networks.create(config)
        except DockerError as e:
            self._log.error("docker.create_network.failed", network=name, error=str(e))
            raise NetworkCreateFailedError(
                f"Could not create network {name} over {subnet}: {e.message}",
                details={"network": name, "subnet": str(subnet), "status": e.status},
            ) from e

        self._log.info("docker.network_created", network=name, network_id=network.id)
        return NetworkHandle(id=network.id, name=name, subnet=subnet, gateway=gateway)

    async def destroy_network(self, network: NetworkHandle) -> None:
        client = await self._get_client()
        self._log.info("docker.destroy_network", network=network.name)

        try:
            docker_network = await client.networks.get(network.id)
            await docker_network.delete()
            self._log.info("docker.network_removed", network=network.name)
        except DockerError as e:
            if e.status == 404:
                self._log.warning("docker.network_not_found", network=network.name)
                return
            self._log.error(
                "docker.destroy_network.failed",
                network=network.name,
                error=str(e),
            )
            raise NetworkDestroyFailedError(
                f"Could not remove network {network.name}: {e.message}",
                details={"network": network.name, "status": e.status},
            ) from e

    # Images

    async def _ensure_image(self, image: str) -> None:
        client = await self._get_client()

        if self._pull_policy != "always":
            try:
                await client.images.inspect(image)
                return
            except DockerError as e:
                if e.status != 404:
                    raise ImagePullFailedError(
                        f"Could not inspect image {image}: {e.message}",
                        details={"image": image, "status": e.status},
                    ) from e
            if self._pull_policy == "never":
                raise ImagePullFailedError(
                    f"Image {image} is not present and pull policy is 'never'",
                    details={"image": image},
                )

        self._log.info("docker.pull", image=image)
        try:
            await client.images.pull(image)
        except DockerError as e:
            self._log.error("docker.pull.failed", image=image, error=str(e))
            raise ImagePullFailedError(
                f"Could not pull image {image}: {e.message}",
                details={"image": image, "status": e.status},
            ) from e

    # Service containers

    def _build_container_config(
        self,
        network: NetworkHandle,
        *,
        image: str,
        ip: IPAddress,
        ports: Mapping[str, int],
        mounts: Sequence[Mount],
        entrypoint: Sequence[str] | None,
        cmd: Sequence[str] | None,
        env: Mapping[str, str] | None,
        labels: dict[str, str] | None,
        alias: str | None,
    ) -> dict[str, Any]:
        """Build the Docker create payload for one service container."""
        container_labels = self._base_labels(network.name)
        if labels:
            container_labels.update(labels)

        exposed_ports: dict[str, dict[str, Any]] = {f"{p}/tcp": {} for p in ports.values()}

        host_config: dict[str, Any] = {
            "NetworkMode": network.name,
            "Binds": [
                f"{m.source}:{m.target}:{'ro' if m.read_only else 'rw'}" for m in mounts
            ],
        }
        if self._publish_ports and exposed_ports:
            # Let Docker assign ephemeral host ports
            host_config["PortBindings"] = {
                key: [{"HostIp": "0.0.0.0", "HostPort": ""}] for key in exposed_ports
            }

        ipam_key = "IPv4Address" if ip.version == 4 else "IPv6Address"
        endpoint: dict[str, Any] = {"IPAMConfig": {ipam_key: str(ip)}}
        if alias:
            endpoint["Aliases"] = [alias]

        config: dict[str, Any] = {
            "Image": image,
            "Env": [f"{k}={v}" for k, v in (env or {}).items()],
            "Labels": container_labels,
            "ExposedPorts": exposed_ports,
            "HostConfig": host_config,
            "NetworkingConfig": {"EndpointsConfig": {network.name: endpoint}},
        }
        if alias:
            config["Hostname"] = alias
        if entrypoint is not None:
            config["Entrypoint"] = list(entrypoint)
        if cmd is not None:
            config["Cmd"] = list(cmd)
        return config

    def _resolve_host_port(
        self,
        info: dict[str, Any],
        *,
        container_port: int,
    ) -> tuple[str, int] | None:
        ports = info.get("NetworkSettings", {}).get("Ports") or {}
        bindings = ports.get(f"{container_port}/tcp")
        if not bindings:
            return None

        # Docker returns list like [{"HostIp": "0.0.0.0", "HostPort": "32768"}]
        b0 = bindings[0]
        host_ip = (b0.get("HostIp") or "").strip()
        host_port_str = b0.get("HostPort")
        if not host_port_str:
            return None

        # Bound on all interfaces; use configured host address
        if host_ip in ("", "0.0.0.0", "::"):
            host_ip = self._host_address

        return host_ip, int(host_port_str)

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
        client = await self._get_client()
        await self._ensure_image(image)

        config = self._build_container_config(
            network,
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

        self._log.info(
            "docker.start_service",
            container=name,
            image=image,
            ip=str(ip),
            network=network.name,
        )

        try:
            container = await client.containers.create(config=config, name=name)
        except DockerError as e:
            raise self._start_error(e, name=name, ip=ip) from e

        try:
            await container.start()
            info = await container.show()
        except DockerError as e:
            self._log.error("docker.start_service.failed", container=name, error=str(e))
            # Rollback: the container exists but never became usable
            try:
                await container.delete(force=True)
            except DockerError as cleanup_err:
                self._log.warning(
                    "docker.start_service.rollback_failed",
                    container=name,
                    error=str(cleanup_err),
                )
            raise self._start_error(e, name=name, ip=ip) from e

        host_ports: dict[str, tuple[str, int]] = {}
        if self._publish_ports:
            for port_name, port in ports.items():
                hp = self._resolve_host_port(info, container_port=port)
                if hp:
                    host_ports[port_name] = hp

        self._log.info("docker.service_started", container=name, container_id=container.id)
        return ContainerHandle(
            id=container.id,
            name=name,
            ip=ip,
            network_id=network.id,
            host_ports=host_ports,
        )

    def _start_error(self, error: DockerError, *, name: str, ip: IPAddress) -> Exception:
        details = {"container": name, "ip": str(ip), "status": error.status}
        if _is_address_in_use(error):
            return AddressInUseError(f"Address {ip} is already in use: {error.message}", details)
        if error.status == 404 and "image" in str(error.message).lower():
            return ImagePullFailedError(f"Image not available: {error.message}", details)
        return StartFailedError(f"Could not start {name}: {error.message}", details)

    async def stop_service(self, container: ContainerHandle, *, grace: float) -> None:
        client = await self._get_client()
        self._log.info("docker.stop_service", container=container.name, grace=grace)

        docker_container = client.containers.container(container.id)
        try:
            # Docker itself escalates to SIGKILL once `t` seconds have passed
            await docker_container.stop(t=max(0, int(grace)))
        except DockerError as e:
            # 304: already stopped, 404: already gone
            if e.status not in (304, 404):
                self._log.warning(
                    "docker.stop_service.stop_failed",
                    container=container.name,
                    error=str(e),
                )

        try:
            await docker_container.delete(force=True, v=True)
        except DockerError as e:
            if e.status == 404:
                self._log.debug("docker.stop_service.not_found", container=container.name)
                return
            raise StopFailedError(
                f"Could not remove container {container.name}: {e.message}",
                details={"container": container.name, "status": e.status},
            ) from e

    async def copy_files_into(self, container: ContainerHandle, manifest: FileManifest) -> None:
        if not manifest:
            return
        client = await self._get_client()
        self._log.info(
            "docker.copy_files_into",
            container=container.name,
            paths=sorted(manifest),
        )

        try:
            archive = build_archive(manifest)
        except (OSError, ValueError) as e:
            raise CopyFilesFailedError(
                f"Could not package files for {container.name}: {e}",
                details={"container": container.name},
            ) from e

        try:
            await client.containers.container(container.id).put_archive("/", archive)
        except DockerError as e:
            raise CopyFilesFailedError(
                f"Could not copy files into {container.name}: {e.message}",
                details={"container": container.name, "status": e.status},
            ) from e

    async def inspect(self, container: ContainerHandle) -> ContainerInfo:
        client = await self._get_client()

        try:
            info = await client.containers.container(container.id).show()
        except DockerError as e:
            if e.status == 404:
                return ContainerInfo(container_id=container.id, status=ContainerStatus.NOT_FOUND)
            raise

        state = info.get("State", {})
        return ContainerInfo(
            container_id=container.id,
            status=_status_from_docker(state.get("Status", "unknown")),
            exit_code=state.get("ExitCode"),
        )

    async def exec_command(self, container: ContainerHandle, command: Sequence[str]) -> ExecResult:
        client = await self._get_client()
        self._log.debug("docker.exec", container=container.name, command=list(command))

        try:
            docker_container = client.containers.container(container.id)
            execution = await docker_container.exec(list(command), stdout=True, stderr=True)
            chunks: list[bytes] = []
            async with execution.start(detach=False) as stream:
                while True:
                    message = await stream.read_out()
                    if message is None:
                        break
                    chunks.append(message.data)
            details = await execution.inspect()
        except DockerError as e:
            raise ExecFailedError(
                f"Could not run {list(command)} in {container.name}: {e.message}",
                details={"container": container.name, "status": e.status},
            ) from e

        return ExecResult(
            exit_code=int(details.get("ExitCode") or 0),
            output=b"".join(chunks).decode(errors="replace"),
        )

    async def logs(self, container: ContainerHandle, tail: int = 100) -> str:
        client = await self._get_client()

        try:
            docker_container = client.containers.container(container.id)
            lines = await docker_container.log(stdout=True, stderr=True, tail=tail)
            return "".join(lines)
        except DockerError as e:
            if e.status == 404:
                return ""
            raise
