"""Unit tests for DockerDriver payloads and error mapping.

The aiodocker client is replaced with mocks; no Docker daemon is needed.
"""

from __future__ import annotations

import io
import ipaddress
import tarfile
from unittest.mock import AsyncMock, MagicMock

import pytest
from aiodocker.exceptions import DockerError

from flotilla.config import DockerConfig
from flotilla.drivers.base import ContainerHandle, Mount, NetworkHandle
from flotilla.drivers.docker.docker import DockerDriver, build_archive
from flotilla.errors import (
    AddressInUseError,
    ImagePullFailedError,
    NetworkCreateFailedError,
    NetworkDestroyFailedError,
    StartFailedError,
    StopFailedError,
)


@pytest.fixture
def network() -> NetworkHandle:
    return NetworkHandle(
        id="net-1",
        name="flotilla-kv-1a2b3c4d",
        subnet=ipaddress.ip_network("172.24.0.0/28"),
        gateway=ipaddress.ip_address("172.24.0.1"),
    )


def make_driver(**overrides) -> tuple[DockerDriver, MagicMock]:
    driver = DockerDriver(DockerConfig(instance_id="ci-1", **overrides))
    client = MagicMock()
    driver._client = client
    return driver, client


class TestBuildArchive:
    def test_paths_are_rooted_and_contents_kept(self, tmp_path):
        source = tmp_path / "seed.sql"
        source.write_text("create table t();")

        data = build_archive({"/etc/app.conf": "port=1", "/seed/seed.sql": source, "/bin.dat": b"\x00\x01"})

        with tarfile.open(fileobj=io.BytesIO(data)) as tar:
            names = sorted(tar.getnames())
            assert names == ["bin.dat", "etc/app.conf", "seed/seed.sql"]
            assert tar.extractfile("etc/app.conf").read() == b"port=1"
            assert tar.extractfile("seed/seed.sql").read() == b"create table t();"

    def test_relative_path_rejected(self):
        with pytest.raises(ValueError):
            build_archive({"etc/app.conf": "x"})


class TestContainerConfig:
    def test_static_address_and_alias(self, network):
        driver, _ = make_driver()

        config = driver._build_container_config(
            network,
            image="redis:7",
            ip=ipaddress.ip_address("172.24.0.2"),
            ports={"redis": 6379},
            mounts=[Mount("/tmp/shared/a", "/flotilla-shared", read_only=True)],
            entrypoint=None,
            cmd=["redis-server", "--port", "6379"],
            env={"FLOTILLA_SERVICE_ID": "a"},
            labels={"flotilla.service_id": "a"},
            alias="a",
        )

        endpoint = config["NetworkingConfig"]["EndpointsConfig"][network.name]
        assert endpoint == {"IPAMConfig": {"IPv4Address": "172.24.0.2"}, "Aliases": ["a"]}
        assert config["Hostname"] == "a"
        assert config["Cmd"] == ["redis-server", "--port", "6379"]
        assert "Entrypoint" not in config
        assert config["Env"] == ["FLOTILLA_SERVICE_ID=a"]
        assert config["ExposedPorts"] == {"6379/tcp": {}}
        assert config["HostConfig"]["Binds"] == ["/tmp/shared/a:/flotilla-shared:ro"]
        assert "PortBindings" not in config["HostConfig"]
        assert config["Labels"]["flotilla.managed"] == "true"
        assert config["Labels"]["flotilla.instance_id"] == "ci-1"
        assert config["Labels"]["flotilla.service_id"] == "a"

    def test_published_ports(self, network):
        driver, _ = make_driver(publish_ports=True)

        config = driver._build_container_config(
            network,
            image="nginx",
            ip=ipaddress.ip_address("172.24.0.3"),
            ports={"http": 80},
            mounts=[],
            entrypoint=["nginx"],
            cmd=None,
            env=None,
            labels=None,
            alias=None,
        )

        assert config["HostConfig"]["PortBindings"] == {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": ""}]}
        assert config["Entrypoint"] == ["nginx"]
        assert "Hostname" not in config


class TestHostPortResolution:
    def test_wildcard_binding_uses_host_address(self):
        driver, _ = make_driver(host_address="192.168.1.10")
        info = {"NetworkSettings": {"Ports": {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": "32768"}]}}}

        assert driver._resolve_host_port(info, container_port=80) == ("192.168.1.10", 32768)

    def test_explicit_host_ip_kept(self):
        driver, _ = make_driver()
        info = {"NetworkSettings": {"Ports": {"80/tcp": [{"HostIp": "10.0.0.1", "HostPort": "40000"}]}}}

        assert driver._resolve_host_port(info, container_port=80) == ("10.0.0.1", 40000)

    @pytest.mark.parametrize(
        "ports",
        [{}, {"80/tcp": None}, {"80/tcp": [{"HostIp": "0.0.0.0", "HostPort": ""}]}],
    )
    def test_missing_binding(self, ports):
        driver, _ = make_driver()

        assert driver._resolve_host_port({"NetworkSettings": {"Ports": ports}}, container_port=80) is None


class TestErrorMapping:
    @pytest.mark.asyncio
    async def test_create_network_payload(self, network):
        driver, client = make_driver()
        client.networks.create = AsyncMock(return_value=MagicMock(id="net-9"))

        handle = await driver.create_network(
            network.name, network.subnet, gateway=network.gateway, labels={"flotilla.test": "kv"}
        )

        config = client.networks.create.await_args.args[0]
        assert handle.id == "net-9"
        assert config["IPAM"]["Config"] == [{"Subnet": "172.24.0.0/28", "Gateway": "172.24.0.1"}]
        assert config["Labels"]["flotilla.test"] == "kv"
        assert config["Driver"] == "bridge"

    @pytest.mark.asyncio
    async def test_create_network_failure(self, network):
        driver, client = make_driver()
        client.networks.create = AsyncMock(side_effect=DockerError(409, {"message": "pool overlaps"}))

        with pytest.raises(NetworkCreateFailedError) as exc:
            await driver.create_network(network.name, network.subnet, gateway=network.gateway)

        assert exc.value.details["status"] == 409

    @pytest.mark.asyncio
    async def test_destroy_missing_network_is_ok(self, network):
        driver, client = make_driver()
        client.networks.get = AsyncMock(side_effect=DockerError(404, {"message": "not found"}))

        await driver.destroy_network(network)

    @pytest.mark.asyncio
    async def test_destroy_network_with_endpoints(self, network):
        driver, client = make_driver()
        docker_network = MagicMock()
        docker_network.delete = AsyncMock(side_effect=DockerError(403, {"message": "has active endpoints"}))
        client.networks.get = AsyncMock(return_value=docker_network)

        with pytest.raises(NetworkDestroyFailedError):
            await driver.destroy_network(network)

    @pytest.mark.parametrize(
        "status, message, expected",
        [
            (403, "Address already in use", AddressInUseError),
            (404, "No such image: redis:7", ImagePullFailedError),
            (500, "OCI runtime create failed", StartFailedError),
        ],
    )
    def test_start_errors(self, status, message, expected):
        driver, _ = make_driver()

        error = driver._start_error(
            DockerError(status, {"message": message}),
            name="svc",
            ip=ipaddress.ip_address("172.24.0.2"),
        )

        assert isinstance(error, expected)
        assert error.details["ip"] == "172.24.0.2"

    @pytest.mark.asyncio
    async def test_pull_policy_never(self):
        driver, client = make_driver(image_pull_policy="never")
        client.images.inspect = AsyncMock(side_effect=DockerError(404, {"message": "no such image"}))
        client.images.pull = AsyncMock()

        with pytest.raises(ImagePullFailedError):
            await driver._ensure_image("redis:7")

        client.images.pull.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_pull_when_missing(self):
        driver, client = make_driver()
        client.images.inspect = AsyncMock(side_effect=DockerError(404, {"message": "no such image"}))
        client.images.pull = AsyncMock()

        await driver._ensure_image("redis:7")

        client.images.pull.assert_awaited_once_with("redis:7")

    @pytest.mark.asyncio
    async def test_stop_tolerates_already_gone(self):
        driver, client = make_driver()
        container = MagicMock()
        container.stop = AsyncMock(side_effect=DockerError(304, {"message": "not modified"}))
        container.delete = AsyncMock(side_effect=DockerError(404, {"message": "gone"}))
        client.containers.container = MagicMock(return_value=container)

        await driver.stop_service(
            ContainerHandle(id="c1", name="svc", ip=ipaddress.ip_address("172.24.0.2"), network_id="net-1"),
            grace=2.5,
        )

        container.stop.assert_awaited_once_with(t=2)

    @pytest.mark.asyncio
    async def test_stop_remove_failure(self):
        driver, client = make_driver()
        container = MagicMock()
        container.stop = AsyncMock()
        container.delete = AsyncMock(side_effect=DockerError(500, {"message": "device busy"}))
        client.containers.container = MagicMock(return_value=container)

        with pytest.raises(StopFailedError):
            await driver.stop_service(
                ContainerHandle(id="c1", name="svc", ip=ipaddress.ip_address("172.24.0.2"), network_id="net-1"),
                grace=0,
            )
