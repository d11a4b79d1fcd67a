"""Unit tests for NetworkContext.

Uses FakeDriver; readiness deadlines are kept short.
"""

from __future__ import annotations

import asyncio
import gc
import ipaddress
from pathlib import Path

import pytest

from flotilla.errors import (
    CopyFilesFailedError,
    DuplicateServiceError,
    ExecutionCancelledError,
    ImagePullFailedError,
    NetworkClosedError,
    NetworkDestroyFailedError,
    PoolExhaustedError,
    ReadinessTimeoutError,
    ServiceNotFoundError,
    StopFailedError,
    TeardownFailedError,
)
from flotilla.networks.network import NetworkContext, NetworkState
from flotilla.services.service import ServiceSpec, ServiceState


def spec(service_id: str, **kwargs) -> ServiceSpec:
    kwargs.setdefault("image", "busybox:latest")
    return ServiceSpec(service_id, **kwargs)


class TestAddService:
    @pytest.mark.asyncio
    async def test_service_gets_lowest_address_and_becomes_ready(self, make_network, driver):
        network = await make_network("10.10.0.0/28", name="t1")

        api = await network.add_service(spec("api", ports={"http": 8080}))

        assert api.state is ServiceState.READY
        assert api.ip_address == "10.10.0.2"
        assert api.ports == {"http": 8080}
        assert driver.start_calls[0]["name"] == "t1-api"
        assert driver.start_calls[0]["ip"] == ipaddress.ip_address("10.10.0.2")
        assert driver.start_calls[0]["alias"] == "api"

    @pytest.mark.asyncio
    async def test_addresses_are_unique_and_inside_subnet(self, make_network):
        network = await make_network("10.10.0.0/28")

        services = [await network.add_service(spec(f"s{i}")) for i in range(5)]

        ips = [s.ip for s in services]
        assert len(set(ips)) == 5
        for ip in ips:
            assert ip in network.subnet
            assert ip not in network.allocator.reserved

    @pytest.mark.asyncio
    async def test_lookup_helpers(self, make_network):
        network = await make_network()
        db = await network.add_service(spec("db"))

        assert network.get_service("db") is db
        assert "db" in network
        assert len(network) == 1
        assert list(network.services) == ["db"]
        with pytest.raises(ServiceNotFoundError):
            network.get_service("nope")

    @pytest.mark.asyncio
    async def test_duplicate_service_id_rejected(self, make_network):
        network = await make_network()
        await network.add_service(spec("db"))

        with pytest.raises(DuplicateServiceError):
            await network.add_service(spec("db"))

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_rejected_before_start(self, make_network, driver):
        network = await make_network()

        results = await asyncio.gather(
            network.add_service(spec("db")),
            network.add_service(spec("db")),
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(errors) == 1
        assert isinstance(errors[0], DuplicateServiceError)
        assert len(driver.start_calls) == 1
        assert list(network.services) == ["db"]

        await network.close()

        assert driver.running_names() == []
        assert driver.live_networks == []

    @pytest.mark.asyncio
    async def test_pool_exhaustion(self, make_network, driver):
        network = await make_network("10.10.0.0/30")
        await network.add_service(spec("first"))

        with pytest.raises(PoolExhaustedError):
            await network.add_service(spec("second"))

        assert len(driver.start_calls) == 1
        assert "second" not in network

    @pytest.mark.asyncio
    async def test_environment_and_shared_mount(self, make_network, driver, tmp_path):
        network = await make_network(name="envnet")

        await network.add_service(spec("api", env={"MODE": "test"}))

        call = driver.start_calls[0]
        assert call["env"]["MODE"] == "test"
        assert call["env"]["FLOTILLA_SERVICE_ID"] == "api"
        assert call["env"]["FLOTILLA_SERVICE_IP"] == "10.10.0.2"
        assert call["env"]["FLOTILLA_SHARED_DIR"] == "/flotilla-shared"
        assert call["mounts"][0].target == "/flotilla-shared"
        assert Path(call["mounts"][0].source).parent == tmp_path / "shared" / "envnet"

    @pytest.mark.asyncio
    async def test_generated_files_and_command_factory(self, make_network, driver):
        network = await make_network()

        node = await network.add_service(
            spec(
                "node",
                generated_files={
                    "node.conf": lambda ip: f"listen {ip}\n",
                    "static.txt": b"hello",
                },
                command=lambda launch: ["serve", "--config", launch.shared_paths["node.conf"], "--ip", launch.ip],
            )
        )

        assert node.shared_paths == {
            "node.conf": "/flotilla-shared/node.conf",
            "static.txt": "/flotilla-shared/static.txt",
        }
        assert Path(node.host_paths["node.conf"]).read_text() == "listen 10.10.0.2\n"
        assert Path(node.host_paths["static.txt"]).read_bytes() == b"hello"
        assert driver.start_calls[0]["cmd"] == [
            "serve", "--config", "/flotilla-shared/node.conf", "--ip", "10.10.0.2",
        ]

    @pytest.mark.asyncio
    async def test_files_copied_before_readiness(self, make_network, driver):
        network = await make_network()
        seen: list[list[str]] = []

        def check(service):
            seen.append([c["name"] for c in driver.copy_calls])
            return True

        await network.add_service(spec("api", files={"/etc/app.conf": "x=1"}, availability=check))

        assert driver.copy_calls[0]["paths"] == ["/etc/app.conf"]
        assert seen[0] == [driver.start_calls[0]["name"]]

    @pytest.mark.asyncio
    async def test_copy_failure_stops_container(self, make_network, driver):
        network = await make_network()
        driver.fail_on["copy_files_into"] = CopyFilesFailedError("disk full")

        with pytest.raises(CopyFilesFailedError):
            await network.add_service(spec("api", files={"/x": b"1"}))

        assert network.get_service("api").state is ServiceState.FAILED
        assert driver.stopped_names() == ["net-0-api"]

    @pytest.mark.asyncio
    async def test_driver_start_failure_marks_service_failed(self, make_network, driver):
        network = await make_network()
        driver.fail_image["missing:latest"] = ImagePullFailedError("not found")

        with pytest.raises(ImagePullFailedError):
            await network.add_service(spec("api", image="missing:latest"))

        service = network.get_service("api")
        assert service.state is ServiceState.FAILED
        assert isinstance(service.error, ImagePullFailedError)
        assert driver.stop_calls == []

    @pytest.mark.asyncio
    async def test_readiness_timeout_stops_container_before_raising(self, make_network, driver):
        network = await make_network()

        with pytest.raises(ReadinessTimeoutError):
            await network.add_service(spec("slow", availability=lambda s: False, readiness_deadline=0.1))

        service = network.get_service("slow")
        assert service.state is ServiceState.FAILED
        assert driver.stopped_names() == ["net-0-slow"]
        assert service.ip not in network.allocator

    @pytest.mark.asyncio
    async def test_check_errors_are_not_fatal(self, make_network):
        network = await make_network()
        attempts = {"n": 0}

        async def flaky(service):
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise ConnectionRefusedError("not yet")
            return True

        service = await network.add_service(spec("flaky", availability=flaky))

        assert service.state is ServiceState.READY
        assert attempts["n"] == 3

    @pytest.mark.asyncio
    async def test_sealed_network_rejects_services(self, make_network):
        network = await make_network()
        network.seal()

        with pytest.raises(NetworkClosedError):
            await network.add_service(spec("late"))

    @pytest.mark.asyncio
    async def test_unopened_network_rejects_services(self, driver):
        network = NetworkContext(driver, ipaddress.ip_network("10.10.0.0/28"), name="raw")

        with pytest.raises(NetworkClosedError):
            await network.add_service(spec("api"))


class TestClosingDuringProvisioning:
    @pytest.mark.asyncio
    async def test_begin_closing_cancels_polling_promptly(self, make_network, driver):
        network = await make_network()
        calls = {"n": 0}

        def never(service):
            calls["n"] += 1
            return False

        add = asyncio.ensure_future(
            network.add_service(spec("db", availability=never, poll_interval=0.01, readiness_deadline=30))
        )
        await asyncio.sleep(0.05)
        network.begin_closing()

        with pytest.raises(ExecutionCancelledError):
            await asyncio.wait_for(add, timeout=1.0)

        seen = calls["n"]
        await asyncio.sleep(0.05)
        assert calls["n"] == seen
        assert network.state is NetworkState.CLOSING
        assert network.get_service("db").state is ServiceState.FAILED
        assert driver.stopped_names() == ["net-0-db"]

    @pytest.mark.asyncio
    async def test_closing_network_rejects_services(self, make_network):
        network = await make_network()
        network.begin_closing()

        with pytest.raises(NetworkClosedError):
            await network.add_service(spec("api"))

    @pytest.mark.asyncio
    async def test_container_started_during_cancellation_is_adopted(self, make_network, driver):
        network = await make_network()
        driver.delays["start_service"] = 0.1

        add = asyncio.ensure_future(network.add_service(spec("api")))
        await asyncio.sleep(0.02)
        add.cancel()
        with pytest.raises(asyncio.CancelledError):
            await add

        await network.close()

        assert driver.stopped_names() == ["net-0-api"]
        assert driver.running_names() == []
        assert network.get_service("api").state is ServiceState.FAILED


class TestRemoveService:
    @pytest.mark.asyncio
    async def test_remove_stops_releases_and_forgets(self, make_network, driver):
        network = await make_network()
        api = await network.add_service(spec("api"))

        await network.remove_service("api", grace=3.0)

        assert api.state is ServiceState.STOPPED
        assert "api" not in network
        assert api.ip not in network.allocator
        assert driver.stop_calls == [{"name": "net-0-api", "grace": 3.0}]

    @pytest.mark.asyncio
    async def test_remove_uses_spec_grace_then_default(self, make_network, driver):
        network = await make_network(stop_grace=7.0)
        await network.add_service(spec("a", stop_grace=2.0))
        await network.add_service(spec("b"))

        await network.remove_service("a")
        await network.remove_service("b")

        assert [c["grace"] for c in driver.stop_calls] == [2.0, 7.0]

    @pytest.mark.asyncio
    async def test_freed_address_is_reused(self, make_network):
        network = await make_network()
        a = await network.add_service(spec("a"))
        await network.add_service(spec("b"))

        await network.remove_service("a")
        c = await network.add_service(spec("c"))

        assert c.ip == a.ip

    @pytest.mark.asyncio
    async def test_remove_unknown(self, make_network):
        network = await make_network()

        with pytest.raises(ServiceNotFoundError):
            await network.remove_service("ghost")

    @pytest.mark.asyncio
    async def test_remove_stop_failure_keeps_service(self, make_network, driver):
        network = await make_network()
        await network.add_service(spec("api"))
        driver.fail_on["stop_service"] = StopFailedError("daemon gone")

        with pytest.raises(StopFailedError):
            await network.remove_service("api")

        assert network.get_service("api").state is ServiceState.FAILED

    @pytest.mark.asyncio
    async def test_remove_during_readiness_fails_pending_add(self, make_network, driver):
        network = await make_network()
        gate = asyncio.Event()
        checking = asyncio.Event()

        async def gated(service):
            checking.set()
            await gate.wait()
            return True

        add = asyncio.ensure_future(
            network.add_service(spec("a", availability=gated, readiness_deadline=5))
        )
        await checking.wait()
        a = network.get_service("a")

        await network.remove_service("a")
        b = await network.add_service(spec("b"))
        gate.set()

        with pytest.raises(ExecutionCancelledError):
            await asyncio.wait_for(add, timeout=1.0)

        assert a.state is ServiceState.FAILED
        assert b.ip == a.ip
        assert b.ip in network.allocator
        assert b.state is ServiceState.READY
        assert driver.running_names() == ["net-0-b"]


class TestClose:
    @pytest.mark.asyncio
    async def test_close_stops_in_reverse_order_and_destroys(self, make_network, driver):
        network = await make_network(name="rev")
        for name in ("db", "cache", "api"):
            await network.add_service(spec(name))

        await network.close()

        assert driver.stopped_names() == ["rev-api", "rev-cache", "rev-db"]
        assert driver.destroy_network_calls == ["rev"]
        assert network.state is NetworkState.CLOSED
        assert network.destroyed
        assert len(network.allocator) == 0
        assert all(s.state is ServiceState.STOPPED for s in network)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_network, driver):
        network = await make_network()
        await network.add_service(spec("api"))

        await network.close()
        await network.close()

        assert len(driver.stop_calls) == 1
        assert len(driver.destroy_network_calls) == 1

    @pytest.mark.asyncio
    async def test_close_removes_shared_directory(self, make_network, tmp_path):
        network = await make_network(name="shared")
        node = await network.add_service(spec("node", generated_files={"a": "1"}))
        host_file = Path(node.host_paths["a"])
        assert host_file.exists()

        await network.close()

        assert not (tmp_path / "shared" / "shared").exists()

    @pytest.mark.asyncio
    async def test_close_runs_every_step_and_aggregates_errors(self, make_network, driver):
        network = await make_network()
        await network.add_service(spec("a"))
        await network.add_service(spec("b"))
        driver.fail_on["stop_service"] = StopFailedError("boom")

        with pytest.raises(TeardownFailedError) as exc_info:
            await network.close()

        # Both stops attempted; destroy refused because containers still run
        assert len(driver.stop_calls) == 2
        assert len(driver.destroy_network_calls) == 1
        assert len(exc_info.value.errors) == 3
        assert isinstance(exc_info.value.errors[-1], NetworkDestroyFailedError)
        assert network.state is NetworkState.CLOSED
        assert not network.destroyed
        assert all(s.state is ServiceState.FAILED for s in network)
        assert len(network.allocator) == 0

    @pytest.mark.asyncio
    async def test_close_before_open_is_clean(self, driver):
        network = NetworkContext(driver, ipaddress.ip_network("10.10.0.0/28"), name="never")

        await network.close()

        assert network.state is NetworkState.CLOSED
        assert network.destroyed
        assert driver.destroy_network_calls == []

    @pytest.mark.asyncio
    async def test_weak_back_reference(self, driver):
        network = NetworkContext(driver, ipaddress.ip_network("10.10.0.0/28"), name="weak")
        await network.open()
        service = await network.add_service(spec("api"))
        await network.close()

        assert service.network is network
        del network
        gc.collect()
        assert service.network is None
