"""Shared fixtures."""

from __future__ import annotations

import ipaddress

import pytest
import structlog

from flotilla.networks.network import NetworkContext
from flotilla.networks.subnet_pool import SubnetPool
from flotilla.readiness.poller import ReadinessPoller
from tests.fakes import FakeDriver


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Tests that configure logging must not leak their processor chain."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def driver() -> FakeDriver:
    return FakeDriver()


@pytest.fixture
def fast_poller() -> ReadinessPoller:
    return ReadinessPoller(interval=0.01, deadline=0.5)


@pytest.fixture
def subnet_pool() -> SubnetPool:
    return SubnetPool("10.200.0.0/16")


@pytest.fixture
def make_network(driver: FakeDriver, fast_poller: ReadinessPoller, tmp_path):
    """Factory for opened NetworkContexts on the fake driver."""
    created: list[NetworkContext] = []

    async def factory(subnet: str = "10.10.0.0/28", **kwargs) -> NetworkContext:
        kwargs.setdefault("poller", fast_poller)
        kwargs.setdefault("stop_grace", 1.0)
        kwargs.setdefault("shared_dir", tmp_path / "shared")
        network = NetworkContext(
            driver,
            ipaddress.ip_network(subnet),
            name=kwargs.pop("name", f"net-{len(created)}"),
            **kwargs,
        )
        await network.open()
        created.append(network)
        return network

    return factory
