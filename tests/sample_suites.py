"""Suites loaded by the CLI tests through MODULE:ATTR paths."""

from __future__ import annotations

import asyncio
import os
import signal

from flotilla import ServiceSpec, TestSuite, Verdict

passing = TestSuite("passing", network_width_bits=4)
mixed = TestSuite("mixed", network_width_bits=4)
slow = TestSuite("slow", network_width_bits=4)
interrupted = TestSuite("interrupted", network_width_bits=4)
empty = TestSuite("empty")

not_a_suite = 42


async def echo_service(network):
    return await network.add_service(ServiceSpec("echo", "hashicorp/http-echo", ports={"http": 5678}))


@passing.test(initializer=echo_service)
async def echo_has_address(service):
    """The echo service gets an address inside the test network."""
    return service.ip_address.startswith("172.")


@passing.test()
def plain_sync(network):
    return True


@mixed.test()
async def kv_ok(network):
    return Verdict.passed()


@mixed.test()
async def kv_broken(network):
    return Verdict.failed("replica lagging")


@slow.test()
async def hangs(network):
    await asyncio.sleep(30)


@interrupted.test()
async def sends_sigint(network):
    os.kill(os.getpid(), signal.SIGINT)
    await asyncio.sleep(30)


def build_suite() -> TestSuite:
    suite = TestSuite("built")
    suite.test("only")(lambda network: True)
    return suite


def broken_factory() -> TestSuite:
    raise RuntimeError("suite config missing")
