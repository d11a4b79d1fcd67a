"""SuiteRunner - schedules a suite's tests over a bounded pool of executors.

Tests are queued in lexicographic name order and drained by `parallelism`
worker tasks, so at most `parallelism` tests are between setup and the end
of their body at any instant. A failing test never stops its peers. On
cancellation no further test starts (the rest are reported SKIPPED) and
every in-flight test tears down before run() returns.
"""

from __future__ import annotations

import asyncio
import fnmatch
import time
from collections.abc import Callable, Iterable
from pathlib import Path

import structlog

from flotilla.config import Settings
from flotilla.drivers.base import Driver
from flotilla.drivers.serialized import SerializedDriver
from flotilla.errors import InvalidFilterError
from flotilla.execution.cancellation import CancelToken
from flotilla.execution.executor import TestExecutor
from flotilla.execution.logs import LogSink
from flotilla.networks.network import DEFAULT_SHARED_MOUNT
from flotilla.networks.subnet_pool import SubnetPool
from flotilla.readiness.poller import ReadinessPoller
from flotilla.testsuite.result import SuiteReport, TestResult
from flotilla.testsuite.test import TestSuite

logger = structlog.get_logger()

_GLOB_CHARS = frozenset("*?[")


def select_tests(suite: TestSuite, filters: Iterable[str] | None = None) -> list[str]:
    """Names of the tests to run, in lexicographic order.

    Without filters every test runs. When no filter contains a glob
    metacharacter the filters form an inclusion set and must all name
    existing tests. Otherwise each filter is a glob and a test runs when it
    matches any of them.

    Raises:
        InvalidFilterError: An inclusion-set name is not in the suite
    """
    patterns = [f for f in (filters or []) if f]
    if not patterns:
        return suite.names

    if not any(_GLOB_CHARS & set(p) for p in patterns):
        unknown = sorted(set(patterns) - set(suite.names))
        if unknown:
            raise InvalidFilterError(
                f"Unknown test name(s): {', '.join(unknown)}",
                details={"unknown": unknown, "available": suite.names},
            )
        return sorted(set(patterns))

    return [name for name in suite.names if any(fnmatch.fnmatchcase(name, p) for p in patterns)]


class SuiteRunner:
    """Runs test suites against one driver and one suite-wide subnet pool."""

    def __init__(
        self,
        driver: Driver,
        *,
        subnet_pool: SubnetPool | str = "172.24.0.0/13",
        parallelism: int = 4,
        test_timeout: float = 300.0,
        poller: ReadinessPoller | None = None,
        stop_grace: float = 10.0,
        cancel_grace: float = 5.0,
        network_prefix: str = "flotilla",
        shared_dir: str | Path | None = None,
        shared_mount: str = DEFAULT_SHARED_MOUNT,
        log_sink: LogSink | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        # Drivers that cannot take concurrent calls get every call funnelled through one lock
        self._driver = driver if driver.thread_safe else SerializedDriver(driver)
        self._subnets = subnet_pool if isinstance(subnet_pool, SubnetPool) else SubnetPool(subnet_pool)
        self._parallelism = parallelism
        self._test_timeout = test_timeout
        self._poller = poller or ReadinessPoller()
        self._stop_grace = stop_grace
        self._cancel_grace = cancel_grace
        self._network_prefix = network_prefix
        self._shared_dir = shared_dir
        self._shared_mount = shared_mount
        self._log_sink = log_sink

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        driver: Driver,
        *,
        log_sink: LogSink | None = None,
    ) -> SuiteRunner:
        return cls(
            driver,
            subnet_pool=settings.network.subnet_pool,
            parallelism=settings.execution.parallelism,
            test_timeout=settings.execution.test_timeout,
            poller=ReadinessPoller.from_config(settings.readiness),
            stop_grace=settings.execution.stop_grace,
            cancel_grace=settings.execution.cancel_grace,
            network_prefix=settings.driver.docker.network_prefix,
            shared_dir=settings.network.shared_dir,
            shared_mount=settings.network.shared_mount,
            log_sink=log_sink,
        )

    @property
    def driver(self) -> Driver:
        return self._driver

    @property
    def subnet_pool(self) -> SubnetPool:
        return self._subnets

    def _executor(self, suite: TestSuite, timeout: float) -> TestExecutor:
        return TestExecutor(
            self._driver,
            self._subnets,
            default_width_bits=suite.network_width_bits,
            timeout=timeout,
            poller=self._poller,
            stop_grace=self._stop_grace,
            cancel_grace=self._cancel_grace,
            network_prefix=self._network_prefix,
            shared_dir=self._shared_dir,
            shared_mount=self._shared_mount,
            log_sink=self._log_sink,
        )

    async def run(
        self,
        suite: TestSuite,
        *,
        filters: Iterable[str] | None = None,
        parallelism: int | None = None,
        test_timeout: float | None = None,
        cancel: CancelToken | None = None,
        on_result: Callable[[TestResult], None] | None = None,
    ) -> SuiteReport:
        """Run the selected tests and return the report.

        Raises:
            InvalidSuiteError: The suite declares no tests
            InvalidFilterError: An inclusion-set filter names an unknown test
        """
        suite.validate()
        names = select_tests(suite, filters)
        concurrency = parallelism or self._parallelism
        if concurrency < 1:
            raise ValueError("parallelism must be >= 1")
        cancel = cancel or CancelToken()
        executor = self._executor(suite, test_timeout or self._test_timeout)
        log = logger.bind(suite=suite.name, tests=len(names), parallelism=concurrency)
        log.info("runner.start")
        started = time.monotonic()

        queue: asyncio.Queue[str] = asyncio.Queue()
        for name in names:
            queue.put_nowait(name)
        results: dict[str, TestResult] = {}

        def record(result: TestResult) -> None:
            results[result.name] = result
            if on_result is not None:
                on_result(result)

        async def worker() -> None:
            while True:
                try:
                    name = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                test = suite[name]
                if cancel.cancelled:
                    record(TestResult.skipped(name))
                    continue
                record(
                    await executor.execute(test, width_bits=suite.width_for(test), cancel=cancel)
                )

        workers = [asyncio.ensure_future(worker()) for _ in range(min(concurrency, len(names)))]
        try:
            if workers:
                await asyncio.wait(workers)
        except asyncio.CancelledError:
            # Outer cancellation: stop scheduling and let every executor tear down
            cancel.cancel("runner cancelled")
            await asyncio.wait(workers)
            raise

        for worker_task in workers:
            # Worker failures are framework bugs, never test outcomes
            worker_task.result()

        report = SuiteReport(
            suite=suite.name,
            results=[results[name] for name in names],
            duration=time.monotonic() - started,
            cancelled=cancel.cancelled,
        )
        log.info("runner.finish", cancelled=report.cancelled, **report.counts)
        return report
