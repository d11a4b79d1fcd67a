"""TestExecutor - runs one test end to end.

Stages:
    1. SETUP         take a subnet from the suite pool, create the network
    2. PROVISIONING  run the initializer (services are added and gated on readiness)
    3. EXECUTION     seal the network, run the body with the initializer's config
    4. TEARDOWN      close the network, give the subnet back

Stages 1-3 run as one task under the test's deadline. Teardown runs exactly
once per execute() call, whatever happened before it: success, failure,
timeout, cancellation, or cancellation of execute() itself.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from flotilla.drivers.base import Driver, IPNetwork
from flotilla.errors import (
    ExecutionCancelledError,
    FlotillaError,
    TeardownFailedError,
    UserInitError,
    error_code_of,
)
from flotilla.execution.cancellation import CancelToken
from flotilla.execution.logs import LogSink, capture_logs_to, install_capture_processor
from flotilla.networks.network import DEFAULT_SHARED_MOUNT, NetworkContext
from flotilla.networks.subnet_pool import SubnetPool
from flotilla.readiness.poller import ReadinessPoller
from flotilla.testsuite.result import Outcome, Stage, TestResult, Verdict
from flotilla.testsuite.test import DEFAULT_WIDTH_BITS, Test
from flotilla.utils.calls import is_async_callable
from flotilla.utils.naming import short_id, slugify

logger = structlog.get_logger()


class _Run:
    """Mutable state of one execute() call, shared with its stage task."""

    def __init__(self) -> None:
        self.stage = Stage.SETUP
        self.subnet: IPNetwork | None = None
        self.network: NetworkContext | None = None


class TestExecutor:
    """Runs single tests against a driver, drawing subnets from a shared pool."""

    __test__ = False

    def __init__(
        self,
        driver: Driver,
        subnet_pool: SubnetPool,
        *,
        default_width_bits: int = DEFAULT_WIDTH_BITS,
        timeout: float = 300.0,
        poller: ReadinessPoller | None = None,
        stop_grace: float = 10.0,
        cancel_grace: float = 5.0,
        network_prefix: str = "flotilla",
        shared_dir: str | Path | None = None,
        shared_mount: str = DEFAULT_SHARED_MOUNT,
        log_sink: LogSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._driver = driver
        self._subnets = subnet_pool
        self._default_width_bits = default_width_bits
        self._timeout = timeout
        self._poller = poller or ReadinessPoller()
        self._stop_grace = stop_grace
        self._cancel_grace = cancel_grace
        self._network_prefix = network_prefix
        self._shared_dir = shared_dir
        self._shared_mount = shared_mount
        self._log_sink = log_sink
        self._clock = clock

    @property
    def driver(self) -> Driver:
        return self._driver

    def network_name(self, test: Test) -> str:
        return f"{self._network_prefix}-{slugify(test.name, max_length=32)}-{short_id()}"

    async def execute(
        self,
        test: Test,
        *,
        width_bits: int | None = None,
        cancel: CancelToken | None = None,
    ) -> TestResult:
        """Run `test` and return its result. Never raises for test-level failures."""
        if self._log_sink is not None:
            install_capture_processor()
        with capture_logs_to(self._log_sink, test.name), structlog.contextvars.bound_contextvars(
            test=test.name
        ):
            result = await self._execute(test, width_bits, cancel)
        result.log = self._log_sink.handle(test.name) if self._log_sink else None
        return result

    async def _execute(
        self,
        test: Test,
        width_bits: int | None,
        cancel: CancelToken | None,
    ) -> TestResult:
        started = self._clock()
        if cancel is not None and cancel.cancelled:
            return TestResult.skipped(test.name)

        width = width_bits or test.network_width_bits or self._default_width_bits
        timeout = test.timeout or self._timeout
        run = _Run()
        log = logger.bind(timeout=timeout, width_bits=width)
        log.info("executor.start")

        outcome: tuple[Outcome, Stage | None, str | None, str | None]
        try:
            outcome = await self._run_stages(test, run, width, timeout, cancel, log)
        finally:
            teardown_errors = await self._teardown(run, log)

        status, stage, reason, code = outcome
        if teardown_errors and status is Outcome.PASSED:
            log.warning(
                "executor.teardown.downgraded",
                original_outcome=status.value,
                errors=[str(e) for e in teardown_errors],
            )
            status, stage, code = Outcome.ERRORED, Stage.TEARDOWN, TeardownFailedError.code
            reason = "teardown failed: " + "; ".join(str(e) for e in teardown_errors)

        result = TestResult(
            name=test.name,
            outcome=status,
            stage=stage,
            reason=reason,
            error_code=code,
            duration=self._clock() - started,
            teardown_errors=[str(e) for e in teardown_errors],
            network=run.network.name if run.network else None,
            subnet=str(run.subnet) if run.subnet else None,
        )
        log.info(
            "executor.finish",
            outcome=status.value,
            stage=stage.value if stage else None,
            reason=reason,
            duration=round(result.duration, 3),
        )
        return result

    async def _run_stages(
        self,
        test: Test,
        run: _Run,
        width: int,
        timeout: float,
        cancel: CancelToken | None,
        log: Any,
    ) -> tuple[Outcome, Stage | None, str | None, str | None]:
        task = asyncio.ensure_future(self._stages(test, run, width))
        waiters: set[asyncio.Future] = {task}
        cancel_wait: asyncio.Future | None = None
        if cancel is not None:
            cancel_wait = asyncio.ensure_future(cancel.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            log.warning("executor.interrupted", stage=run.stage.value)
            await self._interrupt(task, run)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if task in done:
            return self._classify(task, run)

        stage = run.stage
        await self._interrupt(task, run)
        if cancel is not None and cancel.cancelled:
            log.warning("executor.cancelled", stage=stage.value)
            return Outcome.ERRORED, stage, f"cancelled during {stage.value}", ExecutionCancelledError.code

        log.warning("executor.timeout", stage=stage.value)
        return (
            Outcome.TIMED_OUT,
            stage,
            f"exceeded {timeout:g}s deadline during {stage.value}",
            "deadline_exceeded",
        )

    async def _interrupt(self, task: asyncio.Future, run: _Run) -> None:
        """Close the network to the stage task, then cancel it if it does not unwind in time."""
        if run.network is not None:
            run.network.begin_closing()
        done, _ = await asyncio.wait({task}, timeout=self._cancel_grace)
        if not done:
            task.cancel()
        # Retrieve the outcome so an abandoned failure is never reported as unhandled
        await asyncio.gather(task, return_exceptions=True)

    async def _stages(self, test: Test, run: _Run, width: int) -> Verdict:
        run.stage = Stage.SETUP
        run.subnet = self._subnets.allocate(width)
        run.network = NetworkContext(
            self._driver,
            run.subnet,
            name=self.network_name(test),
            poller=self._poller,
            stop_grace=self._stop_grace,
            shared_dir=self._shared_dir,
            shared_mount=self._shared_mount,
            labels={"flotilla.test": slugify(test.name, max_length=63)},
        )
        await run.network.open()

        run.stage = Stage.PROVISIONING
        try:
            if is_async_callable(test.initializer):
                config = await test.initializer(run.network)
            else:
                config = test.initializer(run.network)
                if inspect.isawaitable(config):
                    config = await config
        except FlotillaError:
            raise
        except Exception as e:
            raise UserInitError(
                f"{type(e).__name__}: {e}",
                details={"test": test.name, "error_type": type(e).__name__},
            ) from e

        run.network.seal()
        run.stage = Stage.EXECUTION
        if is_async_callable(test.body):
            value = await test.body(config)
        else:
            value = await asyncio.to_thread(test.body, config)
            if inspect.isawaitable(value):
                value = await value
        return Verdict.coerce(value)

    def _classify(
        self, task: asyncio.Future, run: _Run
    ) -> tuple[Outcome, Stage | None, str | None, str | None]:
        stage = run.stage
        if task.cancelled():
            return Outcome.ERRORED, stage, f"cancelled during {stage.value}", ExecutionCancelledError.code

        error = task.exception()
        if error is None:
            verdict: Verdict = task.result()
            if verdict.ok:
                return Outcome.PASSED, None, None, None
            return Outcome.FAILED, Stage.EXECUTION, verdict.reason, "assertion_failed"

        if stage is Stage.EXECUTION:
            if isinstance(error, AssertionError):
                return Outcome.FAILED, stage, str(error) or "assertion failed", "assertion_failed"
            logger.error(
                "executor.body.fault",
                error_type=type(error).__name__,
                error=str(error),
                exc_info=error,
            )
            return Outcome.ERRORED, stage, f"{type(error).__name__}: {error}", "unexpected_fault"

        logger.warning("executor.stage.failed", stage=stage.value, error=str(error))
        reason = error.message if isinstance(error, FlotillaError) else str(error)
        return Outcome.ERRORED, stage, reason, error_code_of(error)

    async def _teardown(self, run: _Run, log: Any) -> list[BaseException]:
        """Close the network and return the subnet. The only teardown call site."""
        errors: list[BaseException] = []
        network = run.network
        if network is not None:
            try:
                # Shielded: teardown completes even if execute() itself is cancelled
                await asyncio.shield(network.close())
            except TeardownFailedError as e:
                errors.extend(e.errors or [e])
            except Exception as e:
                errors.append(e)
            for error in errors:
                log.error("executor.teardown.failed", error=str(error), error_code=error_code_of(error))

        if run.subnet is not None:
            if network is None or network.destroyed:
                self._subnets.release(run.subnet)
            else:
                # The runtime may still hold this range
                self._subnets.quarantine(run.subnet)
        return errors
