"""ReadinessPoller - gates a starting service until its availability check passes.

The poller invokes the check, waits `interval` between attempts and gives up
once `deadline` has elapsed since the first attempt. A check that raises is
"not ready yet", never fatal. Polling stops promptly, without another
invocation, as soon as the `closing` event is set.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from flotilla.errors import ExecutionCancelledError, ReadinessTimeoutError

if TYPE_CHECKING:
    from flotilla.config import ReadinessConfig
    from flotilla.services.service import ServiceContext, ServiceSpec

logger = structlog.get_logger()


class PollOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PollResult:
    outcome: PollOutcome
    attempts: int
    elapsed: float
    last_error: BaseException | None = None


class ReadinessPoller:
    """Polls an availability check until ready, deadline or cancellation."""

    def __init__(
        self,
        interval: float = 1.0,
        deadline: float = 60.0,
        *,
        backoff_factor: float = 1.0,
        max_interval: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if deadline <= 0:
            raise ValueError("deadline must be positive")
        if backoff_factor < 1.0:
            raise ValueError("backoff_factor must be >= 1.0")
        self.interval = interval
        self.deadline = deadline
        self.backoff_factor = backoff_factor
        self.max_interval = max_interval if max_interval is not None else max(interval, 5.0)
        self._clock = clock

    def __repr__(self) -> str:
        return (
            f"ReadinessPoller(interval={self.interval}, deadline={self.deadline}, "
            f"backoff_factor={self.backoff_factor})"
        )

    @classmethod
    def from_config(cls, config: ReadinessConfig) -> ReadinessPoller:
        return cls(
            config.poll_interval,
            config.deadline,
            backoff_factor=config.backoff_factor,
            max_interval=config.max_interval,
        )

    def for_service(self, spec: ServiceSpec) -> ReadinessPoller:
        """Poller with the service's interval/deadline overrides applied."""
        if spec.poll_interval is None and spec.readiness_deadline is None:
            return self
        interval = spec.poll_interval or self.interval
        return ReadinessPoller(
            interval,
            spec.readiness_deadline or self.deadline,
            backoff_factor=self.backoff_factor,
            max_interval=max(self.max_interval, interval),
            clock=self._clock,
        )

    async def wait_until(
        self,
        check: Callable[[], Awaitable[bool]],
        *,
        closing: asyncio.Event | None = None,
        name: str = "",
    ) -> PollResult:
        """Run `check` until it returns True, the deadline passes or `closing` is set."""
        closing = closing or asyncio.Event()
        log = logger.bind(service_id=name) if name else logger
        started = self._clock()
        interval = self.interval
        attempts = 0
        last_error: BaseException | None = None

        def result(outcome: PollOutcome) -> PollResult:
            return PollResult(outcome, attempts, self._clock() - started, last_error)

        while True:
            if closing.is_set():
                log.info("readiness.cancelled", attempts=attempts)
                return result(PollOutcome.CANCELLED)

            remaining = self.deadline - (self._clock() - started)
            if remaining <= 0:
                log.warning("readiness.timeout", attempts=attempts, deadline=self.deadline)
                return result(PollOutcome.TIMED_OUT)

            attempts += 1
            attempt = asyncio.ensure_future(check())
            closed = asyncio.ensure_future(closing.wait())
            try:
                done, _ = await asyncio.wait(
                    {attempt, closed},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                closed.cancel()
                if not attempt.done():
                    attempt.cancel()
                    # Reap so the cancelled attempt never reports an unretrieved error
                    await asyncio.gather(attempt, return_exceptions=True)

            if attempt in done:
                try:
                    if attempt.result():
                        log.info("readiness.ready", attempts=attempts)
                        return result(PollOutcome.READY)
                    last_error = None
                except Exception as e:
                    last_error = e
                    log.debug("readiness.check_error", attempts=attempts, error=str(e))
            elif not closing.is_set():
                # Attempt was still running when the deadline elapsed
                continue

            if closing.is_set():
                continue

            remaining = self.deadline - (self._clock() - started)
            if remaining <= 0:
                continue
            try:
                await asyncio.wait_for(closing.wait(), timeout=min(interval, remaining))
            except asyncio.TimeoutError:
                pass
            interval = min(interval * self.backoff_factor, self.max_interval)

    async def poll(
        self,
        service: ServiceContext,
        *,
        closing: asyncio.Event | None = None,
    ) -> PollResult:
        """Poll a STARTING service and move it to READY or FAILED."""
        poller = self.for_service(service.spec)
        outcome = await poller.wait_until(
            service.is_available,
            closing=closing,
            name=service.service_id,
        )
        if service.state.is_terminal:
            # Network teardown already settled this service
            return outcome
        if outcome.outcome is PollOutcome.READY:
            service._mark_ready()
        elif outcome.outcome is PollOutcome.TIMED_OUT:
            service._mark_failed(
                ReadinessTimeoutError(
                    f"Service {service.service_id!r} not available after {poller.deadline}s",
                    details={
                        "service_id": service.service_id,
                        "deadline": poller.deadline,
                        "attempts": outcome.attempts,
                        "last_error": str(outcome.last_error) if outcome.last_error else None,
                    },
                )
            )
        else:
            service._mark_failed(
                ExecutionCancelledError(
                    f"Readiness polling for {service.service_id!r} cancelled",
                    details={"service_id": service.service_id},
                )
            )
        return outcome
