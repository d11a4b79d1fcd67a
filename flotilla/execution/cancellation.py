"""Cooperative cancellation for a suite run."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable, Iterable

import structlog

logger = structlog.get_logger()

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancelToken:
    """One-shot cancellation flag shared by the runner and its executors.

    Cancelling never interrupts work directly: the runner stops dequeuing
    tests and each executor moves its network to CLOSING, then tears down.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.cancelled}, reason={self._reason!r})"

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self._reason = reason
        logger.warning("run.cancel", reason=reason)
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def install_signal_handlers(
        self,
        signals: Iterable[signal.Signals] = DEFAULT_SIGNALS,
    ) -> Callable[[], None]:
        """Cancel on the given signals. Returns a callable that restores the previous handlers.

        Must be called from the thread running the event loop.
        """
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        previous: dict[signal.Signals, object] = {}

        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.cancel, f"signal {sig.name}")
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # No loop-level signal support (e.g. Windows): fall back to signal.signal
                previous[sig] = signal.signal(
                    sig,
                    lambda signum, _frame: loop.call_soon_threadsafe(
                        self.cancel, f"signal {signal.Signals(signum).name}"
                    ),
                )

        def restore() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)
            for sig, handler in previous.items():
                signal.signal(sig, handler)

        return restore
