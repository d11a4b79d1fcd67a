"""Per-test log capture.

The executor opens a capture scope for each test. The scope lives in a
context variable, so every structlog event emitted by the test's task (and
by tasks or threads it spawns) is forwarded to the caller-provided sink under
the test's name. Forwarding is done by `capture_processor`, which
`flotilla.logging.configure_logging` puts in the processor chain. Without
it, `install_capture_processor` adds the processor to whatever chain
structlog is configured with.
"""

from __future__ import annotations

import json
import threading
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import structlog

from flotilla.utils.naming import slugify

_capture: ContextVar[tuple[LogSink, str] | None] = ContextVar("flotilla_log_capture", default=None)


@runtime_checkable
class LogSink(Protocol):
    """Destination for captured per-test log records."""

    def write(self, test_name: str, record: dict[str, Any]) -> None: ...

    def handle(self, test_name: str) -> str | None: ...


class MemoryLogSink:
    """Keeps records in memory, keyed by test name."""

    def __init__(self) -> None:
        self._records: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._lock = threading.Lock()

    def write(self, test_name: str, record: dict[str, Any]) -> None:
        with self._lock:
            self._records[test_name].append(record)

    def handle(self, test_name: str) -> str | None:
        return f"memory://{test_name}"

    def records(self, test_name: str) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._records.get(test_name, []))

    def events(self, test_name: str) -> list[str]:
        return [record.get("event", "") for record in self.records(test_name)]


class JsonLinesLogSink:
    """Appends records to `<directory>/<test>.jsonl`, one JSON object per line."""

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def path_for(self, test_name: str) -> Path:
        return self.directory / f"{slugify(test_name, max_length=120)}.jsonl"

    def write(self, test_name: str, record: dict[str, Any]) -> None:
        line = json.dumps(record, default=str)
        with self._lock, open(self.path_for(test_name), "a", encoding="utf-8") as f:
            f.write(line + "\n")

    def handle(self, test_name: str) -> str | None:
        return str(self.path_for(test_name))


@contextmanager
def capture_logs_to(sink: LogSink | None, test_name: str) -> Iterator[None]:
    """Route structlog events from the current context to `sink` under `test_name`."""
    if sink is None:
        yield
        return
    token = _capture.set((sink, test_name))
    try:
        yield
    finally:
        _capture.reset(token)


def capture_processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor forwarding a copy of each event to the active capture sink."""
    current = _capture.get()
    if current is not None:
        sink, test_name = current
        record = dict(event_dict)
        record.setdefault("level", method_name)
        sink.write(test_name, record)
    return event_dict


def install_capture_processor() -> None:
    """Add `capture_processor` to structlog's chain unless it is already there.

    It goes just ahead of the last processor, the renderer, which turns the
    event dict into a string.
    """
    processors = list(structlog.get_config()["processors"])
    if capture_processor in processors:
        return
    processors.insert(max(len(processors) - 1, 0), capture_processor)
    structlog.configure(processors=processors)
