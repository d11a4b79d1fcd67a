"""Execution - single-test executor, suite runner, cancellation and log capture."""

from flotilla.execution.cancellation import CancelToken
from flotilla.execution.executor import TestExecutor
from flotilla.execution.logs import JsonLinesLogSink, LogSink, MemoryLogSink, capture_logs_to
from flotilla.execution.runner import SuiteRunner, select_tests

__all__ = [
    "CancelToken",
    "JsonLinesLogSink",
    "LogSink",
    "MemoryLogSink",
    "SuiteRunner",
    "TestExecutor",
    "capture_logs_to",
    "select_tests",
]
