"""Test outcomes and suite reports."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Outcome(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    ERRORED = "errored"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


class Stage(str, Enum):
    """Executor stage a test was in when its outcome was decided."""

    SETUP = "setup"
    PROVISIONING = "provisioning"
    EXECUTION = "execution"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class Verdict:
    """What a test body returns: pass, or fail with a reason.

    Bodies may also return True/None (pass), False (fail) or raise
    AssertionError (fail with the assertion message).
    """

    ok: bool
    reason: str | None = None

    @classmethod
    def passed(cls) -> Verdict:
        return cls(True)

    @classmethod
    def failed(cls, reason: str) -> Verdict:
        return cls(False, reason)

    @classmethod
    def coerce(cls, value: Any) -> Verdict:
        if isinstance(value, Verdict):
            return value
        if value is None or value is True:
            return cls.passed()
        if value is False:
            return cls.failed("test body returned False")
        raise TypeError(
            f"Test body must return a Verdict, a bool or None, got {type(value).__name__}"
        )


@dataclass
class TestResult:
    """Outcome of one test."""

    __test__ = False

    name: str
    outcome: Outcome
    stage: Stage | None = None
    reason: str | None = None
    error_code: str | None = None
    duration: float = 0.0
    # Sink handle for the test's captured log (path, memory:// URI, ...)
    log: str | None = None
    teardown_errors: list[str] = field(default_factory=list)
    network: str | None = None
    subnet: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.PASSED

    @property
    def cancelled(self) -> bool:
        return self.error_code == "cancelled"

    @classmethod
    def skipped(cls, name: str, reason: str = "cancelled") -> TestResult:
        return cls(name, Outcome.SKIPPED, reason=reason, error_code="cancelled")

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "stage": self.stage.value if self.stage else None,
            "reason": self.reason,
            "error_code": self.error_code,
            "duration": round(self.duration, 3),
            "log": self.log,
            "teardown_errors": list(self.teardown_errors),
            "network": self.network,
            "subnet": self.subnet,
        }

    def __str__(self) -> str:
        label = self.outcome.value.upper()
        if self.stage and self.outcome in (Outcome.ERRORED, Outcome.TIMED_OUT):
            label = f"{label}({self.stage.value})"
        if self.reason:
            return f"{self.name}: {label} {self.reason}"
        return f"{self.name}: {label}"


@dataclass
class SuiteReport:
    """Per-test results (in test-name order) plus aggregates."""

    suite: str
    results: list[TestResult]
    duration: float = 0.0
    cancelled: bool = False

    def __post_init__(self) -> None:
        self.results = sorted(self.results, key=lambda r: r.name)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, name: str) -> TestResult:
        for result in self.results:
            if result.name == name:
                return result
        raise KeyError(name)

    @property
    def counts(self) -> dict[str, int]:
        counter = Counter(result.outcome for result in self.results)
        return {outcome.value: counter.get(outcome, 0) for outcome in Outcome}

    @property
    def succeeded(self) -> bool:
        """True when nothing was cancelled and every test passed."""
        return not self.cancelled and all(r.succeeded for r in self.results)

    def outcomes(self) -> dict[str, Outcome]:
        return {result.name: result.outcome for result in self.results}

    def to_dict(self) -> dict[str, Any]:
        return {
            "suite": self.suite,
            "duration": round(self.duration, 3),
            "cancelled": self.cancelled,
            "succeeded": self.succeeded,
            "counts": self.counts,
            "results": [result.to_dict() for result in self.results],
        }
