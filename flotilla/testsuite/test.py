"""Test and TestSuite declarations.

A Test pairs an initializer, which receives an open NetworkContext,
registers services and returns a config object, with a body that receives
that config and returns a verdict:

    suite = TestSuite("kv", network_width_bits=4)

    async def two_nodes(network):
        a = await network.add_service(ServiceSpec("a", "redis:7", ports={"redis": 6379}))
        b = await network.add_service(ServiceSpec("b", "redis:7", ports={"redis": 6379}))
        return (a, b)

    @suite.test(initializer=two_nodes)
    async def replication(nodes):
        ...
        return Verdict.passed()
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from flotilla.errors import InvalidSuiteError
from flotilla.networks.allocator import MAX_WIDTH_BITS

if TYPE_CHECKING:
    from flotilla.networks.network import NetworkContext
    from flotilla.testsuite.result import Verdict

ConfigT = TypeVar("ConfigT")

Initializer = Callable[["NetworkContext"], "Awaitable[ConfigT] | ConfigT"]
Body = Callable[[ConfigT], "Verdict | bool | None | Awaitable[Verdict | bool | None]"]

DEFAULT_WIDTH_BITS = 8


async def no_services(network: NetworkContext) -> NetworkContext:
    """Default initializer: registers nothing and hands the network to the body."""
    return network


def _check_width(width: int, *, what: str) -> None:
    if not isinstance(width, int) or isinstance(width, bool) or not 0 < width <= MAX_WIDTH_BITS:
        raise InvalidSuiteError(
            f"{what} network_width_bits must be an integer in 1..{MAX_WIDTH_BITS}, got {width!r}",
            details={"network_width_bits": width},
        )


@dataclass(frozen=True)
class Test(Generic[ConfigT]):
    """One declared test. Immutable."""

    __test__ = False

    name: str
    body: Body
    initializer: Initializer = no_services
    # Falls back to the suite default
    network_width_bits: int | None = None
    # Falls back to the runner's per-test timeout
    timeout: float | None = None
    description: str = ""

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise InvalidSuiteError("Test name must be a non-empty string")
        if self.network_width_bits is not None:
            _check_width(self.network_width_bits, what=f"Test {self.name!r}")
        if self.timeout is not None and self.timeout <= 0:
            raise InvalidSuiteError(
                f"Test {self.name!r} timeout must be positive",
                details={"timeout": self.timeout},
            )
        if not callable(self.body) or not callable(self.initializer):
            raise InvalidSuiteError(f"Test {self.name!r} needs a callable body and initializer")


class TestSuite:
    """Mapping of unique test name -> Test plus the default network width."""

    __test__ = False

    def __init__(
        self,
        name: str = "suite",
        *,
        network_width_bits: int = DEFAULT_WIDTH_BITS,
        tests: Mapping[str, Test] | list[Test] | None = None,
    ) -> None:
        _check_width(network_width_bits, what="Suite")
        self.name = name
        self.network_width_bits = network_width_bits
        self._tests: dict[str, Test] = {}
        if isinstance(tests, Mapping):
            for key, test in tests.items():
                if key != test.name:
                    raise InvalidSuiteError(
                        f"Suite key {key!r} does not match test name {test.name!r}"
                    )
                self.add(test)
        else:
            for test in tests or []:
                self.add(test)

    def __repr__(self) -> str:
        return f"TestSuite(name={self.name!r}, tests={len(self._tests)})"

    def __len__(self) -> int:
        return len(self._tests)

    def __contains__(self, name: object) -> bool:
        return name in self._tests

    def __iter__(self) -> Iterator[Test]:
        for name in self.names:
            yield self._tests[name]

    def __getitem__(self, name: str) -> Test:
        return self._tests[name]

    @property
    def tests(self) -> Mapping[str, Test]:
        return dict(self._tests)

    @property
    def names(self) -> list[str]:
        """Test names in lexicographic order."""
        return sorted(self._tests)

    def add(self, test: Test) -> Test:
        if test.name in self._tests:
            raise InvalidSuiteError(
                f"Duplicate test name {test.name!r}",
                details={"name": test.name},
            )
        self._tests[test.name] = test
        return test

    def test(
        self,
        name: str | None = None,
        *,
        initializer: Initializer = no_services,
        network_width_bits: int | None = None,
        timeout: float | None = None,
        description: str | None = None,
    ) -> Callable[[Body], Body]:
        """Decorator registering a test body."""

        def decorator(body: Body) -> Body:
            self.add(
                Test(
                    name=name or body.__name__,
                    body=body,
                    initializer=initializer,
                    network_width_bits=network_width_bits,
                    timeout=timeout,
                    description=description or (body.__doc__ or "").strip(),
                )
            )
            return body

        return decorator

    def width_for(self, test: Test) -> int:
        if test.network_width_bits is not None:
            return test.network_width_bits
        return self.network_width_bits

    def validate(self) -> None:
        if not self._tests:
            raise InvalidSuiteError(f"Suite {self.name!r} declares no tests")

    def metadata(self) -> dict[str, Any]:
        """Suite description for external tooling."""
        return {
            "name": self.name,
            "network_width_bits": self.network_width_bits,
            "tests": {
                test.name: {
                    "network_width_bits": self.width_for(test),
                    "timeout": test.timeout,
                    "description": test.description,
                }
                for test in self
            },
        }
