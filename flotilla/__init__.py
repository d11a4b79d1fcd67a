"""flotilla - container-network integration testing.

Each test gets a private network with its own subnet; services are started
at deterministic addresses, gated on readiness, exercised by the test body
and torn down whatever the outcome.
"""

__version__ = "0.1.0"

from flotilla.errors import FlotillaError
from flotilla.execution import CancelToken, MemoryLogSink, SuiteRunner, TestExecutor
from flotilla.networks import AddressAllocator, NetworkContext, SubnetPool
from flotilla.readiness import ReadinessPoller
from flotilla.services import (
    CommandCheck,
    HttpHealthCheck,
    ServiceContext,
    ServiceSpec,
    ServiceState,
    TcpPortCheck,
)
from flotilla.testsuite import Outcome, Stage, SuiteReport, Test, TestResult, TestSuite, Verdict

__all__ = [
    "AddressAllocator",
    "CancelToken",
    "CommandCheck",
    "FlotillaError",
    "HttpHealthCheck",
    "MemoryLogSink",
    "NetworkContext",
    "Outcome",
    "ReadinessPoller",
    "ServiceContext",
    "ServiceSpec",
    "ServiceState",
    "Stage",
    "SubnetPool",
    "SuiteReport",
    "SuiteRunner",
    "TcpPortCheck",
    "Test",
    "TestExecutor",
    "TestResult",
    "TestSuite",
    "Verdict",
    "__version__",
]
