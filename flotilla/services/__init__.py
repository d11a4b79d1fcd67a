"""Services - descriptors, contexts and availability checks."""

from flotilla.services.checks import CommandCheck, HttpHealthCheck, TcpPortCheck
from flotilla.services.service import (
    AvailabilityCheck,
    Service,
    ServiceContext,
    ServiceLaunch,
    ServiceSpec,
    ServiceState,
)

__all__ = [
    "AvailabilityCheck",
    "CommandCheck",
    "HttpHealthCheck",
    "Service",
    "ServiceContext",
    "ServiceLaunch",
    "ServiceSpec",
    "ServiceState",
    "TcpPortCheck",
]
