"""Flotilla error types.

Error codes are stable strings for programmatic handling and are what a
TestResult records in `error_code`.
"""

from __future__ import annotations

from typing import Any


class FlotillaError(Exception):
    """Base error for all flotilla exceptions."""

    code: str = "internal_error"
    message: str = "An internal error occurred"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.__class__.message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


# Address allocation


class PoolExhaustedError(FlotillaError):
    """No unreserved address is left in the network's subnet."""

    code = "pool_exhausted"
    message = "Address pool exhausted"


class NotAllocatedError(FlotillaError):
    """Release of an address (or subnet) that is not currently allocated."""

    code = "not_allocated"
    message = "Address is not allocated"


class SubnetPoolExhaustedError(FlotillaError):
    """The suite-wide pool cannot fit another subnet of the requested width."""

    code = "subnet_pool_exhausted"
    message = "Subnet pool exhausted"


# Driver


class DriverError(FlotillaError):
    """Base for failures reported by a container driver."""

    code = "driver_error"
    message = "Container driver error"


class NetworkCreateFailedError(DriverError):
    code = "network_create_failed"
    message = "Failed to create network"


class NetworkDestroyFailedError(DriverError):
    code = "network_destroy_failed"
    message = "Failed to destroy network"


class ImagePullFailedError(DriverError):
    code = "image_pull_failed"
    message = "Failed to pull image"


class AddressInUseError(DriverError):
    code = "address_in_use"
    message = "Address already in use"


class StartFailedError(DriverError):
    code = "start_failed"
    message = "Failed to start service container"


class StopFailedError(DriverError):
    code = "stop_failed"
    message = "Failed to stop service container"


class CopyFilesFailedError(DriverError):
    code = "copy_files_failed"
    message = "Failed to copy files into container"


class ExecFailedError(DriverError):
    code = "exec_failed"
    message = "Failed to execute command in container"


# Service lifecycle


class ReadinessTimeoutError(FlotillaError):
    """Availability check never succeeded before the service's deadline."""

    code = "readiness_timeout"
    message = "Service did not become available in time"


class ExecutionCancelledError(FlotillaError):
    """Work was abandoned because cancellation was requested.

    Note: Named to avoid shadowing asyncio.CancelledError.
    """

    code = "cancelled"
    message = "Cancelled"


class NetworkClosedError(FlotillaError):
    """Network no longer accepts services (closing, closed, or sealed)."""

    code = "network_closed"
    message = "Network is not accepting new services"


class DuplicateServiceError(FlotillaError):
    code = "duplicate_service"
    message = "Service ID already exists in the network"


class ServiceNotFoundError(FlotillaError):
    code = "service_not_found"
    message = "Service not found"


class InvalidStateTransitionError(FlotillaError):
    code = "invalid_transition"
    message = "Invalid service state transition"


# Test execution


class UserInitError(FlotillaError):
    """An exception escaped the test initializer."""

    code = "user_init_error"
    message = "Test initializer failed"


class TeardownFailedError(FlotillaError):
    """One or more teardown steps failed.

    The individual errors are kept in `errors`; teardown always runs every
    step before raising this.
    """

    code = "teardown_failed"
    message = "Teardown failed"

    def __init__(
        self,
        message: str | None = None,
        details: dict[str, Any] | None = None,
        errors: list[BaseException] | None = None,
    ) -> None:
        self.errors = list(errors or [])
        if details is None:
            details = {"errors": [str(e) for e in self.errors]}
        super().__init__(message, details)


class DeadlineExceededError(FlotillaError):
    code = "deadline_exceeded"
    message = "Test deadline exceeded"


class InvalidSuiteError(FlotillaError):
    code = "invalid_suite"
    message = "Invalid test suite"


class InvalidFilterError(FlotillaError):
    code = "invalid_filter"
    message = "Invalid test filter"


# Error code to exception class mapping
ERROR_CODE_MAP: dict[str, type[FlotillaError]] = {
    cls.code: cls
    for cls in (
        FlotillaError,
        PoolExhaustedError,
        NotAllocatedError,
        SubnetPoolExhaustedError,
        DriverError,
        NetworkCreateFailedError,
        NetworkDestroyFailedError,
        ImagePullFailedError,
        AddressInUseError,
        StartFailedError,
        StopFailedError,
        CopyFilesFailedError,
        ExecFailedError,
        ReadinessTimeoutError,
        ExecutionCancelledError,
        NetworkClosedError,
        DuplicateServiceError,
        ServiceNotFoundError,
        InvalidStateTransitionError,
        UserInitError,
        TeardownFailedError,
        DeadlineExceededError,
        InvalidSuiteError,
        InvalidFilterError,
    )
}


def error_code_of(error: BaseException) -> str:
    """Stable code for any exception (non-flotilla errors map to their class name)."""
    if isinstance(error, FlotillaError):
        return error.code
    return type(error).__name__
