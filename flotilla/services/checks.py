"""Ready-made availability checks.

Each check is a callable taking a ServiceContext and resolving to a bool, so
it can be passed directly as `ServiceSpec.availability`. Errors raised while
probing are left to the readiness poller, which treats them as "not ready".
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING

import httpx
import structlog

if TYPE_CHECKING:
    from flotilla.services.service import ServiceContext

logger = structlog.get_logger()


class HttpHealthCheck:
    """Ready when GET <service>:<port><path> answers with the expected status (and body)."""

    def __init__(
        self,
        port: str,
        path: str = "/health",
        *,
        expected_status: int = 200,
        expected_body: str | None = None,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.port = port
        self.path = path
        self.expected_status = expected_status
        self.expected_body = expected_body
        self.timeout = timeout
        self._transport = transport

    def __repr__(self) -> str:
        return f"HttpHealthCheck(port={self.port!r}, path={self.path!r})"

    async def __call__(self, service: ServiceContext) -> bool:
        url = service.url(self.port, self.path)
        async with httpx.AsyncClient(
            timeout=self.timeout,
            trust_env=False,
            transport=self._transport,
        ) as client:
            response = await client.get(url)

        if response.status_code != self.expected_status:
            logger.debug(
                "check.http.unexpected_status",
                service_id=service.service_id,
                url=url,
                status=response.status_code,
            )
            return False
        if self.expected_body is not None and response.text.strip() != self.expected_body:
            return False
        return True


class TcpPortCheck:
    """Ready when a TCP connection to the port is accepted."""

    def __init__(self, port: str, *, timeout: float = 2.0) -> None:
        self.port = port
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"TcpPortCheck(port={self.port!r})"

    async def __call__(self, service: ServiceContext) -> bool:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(service.ip_address, service.port(self.port)),
            timeout=self.timeout,
        )
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class CommandCheck:
    """Ready when a command run inside the container exits with 0."""

    def __init__(self, command: Sequence[str]) -> None:
        self.command = list(command)

    def __repr__(self) -> str:
        return f"CommandCheck(command={self.command!r})"

    async def __call__(self, service: ServiceContext) -> bool:
        result = await service.exec_command(self.command)
        return result.exit_code == 0
