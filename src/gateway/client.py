"""CommandGateway: thin async client for the remote forwarding control API.

Every failure leaving this module is a TransportError whose ErrorKind was
classified here, from the HTTP status and error body. Callers branch on
``err.kind``, never on message text.
"""

from __future__ import annotations

from typing import Any, Protocol

import httpx
import structlog

from src.gateway.protocol import (
    CommandResult,
    StartForwardingRequest,
    StatusSnapshot,
    StopInstanceRequest,
    parse_error_body,
)
from src.infra.errors import ErrorKind, StopNotSupportedError, TransportError

logger = structlog.get_logger()

_MESSAGE_KINDS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("eaddrinuse", "address already in use"), ErrorKind.address_in_use),
    (("enoent", "no such file", "device not found"), ErrorKind.device_not_found),
    (("configuration not found", "config not found"), ErrorKind.config_not_found),
)


def classify_failure(status_code: int | None, message: str) -> ErrorKind:
    """Map an HTTP failure to an ErrorKind. Message hints win over the status class."""
    lowered = message.lower()
    for needles, kind in _MESSAGE_KINDS:
        if any(n in lowered for n in needles):
            return kind
    if status_code is None:
        return ErrorKind.unknown
    if status_code in (408, 504):
        return ErrorKind.timeout
    if 400 <= status_code < 500:
        return ErrorKind.client_error
    if status_code >= 500:
        return ErrorKind.server_error
    return ErrorKind.unknown


class CommandGateway(Protocol):
    """Remote control API consumed by the lifecycle engine."""

    async def start(self, bridge_type: str, config_id: str) -> CommandResult: ...

    async def stop_instance(self, instance_id: str) -> CommandResult: ...

    async def stop_all(self) -> CommandResult: ...

    async def emergency_stop_all(self) -> CommandResult: ...

    async def query_status(self) -> StatusSnapshot: ...


class HttpCommandGateway:
    """CommandGateway over the bridge service's JSON HTTP API (httpx)."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_s),
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def start(self, bridge_type: str, config_id: str) -> CommandResult:
        body = StartForwardingRequest(type=bridge_type, config_id=config_id)
        data = await self._request(
            "POST", "/api/start-forwarding", json=body.model_dump(by_alias=True),
            operation="start_forwarding",
        )
        logger.info("gateway_start_ok", bridge_type=bridge_type, config_id=config_id)
        return CommandResult.model_validate(data)

    async def stop_instance(self, instance_id: str) -> CommandResult:
        """Targeted stop. Raises StopNotSupportedError if the backend answers 404."""
        instance_id = instance_id.strip()
        if not instance_id:
            raise TransportError("Instance ID is required", kind=ErrorKind.client_error)
        body = StopInstanceRequest(instance_id=instance_id)
        try:
            data = await self._request(
                "POST", "/api/stop-instance", json=body.model_dump(by_alias=True),
                operation="stop_instance",
            )
        except TransportError as exc:
            if exc.status_code == 404:
                raise StopNotSupportedError() from exc
            raise
        return CommandResult.model_validate(data)

    async def stop_all(self) -> CommandResult:
        data = await self._request("POST", "/api/stop-forwarding", operation="stop_forwarding")
        return CommandResult.model_validate(data)

    async def emergency_stop_all(self) -> CommandResult:
        data = await self._request("POST", "/api/emergency-stop", operation="emergency_stop")
        return CommandResult.model_validate(data)

    async def query_status(self) -> StatusSnapshot:
        data = await self._request("GET", "/api/status", operation="query_status")
        return StatusSnapshot.model_validate(data)

    async def _request(
        self, method: str, url: str, *, operation: str, json: Any = None
    ) -> Any:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.TimeoutException as exc:
            logger.warning("gateway_timeout", operation=operation, url=url)
            raise TransportError(
                f"{operation} timed out", kind=ErrorKind.timeout
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("gateway_network_error", operation=operation, url=url, error=str(exc))
            raise TransportError(
                f"{operation} failed: {exc}", kind=ErrorKind.network
            ) from exc

        if response.is_error:
            message = _error_message(response)
            kind = classify_failure(response.status_code, message)
            logger.warning(
                "gateway_error_response",
                operation=operation,
                status=response.status_code,
                kind=kind.value,
                error=message,
            )
            raise TransportError(
                message or f"HTTP {response.status_code}",
                kind=kind,
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError:
            return {"success": True, "message": response.text}


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = response.text
    return parse_error_body(payload) or f"HTTP {response.status_code}: {response.reason_phrase}"
