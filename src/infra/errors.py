"""Custom exception hierarchy for bridgectl.

All application-specific exceptions inherit from BridgeCtlError,
which carries an error code for CLI / event reporting.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Structured failure category, set once at the CommandGateway boundary."""

    address_in_use = "address_in_use"
    device_not_found = "device_not_found"
    config_not_found = "config_not_found"
    not_supported = "not_supported"
    timeout = "timeout"
    network = "network"
    client_error = "client_error"
    server_error = "server_error"
    unknown = "unknown"


class BridgeCtlError(Exception):
    """Base exception for all bridgectl errors."""

    def __init__(self, message: str, *, code: str = "INTERNAL_ERROR") -> None:
        super().__init__(message)
        self.code = code


class ValidationError(BridgeCtlError):
    """Configuration is incomplete or malformed. Raised before any network call."""

    def __init__(self, message: str, *, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message, code=code)


class NotFoundError(BridgeCtlError):
    """Configuration vanished locally or server-side."""

    def __init__(self, message: str, *, code: str = "CONFIG_NOT_FOUND") -> None:
        super().__init__(message, code=code)


class AlreadyInProgressError(BridgeCtlError):
    """Start requested while the configuration is already starting or running."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="ALREADY_IN_PROGRESS")


class InvalidStateError(BridgeCtlError):
    """Operation not allowed from the configuration's current lifecycle state."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_STATE")


class ConfirmationRequiredError(BridgeCtlError):
    """Destructive operation on a running configuration needs explicit confirmation."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CONFIRMATION_REQUIRED")


class TransportError(BridgeCtlError):
    """Network or backend failure. Carries the classified ErrorKind."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.unknown,
        status_code: int | None = None,
        code: str = "TRANSPORT_ERROR",
    ) -> None:
        super().__init__(message, code=code)
        self.kind = kind
        self.status_code = status_code


class StopNotSupportedError(TransportError):
    """Backend does not implement targeted instance stop."""

    def __init__(self, message: str = "Individual instance stop not supported by backend") -> None:
        super().__init__(
            message, kind=ErrorKind.not_supported, status_code=404, code="STOP_NOT_SUPPORTED"
        )


class VerificationFailure(BridgeCtlError):
    """Stop was accepted by the backend but never confirmed by remote status."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="VERIFICATION_FAILED")


class PersistenceFailure(BridgeCtlError):
    """Lock-state storage I/O error. Logged by the persistence layer, never propagated."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="PERSISTENCE_ERROR")
