from __future__ import annotations

from typing import Optional


class NotifyError(Exception):
    """Base error for discord-notify."""

    recoverable = False
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(NotifyError):
    """Retryable failure (network blips, rate limits)."""

    recoverable = True
    severity = "warning"


class PermanentError(NotifyError):
    """Failure that will not go away by retrying."""

    recoverable = False
    severity = "error"


class ConfigError(NotifyError):
    """Missing or invalid configuration. Fatal at daemon startup."""


class ConnectError(NotifyError):
    """The CLI could not reach the daemon endpoint."""


class ProtocolError(NotifyError):
    """A malformed IPC record."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "PARSE_ERROR",
        request_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class DeliveryError(NotifyError):
    """The external channel rejected or failed to send a notification."""


class DaemonAlreadyRunningError(NotifyError):
    """Another daemon is listening on the IPC endpoint."""


class RecoveryFailure(NotifyError):
    """Best-effort resume/injection failed. Only ever logged."""
