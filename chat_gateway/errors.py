"""Exceptions raised inside the gateway and the client-visible error texts."""

from __future__ import annotations

from typing import Dict

from .models import ErrorKind, SessionState

# Fixed texts only: upstream bodies never reach the client.
USER_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.CONNECT_ERROR: "The completion provider could not be reached.",
    ErrorKind.INVALID_CREDENTIAL: "The completion provider rejected the configured credential.",
    ErrorKind.RATE_LIMITED: "The completion provider is rate limiting requests. Try again later.",
    ErrorKind.UPSTREAM_TIMEOUT: "The completion provider timed out.",
    ErrorKind.UPSTREAM_INTERNAL: "The completion provider reported an internal error.",
    ErrorKind.UNKNOWN: "The completion provider returned an unexpected error.",
    ErrorKind.INACTIVITY_TIMEOUT: "The completion provider stopped responding.",
}


CLIENT_DISCONNECTED = "client disconnected"


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN])


class GatewayError(Exception):
    """Base class for relay errors."""


class ConnectError(GatewayError):
    """The upstream could not be reached before any frame was produced."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class ClientDisconnected(GatewayError):
    """The client-facing transport is gone; treated as a cancellation trigger."""


class InactivityTimeout(GatewayError):
    """No upstream frame arrived within the configured window."""


class StreamCancelled(GatewayError):
    """The session's cancel signal was raised while waiting on the upstream."""


class InvalidTransition(GatewayError):
    def __init__(self, current: SessionState, target: SessionState) -> None:
        super().__init__(f"Illegal session transition {current.value} -> {target.value}")
        self.current = current
        self.target = target
