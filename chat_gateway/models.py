"""Value types shared by the relay components."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from .config import ProviderConfig


class SessionState(str, Enum):
    PENDING = "Pending"
    STREAMING = "Streaming"
    COMPLETING = "Completing"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    CLOSED = "Closed"


class ErrorKind(str, Enum):
    """Error kinds that may reach the client in a terminal error marker."""

    CONNECT_ERROR = "ConnectError"
    INVALID_CREDENTIAL = "InvalidCredential"
    RATE_LIMITED = "RateLimited"
    UPSTREAM_TIMEOUT = "UpstreamTimeout"
    UPSTREAM_INTERNAL = "UpstreamInternal"
    UNKNOWN = "Unknown"
    INACTIVITY_TIMEOUT = "InactivityTimeout"


@dataclass(frozen=True)
class ChatRequest:
    message: str
    provider_config: ProviderConfig


@dataclass(frozen=True)
class RawFrame:
    """One read from the upstream response, or a synthesized error frame."""

    data: bytes
    status: Optional[int] = None
    is_error: bool = False

    @classmethod
    def error(cls, status: int, body: bytes) -> "RawFrame":
        return cls(data=body, status=status, is_error=True)


@dataclass(frozen=True)
class Delta:
    text: str


@dataclass(frozen=True)
class Done:
    pass


@dataclass(frozen=True)
class Error:
    kind: ErrorKind
    message: str = ""


NormalizedEvent = Union[Delta, Done, Error]


def is_terminal(event: NormalizedEvent) -> bool:
    return isinstance(event, (Done, Error))


@dataclass
class Session:
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.PENDING
    created_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)

    def touch(self) -> None:
        self.last_activity_at = time.time()
