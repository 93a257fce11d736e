"""Configuration objects for the chat gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ProviderConfig:
    """Upstream completion endpoint supplied by the caller for one request."""

    endpoint: str
    credential: str = field(repr=False)
    provider: Optional[str] = None
    model: Optional[str] = None


@dataclass
class GatewayConfig:
    """Runtime controls for relay sessions."""

    connect_timeout: float = 10.0
    inactivity_timeout: float = 60.0
    max_session_seconds: float = 600.0
    check_interval: float = 0.25
    cancel_grace_period: float = 2.0
    max_error_body_bytes: int = 4096
    read_chunk_size: Optional[int] = 1024
    max_workers: int = 64
    default_model: str = "gpt-4o-mini"
    default_provider: str = "openai"
