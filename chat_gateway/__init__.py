"""Streaming chat gateway.

This package relays a single chat turn to an LLM completion endpoint and
streams the answer back to the caller as Server-Sent Events. Each turn is a
session with an explicit lifecycle (see :mod:`chat_gateway.session`): one
upstream attempt, cooperative cancellation, an inactivity timeout, and a
single well-formed terminal marker. Provider wire formats live in
:mod:`chat_gateway.normalizers`. The primary entry points are
``chat_gateway.api.create_app`` for running the HTTP service and
``chat_gateway.service.GatewayService`` for embedding the relay directly.
"""

from .config import GatewayConfig, ProviderConfig
from .service import GatewayService

__all__ = ["GatewayConfig", "ProviderConfig", "GatewayService"]
