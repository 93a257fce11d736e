"""Shared fixtures for gateway tests."""

from __future__ import annotations

from typing import List, Optional

import pytest

from chat_gateway.config import GatewayConfig, ProviderConfig
from chat_gateway.provider_client import ProviderClient

from fakes import FakeSession


@pytest.fixture
def fast_config() -> GatewayConfig:
    return GatewayConfig(
        connect_timeout=1.0,
        inactivity_timeout=2.0,
        max_session_seconds=10.0,
        check_interval=0.01,
        cancel_grace_period=0.5,
        max_workers=4,
    )


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(endpoint="https://llm.example.com/v1/chat/completions", credential="sk-test-secret")


@pytest.fixture
def make_client(fast_config):
    clients: List[ProviderClient] = []

    def _make(session: FakeSession, config: Optional[GatewayConfig] = None) -> ProviderClient:
        client = ProviderClient(config or fast_config, session=session)
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.close()
