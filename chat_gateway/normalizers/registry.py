from __future__ import annotations

import logging
from typing import Dict, Type
from urllib.parse import urlparse

from ..config import ProviderConfig
from .anthropic import AnthropicNormalizer
from .base import ChunkNormalizer
from .ollama import OllamaNormalizer
from .openai import OpenAINormalizer

log = logging.getLogger(__name__)

_REGISTRY: Dict[str, Type[ChunkNormalizer]] = {}

OLLAMA_PORT = 11434


def register(normalizer_cls: Type[ChunkNormalizer]) -> None:
    _REGISTRY[normalizer_cls.name] = normalizer_cls


def get_normalizer(provider: str) -> ChunkNormalizer:
    """Return a fresh normalizer for ``provider``; instances hold per-session buffers."""
    try:
        return _REGISTRY[provider.strip().lower()]()
    except KeyError:
        raise ValueError(f"Unknown provider '{provider}'. Registered: {sorted(_REGISTRY)}")


def infer_provider(endpoint: str, default: str = "openai") -> str:
    parsed = urlparse(endpoint)
    host = (parsed.hostname or "").lower()
    if "anthropic" in host or parsed.path.rstrip("/").endswith("/v1/messages"):
        return "anthropic"
    if parsed.port == OLLAMA_PORT or parsed.path.rstrip("/") in ("/api/chat", "/api/generate"):
        return "ollama"
    return default


def select_normalizer(config: ProviderConfig, default: str = "openai") -> ChunkNormalizer:
    provider = config.provider or infer_provider(config.endpoint, default)
    log.debug("Selected %s normalizer for %s", provider, config.endpoint)
    return get_normalizer(provider)


register(OpenAINormalizer)
register(AnthropicNormalizer)
register(OllamaNormalizer)
