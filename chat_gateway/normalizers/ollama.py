"""Ollama newline-delimited JSON stream format (``/api/chat`` and ``/api/generate``)."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from ..config import ProviderConfig
from ..models import Delta, Done, NormalizedEvent
from .base import ChunkNormalizer


class OllamaNormalizer(ChunkNormalizer):
    name = "ollama"
    delimiter = b"\n"

    def build_request(
        self, config: ProviderConfig, message: str, model: str
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {config.credential}",
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {"model": model, "stream": True}
        if urlparse(config.endpoint).path.rstrip("/").endswith("/api/generate"):
            payload["prompt"] = message
        else:
            payload["messages"] = [{"role": "user", "content": message}]
        return headers, payload

    def normalize(self, record: str) -> Optional[NormalizedEvent]:
        body = self.load_json(record.strip())
        if body is None:
            return None
        if body.get("error"):
            return self.error_from_payload(body["error"])
        if body.get("done"):
            # The final record carries stats and, at most, an empty message.
            return Done()

        message = body.get("message")
        if isinstance(message, dict):
            content = message.get("content")
        else:
            content = body.get("response")
        if isinstance(content, str) and content:
            return Delta(content)
        return None
