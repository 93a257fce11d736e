"""Anthropic Messages API stream format."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from ..config import ProviderConfig
from ..models import Delta, Done, ErrorKind, NormalizedEvent
from .base import ChunkNormalizer, parse_sse_record

ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 1024


class AnthropicNormalizer(ChunkNormalizer):
    name = "anthropic"
    delimiter = b"\n\n"
    error_codes = {
        "authentication_error": ErrorKind.INVALID_CREDENTIAL,
        "permission_error": ErrorKind.INVALID_CREDENTIAL,
        "rate_limit_error": ErrorKind.RATE_LIMITED,
        "overloaded_error": ErrorKind.UPSTREAM_INTERNAL,
        "api_error": ErrorKind.UPSTREAM_INTERNAL,
        "timeout_error": ErrorKind.UPSTREAM_TIMEOUT,
    }

    def build_request(
        self, config: ProviderConfig, message: str, model: str
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {config.credential}",
            "x-api-key": config.credential,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        payload: Dict[str, Any] = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": [{"role": "user", "content": message}],
            "stream": True,
        }
        return headers, payload

    def normalize(self, record: str) -> Optional[NormalizedEvent]:
        event_name, data = parse_sse_record(record)
        body = self.load_json(data) if data else None
        kind = event_name or (body or {}).get("type")

        if kind == "message_stop":
            return Done()
        if body is None:
            return None
        if kind == "error" or "error" in body:
            return self.error_from_payload(body.get("error") or {})
        if kind == "content_block_delta":
            delta = body.get("delta") or {}
            if delta.get("type") == "text_delta":
                return Delta(str(delta.get("text") or ""))
        # message_start, content_block_start/stop, message_delta, ping
        return None
