"""OpenAI chat-completions stream format (also Azure OpenAI and compatible servers)."""

from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from ..config import ProviderConfig
from ..models import Delta, Done, ErrorKind, NormalizedEvent
from .base import ChunkNormalizer, parse_sse_record

DONE_MARKER = "[DONE]"


class OpenAINormalizer(ChunkNormalizer):
    """
    Parses ``data: {...}`` SSE records shaped like::

        {"choices": [{"delta": {"content": "..."}}]}

    and terminates on ``data: [DONE]``.
    """

    name = "openai"
    delimiter = b"\n\n"
    error_codes = {
        "invalid_api_key": ErrorKind.INVALID_CREDENTIAL,
        "authentication_error": ErrorKind.INVALID_CREDENTIAL,
        "permission_denied": ErrorKind.INVALID_CREDENTIAL,
        "rate_limit_exceeded": ErrorKind.RATE_LIMITED,
        "insufficient_quota": ErrorKind.RATE_LIMITED,
        "timeout": ErrorKind.UPSTREAM_TIMEOUT,
        "server_error": ErrorKind.UPSTREAM_INTERNAL,
        "internal_error": ErrorKind.UPSTREAM_INTERNAL,
    }

    def build_request(
        self, config: ProviderConfig, message: str, model: str
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        headers = {
            "Authorization": f"Bearer {config.credential}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [{"role": "user", "content": message}],
            "stream": True,
        }
        return headers, payload

    def normalize(self, record: str) -> Optional[NormalizedEvent]:
        _, data = parse_sse_record(record)
        data = data.strip()
        if not data:
            return None
        if data == DONE_MARKER:
            return Done()

        chunk = self.load_json(data)
        if chunk is None:
            return None
        if chunk.get("error"):
            return self.error_from_payload(chunk["error"])

        choices = chunk.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            return Delta(content)
        return None
