"""Provider-agnostic framing and error classification for upstream streams."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..config import ProviderConfig
from ..models import Delta, Done, Error, ErrorKind, NormalizedEvent, RawFrame, is_terminal

logger = logging.getLogger(__name__)

MAX_DETAIL_CHARS = 200


def classify_status(status: Optional[int]) -> ErrorKind:
    """Map an upstream HTTP status to an error kind."""
    if status in (401, 403):
        return ErrorKind.INVALID_CREDENTIAL
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (408, 504):
        return ErrorKind.UPSTREAM_TIMEOUT
    if status is not None and 500 <= status < 600:
        return ErrorKind.UPSTREAM_INTERNAL
    return ErrorKind.UNKNOWN


class ChunkNormalizer(ABC):
    """Turns a provider's streamed bytes into :class:`NormalizedEvent` objects.

    One instance serves exactly one session. Bytes are buffered until a full
    record (``delimiter``) is available, so a record split across network
    reads normalizes exactly like the same record delivered whole.
    Subclasses implement :meth:`normalize` for a single complete record and
    :meth:`build_request` for the outbound request shape.
    """

    name: str = ""
    delimiter: bytes = b"\n"
    # Provider error type/code strings mapped onto error kinds.
    error_codes: Dict[str, ErrorKind] = {}

    def __init__(self) -> None:
        self._buffer = bytearray()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @abstractmethod
    def build_request(
        self, config: ProviderConfig, message: str, model: str
    ) -> Tuple[Dict[str, str], Dict[str, Any]]:
        """Return ``(headers, json_payload)`` for a streaming completion request."""

    @abstractmethod
    def normalize(self, record: str) -> Optional[NormalizedEvent]:
        """Return zero or one event for a single complete record."""

    def feed(self, frame: RawFrame) -> List[NormalizedEvent]:
        if self._finished:
            return []
        if frame.is_error:
            self._finished = True
            return [self.normalize_error_frame(frame)]

        self._buffer.extend(frame.data)
        if b"\r" in self._buffer:
            # A lone trailing "\r" stays put until its "\n" arrives.
            self._buffer = bytearray(self._buffer.replace(b"\r\n", b"\n"))

        events: List[NormalizedEvent] = []
        while not self._finished:
            index = self._buffer.find(self.delimiter)
            if index < 0:
                break
            record = bytes(self._buffer[:index])
            del self._buffer[: index + len(self.delimiter)]
            event = self._normalize_bytes(record)
            if event is not None:
                events.append(event)
        return events

    def finish(self) -> List[NormalizedEvent]:
        """Flush at end of stream; an unterminated stream is treated as ended."""
        if self._finished:
            return []
        tail = bytes(self._buffer)
        self._buffer.clear()
        events: List[NormalizedEvent] = []
        if tail.strip():
            event = self._normalize_bytes(tail)
            if event is not None:
                events.append(event)
        if not self._finished:
            logger.debug("%s stream ended without an end marker", self.name)
            self._finished = True
            events.append(Done())
        return events

    def normalize_error_frame(self, frame: RawFrame) -> Error:
        payload = self.load_json(frame.data.decode("utf-8", errors="replace"))
        if payload is not None and "error" in payload:
            error = self.error_from_payload(payload["error"], status=frame.status)
            return Error(error.kind, f"HTTP {frame.status}: {error.message}")
        detail = frame.data[:MAX_DETAIL_CHARS].decode("utf-8", errors="replace")
        return Error(classify_status(frame.status), f"HTTP {frame.status}: {detail}".strip())

    def error_from_payload(self, error: Any, status: Optional[int] = None) -> Error:
        """Classify an ``error`` object by its type/code field, then by status."""
        if isinstance(error, dict):
            code = str(error.get("type") or error.get("code") or "")
            message = str(error.get("message") or code)
            kind = self.error_codes.get(code) or self.error_codes.get(str(error.get("code") or ""))
        else:
            code = ""
            message = str(error)
            kind = None
        if kind is None:
            if status is None and code.isdigit():
                # Some OpenAI-compatible routers put the HTTP status in "code".
                status = int(code)
            kind = classify_status(status)
        return Error(kind, message[:MAX_DETAIL_CHARS])

    def _normalize_bytes(self, record: bytes) -> Optional[NormalizedEvent]:
        text = record.decode("utf-8", errors="replace")
        event = self.normalize(text)
        if event is None:
            if text.strip():
                logger.debug("%s dropped unrecognised record: %.120s", self.name, text)
            return None
        if is_terminal(event):
            self._finished = True
        if isinstance(event, Delta) and not event.text:
            return None
        return event

    @staticmethod
    def load_json(text: str) -> Optional[Dict[str, Any]]:
        try:
            value = json.loads(text)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None


def parse_sse_record(record: str) -> Tuple[Optional[str], str]:
    """Split an SSE record into ``(event_name, data)``; comments are ignored."""
    event_name: Optional[str] = None
    data_lines: List[str] = []
    for line in record.split("\n"):
        if not line or line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event_name = value.strip()
        elif name == "data":
            data_lines.append(value)
    return event_name, "\n".join(data_lines)
