"""Client for one streaming completion request per chat turn."""

from __future__ import annotations

import asyncio
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterator, Optional, Tuple

import requests
import urllib3
from requests.adapters import HTTPAdapter

from .config import GatewayConfig, ProviderConfig
from .errors import ConnectError, InactivityTimeout, StreamCancelled
from .models import RawFrame
from .normalizers import ChunkNormalizer

logger = logging.getLogger(__name__)

# Status used for the synthesized frame when the upstream drops mid-stream.
LOST_CONNECTION_STATUS = 502


def _shutdown_socket(response: requests.Response) -> None:
    """Wake a reader thread blocked in ``recv`` on this response's socket."""
    raw = getattr(response, "raw", None)
    connection = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    sock = getattr(connection, "sock", None)
    if sock is None:
        return
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        logger.debug("Upstream socket already closed", exc_info=True)


def _close_abandoned(future: "asyncio.Future[Tuple[requests.Response, Optional[RawFrame]]]") -> None:
    if future.cancelled() or future.exception() is not None:
        return
    response, _ = future.result()
    logger.debug("Closing upstream response that arrived after cancellation")
    response.close()


class ProviderStream:
    """Async view over a blocking upstream response.

    Reads happen on the client's executor, one at a time. While waiting, the
    cancel signal is checked every ``check_interval`` seconds.
    """

    def __init__(
        self,
        response: Optional[requests.Response],
        *,
        executor: ThreadPoolExecutor,
        cancel_event: asyncio.Event,
        check_interval: float,
        chunk_size: Optional[int] = None,
        error_frame: Optional[RawFrame] = None,
    ) -> None:
        self._response = response
        self._executor = executor
        self._cancel_event = cancel_event
        self._check_interval = check_interval
        self._chunk_size = chunk_size
        self._pending: Optional[asyncio.Future] = None
        self._closed = False
        if error_frame is not None:
            self._frames: Iterator[RawFrame] = iter([error_frame])
        else:
            self._frames = self._iter_frames()

    @property
    def closed(self) -> bool:
        return self._closed

    async def next_frame(self, timeout: float) -> Optional[RawFrame]:
        """Return the next frame, or ``None`` once the upstream is exhausted."""
        if self._closed:
            return None
        if self._cancel_event.is_set():
            self.close()
            raise StreamCancelled()
        loop = asyncio.get_running_loop()
        if self._pending is None:
            self._pending = loop.run_in_executor(self._executor, next, self._frames, None)
        future = self._pending
        deadline = loop.time() + timeout
        while True:
            if self._cancel_event.is_set():
                self.close()
                raise StreamCancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                self.close()
                raise InactivityTimeout(f"no upstream frame within {timeout:.1f}s")
            try:
                done, _ = await asyncio.wait({future}, timeout=min(self._check_interval, remaining))
            except asyncio.CancelledError:
                self.close()
                raise
            if done:
                self._pending = None
                frame = future.result()
                if frame is None:
                    self.close()
                return frame

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        reader_blocked = self._pending is not None and not self._pending.done()
        if reader_blocked:
            self._pending.cancel()
        self._pending = None
        if self._response is not None:
            if reader_blocked:
                _shutdown_socket(self._response)
            self._response.close()

    def _iter_frames(self) -> Iterator[RawFrame]:
        assert self._response is not None
        try:
            for chunk in self._iter_chunks():
                if self._closed:
                    return
                if chunk:
                    yield RawFrame(chunk)
        except (requests.RequestException, urllib3.exceptions.HTTPError, OSError, AttributeError) as exc:
            # A close() from the session task makes urllib3 fail in odd ways.
            if self._closed:
                return
            logger.warning("Upstream connection lost mid-stream: %s", exc.__class__.__name__)
            yield RawFrame.error(LOST_CONNECTION_STATUS, b"upstream connection lost")

    def _iter_chunks(self) -> Iterator[bytes]:
        """Iterate body bytes as soon as the socket has any.

        Chunked bodies are split per transfer chunk. Other bodies are read with
        ``read1`` so a short event is not held back waiting for ``chunk_size``
        bytes to accumulate.
        """
        raw = self._response.raw
        if getattr(raw, "chunked", False):
            return self._response.iter_content(chunk_size=None)
        read1 = getattr(raw, "read1", None)
        if read1 is None:
            return self._response.iter_content(chunk_size=self._chunk_size)
        return iter(lambda: read1(self._chunk_size, decode_content=True), b"")


class ProviderClient:
    """Issues streaming completion requests over a shared connection pool."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.config = config or GatewayConfig()
        self._session = session or self._build_session()
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="provider-io",
        )

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        # One chat turn is exactly one upstream attempt.
        adapter = HTTPAdapter(max_retries=0)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    async def open_stream(
        self,
        provider_config: ProviderConfig,
        message: str,
        *,
        normalizer: ChunkNormalizer,
        cancel_event: asyncio.Event,
    ) -> ProviderStream:
        """Open the upstream stream for ``message``.

        Raises :class:`ConnectError` if the upstream cannot be reached and
        :class:`StreamCancelled` if ``cancel_event`` is raised first. An HTTP
        error status does not raise: the returned stream yields one error frame.
        """
        model = provider_config.model or self.config.default_model
        headers, payload = normalizer.build_request(provider_config, message, model)
        logger.info(
            "Opening %s stream to %s using model %s",
            normalizer.name,
            provider_config.endpoint,
            model,
        )

        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(
            self._executor, self._open_blocking, provider_config.endpoint, headers, payload
        )
        try:
            while True:
                if cancel_event.is_set():
                    raise StreamCancelled()
                done, _ = await asyncio.wait({future}, timeout=self.config.check_interval)
                if done:
                    break
        except (StreamCancelled, asyncio.CancelledError):
            future.add_done_callback(_close_abandoned)
            raise

        response, error_frame = future.result()
        return ProviderStream(
            None if error_frame is not None else response,
            executor=self._executor,
            cancel_event=cancel_event,
            check_interval=self.config.check_interval,
            chunk_size=self.config.read_chunk_size,
            error_frame=error_frame,
        )

    def _open_blocking(
        self, url: str, headers: Dict[str, str], payload: Dict[str, Any]
    ) -> Tuple[requests.Response, Optional[RawFrame]]:
        # The read timeout backs up the session's own inactivity window so an
        # abandoned reader thread is always released.
        timeout = (
            self.config.connect_timeout,
            self.config.inactivity_timeout + self.config.cancel_grace_period,
        )
        try:
            response = self._session.post(
                url,
                headers=headers,
                json=payload,
                stream=True,
                timeout=timeout,
            )
        except requests.exceptions.SSLError as exc:
            raise ConnectError("tls", exc.__class__.__name__) from exc
        except requests.exceptions.ConnectTimeout as exc:
            raise ConnectError("timeout", "connect timed out") from exc
        except requests.exceptions.ConnectionError as exc:
            raise ConnectError("connection", exc.__class__.__name__) from exc
        except requests.exceptions.ReadTimeout as exc:
            raise ConnectError("timeout", "no response headers") from exc
        except (
            requests.exceptions.InvalidURL,
            requests.exceptions.MissingSchema,
            requests.exceptions.InvalidSchema,
        ) as exc:
            raise ConnectError("invalid-url", exc.__class__.__name__) from exc
        except requests.RequestException as exc:
            raise ConnectError("request", exc.__class__.__name__) from exc

        if response.status_code >= 400:
            body = self._read_bounded(response)
            logger.warning("Upstream %s answered HTTP %d", url, response.status_code)
            response.close()
            return response, RawFrame.error(response.status_code, body)
        return response, None

    def _read_bounded(self, response: requests.Response) -> bytes:
        limit = self.config.max_error_body_bytes
        body = bytearray()
        try:
            for chunk in response.iter_content(chunk_size=1024):
                body.extend(chunk)
                if len(body) >= limit:
                    break
        except requests.RequestException:
            logger.debug("Failed reading upstream error body", exc_info=True)
        return bytes(body[:limit])

    def close(self) -> None:
        self._executor.shutdown(wait=False)
        self._session.close()
