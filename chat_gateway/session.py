"""Lifecycle of one relay session.

The controller is an explicit state machine::

    Pending --open--> Streaming --Delta--> Streaming
    Pending --ConnectError--> Failed
    Streaming --Done--> Completing --flushed--> Closed
    Streaming --Error / inactivity--> Failed --flushed--> Closed
    Pending / Streaming --cancel / disconnect--> Cancelled --> Closed

Every transition happens inside :meth:`SessionController.run`. Other tasks
only raise the cancel signal through :meth:`SessionController.cancel`, so
completion, failure and cancellation races are settled in one place.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, FrozenSet, Optional

from .config import GatewayConfig
from .errors import (
    CLIENT_DISCONNECTED,
    ClientDisconnected,
    ConnectError,
    InactivityTimeout,
    InvalidTransition,
    StreamCancelled,
)
from .models import ChatRequest, Delta, Done, Error, ErrorKind, NormalizedEvent, Session, SessionState
from .normalizers import ChunkNormalizer
from .provider_client import ProviderClient, ProviderStream
from .writer import ClientStreamWriter

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.PENDING: frozenset(
        {SessionState.STREAMING, SessionState.FAILED, SessionState.CANCELLED}
    ),
    SessionState.STREAMING: frozenset(
        {
            SessionState.STREAMING,
            SessionState.COMPLETING,
            SessionState.FAILED,
            SessionState.CANCELLED,
        }
    ),
    SessionState.COMPLETING: frozenset({SessionState.CLOSED, SessionState.CANCELLED}),
    SessionState.FAILED: frozenset({SessionState.CLOSED}),
    SessionState.CANCELLED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}

_RESOLVED = frozenset({SessionState.FAILED, SessionState.CANCELLED, SessionState.CLOSED})

LIFETIME_EXCEEDED = "session lifetime exceeded"


class SessionController:
    """Relays one chat turn from the provider to the client."""

    def __init__(
        self,
        request: ChatRequest,
        provider: ProviderClient,
        normalizer: ChunkNormalizer,
        *,
        config: Optional[GatewayConfig] = None,
        on_closed: Optional[Callable[["SessionController"], None]] = None,
    ) -> None:
        self.request = request
        self.session = Session()
        self.config = config or GatewayConfig()
        self.deltas_forwarded = 0
        self.error_kind: Optional[ErrorKind] = None
        self._provider = provider
        self._normalizer = normalizer
        self._on_closed = on_closed
        self._cancel_event = asyncio.Event()
        self._cancel_reason: Optional[str] = None
        self._deadline = 0.0
        self._stream: Optional[ProviderStream] = None

    @property
    def id(self) -> str:
        return self.session.id

    @property
    def state(self) -> SessionState:
        return self.session.state

    @property
    def normalizer(self) -> ChunkNormalizer:
        return self._normalizer

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._cancel_reason

    def cancel(self, reason: str = "cancelled by caller") -> bool:
        """Raise the cancel signal; returns False when the session is already resolved."""
        if self.state in _RESOLVED:
            return False
        if not self._cancel_event.is_set():
            self._cancel_reason = reason
            self._cancel_event.set()
            logger.info("Cancel requested for session %s (%s)", self.id, reason)
        return True

    def info(self) -> Dict[str, object]:
        return {
            "session_id": self.id,
            "state": self.state.value,
            "created_at": self.session.created_at,
            "last_activity_at": self.session.last_activity_at,
            "deltas_forwarded": self.deltas_forwarded,
        }

    async def run(self, writer: ClientStreamWriter) -> None:
        """Drive the session to ``Closed``; never raises for upstream or client failures."""
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.config.max_session_seconds
        logger.info("Session %s started (%s)", self.id, self._normalizer.name)
        try:
            try:
                self._stream = await asyncio.wait_for(
                    self._provider.open_stream(
                        self.request.provider_config,
                        self.request.message,
                        normalizer=self._normalizer,
                        cancel_event=self._cancel_event,
                    ),
                    timeout=self.config.max_session_seconds,
                )
            except ConnectError as exc:
                logger.warning("Session %s could not reach upstream: %s", self.id, exc)
                await self._fail(writer, Error(ErrorKind.CONNECT_ERROR, exc.reason))
                return
            except StreamCancelled:
                await self._cancelled(writer)
                return
            except asyncio.TimeoutError:
                logger.warning("Session %s timed out waiting for upstream: %s", self.id, LIFETIME_EXCEEDED)
                await self._fail(writer, Error(ErrorKind.INACTIVITY_TIMEOUT, LIFETIME_EXCEEDED))
                return

            self._transition(SessionState.STREAMING)
            await self._pump(self._stream, writer)
        except asyncio.CancelledError:
            if self.state not in _RESOLVED:
                self._cancel_reason = self._cancel_reason or "task cancelled"
                self._transition(SessionState.CANCELLED)
            raise
        except Exception:
            logger.exception("Session %s failed unexpectedly", self.id)
            if self.state in (SessionState.PENDING, SessionState.STREAMING):
                await self._fail(writer, Error(ErrorKind.UNKNOWN, "internal error"))
        finally:
            self._release_upstream()
            try:
                await self._write_bounded(writer, writer.close(), timeout=self.config.cancel_grace_period)
            finally:
                self._transition(SessionState.CLOSED)
                logger.info(
                    "Session %s closed after %d delta(s)%s",
                    self.id,
                    self.deltas_forwarded,
                    f" ({self.error_kind.value})" if self.error_kind else "",
                )
                if self._on_closed is not None:
                    self._on_closed(self)

    async def _pump(self, stream: ProviderStream, writer: ClientStreamWriter) -> None:
        loop = asyncio.get_running_loop()
        while True:
            remaining = self._deadline - loop.time()
            timeout = min(self.config.inactivity_timeout, remaining)
            try:
                frame = await stream.next_frame(timeout)
            except InactivityTimeout as exc:
                detail = str(exc) if remaining > self.config.inactivity_timeout else LIFETIME_EXCEEDED
                logger.warning("Session %s timed out: %s", self.id, detail)
                await self._fail(writer, Error(ErrorKind.INACTIVITY_TIMEOUT, detail))
                return
            except StreamCancelled:
                await self._cancelled(writer)
                return

            self.session.touch()
            events = self._normalizer.finish() if frame is None else self._normalizer.feed(frame)
            for event in events:
                if self._cancel_event.is_set():
                    await self._cancelled(writer)
                    return
                if not await self._handle(event, writer):
                    return
            if frame is None:
                return

    async def _handle(self, event: NormalizedEvent, writer: ClientStreamWriter) -> bool:
        """Apply one event; returns False once the session is resolved."""
        if isinstance(event, Delta):
            self._transition(SessionState.STREAMING)
            if not await self._deliver(writer, event):
                return False
            self.deltas_forwarded += 1
            return True
        if isinstance(event, Done):
            self._transition(SessionState.COMPLETING)
            await self._deliver(writer, event)
            return False
        await self._fail(writer, event)
        return False

    async def _deliver(self, writer: ClientStreamWriter, event: NormalizedEvent) -> bool:
        """Forward one event, giving up when cancelled or past the session deadline."""
        remaining = max(self._deadline - asyncio.get_running_loop().time(), 0.0)
        try:
            written = await self._write_bounded(
                writer, writer.write(event), timeout=remaining, interrupt=self._cancel_event
            )
        except ClientDisconnected:
            self.cancel(CLIENT_DISCONNECTED)
            self._cancel_reason = CLIENT_DISCONNECTED
            self._transition(SessionState.CANCELLED)
            logger.info("Session %s client disconnected", self.id)
            return False
        if written:
            return True

        if self._cancel_event.is_set():
            logger.info("Session %s cancelled while the client was not reading", self.id)
            await self._cancelled(writer)
        elif self.state is SessionState.COMPLETING:
            # The done marker could not be flushed in time.
            self._cancel_reason = LIFETIME_EXCEEDED
            self._release_upstream()
            self._transition(SessionState.CANCELLED)
        else:
            logger.warning("Session %s timed out: %s while the client was not reading", self.id, LIFETIME_EXCEEDED)
            await self._fail(writer, Error(ErrorKind.INACTIVITY_TIMEOUT, LIFETIME_EXCEEDED))
        return False

    async def _fail(self, writer: ClientStreamWriter, error: Error) -> None:
        self._transition(SessionState.FAILED)
        self.error_kind = error.kind
        self._release_upstream()
        logger.debug("Session %s failure detail: %s", self.id, error.message)
        try:
            written = await self._write_bounded(
                writer, writer.write(error), timeout=self.config.cancel_grace_period
            )
        except ClientDisconnected:
            logger.info("Session %s client left before the error marker", self.id)
            return
        if not written:
            logger.info("Session %s error marker not flushed in time", self.id)

    async def _cancelled(self, writer: ClientStreamWriter) -> None:
        self._transition(SessionState.CANCELLED)
        self._release_upstream()
        if self._cancel_reason == CLIENT_DISCONNECTED:
            return
        try:
            await self._write_bounded(writer, writer.write_cancelled(), timeout=self.config.cancel_grace_period)
        except ClientDisconnected:
            logger.debug("Session %s client left before the cancel marker", self.id)

    async def _write_bounded(
        self,
        writer: ClientStreamWriter,
        write: Awaitable[None],
        *,
        timeout: float,
        interrupt: Optional[asyncio.Event] = None,
    ) -> bool:
        """Await one client write for at most ``timeout`` seconds.

        Returns False when the write was abandoned, either on timeout or because
        ``interrupt`` was set first. An abandoned write leaves the response in an
        unknown state, so the writer is marked disconnected and later writes fail
        fast instead of blocking again.
        """
        task = asyncio.ensure_future(write)
        waiters = {task}
        stop = None
        if interrupt is not None:
            stop = asyncio.ensure_future(interrupt.wait())
            waiters.add(stop)
        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if stop is not None:
                stop.cancel()
            if not task.done():
                task.cancel()
                writer.mark_disconnected()
        if task in done:
            task.result()
            return True
        return False

    def _release_upstream(self) -> None:
        if self._stream is not None:
            self._stream.close()

    def _transition(self, target: SessionState) -> None:
        current = self.session.state
        if target not in _TRANSITIONS[current]:
            raise InvalidTransition(current, target)
        if target is not current:
            logger.debug("Session %s: %s -> %s", self.id, current.value, target.value)
        self.session.state = target
