"""
AI Coach Stream Relay

Drives one provider stream and writes it to the client as SSE frames:

    event: meta       first frame, request id and context flags
    event: heartbeat  while the provider is quiet
    event: delta      one per chunk, in provider order
    event: done       terminal, success
    event: error      terminal, {"code": ErrorKind, "message": ...}

Exactly one terminal frame is written per session unless the client went
away, in which case nothing more is written. Every exit path cancels the
session's token, closes the provider stream and unregisters the session.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from core.config import CoachConfig
from core.exceptions import ConflictError
from services.coach_modules.events import CancellationToken, ErrorKind, TokenEvent, TokenKind
from services.coach_modules.provider import ProviderStream, discard_task

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    # Nginx / some proxies buffer by default; disable buffering when present.
    "X-Accel-Buffering": "no",
}


def sse_frame(event: str, payload: Dict[str, Any]) -> bytes:
    return b"event: " + event.encode("utf-8") + b"\ndata: " + json.dumps(payload).encode("utf-8") + b"\n\n"


def new_request_id() -> str:
    return uuid.uuid4().hex


async def _next_event(iterator: AsyncIterator[TokenEvent]) -> Optional[TokenEvent]:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


@dataclass
class StreamSession:
    """Lifetime of one client streaming request."""
    request_id: str
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_monotonic: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)


class StreamSessionRegistry:
    """Active sessions by request id. At most one per id."""

    def __init__(self) -> None:
        self._active: Dict[str, StreamSession] = {}

    def open(self, request_id: str) -> StreamSession:
        if request_id in self._active:
            raise ConflictError(f"A coach stream is already active for request {request_id}")
        session = StreamSession(request_id=request_id)
        self._active[request_id] = session
        return session

    def close(self, session: StreamSession) -> None:
        if self._active.get(session.request_id) is session:
            del self._active[session.request_id]

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._active

    def __len__(self) -> int:
        return len(self._active)


# Process-wide registry used by the HTTP layer.
session_registry = StreamSessionRegistry()

DISCONNECT_POLL_INTERVAL_S = 0.25


class StreamRelay:
    """
    Relays one ProviderStream to one client.

    Args:
        session: The session owning the provider call
        stream: Provider stream for this session (not yet iterated)
        config: Timeouts (wall-clock and heartbeat)
        registry: Registry to release the session from when finished
        is_disconnected: Async callable polled before each write and, while
            waiting on the provider, every DISCONNECT_POLL_INTERVAL_S
        meta: Extra fields for the opening meta frame
        trailer: Text written as a final delta before `done` (disclaimers)
        on_complete: Called with the full reply text before `done` is written
    """

    def __init__(
        self,
        session: StreamSession,
        stream: ProviderStream,
        config: CoachConfig,
        registry: Optional[StreamSessionRegistry] = None,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        meta: Optional[Dict[str, Any]] = None,
        trailer: Optional[str] = None,
        on_complete: Optional[Callable[[str], None]] = None,
    ):
        self.session = session
        self.stream = stream
        self.config = config
        self.registry = registry
        self.is_disconnected = is_disconnected
        self.meta = meta or {}
        self.trailer = trailer
        self.on_complete = on_complete
        self.terminal_written = False
        self.outcome: Optional[str] = None
        self._pending: Optional[asyncio.Future] = None
        self._watcher: Optional[asyncio.Future] = None
        self._closed = False

    def _terminal(self, event: str, payload: Dict[str, Any], outcome: str) -> bytes:
        self.terminal_written = True
        self.outcome = outcome
        return sse_frame(event, payload)

    def _error_frame(self, kind: ErrorKind, message: str) -> bytes:
        return self._terminal(
            "error",
            {"type": "error", "code": kind.value, "message": message, "request_id": self.session.request_id},
            kind.value,
        )

    async def _client_gone(self) -> bool:
        if self.is_disconnected is None:
            return False
        return await self.is_disconnected()

    async def _watch_disconnect(self) -> None:
        while not await self._client_gone():
            await asyncio.sleep(DISCONNECT_POLL_INTERVAL_S)

    def _disconnected(self) -> None:
        self.session.cancel_token.cancel(ErrorKind.CLIENT_DISCONNECTED)
        self.outcome = ErrorKind.CLIENT_DISCONNECTED.value

    def _save_reply(self, text: str) -> None:
        if self.on_complete is None:
            return
        try:
            self.on_complete(text)
        except Exception:
            # The reply was delivered; only its persistence failed.
            logger.exception(
                f"Failed to save coach reply: {self.session.request_id}",
                extra={"extra_fields": {"request_id": self.session.request_id}},
            )

    async def _shutdown(self) -> None:
        """Release the provider call. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        for task in (self._pending, self._watcher):
            if task is not None:
                await discard_task(task)
        self._pending = self._watcher = None
        await self.stream.aclose()

    async def frames(self) -> AsyncIterator[bytes]:
        session = self.session
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.request_timeout_s
        iterator = self.stream.__aiter__()
        reply = []

        logger.info(
            f"Coach stream started: {session.request_id}",
            extra={"extra_fields": {"request_id": session.request_id}},
        )
        try:
            yield sse_frame("meta", {"type": "meta", "request_id": session.request_id, **self.meta})

            if self.is_disconnected is not None:
                self._watcher = asyncio.ensure_future(self._watch_disconnect())

            while True:
                if await self._client_gone():
                    self._disconnected()
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    session.cancel_token.cancel(ErrorKind.TIMEOUT)
                    await self._shutdown()
                    yield self._error_frame(ErrorKind.TIMEOUT, "AI coach took too long to respond")
                    return

                if self._pending is None:
                    self._pending = asyncio.ensure_future(_next_event(iterator))
                waiting = {self._pending}
                if self._watcher is not None:
                    waiting.add(self._watcher)
                done, _ = await asyncio.wait(
                    waiting,
                    timeout=min(remaining, self.config.heartbeat_interval_s),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._watcher is not None and self._watcher in done:
                    self._disconnected()
                    return
                if not done:
                    if loop.time() < deadline:
                        yield sse_frame("heartbeat", {"type": "heartbeat"})
                    continue

                task, self._pending = self._pending, None
                try:
                    event = task.result()
                except Exception as exc:
                    logger.error(
                        f"Coach provider stream raised: {type(exc).__name__}: {exc}",
                        exc_info=True,
                        extra={"extra_fields": {"request_id": session.request_id}},
                    )
                    await self._shutdown()
                    yield self._error_frame(ErrorKind.PROTOCOL_ERROR, "AI coach response was malformed")
                    return
                if event is None:
                    # Provider ended without a terminal event (e.g. cancelled underneath us).
                    await self._shutdown()
                    yield self._error_frame(ErrorKind.PROTOCOL_ERROR, "AI coach response ended unexpectedly")
                    return

                if await self._client_gone():
                    self._disconnected()
                    return

                if event.kind == TokenKind.CHUNK:
                    reply.append(event.text)
                    yield sse_frame("delta", {"type": "delta", "delta": event.text})
                elif event.kind == TokenKind.DONE:
                    await self._shutdown()
                    if self.trailer:
                        reply.append(self.trailer)
                        yield sse_frame("delta", {"type": "delta", "delta": self.trailer})
                    self._save_reply("".join(reply))
                    yield self._terminal(
                        "done",
                        {
                            "type": "done",
                            "request_id": session.request_id,
                            "finish_reason": event.finish_reason,
                            "elapsed_ms": session.elapsed_ms(),
                        },
                        "done",
                    )
                    return
                else:
                    await self._shutdown()
                    yield self._error_frame(event.error_kind or ErrorKind.PROTOCOL_ERROR, event.message or "")
                    return
        finally:
            if not self.terminal_written:
                # Closed or cancelled by the server: the client is gone.
                session.cancel_token.cancel(ErrorKind.CLIENT_DISCONNECTED)
                self.outcome = self.outcome or ErrorKind.CLIENT_DISCONNECTED.value
            try:
                # Shielded so upstream still closes if this task is being cancelled.
                await asyncio.shield(asyncio.ensure_future(self._shutdown()))
            finally:
                if self.registry is not None:
                    self.registry.close(session)
                logger.info(
                    f"Coach stream finished: {session.request_id} ({self.outcome})",
                    extra={
                        "extra_fields": {
                            "request_id": session.request_id,
                            "outcome": self.outcome,
                            "chunks": self.stream.chunks_emitted,
                            "elapsed_ms": session.elapsed_ms(),
                        }
                    },
                )


async def static_reply_frames(
    session: StreamSession,
    text: str,
    registry: Optional[StreamSessionRegistry] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> AsyncIterator[bytes]:
    """Frames for a reply that never goes to the provider (safety-blocked input)."""
    try:
        yield sse_frame("meta", {"type": "meta", "request_id": session.request_id, **(meta or {})})
        yield sse_frame("delta", {"type": "delta", "delta": text})
        yield sse_frame(
            "done",
            {"type": "done", "request_id": session.request_id, "finish_reason": "blocked", "elapsed_ms": session.elapsed_ms()},
        )
    finally:
        if registry is not None:
            registry.close(session)
