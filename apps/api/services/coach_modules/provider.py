"""
AI Coach Provider Gateway

Streams a chat completion from the upstream language-model provider
(Azure OpenAI compatible `chat/completions` with `stream: true`) and turns
its Server-Sent Events into TokenEvents.

State machine per stream:

    Idle -> Connecting -> Streaming -> Completed | Failed | Cancelled

- Connect errors, timeouts and non-2xx statuses fail with ProviderUnavailable.
  No retry here: the caller decides.
- Undecodable frames fail with ProtocolError. Frames that are well-formed but
  carry nothing usable are skipped.
- Reads silent for longer than the stall timeout fail with Timeout.
- A failure yields its error event first; the upstream response is closed
  as the iterator finishes.
- Cancellation is raced against every upstream wait; the upstream response
  is closed before the iterator returns and nothing more is emitted.

Streams are pull-based: upstream is only read when the consumer asks for the
next event, so nothing is buffered beyond one SSE line.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from core.config import CoachConfig
from services.coach_modules.context import CoachContext, to_provider_messages
from services.coach_modules.events import CancellationToken, ErrorKind, TokenEvent

logger = logging.getLogger(__name__)


class GatewayState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = (GatewayState.COMPLETED, GatewayState.FAILED, GatewayState.CANCELLED)

DONE_SENTINEL = "[DONE]"


class ProviderProtocolError(Exception):
    """Upstream sent something that cannot be trusted as a completion stream."""


class _Cancelled(Exception):
    pass


class _Stalled(Exception):
    pass


class CompletionChunkDecoder:
    """
    Decodes chat-completion SSE lines into TokenEvents.

    Data lines are buffered until the blank line that ends an SSE event, so
    multi-line `data:` payloads are joined before JSON decoding.
    """

    def __init__(self) -> None:
        self.finished = False
        self.finish_reason: Optional[str] = None
        self._data: List[str] = []

    def feed(self, line: str) -> List[TokenEvent]:
        line = line.rstrip("\r\n")
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return []  # SSE comment / keep-alive
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        # event:, id:, retry: carry nothing we use
        return []

    def flush(self) -> List[TokenEvent]:
        """Dispatch whatever is buffered when upstream closes."""
        return self._dispatch()

    def _dispatch(self) -> List[TokenEvent]:
        if not self._data:
            return []
        data = "\n".join(self._data)
        self._data = []

        if data.strip() == DONE_SENTINEL:
            self.finished = True
            return [TokenEvent.done(self.finish_reason)]

        try:
            frame = json.loads(data)
        except (ValueError, RecursionError) as exc:
            # RecursionError: nesting too deep to decode
            raise ProviderProtocolError(f"undecodable frame: {type(exc).__name__}") from exc
        if not isinstance(frame, dict):
            raise ProviderProtocolError(f"unexpected frame type: {type(frame).__name__}")

        if frame.get("error"):
            error = frame["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderProtocolError(f"provider error: {message}")

        choices = frame.get("choices")
        if choices is None:
            logger.debug("Skipping provider frame without choices")
            return []
        if not isinstance(choices, list):
            raise ProviderProtocolError("choices is not a list")

        events: List[TokenEvent] = []
        for choice in choices:
            if not isinstance(choice, dict):
                raise ProviderProtocolError("choice is not an object")
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str):
                if content:
                    events.append(TokenEvent.chunk(content))
            elif content is not None:
                logger.warning(f"Skipping non-text delta content: {type(content).__name__}")
            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]
        return events


async def _read_line(lines: AsyncIterator[str]) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


async def discard_task(task: "asyncio.Future[Any]") -> None:
    """Cancel a pending task and wait for it to unwind."""
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)


class ProviderStream:
    """
    One streaming completion. Single use: iterate it once, then it is spent.

    `aclose()` must be called by the consumer (the relay does so on every
    exit path); it closes the upstream response if still open.
    """

    def __init__(self, gateway: "ProviderGateway", context: CoachContext, cancel_token: CancellationToken):
        self.gateway = gateway
        self.context = context
        self.cancel_token = cancel_token
        self.state = GatewayState.IDLE
        self.chunks_emitted = 0
        self._iterator: Optional[AsyncIterator[TokenEvent]] = None
        self._response: Optional[httpx.Response] = None

    def __aiter__(self) -> AsyncIterator[TokenEvent]:
        if self._iterator is not None:
            raise RuntimeError("provider stream is not restartable")
        self._iterator = self._run()
        return self._iterator

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        if self.state not in TERMINAL_STATES:
            self.state = GatewayState.CANCELLED
        await self._close_response()

    async def _close_response(self) -> None:
        response, self._response = self._response, None
        if response is not None:
            await response.aclose()

    async def _connect(self) -> httpx.Response:
        config = self.gateway.config
        request = self.gateway.client.build_request(
            "POST",
            config.completions_url,
            json=self.gateway.build_payload(self.context),
            headers={
                "api-key": config.provider_api_key or "",
                "Accept": "text/event-stream",
            },
            timeout=self.gateway.timeout,
        )
        send = asyncio.ensure_future(self.gateway.client.send(request, stream=True))
        waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            await asyncio.wait({send, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            await discard_task(send)
            raise
        finally:
            waiter.cancel()

        if self.cancel_token.cancelled:
            if send.done() and not send.cancelled() and send.exception() is None:
                await send.result().aclose()
            else:
                await discard_task(send)
            raise _Cancelled()
        return send.result()

    async def _next_line(self, lines: AsyncIterator[str]) -> Optional[str]:
        read = asyncio.ensure_future(_read_line(lines))
        waiter = asyncio.ensure_future(self.cancel_token.wait())
        try:
            done, _ = await asyncio.wait(
                {read, waiter},
                timeout=self.gateway.config.stall_timeout_s,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except BaseException:
            await discard_task(read)
            raise
        finally:
            waiter.cancel()

        if self.cancel_token.cancelled:
            await discard_task(read)
            raise _Cancelled()
        if read not in done:
            await discard_task(read)
            raise _Stalled()
        return read.result()

    async def _run(self) -> AsyncIterator[TokenEvent]:
        extra = {"extra_fields": {"user_id": self.context.user_id}}
        self.state = GatewayState.CONNECTING
        try:
            try:
                response = await self._connect()
            except _Cancelled:
                self.state = GatewayState.CANCELLED
                return
            except (httpx.TransportError, httpx.InvalidURL) as exc:
                self.state = GatewayState.FAILED
                logger.warning(f"Coach provider unreachable: {type(exc).__name__}: {exc}", extra=extra)
                yield TokenEvent.error(ErrorKind.PROVIDER_UNAVAILABLE, "AI coach provider is unavailable")
                return

            self._response = response
            if not response.is_success:
                self.state = GatewayState.FAILED
                logger.warning(f"Coach provider returned HTTP {response.status_code}", extra=extra)
                yield TokenEvent.error(
                    ErrorKind.PROVIDER_UNAVAILABLE,
                    f"AI coach provider returned HTTP {response.status_code}",
                )
                return

            self.state = GatewayState.STREAMING
            decoder = CompletionChunkDecoder()
            lines = response.aiter_lines()

            while True:
                try:
                    line = await self._next_line(lines)
                    events = decoder.flush() if line is None else decoder.feed(line)
                except _Cancelled:
                    self.state = GatewayState.CANCELLED
                    return
                except (_Stalled, httpx.ReadTimeout):
                    self.state = GatewayState.FAILED
                    logger.warning("Coach provider stalled", extra=extra)
                    yield TokenEvent.error(ErrorKind.TIMEOUT, "AI coach provider stopped responding")
                    return
                except (ProviderProtocolError, httpx.HTTPError, httpx.StreamError) as exc:
                    self.state = GatewayState.FAILED
                    logger.warning(f"Coach provider protocol error: {exc}", extra=extra)
                    yield TokenEvent.error(ErrorKind.PROTOCOL_ERROR, "AI coach response was malformed")
                    return

                for event in events:
                    if event.is_terminal:
                        self.state = GatewayState.COMPLETED
                        await self._close_response()
                        yield event
                        return
                    yield event
                    self.chunks_emitted += 1
                    if self.cancel_token.cancelled:
                        self.state = GatewayState.CANCELLED
                        return

                if line is None:
                    break

            await self._close_response()
            if decoder.finish_reason:
                # Clean close after a finish_reason without the [DONE] sentinel.
                self.state = GatewayState.COMPLETED
                yield TokenEvent.done(decoder.finish_reason)
            else:
                self.state = GatewayState.FAILED
                logger.warning("Coach provider closed the stream before completing", extra=extra)
                yield TokenEvent.error(ErrorKind.PROTOCOL_ERROR, "AI coach response ended unexpectedly")
        finally:
            if self.state not in TERMINAL_STATES:
                self.state = GatewayState.CANCELLED
            await self._close_response()


class ProviderGateway:
    """
    Opens streaming completions against the configured provider.

    One gateway (and its connection pool) is shared by all sessions; each
    `stream_completion` call owns its own upstream response.
    """

    def __init__(self, config: CoachConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._owns_client = client is None
        self.timeout = httpx.Timeout(
            connect=config.connect_timeout_s,
            read=config.stall_timeout_s,
            write=config.connect_timeout_s,
            pool=config.connect_timeout_s,
        )
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    def build_payload(self, context: CoachContext) -> Dict[str, Any]:
        return {
            "messages": to_provider_messages(context),
            "stream": True,
            "max_completion_tokens": self.config.max_output_tokens,
            "temperature": self.config.temperature,
        }

    def stream_completion(self, context: CoachContext, cancel_token: Optional[CancellationToken] = None) -> ProviderStream:
        return ProviderStream(self, context, cancel_token or CancellationToken())

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()
