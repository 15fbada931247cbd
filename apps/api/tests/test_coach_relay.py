"""
Tests for the SSE stream relay.

Each test drives `StreamRelay.frames()` directly against a fake provider and
checks the frames a client would see, plus the cleanup that must happen on
every exit path.
"""

import asyncio

import pytest

from core.exceptions import ConflictError
from fixtures.provider_fixtures import (
    FakeProvider,
    completion_frames,
    make_coach_config,
    make_gateway,
    parse_sse,
)
from services.coach_modules.context import ChatMessage, CoachContext
from services.coach_modules.events import ErrorKind, TokenEvent
from services.coach_modules.provider import GatewayState
from services.coach_modules.relay import (
    StreamRelay,
    StreamSessionRegistry,
    sse_frame,
    static_reply_frames,
)
from services.metrics_aggregator import MetricsSummary

TERMINAL = ("done", "error")


class ExplodingStream:
    """Provider stream whose iterator fails with an unexpected exception."""

    def __init__(self, before=()):
        self.before = list(before)
        self.chunks_emitted = 0
        self.closed = False

    async def _run(self):
        for event in self.before:
            self.chunks_emitted += 1
            yield event
        raise RuntimeError("decoder blew up")

    def __aiter__(self):
        return self._run()

    async def aclose(self):
        self.closed = True


def _context():
    return CoachContext(
        user_id="athlete-1",
        summary=MetricsSummary(),
        conversation_history=(ChatMessage("user", "How was my week?"),),
        budget_remaining=100,
    )


def _relay(provider, registry, request_id="req-1", is_disconnected=None, trailer=None, on_complete=None, **config_overrides):
    config = make_coach_config(**config_overrides)
    session = registry.open(request_id)
    stream = make_gateway(config, provider).stream_completion(_context(), session.cancel_token)
    relay = StreamRelay(
        session,
        stream,
        config,
        registry=registry,
        is_disconnected=is_disconnected,
        meta={"history_truncated": False},
        trailer=trailer,
        on_complete=on_complete,
    )
    return relay, session, stream


async def _frames(relay):
    body = b"".join([frame async for frame in relay.frames()])
    return parse_sse(body.decode("utf-8"))


class TestSseFrame:

    def test_frame_format(self):
        assert sse_frame("delta", {"delta": "hi"}) == b'event: delta\ndata: {"delta": "hi"}\n\n'


class TestStreamRelay:

    @pytest.mark.asyncio
    async def test_meta_deltas_then_one_done(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("Solid ", "week."))
        relay, session, stream = _relay(provider, registry)

        events = await _frames(relay)

        assert [e["event"] for e in events] == ["meta", "delta", "delta", "done"]
        assert events[0]["data"]["request_id"] == "req-1"
        assert events[0]["data"]["history_truncated"] is False
        assert "".join(e["data"]["delta"] for e in events if e["event"] == "delta") == "Solid week."
        assert events[-1]["data"]["finish_reason"] == "stop"
        assert events[-1]["data"]["elapsed_ms"] >= 0
        assert relay.outcome == "done"
        assert "req-1" not in registry
        assert stream.state == GatewayState.COMPLETED
        assert provider.all_closed

    @pytest.mark.asyncio
    async def test_provider_failure_is_one_error_frame(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("Partial"), status_code=502)
        relay, _, _ = _relay(provider, registry)

        events = await _frames(relay)

        assert [e["event"] for e in events] == ["meta", "error"]
        assert events[-1]["data"]["code"] == ErrorKind.PROVIDER_UNAVAILABLE.value
        assert events[-1]["data"]["request_id"] == "req-1"
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_protocol_error_after_deltas_ends_stream(self):
        registry = StreamSessionRegistry()
        frames = completion_frames("Good ", finish_reason=None, done=False) + [b"data: {broken\n\n"]
        provider = FakeProvider(frames)
        relay, _, _ = _relay(provider, registry)

        events = await _frames(relay)

        assert [e["event"] for e in events] == ["meta", "delta", "error"]
        assert events[-1]["data"]["code"] == ErrorKind.PROTOCOL_ERROR.value

    @pytest.mark.asyncio
    async def test_wall_clock_timeout(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("slow", "never"), hang_after=2)
        relay, session, stream = _relay(
            provider, registry, request_timeout_s=0.1, stall_timeout_s=10, heartbeat_interval_s=10
        )

        events = await asyncio.wait_for(_frames(relay), timeout=2)
        kinds = [e["event"] for e in events if e["event"] != "heartbeat"]

        assert kinds == ["meta", "delta", "error"]
        assert events[-1]["data"]["code"] == ErrorKind.TIMEOUT.value
        assert session.cancel_token.reason == ErrorKind.TIMEOUT
        assert stream.state == GatewayState.CANCELLED
        assert provider.all_closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_heartbeats_while_provider_is_quiet(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("late"), delay=0.05)
        relay, _, _ = _relay(provider, registry, heartbeat_interval_s=0.02)

        events = await asyncio.wait_for(_frames(relay), timeout=5)
        kinds = [e["event"] for e in events]

        assert "heartbeat" in kinds
        assert kinds[0] == "meta"
        assert kinds[-1] == "done"
        assert [e["data"]["delta"] for e in events if e["event"] == "delta"] == ["late"]

    @pytest.mark.asyncio
    async def test_trailer_is_written_before_done(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("Rest two days."))
        relay, _, _ = _relay(provider, registry, trailer="\n\n(not medical advice)")

        events = await _frames(relay)

        deltas = [e["data"]["delta"] for e in events if e["event"] == "delta"]
        assert deltas == ["Rest two days.", "\n\n(not medical advice)"]
        assert events[-1]["event"] == "done"

    @pytest.mark.asyncio
    async def test_client_disconnect_writes_nothing_more(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("one", "two", "three"), hang_after=3)
        gone = {"value": False}

        async def is_disconnected():
            return gone["value"]

        relay, session, stream = _relay(provider, registry, is_disconnected=is_disconnected)

        received = []
        async for frame in relay.frames():
            received.append(frame)
            if b"event: delta" in frame:
                gone["value"] = True

        kinds = [e["event"] for e in parse_sse(b"".join(received).decode())]
        assert kinds == ["meta", "delta"]
        assert not any(k in TERMINAL for k in kinds)
        assert session.cancel_token.reason == ErrorKind.CLIENT_DISCONNECTED
        assert relay.outcome == ErrorKind.CLIENT_DISCONNECTED.value
        assert stream.state == GatewayState.CANCELLED
        assert provider.all_closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_server_closing_the_generator_cancels_upstream(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("one", "two"), hang_after=2)
        relay, session, stream = _relay(provider, registry)

        frames = relay.frames()
        assert b"event: meta" in await frames.__anext__()
        assert b"event: delta" in await frames.__anext__()
        await frames.aclose()

        assert session.cancel_token.cancelled
        assert session.cancel_token.reason == ErrorKind.CLIENT_DISCONNECTED
        assert relay.terminal_written is False
        assert stream.state == GatewayState.CANCELLED
        assert provider.all_closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_no_frames_after_terminal(self):
        registry = StreamSessionRegistry()
        relay, _, _ = _relay(FakeProvider(), registry)

        frames = relay.frames()
        received = [frame async for frame in frames]

        assert sum(1 for f in received if f.startswith(b"event: done")) == 1
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()

    @pytest.mark.asyncio
    async def test_unexpected_provider_exception_is_one_error_frame(self):
        registry = StreamSessionRegistry()
        config = make_coach_config()
        session = registry.open("req-1")
        stream = ExplodingStream(before=[TokenEvent.chunk("Half ")])
        relay = StreamRelay(session, stream, config, registry=registry)

        events = await _frames(relay)

        assert [e["event"] for e in events] == ["meta", "delta", "error"]
        assert events[-1]["data"]["code"] == ErrorKind.PROTOCOL_ERROR.value
        assert relay.outcome == ErrorKind.PROTOCOL_ERROR.value
        assert stream.closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_nesting_too_deep_upstream_is_one_error_frame(self):
        registry = StreamSessionRegistry()
        nested = b"data: " + b"[" * 100_000 + b"]" * 100_000 + b"\n\n"
        provider = FakeProvider(completion_frames("Good ", finish_reason=None, done=False) + [nested])
        relay, _, stream = _relay(provider, registry)

        events = await _frames(relay)

        assert [e["event"] for e in events] == ["meta", "delta", "error"]
        assert events[-1]["data"]["code"] == ErrorKind.PROTOCOL_ERROR.value
        assert stream.state == GatewayState.FAILED
        assert provider.all_closed

    @pytest.mark.asyncio
    async def test_disconnect_while_provider_is_quiet_cancels_promptly(self):
        registry = StreamSessionRegistry()
        provider = FakeProvider(completion_frames("one", "two"), hang_after=2)
        gone = asyncio.Event()

        async def is_disconnected():
            return gone.is_set()

        async def drop_client():
            await asyncio.sleep(0.1)
            gone.set()

        relay, session, stream = _relay(
            provider, registry, is_disconnected=is_disconnected, stall_timeout_s=30, heartbeat_interval_s=30,
            request_timeout_s=60,
        )
        dropper = asyncio.ensure_future(drop_client())
        started = asyncio.get_running_loop().time()

        events = await asyncio.wait_for(_frames(relay), timeout=2)
        elapsed = asyncio.get_running_loop().time() - started
        await dropper

        assert [e["event"] for e in events] == ["meta", "delta"]
        assert elapsed < 1.0
        assert session.cancel_token.reason == ErrorKind.CLIENT_DISCONNECTED
        assert relay.outcome == ErrorKind.CLIENT_DISCONNECTED.value
        assert stream.state == GatewayState.CANCELLED
        assert provider.all_closed
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_completed_reply_is_handed_over_before_done(self):
        registry = StreamSessionRegistry()
        saved = []
        provider = FakeProvider(completion_frames("Rest ", "two days."))
        relay, _, _ = _relay(provider, registry, trailer=" (not medical advice)", on_complete=saved.append)

        events = await _frames(relay)

        assert saved == ["Rest two days. (not medical advice)"]
        assert events[-1]["event"] == "done"

    @pytest.mark.asyncio
    async def test_failed_reply_is_not_handed_over(self):
        registry = StreamSessionRegistry()
        saved = []
        provider = FakeProvider(completion_frames("Partial", finish_reason=None, done=False))
        relay, _, _ = _relay(provider, registry, on_complete=saved.append)

        events = await _frames(relay)

        assert events[-1]["event"] == "error"
        assert saved == []

    @pytest.mark.asyncio
    async def test_failing_reply_handler_still_ends_with_done(self):
        registry = StreamSessionRegistry()

        def broken_save(text):
            raise RuntimeError("database is down")

        relay, _, _ = _relay(FakeProvider(), registry, on_complete=broken_save)

        events = await _frames(relay)

        assert [e["event"] for e in events][-1] == "done"
        assert sum(1 for e in events if e["event"] in TERMINAL) == 1


class TestStreamSessionRegistry:

    def test_duplicate_request_id_conflicts(self):
        registry = StreamSessionRegistry()
        session = registry.open("req-1")

        with pytest.raises(ConflictError) as exc:
            registry.open("req-1")
        assert exc.value.status_code == 409

        registry.close(session)
        assert "req-1" not in registry
        registry.close(registry.open("req-1"))

    def test_closing_a_stale_session_keeps_the_new_one(self):
        registry = StreamSessionRegistry()
        old = registry.open("req-1")
        registry.close(old)
        new = registry.open("req-1")

        registry.close(old)

        assert "req-1" in registry
        registry.close(new)


class TestStaticReply:

    @pytest.mark.asyncio
    async def test_static_reply_is_meta_delta_done(self):
        registry = StreamSessionRegistry()
        session = registry.open("req-9")

        body = b"".join([f async for f in static_reply_frames(session, "Please reach out.", registry)])
        events = parse_sse(body.decode())

        assert [e["event"] for e in events] == ["meta", "delta", "done"]
        assert events[1]["data"]["delta"] == "Please reach out."
        assert events[2]["data"]["finish_reason"] == "blocked"
        assert len(registry) == 0
