"""Tests for the client socket session."""

import asyncio
import json

import pytest

from buddylynk_client.exceptions import SessionError
from buddylynk_client.session import ClientSocketSession, ReconnectPolicy, SessionState

from tests.conftest import LoopbackTransport, Recorder, eventually


class ScriptedConnector:
    """
    Connector whose outcomes are scripted.

    Each entry is ``"fail"`` (raise OSError) or ``"ok"`` (return a transport);
    once the script runs out every attempt fails.
    """

    def __init__(self, *script: str):
        self.script = list(script)
        self.urls = []
        self.transports = []

    async def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.script.pop(0) if self.script else "fail"
        if outcome == "fail":
            raise OSError("Connection refused")
        transport = LoopbackTransport()
        self.transports.append(transport)
        return transport


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


def make_session(connector, sleep=None, **options) -> ClientSocketSession:
    return ClientSocketSession(
        "ws://buddylynk.test/ws",
        "u1",
        "secret-token",
        connector=connector,
        sleep=sleep or SleepRecorder(),
        **options,
    )


class TestReconnectPolicy:
    """Tests for backoff delays."""

    def test_delays_are_exponential_and_capped(self):
        policy = ReconnectPolicy()
        delays = [policy.delay(attempt) for attempt in range(1, 11)]
        assert delays == [1, 2, 4, 5, 5, 5, 5, 5, 5, 5]

    def test_delays_never_decrease(self):
        policy = ReconnectPolicy(base_delay=0.5, max_delay=8, max_attempts=20)
        delays = [policy.delay(attempt) for attempt in range(1, 21)]
        assert delays == sorted(delays)
        assert max(delays) == 8


class TestSessionLifecycle:
    """Tests for start, close and credentials."""

    @pytest.mark.asyncio
    async def test_start_requires_credentials(self):
        session = ClientSocketSession("ws://buddylynk.test/ws", None, None, connector=ScriptedConnector("ok"))

        with pytest.raises(SessionError):
            await session.start()
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_token_in_query(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)

        await session.start()
        await session.wait_until_connected(timeout=1)
        await session.close()

        assert connector.urls == ["ws://buddylynk.test/ws?token=secret-token"]

    @pytest.mark.asyncio
    async def test_register_sent_on_connect(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)

        await session.start()
        assert await session.wait_until_connected(timeout=1)
        await session.close()

        assert connector.transports[0].frames("register", "sent") == [{"type": "register", "user_id": "u1"}]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        session = make_session(ScriptedConnector("ok"))
        await session.start()
        try:
            with pytest.raises(SessionError):
                await session.start()
        finally:
            await session.close()

    @pytest.mark.asyncio
    async def test_close_is_terminal(self):
        connector = ScriptedConnector("ok", "ok")
        session = make_session(connector)
        states = []
        session.add_state_listener(states.append)

        await session.start()
        await session.wait_until_connected(timeout=1)
        await session.close()

        assert session.state is SessionState.DISCONNECTED
        assert connector.transports[0].closed
        assert len(connector.transports) == 1
        assert states == [SessionState.CONNECTING, SessionState.CONNECTED, SessionState.DISCONNECTED]
        with pytest.raises(SessionError):
            await session.start()


class TestReconnect:
    """Tests for reconnect with backoff."""

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        """Test the bounded retry loop with capped, non-decreasing delays."""
        sleep = SleepRecorder()
        session = make_session(ScriptedConnector(), sleep=sleep)
        states = []
        session.add_state_listener(states.append)

        await session.start()
        await asyncio.wait_for(session.wait_until_stopped(), timeout=2)

        assert session.gave_up
        assert session.state is SessionState.DISCONNECTED
        assert sleep.delays == [1, 2, 4, 5, 5, 5, 5, 5, 5, 5]
        assert states[0] is SessionState.CONNECTING
        assert states[-1] is SessionState.DISCONNECTED
        assert SessionState.RECONNECTING in states

    @pytest.mark.asyncio
    async def test_failure_streak_then_success(self):
        sleep = SleepRecorder()
        connector = ScriptedConnector("fail", "fail", "fail", "fail", "ok")
        session = make_session(connector, sleep=sleep)

        await session.start()
        assert await session.wait_until_connected(timeout=2)
        await session.close()

        assert sleep.delays == [1, 2, 4, 5]
        assert sleep.delays == sorted(sleep.delays)
        assert len(connector.transports[0].frames("register", "sent")) == 1
        assert session.reconnect_attempts == 0

    @pytest.mark.asyncio
    async def test_registers_once_per_connect(self):
        """Test that each of N reconnects sends exactly one register."""
        connector = ScriptedConnector("ok", "ok", "ok", "ok")
        session = make_session(connector)
        connected = Recorder()
        session.add_state_listener(lambda state: connected(state) if state is SessionState.CONNECTED else None)

        await session.start()
        await eventually(lambda: len(connected) == 1)
        for expected in (2, 3, 4):
            connector.transports[-1].drop()
            await eventually(lambda: len(connected) == expected)
        await session.close()

        assert len(connector.transports) == 4
        for transport in connector.transports:
            assert len(transport.frames("register", "sent")) == 1

    @pytest.mark.asyncio
    async def test_handlers_survive_reconnect(self):
        connector = ScriptedConnector("ok", "ok")
        session = make_session(connector)
        messages = Recorder()

        await session.start()
        session.on("message", messages)
        assert await session.wait_until_connected(timeout=1)
        connector.transports[0].drop()
        await eventually(lambda: len(connector.transports) == 2 and session.is_connected)

        connector.transports[1].deliver(json.dumps({"type": "message", "data": {"message_id": "m1"}}))
        await eventually(lambda: len(messages) == 1)
        await session.close()

        assert messages.items == [{"message_id": "m1"}]


class TestSubscriptions:
    """Tests for on/off/emit."""

    @pytest.mark.asyncio
    async def test_noop_while_disconnected(self):
        session = make_session(ScriptedConnector())
        handler = Recorder()

        assert session.on("message", handler) is False
        assert session.off("message", handler) is False
        assert await session.emit("ping") is False
        assert session.handler_count() == 0

    @pytest.mark.asyncio
    async def test_emit_while_reconnecting_is_dropped(self):
        session = make_session(ScriptedConnector("fail", "ok"), sleep=lambda delay: asyncio.sleep(0.2))

        await session.start()
        await eventually(lambda: session.state is SessionState.RECONNECTING)
        assert await session.emit("call:end", {"to": "u2"}) is False
        await session.close()

    @pytest.mark.asyncio
    async def test_on_and_off(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        assert await session.wait_until_connected(timeout=1)
        handler = Recorder()

        assert session.on("postCreated", handler)
        assert session.on("postCreated", handler)
        assert session.handler_count("postCreated") == 1
        assert session.off("postCreated", handler)
        assert session.off("postCreated", handler) is False

        connector.transports[0].deliver(json.dumps({"type": "postCreated", "data": {"post_id": "p1"}}))
        await asyncio.sleep(0.02)
        await session.close()
        assert len(handler) == 0

    @pytest.mark.asyncio
    async def test_emit_sends_flat_frame(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        assert await session.wait_until_connected(timeout=1)

        assert await session.emit("call:end", {"to": "u2", "reason": "hangup"})
        await session.close()

        assert connector.transports[0].frames("call:end", "sent") == [{"type": "call:end", "to": "u2", "reason": "hangup"}]

    @pytest.mark.asyncio
    async def test_handler_errors_are_isolated(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        assert await session.wait_until_connected(timeout=1)
        healthy = Recorder()

        def broken(payload):
            raise ValueError("bad handler")

        async def broken_async(payload):
            raise ValueError("bad async handler")

        session.on("postCreated", broken)
        session.on("postCreated", broken_async)
        session.on("postCreated", healthy)
        connector.transports[0].deliver(json.dumps({"type": "postCreated", "data": {"post_id": "p1"}}))
        await eventually(lambda: len(healthy) == 1)
        await session.wait_for_listeners()

        assert session.is_connected
        await session.close()


class TestInboundFrames:
    """Tests for control frames handled by the session itself."""

    @pytest.mark.asyncio
    async def test_heartbeat_answered_with_pong(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        assert await session.wait_until_connected(timeout=1)

        connector.transports[0].deliver(json.dumps({"type": "heartbeat", "timestamp": "2026-01-01T00:00:00Z"}))
        await eventually(lambda: connector.transports[0].frames("pong", "sent"))
        await session.close()

    @pytest.mark.asyncio
    async def test_connected_frame_sets_ids(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        assert await session.wait_until_connected(timeout=1)

        connector.transports[0].deliver(json.dumps({"type": "system:connected", "connection_id": "c1", "server_id": "s1"}))
        await eventually(lambda: session.connection_id == "c1")
        assert session.server_id == "s1"
        await session.close()

    @pytest.mark.asyncio
    async def test_server_error_dispatched_as_error(self):
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        errors = Recorder()
        session.on("error", errors)
        assert await session.wait_until_connected(timeout=1)

        connector.transports[0].deliver(json.dumps({"type": "system:error", "code": "NOT_REGISTERED", "message": "x"}))
        connector.transports[0].deliver("not json")
        connector.transports[0].deliver(json.dumps(["no", "type"]))
        await eventually(lambda: len(errors) == 1)
        await session.close()

        assert errors.items[0] == {"code": "NOT_REGISTERED", "message": "x"}

    @pytest.mark.asyncio
    async def test_malformed_frames_skipped_without_disconnect(self):
        """Test that non-JSON and untyped frames are ignored and later frames still dispatch."""
        connector = ScriptedConnector("ok")
        session = make_session(connector)
        await session.start()
        posts = Recorder()
        session.on("postCreated", posts)
        assert await session.wait_until_connected(timeout=1)
        transport = connector.transports[0]

        transport.deliver("not json")
        transport.deliver(json.dumps(["no", "type"]))
        transport.deliver(json.dumps({"type": "postCreated", "data": {"post_id": "p1"}}))
        await eventually(lambda: len(posts) == 1)

        assert "not json" in transport.received
        assert posts.items[0] == {"post_id": "p1"}
        assert session.state is SessionState.CONNECTED
        assert len(connector.transports) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_client_heartbeat_pings(self):
        """Test that the client pings on its own schedule."""
        connector = ScriptedConnector("ok")
        session = make_session(connector, heartbeat_interval=0.01)
        await session.start()
        assert await session.wait_until_connected(timeout=1)

        await eventually(lambda: len(connector.transports[0].frames("ping", "sent")) >= 2)
        assert session.is_connected
        await session.close()
