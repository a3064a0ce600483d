"""Tests for the call signaling relay."""

import pytest

from buddylynk_backend.websocket.call_relay import CALL_SESSION_MAX_AGE, CallSignalingRelay
from buddylynk_backend.websocket.presence import PresenceStore
from buddylynk_backend.websocket.pubsub import LocalEventBus
from buddylynk_types.events import CallEndedEvent


@pytest.fixture
async def relay_setup(fake_redis, clock):
    bus = LocalEventBus(handler_timeout=1.0, clock=clock)
    presence = PresenceStore(fake_redis, ttl=60)
    relay = CallSignalingRelay(bus, presence, disconnect_grace=0.01, clock=clock)
    ended = []

    async def capture(event):
        if isinstance(event, CallEndedEvent):
            ended.append(event)

    bus.register_handler("capture", capture)
    await relay.start()
    await bus.start()
    yield relay, bus, presence, ended
    await relay.stop()
    await bus.stop()


class TestCallSessions:
    """Tests for the call table kept from bus events."""

    @pytest.mark.asyncio
    async def test_offer_answer_end(self, relay_setup):
        relay, bus, _, _ = relay_setup

        relay.offer("alice", "bob", {"sdp": "x"}, call_type="video")
        await bus.flush()
        session = relay.get_session("bob", "alice")
        assert session.state == "offered"
        assert session.call_type == "video"
        assert session.caller_id == "alice"

        relay.answer("bob", "alice", {"sdp": "y"})
        await bus.flush()
        assert relay.get_session("alice", "bob").state == "connected"

        relay.end("bob", "alice", "hangup")
        await bus.flush()
        assert relay.get_session("alice", "bob") is None
        assert relay.sessions_for("alice") == []

    @pytest.mark.asyncio
    async def test_prune_forgets_old_calls(self, relay_setup, clock):
        relay, bus, _, _ = relay_setup
        relay.offer("alice", "bob", {"sdp": "x"})
        await bus.flush()

        assert relay.prune() == 0
        clock.advance(CALL_SESSION_MAX_AGE + 1)
        assert relay.prune() == 1
        assert relay.get_session("alice", "bob") is None


class TestDisconnectGrace:
    """Tests for ending calls of vanished participants."""

    @pytest.mark.asyncio
    async def test_gone_participant_ends_call(self, relay_setup):
        """Test that the peer is told the call ended with reason disconnected."""
        relay, bus, _, ended = relay_setup
        relay.offer("alice", "bob", {"sdp": "x"})
        await bus.flush()

        relay.connection_lost("bob")
        await relay.wait_pending()
        await bus.flush()

        assert len(ended) == 1
        assert ended[0].from_user_id == "bob"
        assert ended[0].to_user_id == "alice"
        assert ended[0].reason == "disconnected"
        assert relay.get_session("alice", "bob") is None

    @pytest.mark.asyncio
    async def test_participant_online_elsewhere_keeps_call(self, relay_setup):
        """Test that a participant reconnected on another process keeps the call."""
        relay, bus, presence, ended = relay_setup
        relay.offer("alice", "bob", {"sdp": "x"})
        await bus.flush()
        await presence.increment("bob")

        relay.connection_lost("bob")
        await relay.wait_pending()
        await bus.flush()

        assert ended == []
        assert relay.get_session("alice", "bob") is not None

    @pytest.mark.asyncio
    async def test_unknown_presence_ends_call(self, relay_setup, fake_redis):
        """Test that an unreachable presence store does not keep a dead call alive."""
        relay, bus, presence, ended = relay_setup
        relay.offer("alice", "bob", {"sdp": "x"})
        await bus.flush()
        await presence.increment("bob")
        fake_redis.fail = True

        relay.connection_lost("bob")
        await relay.wait_pending()
        fake_redis.fail = False
        await bus.flush()

        assert [e.reason for e in ended] == ["disconnected"]

    @pytest.mark.asyncio
    async def test_no_call_no_check(self, relay_setup):
        relay, _, _, _ = relay_setup

        relay.connection_lost("nobody")

        assert relay._pending_checks == {}
