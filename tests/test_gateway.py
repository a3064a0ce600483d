"""Tests for the socket gateway."""

import pytest

from buddylynk_backend.websocket.gateway import (
    HEARTBEAT_TIMEOUT_CLOSE_CODE,
    ConnectionLimitError,
    RegistrationError,
    SocketGateway,
)
from buddylynk_backend.websocket.presence import PresenceStore
from buddylynk_backend.websocket.pubsub import LocalBroker, LocalEventBus
from buddylynk_types.events import MessageSentEvent, PostCreatedEvent

from tests.conftest import FakeClock, FakeRedis, FakeWebSocket


async def connect(realtime, user_id, websocket=None):
    websocket = websocket or FakeWebSocket()
    connection = await realtime.gateway.accept(websocket, auth_user_id=user_id)
    await realtime.gateway.register(connection.connection_id, user_id)
    return connection, websocket


async def start_gateway(server_id, broker, redis, clock, start=True):
    """A gateway with its own bus and clock on a shared broker and Redis."""
    bus = LocalEventBus(broker, handler_timeout=1.0, clock=clock)
    presence = PresenceStore(redis, server_id=server_id, ttl=60)
    gateway = SocketGateway(
        bus,
        presence,
        server_id=server_id,
        heartbeat_interval=3600,
        heartbeat_timeout=30,
        send_timeout=0.5,
        clock=clock,
    )
    await bus.start()
    if start:
        await gateway.start()
    return gateway


async def join(gateway, user_id):
    websocket = FakeWebSocket()
    connection = await gateway.accept(websocket, auth_user_id=user_id)
    await gateway.register(connection.connection_id, user_id)
    return connection, websocket


class TestRegistration:
    """Tests for accept/register/deregister."""

    @pytest.mark.asyncio
    async def test_accept_tracks_unregistered_connection(self, realtime):
        """Test that an accepted connection is not addressable yet."""
        websocket = FakeWebSocket()
        connection = await realtime.gateway.accept(websocket, auth_user_id="u1")

        assert websocket.accepted
        assert not connection.is_registered
        assert realtime.registry.get(connection.connection_id) is connection
        assert not realtime.registry.has_user("u1")

    @pytest.mark.asyncio
    async def test_register_publishes_online_once(self, realtime, fake_redis):
        """Test that only the first connection of a user announces it online."""
        watcher, watcher_ws = await connect(realtime, "watcher")
        await connect(realtime, "u1")
        await connect(realtime, "u1")
        await realtime.bus.flush()

        online = [f for f in watcher_ws.frames("userOnline") if f["data"]["user_id"] == "u1"]
        assert len(online) == 1
        assert fake_redis.store[realtime.presence.key("u1")] == "2"

    @pytest.mark.asyncio
    async def test_register_twice_is_noop(self, realtime, fake_redis):
        """Test that re-registering the same user does not count twice."""
        connection, _ = await connect(realtime, "u1")
        await realtime.gateway.register(connection.connection_id, "u1")

        assert fake_redis.store[realtime.presence.key("u1")] == "1"
        assert realtime.registry.count_for_user("u1") == 1

    @pytest.mark.asyncio
    async def test_register_as_other_user_rejected(self, realtime):
        """Test that a connection can only register as its authenticated user."""
        connection = await realtime.gateway.accept(FakeWebSocket(), auth_user_id="u1")

        with pytest.raises(RegistrationError) as exc_info:
            await realtime.gateway.register(connection.connection_id, "u2")

        assert exc_info.value.code == "REGISTER_MISMATCH"
        assert not connection.is_registered

    @pytest.mark.asyncio
    async def test_register_unknown_connection(self, realtime):
        with pytest.raises(RegistrationError) as exc_info:
            await realtime.gateway.register("missing", "u1")
        assert exc_info.value.code == "UNKNOWN_CONNECTION"

    @pytest.mark.asyncio
    async def test_deregister_last_connection_publishes_offline(self, realtime, fake_redis):
        """Test the 1 -> 0 transition."""
        _, watcher_ws = await connect(realtime, "watcher")
        first, _ = await connect(realtime, "u1")
        second, _ = await connect(realtime, "u1")

        await realtime.gateway.deregister(first.connection_id)
        await realtime.bus.flush()
        assert not [f for f in watcher_ws.frames("userOffline") if f["data"]["user_id"] == "u1"]

        await realtime.gateway.deregister(second.connection_id)
        await realtime.bus.flush()
        offline = [f for f in watcher_ws.frames("userOffline") if f["data"]["user_id"] == "u1"]
        assert len(offline) == 1
        assert realtime.presence.key("u1") not in fake_redis.store

    @pytest.mark.asyncio
    async def test_deregister_is_idempotent(self, realtime, fake_redis):
        """Test that a double deregister never drives the counter below zero."""
        other, _ = await connect(realtime, "u1")
        connection, _ = await connect(realtime, "u1")

        assert await realtime.gateway.deregister(connection.connection_id) is not None
        assert await realtime.gateway.deregister(connection.connection_id) is None

        assert fake_redis.store[realtime.presence.key("u1")] == "1"
        assert realtime.registry.count_for_user("u1") == 1
        assert realtime.registry.get(other.connection_id) is other

    @pytest.mark.asyncio
    async def test_redis_outage_does_not_block_registration(self, realtime, fake_redis):
        """Test that connections work even when presence cannot be written."""
        fake_redis.fail = True

        connection, websocket = await connect(realtime, "u1")

        assert connection.is_registered
        assert realtime.registry.has_user("u1")
        await realtime.gateway.deregister(connection.connection_id)
        assert not realtime.registry.has_user("u1")


class TestConnectionLimits:
    """Tests for per-user and per-process limits."""

    @pytest.mark.asyncio
    async def test_per_user_limit(self, fake_redis):
        bus = LocalEventBus()
        gateway = SocketGateway(bus, PresenceStore(fake_redis, server_id="s1"), server_id="s1", max_connections_per_user=2)

        for _ in range(2):
            connection = await gateway.accept(FakeWebSocket(), auth_user_id="u1")
            await gateway.register(connection.connection_id, "u1")

        extra = await gateway.accept(FakeWebSocket(), auth_user_id="u1")
        with pytest.raises(ConnectionLimitError) as exc_info:
            await gateway.register(extra.connection_id, "u1")

        assert exc_info.value.code == 4008
        assert gateway.get_metrics()["total_connection_limit_hits"] == 1

    @pytest.mark.asyncio
    async def test_total_limit(self, fake_redis):
        bus = LocalEventBus()
        gateway = SocketGateway(bus, PresenceStore(fake_redis, server_id="s1"), server_id="s1", max_total_connections=1)

        await gateway.accept(FakeWebSocket())
        websocket = FakeWebSocket()
        with pytest.raises(ConnectionLimitError):
            await gateway.accept(websocket)

        assert not websocket.accepted


class TestDelivery:
    """Tests for fan-out to local connections."""

    @pytest.mark.asyncio
    async def test_event_reaches_every_connection_of_receiver(self, realtime):
        """Test multi-device delivery and that bystanders receive nothing."""
        _, phone = await connect(realtime, "bob")
        _, laptop = await connect(realtime, "bob")
        _, bystander = await connect(realtime, "carol")

        realtime.bus.publish(MessageSentEvent(message_id="m1", sender_id="alice", receiver_id="bob", content="hi"))
        await realtime.bus.flush()

        assert len(phone.frames("message")) == 1
        assert len(laptop.frames("message")) == 1
        assert bystander.frames("message") == []

    @pytest.mark.asyncio
    async def test_failed_send_does_not_affect_others(self, realtime):
        """Test that one broken socket does not stop delivery to the rest."""
        _, broken = await connect(realtime, "bob", FakeWebSocket())
        _, healthy = await connect(realtime, "bob")
        broken.fail_send = True

        realtime.bus.publish(MessageSentEvent(message_id="m1", sender_id="alice", receiver_id="bob", content="hi"))
        await realtime.bus.flush()

        assert len(healthy.frames("message")) == 1
        assert realtime.gateway.get_metrics()["total_send_errors"] >= 1

    @pytest.mark.asyncio
    async def test_slow_send_times_out(self, realtime):
        """Test that a stalled socket is given up on after the send timeout."""
        _, stalled = await connect(realtime, "bob", FakeWebSocket(send_delay=5))
        _, healthy = await connect(realtime, "bob")

        realtime.bus.publish(MessageSentEvent(message_id="m1", sender_id="alice", receiver_id="bob", content="hi"))
        await realtime.bus.flush()

        assert len(healthy.frames("message")) == 1
        assert stalled.frames("message") == []
        assert realtime.gateway.get_metrics()["total_send_timeouts"] >= 1

    @pytest.mark.asyncio
    async def test_unregistered_connections_get_no_broadcast(self, realtime):
        """Test that broadcasts skip connections that have not registered."""
        _, registered = await connect(realtime, "u1")
        pending = FakeWebSocket()
        await realtime.gateway.accept(pending, auth_user_id="u2")

        realtime.bus.publish(PostCreatedEvent(post_id="p1", author_id="u1"))
        await realtime.bus.flush()

        assert len(registered.frames("postCreated")) == 1
        assert pending.frames("postCreated") == []

    @pytest.mark.asyncio
    async def test_broadcast_excludes_late_registrants(self, realtime, clock):
        """Test that a connection registered after the event was received does not get it."""
        _, early = await connect(realtime, "early")

        clock.advance(1)
        event = PostCreatedEvent(post_id="p1", author_id="early").model_copy(update={"received_at": clock.now})

        clock.advance(1)
        _, late = await connect(realtime, "late")
        await realtime.gateway.on_event(event)

        assert len(early.frames("postCreated")) == 1
        assert late.frames("postCreated") == []

    @pytest.mark.asyncio
    async def test_bus_stamps_receive_time(self, realtime, clock):
        """Test that delivery is filtered against this process's receive time, not the publish time."""
        _, bob = await connect(realtime, "bob")
        event = MessageSentEvent(
            message_id="m1", sender_id="alice", receiver_id="bob", content="hi",
            published_at=clock.now - 3600,
        )

        await realtime.bus.dispatch(event)

        assert len(bob.frames("message")) == 1

    @pytest.mark.asyncio
    async def test_send_to_user(self, realtime):
        _, first = await connect(realtime, "u1")
        _, second = await connect(realtime, "u1")

        sent = await realtime.gateway.send_to_user("u1", {"type": "custom"})

        assert sent == 2
        assert await realtime.gateway.send_to_user("nobody", {"type": "custom"}) == 0
        assert first.frames("custom") and second.frames("custom")


class TestHeartbeat:
    """Tests for the heartbeat sweep."""

    @pytest.mark.asyncio
    async def test_stale_connection_closed_and_offline(self, realtime, clock, fake_redis):
        """Test that a silent connection is closed with 4000 and the user goes offline."""
        _, watcher_ws = await connect(realtime, "watcher")
        stale, stale_ws = await connect(realtime, "u1")

        clock.advance(31)
        realtime.gateway.touch(realtime.registry.connections_for_user("watcher")[0])
        await realtime.gateway.sweep_heartbeats()
        await realtime.bus.flush()

        assert stale_ws.closed
        assert stale_ws.close_code == HEARTBEAT_TIMEOUT_CLOSE_CODE
        assert realtime.registry.get(stale.connection_id) is None
        assert realtime.presence.key("u1") not in fake_redis.store
        assert [f for f in watcher_ws.frames("userOffline") if f["data"]["user_id"] == "u1"]
        assert realtime.gateway.get_metrics()["total_heartbeat_timeouts"] == 1

    @pytest.mark.asyncio
    async def test_live_connections_probed(self, realtime):
        """Test that every remaining connection receives a heartbeat frame."""
        _, websocket = await connect(realtime, "u1")

        await realtime.gateway.sweep_heartbeats()

        assert len(websocket.frames("heartbeat")) == 1
        assert not websocket.closed

    @pytest.mark.asyncio
    async def test_sweep_reseeds_expired_presence(self, realtime, fake_redis):
        """Test presence self-healing after every presence key of the user expired."""
        _, watcher_ws = await connect(realtime, "watcher")
        await connect(realtime, "u1")
        await connect(realtime, "u1")
        await realtime.bus.flush()
        presence = realtime.presence
        for key in (presence.key("u1"), presence.index_key("u1"), presence.announced_key("u1")):
            fake_redis.expire_now(key)

        await realtime.gateway.sweep_heartbeats()
        await realtime.bus.flush()

        assert fake_redis.store[realtime.presence.key("u1")] == "2"
        online = [f for f in watcher_ws.frames("userOnline") if f["data"]["user_id"] == "u1"]
        assert len(online) == 2


class TestShutdown:
    """Tests for gateway shutdown."""

    @pytest.mark.asyncio
    async def test_stop_releases_presence(self, fake_redis):
        bus = LocalEventBus()
        gateway = SocketGateway(bus, PresenceStore(fake_redis, server_id="s1"), server_id="s1", heartbeat_interval=3600)
        await gateway.start()
        await bus.start()

        websocket = FakeWebSocket()
        connection = await gateway.accept(websocket, auth_user_id="u1")
        await gateway.register(connection.connection_id, "u1")

        await gateway.stop()
        await bus.stop()

        assert websocket.closed
        assert websocket.close_code == 1001
        assert gateway.presence.key("u1") not in fake_redis.store
        assert gateway.get_connection_count() == 0


class TestMultipleProcesses:
    """Tests for gateways on separate processes sharing Redis and the broker."""

    @pytest.mark.asyncio
    async def test_crashed_process_does_not_keep_user_online(self):
        """Test that a user goes offline when the last live process releases them, despite a crashed one."""
        clock = FakeClock()
        redis = FakeRedis(clock=clock)
        broker = LocalBroker()
        # Process A never runs a heartbeat loop, and its bus is stopped without deregistering
        gateway_a = await start_gateway("a", broker, redis, clock, start=False)
        gateway_b = await start_gateway("b", broker, redis, clock)
        try:
            _, watcher_ws = await join(gateway_b, "watcher")
            await join(gateway_a, "bob")
            bob_on_b, _ = await join(gateway_b, "bob")
            await gateway_a.bus.stop()

            for _ in range(10):
                clock.advance(25)
                for connection in gateway_b.registry.all():
                    gateway_b.touch(connection)
                await gateway_b.sweep_heartbeats()
                assert await gateway_b.presence.is_online("bob") is True

            await gateway_b.deregister(bob_on_b.connection_id)
            await gateway_b.bus.flush()

            assert await gateway_b.presence.is_online("bob") is False
            offline = [f for f in watcher_ws.frames("userOffline") if f["data"]["user_id"] == "bob"]
            assert len(offline) == 1
        finally:
            await gateway_b.stop()
            await gateway_b.bus.stop()

    @pytest.mark.asyncio
    async def test_receiver_clock_ahead_of_publisher(self):
        """Test that an event published on a process with a slower clock still reaches a fresh registrant."""
        clock_a = FakeClock(now=1_700_000_000.0)
        clock_b = FakeClock(now=1_700_000_002.0)
        redis = FakeRedis()
        broker = LocalBroker()
        gateway_a = await start_gateway("a", broker, redis, clock_a)
        gateway_b = await start_gateway("b", broker, redis, clock_b)
        try:
            _, bob_ws = await join(gateway_b, "bob")
            clock_a.advance(1)
            clock_b.advance(1)

            gateway_a.bus.publish(MessageSentEvent(message_id="m1", sender_id="alice", receiver_id="bob", content="hi"))
            await gateway_a.bus.flush()

            assert len(bob_ws.frames("message")) == 1
        finally:
            for gateway in (gateway_a, gateway_b):
                await gateway.stop()
                await gateway.bus.stop()
