"""
Wiring of the realtime components of one server process.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from starlette.requests import HTTPConnection

from buddylynk_backend.settings import settings
from buddylynk_backend.websocket.broadcast import DomainEventPublisher
from buddylynk_backend.websocket.call_relay import CallSignalingRelay
from buddylynk_backend.websocket.connection_registry import ConnectionRegistry
from buddylynk_backend.websocket.gateway import SocketGateway
from buddylynk_backend.websocket.presence import PresenceStore
from buddylynk_backend.websocket.pubsub import EventBus, LocalEventBus, RedisEventBus

logger = logging.getLogger(__name__)


@dataclass
class RealtimeServices:
    bus: EventBus
    presence: PresenceStore
    registry: ConnectionRegistry
    relay: CallSignalingRelay
    gateway: SocketGateway
    publisher: DomainEventPublisher

    async def start(self):
        await self.relay.start()
        await self.gateway.start()
        await self.bus.start()

    async def stop(self):
        await self.gateway.stop()
        await self.relay.stop()
        await self.bus.stop()


def build_realtime(
    redis_client: aioredis.Redis,
    bus: Optional[EventBus] = None,
    disconnect_grace: float = 10.0,
    **gateway_options,
) -> RealtimeServices:
    """
    Assemble the realtime services for this process.

    Args:
        redis_client: Async Redis client for presence (and the default bus)
        bus: Event bus to use; defaults to EVENT_BUS_BACKEND
        disconnect_grace: Seconds a call survives its participant's disconnect
        gateway_options: Overrides passed to SocketGateway (timeouts, limits, clock)
    """
    if bus is None:
        if settings.EVENT_BUS_BACKEND == "local":
            bus = LocalEventBus()
        else:
            bus = RedisEventBus(redis_client)
        logger.info(f"Using {type(bus).__name__} for realtime events")

    presence = PresenceStore(redis_client, server_id=gateway_options.get("server_id"))
    registry = ConnectionRegistry()
    relay = CallSignalingRelay(bus, presence, disconnect_grace=disconnect_grace)
    gateway = SocketGateway(bus, presence, registry=registry, relay=relay, **gateway_options)

    return RealtimeServices(
        bus=bus,
        presence=presence,
        registry=registry,
        relay=relay,
        gateway=gateway,
        publisher=DomainEventPublisher(bus),
    )


def get_realtime(connection: HTTPConnection) -> RealtimeServices:
    """FastAPI dependency for both HTTP and WebSocket routes."""
    return connection.app.state.realtime
