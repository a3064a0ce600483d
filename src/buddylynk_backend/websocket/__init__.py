"""
Realtime delivery layer.

- pubsub: EventBus with Redis and in-process transports
- connection_registry: live connections of this process
- presence: online counters in Redis
- gateway: socket sessions, heartbeat and event fan-out
- call_relay: WebRTC signaling between users
- broadcast: typed publishing helpers for producers
- router: the /ws endpoint
"""

from buddylynk_backend.websocket.broadcast import DomainEventPublisher
from buddylynk_backend.websocket.call_relay import CallSignalingRelay, CallSession
from buddylynk_backend.websocket.connection_registry import Connection, ConnectionRegistry
from buddylynk_backend.websocket.gateway import (
    ConnectionLimitError,
    RegistrationError,
    SocketGateway,
)
from buddylynk_backend.websocket.presence import PresenceChange, PresenceStore
from buddylynk_backend.websocket.pubsub import (
    EventBus,
    LocalBroker,
    LocalEventBus,
    RedisEventBus,
)
from buddylynk_backend.websocket.router import ws_router
from buddylynk_backend.websocket.services import RealtimeServices, build_realtime, get_realtime

__all__ = [
    "CallSession",
    "CallSignalingRelay",
    "Connection",
    "ConnectionLimitError",
    "ConnectionRegistry",
    "DomainEventPublisher",
    "EventBus",
    "LocalBroker",
    "LocalEventBus",
    "PresenceChange",
    "PresenceStore",
    "RealtimeServices",
    "RedisEventBus",
    "RegistrationError",
    "SocketGateway",
    "build_realtime",
    "get_realtime",
    "ws_router",
]
