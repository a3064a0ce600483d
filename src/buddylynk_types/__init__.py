"""
Shared DTOs for the Buddylynk realtime layer.

- events: domain events carried by the event bus
- websocket: socket frames exchanged with clients
- presence, messages: REST payloads
- errors: structured error responses
"""

from buddylynk_types.events import (
    DomainChannel,
    DomainEvent,
    DomainEventBase,
    EventTarget,
    parse_domain_event,
)
from buddylynk_types.websocket import parse_client_event

__all__ = [
    "DomainChannel",
    "DomainEvent",
    "DomainEventBase",
    "EventTarget",
    "parse_domain_event",
    "parse_client_event",
]
