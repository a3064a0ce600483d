"""
WebSocket frame DTOs for the realtime socket.

Every frame is a JSON object with a ``type`` discriminator. Control frames
carry their fields inline; domain events pushed by the server are wrapped as
``{"type": <wire event>, "data": {...}}`` (see ``buddylynk_types.events``).

Client -> Server:
- register: bind the connection to the authenticated user
- ping / pong: liveness
- call:offer, call:answer, call:ice-candidate, call:end: call signaling
- userTyping / userStoppedTyping: typing indicators for a direct conversation

Server -> Client:
- system:connected, registered, heartbeat, pong, system:error
- every ``client_event`` of the domain events
"""

from pydantic import BaseModel, Field
from typing import Literal, Optional, Any, Union
from datetime import datetime

from buddylynk_types.events import CallEndReason, CallType, CallerProfile


# =============================================================================
# Base Event Types
# =============================================================================

class WSEventBase(BaseModel):
    """Base class for all WebSocket frames."""
    type: str


# =============================================================================
# Client -> Server Events
# =============================================================================

class WSRegister(WSEventBase):
    """Bind this connection to a user. Sent once per successful connect."""
    type: Literal["register"] = "register"
    user_id: str = Field(..., description="Must match the authenticated user")


class WSPing(WSEventBase):
    """Keep-alive ping from client."""
    type: Literal["ping"] = "ping"


class WSClientPong(WSEventBase):
    """Reply to a server heartbeat."""
    type: Literal["pong"] = "pong"


class WSCallOffer(WSEventBase):
    """Start a call with another user."""
    type: Literal["call:offer"] = "call:offer"
    to: str = Field(..., description="Callee user id")
    offer: dict[str, Any] = Field(..., description="SDP offer")
    call_type: CallType = "voice"
    caller: Optional[CallerProfile] = None


class WSCallAnswer(WSEventBase):
    """Accept an incoming call."""
    type: Literal["call:answer"] = "call:answer"
    to: str = Field(..., description="Caller user id")
    answer: dict[str, Any] = Field(..., description="SDP answer")


class WSCallIceCandidate(WSEventBase):
    """Trickle ICE candidate for the peer."""
    type: Literal["call:ice-candidate"] = "call:ice-candidate"
    to: str
    candidate: dict[str, Any]


class WSCallEnd(WSEventBase):
    """Hang up, decline or abort a call."""
    type: Literal["call:end"] = "call:end"
    to: str
    reason: CallEndReason = "hangup"


class WSTypingStart(WSEventBase):
    """User started typing in a direct conversation."""
    type: Literal["userTyping"] = "userTyping"
    receiver_id: str


class WSTypingStop(WSEventBase):
    """User stopped typing in a direct conversation."""
    type: Literal["userStoppedTyping"] = "userStoppedTyping"
    receiver_id: str


# =============================================================================
# Server -> Client Events
# =============================================================================

class WSConnected(WSEventBase):
    """Transport accepted; the client should now register."""
    type: Literal["system:connected"] = "system:connected"
    connection_id: str
    server_id: str


class WSRegistered(WSEventBase):
    """Registration confirmed."""
    type: Literal["registered"] = "registered"
    user_id: str


class WSHeartbeat(WSEventBase):
    """Server liveness probe, answered with ``pong``."""
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: datetime


class WSPong(WSEventBase):
    """Keep-alive response."""
    type: Literal["pong"] = "pong"
    timestamp: datetime


class WSError(WSEventBase):
    """Error message."""
    type: Literal["system:error"] = "system:error"
    code: str = Field(..., description="Error code, e.g. 'INVALID_EVENT'")
    message: str


# =============================================================================
# Union Types
# =============================================================================

ClientEvent = Union[
    WSRegister,
    WSPing,
    WSClientPong,
    WSCallOffer,
    WSCallAnswer,
    WSCallIceCandidate,
    WSCallEnd,
    WSTypingStart,
    WSTypingStop,
]

ServerControlEvent = Union[
    WSConnected,
    WSRegistered,
    WSHeartbeat,
    WSPong,
    WSError,
]


# Event type mapping for parsing
CLIENT_EVENT_TYPES = {
    "register": WSRegister,
    "ping": WSPing,
    "pong": WSClientPong,
    "call:offer": WSCallOffer,
    "call:answer": WSCallAnswer,
    "call:ice-candidate": WSCallIceCandidate,
    "call:end": WSCallEnd,
    "userTyping": WSTypingStart,
    "userStoppedTyping": WSTypingStop,
}


def parse_client_event(data: dict) -> Optional[ClientEvent]:
    """
    Parse incoming client frame data into a typed event object.

    Args:
        data: Raw frame data from WebSocket

    Returns:
        Parsed event object or None if invalid
    """
    event_type = data.get("type")
    if not event_type or event_type not in CLIENT_EVENT_TYPES:
        return None

    event_class = CLIENT_EVENT_TYPES[event_type]
    try:
        return event_class.model_validate(data)
    except Exception:
        return None
