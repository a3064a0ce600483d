"""
Domain event DTOs distributed over the realtime event bus.

Every event travels on exactly one bus channel and is delivered to clients
under a wire event name. The set of variants is closed: each variant knows
who should receive it (``target()``) and what the client sees
(``client_payload()``), so the gateway never has to branch on channel names.

Channel naming follows the producer side ("message:sent"), wire naming
follows what the client subscribes to ("message").
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar, FrozenSet, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError


class DomainChannel(str, Enum):
    """Bus channels, one per domain event variant."""

    MESSAGE_SENT = "message:sent"
    MESSAGE_EDITED = "message:edited"
    MESSAGE_DELETED = "message:deleted"
    MESSAGES_READ = "messages:read"

    NOTIFICATION = "notification:sent"
    NOTIFICATION_READ = "notification:read"
    NOTIFICATIONS_CLEARED = "notification:cleared"
    UNREAD_COUNT_UPDATED = "unread:count:updated"

    POST_CREATED = "post:created"
    POST_UPDATED = "post:updated"
    POST_DELETED = "post:deleted"

    GROUP_CREATED = "group:created"
    GROUP_UPDATED = "group:updated"
    GROUP_DELETED = "group:deleted"

    CHANNEL_CREATED = "channel:created"
    CHANNEL_UPDATED = "channel:updated"
    CHANNEL_DELETED = "channel:deleted"
    CHANNEL_POST_CREATED = "channel:post:created"
    CHANNEL_POST_UPDATED = "channel:post:updated"
    CHANNEL_POST_DELETED = "channel:post:deleted"

    CALL_OFFER = "call:offer"
    CALL_ANSWER = "call:answer"
    CALL_ICE_CANDIDATE = "call:ice-candidate"
    CALL_ENDED = "call:ended"

    USER_ONLINE = "user:online"
    USER_OFFLINE = "user:offline"
    USER_UPDATED = "user:updated"
    USER_TYPING = "typing:started"
    USER_STOPPED_TYPING = "typing:stopped"


CallType = Literal["voice", "video"]
CallEndReason = Literal["hangup", "declined", "busy", "disconnected", "media_error", "timeout"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventTarget:
    """
    Recipients of a domain event.

    Either an explicit set of user ids or every registered connection.
    """
    user_ids: FrozenSet[str] = frozenset()
    broadcast: bool = False

    @classmethod
    def users(cls, *user_ids: Optional[str]) -> "EventTarget":
        return cls(user_ids=frozenset(u for u in user_ids if u))

    @classmethod
    def everyone(cls) -> "EventTarget":
        return cls(broadcast=True)

    def includes(self, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        return self.broadcast or user_id in self.user_ids


class CallerProfile(BaseModel):
    """Public profile of the caller, shown on the incoming call screen."""
    user_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


# =============================================================================
# Base classes
# =============================================================================

class DomainEventBase(BaseModel):
    """Base class for all domain events."""
    channel: str
    published_at: Optional[float] = Field(
        None,
        description="Epoch seconds at which the bus accepted the event",
    )
    received_at: Optional[float] = Field(
        None,
        exclude=True,
        description="Epoch seconds at which this process received the event, on its own clock",
    )

    client_event: ClassVar[str] = ""

    def target(self) -> EventTarget:
        raise NotImplementedError

    def client_payload(self) -> dict:
        return self.model_dump(mode="json", exclude={"channel", "published_at"})

    def to_client_frame(self) -> dict:
        """Frame pushed over the websocket for this event."""
        return {"type": self.client_event, "data": self.client_payload()}


class BroadcastEvent(DomainEventBase):
    """Event delivered to every registered connection."""

    def target(self) -> EventTarget:
        return EventTarget.everyone()


class UserScopedEvent(DomainEventBase):
    """Event delivered to every connection of a single user."""
    user_id: str

    def target(self) -> EventTarget:
        return EventTarget.users(self.user_id)


class CallEventBase(DomainEventBase):
    """Point-to-point call signaling event, delivered to ``to_user_id`` only."""
    from_user_id: str
    to_user_id: str

    def target(self) -> EventTarget:
        return EventTarget.users(self.to_user_id)

    def client_payload(self) -> dict:
        payload = self.model_dump(
            mode="json",
            exclude={"channel", "published_at", "to_user_id"},
        )
        return payload


# =============================================================================
# Direct messages
# =============================================================================

class MessageSentEvent(DomainEventBase):
    channel: Literal["message:sent"] = "message:sent"
    client_event: ClassVar[str] = "message"

    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime = Field(default_factory=utc_now)

    def target(self) -> EventTarget:
        return EventTarget.users(self.receiver_id)


class MessageEditedEvent(DomainEventBase):
    channel: Literal["message:edited"] = "message:edited"
    client_event: ClassVar[str] = "messageEdited"

    message_id: str
    sender_id: str
    receiver_id: str
    content: str
    edited_at: datetime = Field(default_factory=utc_now)

    def target(self) -> EventTarget:
        return EventTarget.users(self.sender_id, self.receiver_id)


class MessageDeletedEvent(DomainEventBase):
    channel: Literal["message:deleted"] = "message:deleted"
    client_event: ClassVar[str] = "messageDeleted"

    message_id: str
    sender_id: str
    receiver_id: str

    def target(self) -> EventTarget:
        return EventTarget.users(self.sender_id, self.receiver_id)


class MessagesReadEvent(DomainEventBase):
    channel: Literal["messages:read"] = "messages:read"
    client_event: ClassVar[str] = "messagesRead"

    reader_id: str
    sender_id: str
    message_ids: list[str] = Field(default_factory=list)
    read_at: datetime = Field(default_factory=utc_now)

    def target(self) -> EventTarget:
        return EventTarget.users(self.reader_id, self.sender_id)


# =============================================================================
# Notifications & unread counters
# =============================================================================

class NotificationEvent(UserScopedEvent):
    channel: Literal["notification:sent"] = "notification:sent"
    client_event: ClassVar[str] = "notification"

    notification_id: str
    kind: str = Field(..., description="e.g. 'message', 'like', 'follow', 'comment'")
    actor_id: Optional[str] = None
    text: Optional[str] = None
    reference_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class NotificationReadEvent(UserScopedEvent):
    channel: Literal["notification:read"] = "notification:read"
    client_event: ClassVar[str] = "notificationRead"

    notification_id: str


class NotificationsClearedEvent(UserScopedEvent):
    channel: Literal["notification:cleared"] = "notification:cleared"
    client_event: ClassVar[str] = "notificationsCleared"


class UnreadCountUpdatedEvent(UserScopedEvent):
    channel: Literal["unread:count:updated"] = "unread:count:updated"
    client_event: ClassVar[str] = "unreadCountUpdated"

    count: int = Field(..., ge=0)


# =============================================================================
# Posts, groups, channels (public feed, broadcast)
# =============================================================================

class PostCreatedEvent(BroadcastEvent):
    channel: Literal["post:created"] = "post:created"
    client_event: ClassVar[str] = "postCreated"

    post_id: str
    author_id: str
    content: Optional[str] = None
    media_urls: list[str] = Field(default_factory=list)


class PostUpdatedEvent(BroadcastEvent):
    channel: Literal["post:updated"] = "post:updated"
    client_event: ClassVar[str] = "postUpdated"

    post_id: str
    author_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class PostDeletedEvent(BroadcastEvent):
    channel: Literal["post:deleted"] = "post:deleted"
    client_event: ClassVar[str] = "postDeleted"

    post_id: str
    author_id: str


class GroupCreatedEvent(BroadcastEvent):
    channel: Literal["group:created"] = "group:created"
    client_event: ClassVar[str] = "groupCreated"

    group_id: str
    owner_id: str
    name: str


class GroupUpdatedEvent(BroadcastEvent):
    channel: Literal["group:updated"] = "group:updated"
    client_event: ClassVar[str] = "groupUpdated"

    group_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class GroupDeletedEvent(BroadcastEvent):
    channel: Literal["group:deleted"] = "group:deleted"
    client_event: ClassVar[str] = "groupDeleted"

    group_id: str


class ChannelCreatedEvent(BroadcastEvent):
    channel: Literal["channel:created"] = "channel:created"
    client_event: ClassVar[str] = "channelCreated"

    channel_id: str
    owner_id: str
    name: str


class ChannelUpdatedEvent(BroadcastEvent):
    channel: Literal["channel:updated"] = "channel:updated"
    client_event: ClassVar[str] = "channelUpdated"

    channel_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class ChannelDeletedEvent(BroadcastEvent):
    channel: Literal["channel:deleted"] = "channel:deleted"
    client_event: ClassVar[str] = "channelDeleted"

    channel_id: str


class ChannelPostCreatedEvent(BroadcastEvent):
    channel: Literal["channel:post:created"] = "channel:post:created"
    client_event: ClassVar[str] = "channelPostCreated"

    channel_id: str
    post_id: str
    author_id: str
    content: Optional[str] = None


class ChannelPostUpdatedEvent(BroadcastEvent):
    channel: Literal["channel:post:updated"] = "channel:post:updated"
    client_event: ClassVar[str] = "channelPostUpdated"

    channel_id: str
    post_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class ChannelPostDeletedEvent(BroadcastEvent):
    channel: Literal["channel:post:deleted"] = "channel:post:deleted"
    client_event: ClassVar[str] = "channelPostDeleted"

    channel_id: str
    post_id: str


# =============================================================================
# Call signaling (point to point)
# =============================================================================

class CallOfferEvent(CallEventBase):
    channel: Literal["call:offer"] = "call:offer"
    client_event: ClassVar[str] = "call:incoming"

    offer: dict[str, Any] = Field(..., description="SDP offer, opaque to the server")
    call_type: CallType = "voice"
    caller: Optional[CallerProfile] = None


class CallAnswerEvent(CallEventBase):
    channel: Literal["call:answer"] = "call:answer"
    client_event: ClassVar[str] = "call:answer"

    answer: dict[str, Any] = Field(..., description="SDP answer, opaque to the server")


class CallIceCandidateEvent(CallEventBase):
    channel: Literal["call:ice-candidate"] = "call:ice-candidate"
    client_event: ClassVar[str] = "call:ice-candidate"

    candidate: dict[str, Any]


class CallEndedEvent(CallEventBase):
    channel: Literal["call:ended"] = "call:ended"
    client_event: ClassVar[str] = "call:ended"

    reason: CallEndReason = "hangup"


# =============================================================================
# Users
# =============================================================================

class UserOnlineEvent(BroadcastEvent):
    channel: Literal["user:online"] = "user:online"
    client_event: ClassVar[str] = "userOnline"

    user_id: str


class UserOfflineEvent(BroadcastEvent):
    channel: Literal["user:offline"] = "user:offline"
    client_event: ClassVar[str] = "userOffline"

    user_id: str
    last_seen_at: datetime = Field(default_factory=utc_now)


class UserUpdatedEvent(BroadcastEvent):
    channel: Literal["user:updated"] = "user:updated"
    client_event: ClassVar[str] = "userUpdated"

    user_id: str
    changes: dict[str, Any] = Field(default_factory=dict)


class UserTypingEvent(DomainEventBase):
    channel: Literal["typing:started"] = "typing:started"
    client_event: ClassVar[str] = "userTyping"

    user_id: str
    receiver_id: str

    def target(self) -> EventTarget:
        return EventTarget.users(self.receiver_id)


class UserStoppedTypingEvent(DomainEventBase):
    channel: Literal["typing:stopped"] = "typing:stopped"
    client_event: ClassVar[str] = "userStoppedTyping"

    user_id: str
    receiver_id: str

    def target(self) -> EventTarget:
        return EventTarget.users(self.receiver_id)


# =============================================================================
# Union & parsing
# =============================================================================

DOMAIN_EVENT_CLASSES = (
    MessageSentEvent,
    MessageEditedEvent,
    MessageDeletedEvent,
    MessagesReadEvent,
    NotificationEvent,
    NotificationReadEvent,
    NotificationsClearedEvent,
    UnreadCountUpdatedEvent,
    PostCreatedEvent,
    PostUpdatedEvent,
    PostDeletedEvent,
    GroupCreatedEvent,
    GroupUpdatedEvent,
    GroupDeletedEvent,
    ChannelCreatedEvent,
    ChannelUpdatedEvent,
    ChannelDeletedEvent,
    ChannelPostCreatedEvent,
    ChannelPostUpdatedEvent,
    ChannelPostDeletedEvent,
    CallOfferEvent,
    CallAnswerEvent,
    CallIceCandidateEvent,
    CallEndedEvent,
    UserOnlineEvent,
    UserOfflineEvent,
    UserUpdatedEvent,
    UserTypingEvent,
    UserStoppedTypingEvent,
)

DomainEvent = Annotated[
    Union[DOMAIN_EVENT_CLASSES],
    Field(discriminator="channel"),
]

DOMAIN_EVENT_ADAPTER: TypeAdapter = TypeAdapter(DomainEvent)

# channel value -> event class
DOMAIN_EVENT_TYPES: dict[str, type[DomainEventBase]] = {
    cls.model_fields["channel"].default: cls for cls in DOMAIN_EVENT_CLASSES
}


def parse_domain_event(data: dict) -> Optional[DomainEventBase]:
    """
    Parse bus payload data into a typed domain event.

    Args:
        data: Decoded JSON payload including the ``channel`` discriminator

    Returns:
        Parsed event or None if the channel is unknown or the payload invalid
    """
    if not isinstance(data, dict) or data.get("channel") not in DOMAIN_EVENT_TYPES:
        return None
    try:
        return DOMAIN_EVENT_ADAPTER.validate_python(data)
    except ValidationError:
        return None
