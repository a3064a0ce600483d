"""
Domain event publisher.

High-level helpers producers call after they changed persistent state. Every
method builds the typed event and hands it to the bus; none of them waits for
delivery.

Usage:
    publisher.message_sent(message)
    publisher.unread_count(user_id, 3)
    publisher.post_created(post_id, author_id, content="hello")
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from buddylynk_backend.websocket.pubsub import EventBus
from buddylynk_types.events import (
    ChannelCreatedEvent,
    ChannelDeletedEvent,
    ChannelPostCreatedEvent,
    ChannelPostDeletedEvent,
    ChannelPostUpdatedEvent,
    ChannelUpdatedEvent,
    GroupCreatedEvent,
    GroupDeletedEvent,
    GroupUpdatedEvent,
    MessageDeletedEvent,
    MessageEditedEvent,
    MessageSentEvent,
    MessagesReadEvent,
    NotificationEvent,
    NotificationReadEvent,
    NotificationsClearedEvent,
    PostCreatedEvent,
    PostDeletedEvent,
    PostUpdatedEvent,
    UnreadCountUpdatedEvent,
    UserTypingEvent,
    UserStoppedTypingEvent,
    UserUpdatedEvent,
)

logger = logging.getLogger(__name__)


class DomainEventPublisher:
    """Typed publishing helpers on top of an ``EventBus``."""

    def __init__(self, bus: EventBus):
        self._bus = bus

    # Direct messages

    def message_sent(self, message) -> None:
        self._bus.publish(MessageSentEvent(
            message_id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            created_at=message.created_at,
        ))

    def message_edited(self, message) -> None:
        self._bus.publish(MessageEditedEvent(
            message_id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=message.content,
            edited_at=message.edited_at,
        ))

    def message_deleted(self, message) -> None:
        self._bus.publish(MessageDeletedEvent(
            message_id=message.id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
        ))

    def messages_read(self, reader_id: str, sender_id: str, message_ids: list[str], read_at: datetime) -> None:
        self._bus.publish(MessagesReadEvent(
            reader_id=reader_id,
            sender_id=sender_id,
            message_ids=message_ids,
            read_at=read_at,
        ))

    def typing(self, user_id: str, receiver_id: str, is_typing: bool) -> None:
        event_class = UserTypingEvent if is_typing else UserStoppedTypingEvent
        self._bus.publish(event_class(user_id=user_id, receiver_id=receiver_id))

    # Notifications

    def notification(
        self,
        user_id: str,
        kind: str,
        actor_id: Optional[str] = None,
        text: Optional[str] = None,
        reference_id: Optional[str] = None,
        notification_id: Optional[str] = None,
    ) -> str:
        """Publish a notification; returns its id."""
        notification_id = notification_id or str(uuid.uuid4())
        self._bus.publish(NotificationEvent(
            user_id=user_id,
            notification_id=notification_id,
            kind=kind,
            actor_id=actor_id,
            text=text,
            reference_id=reference_id,
        ))
        return notification_id

    def notification_read(self, user_id: str, notification_id: str) -> None:
        self._bus.publish(NotificationReadEvent(user_id=user_id, notification_id=notification_id))

    def notifications_cleared(self, user_id: str) -> None:
        self._bus.publish(NotificationsClearedEvent(user_id=user_id))

    def unread_count(self, user_id: str, count: int) -> None:
        self._bus.publish(UnreadCountUpdatedEvent(user_id=user_id, count=max(count, 0)))

    # Feed

    def post_created(self, post_id: str, author_id: str, content: Optional[str] = None, media_urls: Optional[list[str]] = None) -> None:
        self._bus.publish(PostCreatedEvent(
            post_id=post_id,
            author_id=author_id,
            content=content,
            media_urls=media_urls or [],
        ))

    def post_updated(self, post_id: str, author_id: str, changes: dict[str, Any]) -> None:
        self._bus.publish(PostUpdatedEvent(post_id=post_id, author_id=author_id, changes=changes))

    def post_deleted(self, post_id: str, author_id: str) -> None:
        self._bus.publish(PostDeletedEvent(post_id=post_id, author_id=author_id))

    # Groups

    def group_created(self, group_id: str, owner_id: str, name: str) -> None:
        self._bus.publish(GroupCreatedEvent(group_id=group_id, owner_id=owner_id, name=name))

    def group_updated(self, group_id: str, changes: dict[str, Any]) -> None:
        self._bus.publish(GroupUpdatedEvent(group_id=group_id, changes=changes))

    def group_deleted(self, group_id: str) -> None:
        self._bus.publish(GroupDeletedEvent(group_id=group_id))

    # Channels

    def channel_created(self, channel_id: str, owner_id: str, name: str) -> None:
        self._bus.publish(ChannelCreatedEvent(channel_id=channel_id, owner_id=owner_id, name=name))

    def channel_updated(self, channel_id: str, changes: dict[str, Any]) -> None:
        self._bus.publish(ChannelUpdatedEvent(channel_id=channel_id, changes=changes))

    def channel_deleted(self, channel_id: str) -> None:
        self._bus.publish(ChannelDeletedEvent(channel_id=channel_id))

    def channel_post_created(self, channel_id: str, post_id: str, author_id: str, content: Optional[str] = None) -> None:
        self._bus.publish(ChannelPostCreatedEvent(
            channel_id=channel_id,
            post_id=post_id,
            author_id=author_id,
            content=content,
        ))

    def channel_post_updated(self, channel_id: str, post_id: str, changes: dict[str, Any]) -> None:
        self._bus.publish(ChannelPostUpdatedEvent(channel_id=channel_id, post_id=post_id, changes=changes))

    def channel_post_deleted(self, channel_id: str, post_id: str) -> None:
        self._bus.publish(ChannelPostDeletedEvent(channel_id=channel_id, post_id=post_id))

    # Users

    def user_updated(self, user_id: str, changes: dict[str, Any]) -> None:
        self._bus.publish(UserUpdatedEvent(user_id=user_id, changes=changes))
