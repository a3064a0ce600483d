"""
Direct messages and notifications received over the socket.

Deliveries are at-most-once per connection but a user with several devices,
or a client that re-syncs after reconnecting, can see the same item twice;
everything is merged by id. The unread count is authoritative only from the
server: it is taken from ``unreadCountUpdated`` events and re-read through
the sync endpoint every time the session reaches CONNECTED.
"""

import logging
from collections import OrderedDict
from typing import Dict, Optional

from buddylynk_client.exceptions import BuddylynkClientError, SessionError
from buddylynk_client.http import BuddylynkClient
from buddylynk_client.session import ClientSocketSession, SessionState

logger = logging.getLogger(__name__)


class Inbox:
    """
    Client-side view of the user's messages, notifications and unread count.

    Call ``attach`` to subscribe to the session; the unread count is re-synced
    over HTTP each time the session connects.
    """

    def __init__(self, session: ClientSocketSession, api: BuddylynkClient):
        self.session = session
        self.api = api
        self.messages: "OrderedDict[str, dict]" = OrderedDict()
        self.notifications: "OrderedDict[str, dict]" = OrderedDict()
        self.unread_count: Optional[int] = None
        self.duplicates = 0
        self.syncs = 0
        self._attached = False

        self._subscriptions = {
            "message": self._on_message,
            "messageEdited": self._on_message_edited,
            "messageDeleted": self._on_message_deleted,
            "messagesRead": self._on_messages_read,
            "notification": self._on_notification,
            "notificationRead": self._on_notification_read,
            "notificationsCleared": self._on_notifications_cleared,
            "unreadCountUpdated": self._on_unread_count,
        }

    def attach(self):
        """Subscribe to inbox events. Call once after ``session.start()``."""
        if self._attached:
            return
        for event, handler in self._subscriptions.items():
            if not self.session.on(event, handler):
                raise SessionError("Socket session must be started before attaching the inbox")
        self.session.add_state_listener(self._on_session_state)
        self._attached = True

    def detach(self):
        if not self._attached:
            return
        for event, handler in self._subscriptions.items():
            self.session.off(event, handler)
        self.session.remove_state_listener(self._on_session_state)
        self._attached = False

    async def sync(self) -> Optional[int]:
        """Re-read the unread count from the server."""
        try:
            self.unread_count = await self.api.sync_unread_count()
            self.syncs += 1
        except BuddylynkClientError as e:
            logger.warning(f"Unread count sync failed: {e}")
        return self.unread_count

    async def _on_session_state(self, state: SessionState):
        if state is SessionState.CONNECTED:
            await self.sync()

    # Messages

    def _on_message(self, data: dict):
        message_id = data.get("message_id")
        if not message_id:
            return
        if message_id in self.messages:
            self.duplicates += 1
            return
        self.messages[message_id] = dict(data)

    def _on_message_edited(self, data: dict):
        message = self.messages.get(data.get("message_id"))
        if message is not None:
            message["content"] = data.get("content", message.get("content"))
            message["edited_at"] = data.get("edited_at")

    def _on_message_deleted(self, data: dict):
        self.messages.pop(data.get("message_id"), None)

    def _on_messages_read(self, data: dict):
        read_at = data.get("read_at")
        for message_id in data.get("message_ids", []):
            message = self.messages.get(message_id)
            if message is not None:
                message["read_at"] = read_at

    def conversation(self, peer_id: str) -> list:
        return [
            message for message in self.messages.values()
            if peer_id in (message.get("sender_id"), message.get("receiver_id"))
        ]

    # Notifications

    def _on_notification(self, data: dict):
        notification_id = data.get("notification_id")
        if not notification_id:
            return
        if notification_id in self.notifications:
            self.duplicates += 1
            return
        self.notifications[notification_id] = dict(data, read=False)

    def _on_notification_read(self, data: dict):
        notification = self.notifications.get(data.get("notification_id"))
        if notification is not None:
            notification["read"] = True

    def _on_notifications_cleared(self, data: dict):
        self.notifications.clear()

    def _on_unread_count(self, data: dict):
        count = data.get("count")
        if isinstance(count, int):
            self.unread_count = max(count, 0)

    @property
    def unread_notifications(self) -> Dict[str, dict]:
        return {k: v for k, v in self.notifications.items() if not v["read"]}
