"""
Per-process registry of live socket connections.

A connection is owned by exactly one process. It is added when the transport
is accepted and becomes addressable by user once the client registers.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from buddylynk_types.events import EventTarget

logger = logging.getLogger(__name__)


class WebSocketMetrics:
    """
    Simple metrics tracking for socket connections of this process.

    Tracks connection counts, message counts, heartbeat timeouts and errors.
    """

    def __init__(self):
        self.total_connections = 0
        self.total_disconnections = 0
        self.total_registrations = 0
        self.total_messages_sent = 0
        self.total_messages_received = 0
        self.total_send_errors = 0
        self.total_send_timeouts = 0
        self.total_heartbeat_timeouts = 0
        self.total_connection_limit_hits = 0

    def connection_opened(self):
        self.total_connections += 1

    def connection_closed(self):
        self.total_disconnections += 1

    def connection_registered(self):
        self.total_registrations += 1

    def message_sent(self):
        self.total_messages_sent += 1

    def message_received(self):
        self.total_messages_received += 1

    def send_error(self):
        self.total_send_errors += 1

    def send_timeout(self):
        self.total_send_timeouts += 1

    def heartbeat_timeout(self):
        self.total_heartbeat_timeouts += 1

    def connection_limit_hit(self):
        self.total_connection_limit_hits += 1

    def get_metrics(self) -> dict:
        """Get all metrics as a dictionary."""
        return {
            "total_connections": self.total_connections,
            "total_disconnections": self.total_disconnections,
            "active_connections": self.total_connections - self.total_disconnections,
            "total_registrations": self.total_registrations,
            "total_messages_sent": self.total_messages_sent,
            "total_messages_received": self.total_messages_received,
            "total_send_errors": self.total_send_errors,
            "total_send_timeouts": self.total_send_timeouts,
            "total_heartbeat_timeouts": self.total_heartbeat_timeouts,
            "total_connection_limit_hits": self.total_connection_limit_hits,
            "error_rate": (
                self.total_send_errors / max(self.total_messages_sent, 1)
            ) if self.total_messages_sent > 0 else 0.0
        }


@dataclass
class Connection:
    """A live socket connection held by this process."""
    connection_id: str
    websocket: Any
    server_process_id: str
    connected_at: float = field(default_factory=time.time)
    last_heartbeat_at: float = field(default_factory=time.time)
    # User resolved from the bearer token at handshake
    auth_user_id: Optional[str] = None
    # Set by register; None until then
    user_id: Optional[str] = None
    registered_at: Optional[float] = None

    @property
    def is_registered(self) -> bool:
        return self.user_id is not None


class ConnectionRegistry:
    """
    Connections of this process, indexed by connection id and by user.

    Not thread-safe; only touched from the event loop.
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[str, Dict[str, Connection]] = {}  # user_id -> connection_id -> connection

    def add(self, connection: Connection):
        self._connections[connection.connection_id] = connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def bind(self, connection_id: str, user_id: str, registered_at: float) -> Connection:
        """
        Attach a user to a connection.

        Raises:
            KeyError: If the connection is not in the registry
        """
        connection = self._connections[connection_id]
        connection.user_id = user_id
        connection.registered_at = registered_at
        self._by_user.setdefault(user_id, {})[connection_id] = connection
        return connection

    def remove(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection; returns it, or None if it was already gone."""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None

        if connection.user_id is not None:
            user_connections = self._by_user.get(connection.user_id)
            if user_connections is not None:
                user_connections.pop(connection_id, None)
                if not user_connections:
                    del self._by_user[connection.user_id]

        return connection

    def connections_for_user(self, user_id: str) -> List[Connection]:
        return list(self._by_user.get(user_id, {}).values())

    def count_for_user(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, {}))

    def has_user(self, user_id: str) -> bool:
        return user_id in self._by_user

    def all(self) -> List[Connection]:
        return list(self._connections.values())

    def registered(self) -> List[Connection]:
        return [c for c in self._connections.values() if c.is_registered]

    def users(self) -> Dict[str, int]:
        """user_id -> number of local registered connections."""
        return {user_id: len(conns) for user_id, conns in self._by_user.items()}

    def resolve(self, target: EventTarget) -> List[Connection]:
        """
        Local registered connections addressed by ``target``.

        Each connection appears at most once, whatever the target contains.
        """
        if target.broadcast:
            return self.registered()

        seen: Dict[str, Connection] = {}
        for user_id in target.user_ids:
            for connection in self._by_user.get(user_id, {}).values():
                seen.setdefault(connection.connection_id, connection)
        return list(seen.values())

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_user_count(self) -> int:
        return len(self._by_user)
