"""
Socket gateway.

Owns the live connections of this process: accepts transports, binds them to
users on ``register``, keeps them alive with heartbeats and pushes domain
events received from the bus to the connections they address.

Delivery is best effort. An event reaches the connections that are registered
on a process by the time that process receives it and stay up long enough for
the push; nothing is buffered for connections that are not there.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from buddylynk_backend.settings import settings
from buddylynk_backend.websocket.connection_registry import (
    Connection,
    ConnectionRegistry,
    WebSocketMetrics,
)
from buddylynk_backend.websocket.presence import PresenceStore, PresenceChange, UNAVAILABLE_ERRORS
from buddylynk_backend.websocket.pubsub import EventBus
from buddylynk_types.events import DomainEventBase, UserOfflineEvent, UserOnlineEvent
from buddylynk_types.websocket import WSHeartbeat

logger = logging.getLogger(__name__)

# Close code for connections that stopped answering heartbeats
HEARTBEAT_TIMEOUT_CLOSE_CODE = 4000


class ConnectionLimitError(Exception):
    """Raised when connection limits are exceeded."""
    def __init__(self, message: str, code: int = 4008):
        self.message = message
        self.code = code
        super().__init__(message)


class RegistrationError(Exception):
    """Raised when a connection cannot be registered for the requested user."""
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class SocketGateway:
    """
    Per-process socket session manager.

    Features:
    - Accept and register connections, with per-process and per-user limits
    - Presence counting and USER_ONLINE / USER_OFFLINE announcements
    - Fan-out of bus events to local connections
    - Heartbeat sweep closing silent connections
    """

    def __init__(
        self,
        bus: EventBus,
        presence: PresenceStore,
        registry: Optional[ConnectionRegistry] = None,
        relay=None,
        server_id: Optional[str] = None,
        heartbeat_interval: Optional[float] = None,
        heartbeat_timeout: Optional[float] = None,
        send_timeout: Optional[float] = None,
        max_connections_per_user: Optional[int] = None,
        max_total_connections: Optional[int] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.bus = bus
        self.presence = presence
        self.registry = registry or ConnectionRegistry()
        self.relay = relay
        self.server_id = server_id or settings.SERVER_ID
        self.heartbeat_interval = heartbeat_interval or settings.WS_HEARTBEAT_INTERVAL
        self.heartbeat_timeout = heartbeat_timeout or settings.WS_HEARTBEAT_TIMEOUT
        self.send_timeout = send_timeout or settings.WS_SEND_TIMEOUT
        self.max_connections_per_user = max_connections_per_user or settings.WS_MAX_CONNECTIONS_PER_USER
        self.max_total_connections = max_total_connections or settings.WS_MAX_TOTAL_CONNECTIONS
        self.metrics = WebSocketMetrics()
        self._clock = clock
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Subscribe to the bus and start the heartbeat loop."""
        if self._running:
            return

        self._running = True
        self.bus.register_handler("gateway", self.on_event)
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"SocketGateway started on {self.server_id}")

    async def stop(self):
        """Stop heartbeats, release every connection and its presence count."""
        logger.info("Stopping SocketGateway...")
        self._running = False
        self.bus.unregister_handler("gateway")

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await asyncio.wait_for(self._heartbeat_task, timeout=2.0)
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
            self._heartbeat_task = None

        connections = self.registry.all()
        for connection in connections:
            await self.deregister(connection.connection_id, reason="server shutdown", notify_relay=False)

        if connections:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*[self._close_connection_safe(c) for c in connections], return_exceptions=True),
                    timeout=3.0
                )
            except asyncio.TimeoutError:
                logger.warning(f"Timeout closing {len(connections)} socket connections")

        logger.info("SocketGateway stopped")

    async def _close_connection_safe(self, connection: Connection, code: int = 1001, reason: str = ""):
        try:
            await asyncio.wait_for(connection.websocket.close(code=code, reason=reason), timeout=1.0)
        except Exception as e:
            logger.debug(f"Closing connection {connection.connection_id} failed: {e}")

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    async def accept(self, websocket, auth_user_id: Optional[str] = None) -> Connection:
        """
        Accept a transport and track it as an unregistered connection.

        Raises:
            ConnectionLimitError: If this process is at its connection limit
        """
        total_connections = self.registry.get_connection_count()
        if total_connections >= self.max_total_connections:
            logger.warning(f"Total connection limit reached: {total_connections}/{self.max_total_connections}")
            self.metrics.connection_limit_hit()
            raise ConnectionLimitError("Server connection limit reached", code=4008)

        await websocket.accept()

        now = self._clock()
        connection = Connection(
            connection_id=uuid.uuid4().hex,
            websocket=websocket,
            server_process_id=self.server_id,
            connected_at=now,
            last_heartbeat_at=now,
            auth_user_id=auth_user_id,
        )
        self.registry.add(connection)
        self.metrics.connection_opened()

        logger.info(f"Socket accepted: connection={connection.connection_id}, total={self.registry.get_connection_count()}")
        return connection

    async def register(self, connection_id: str, user_id: str) -> Connection:
        """
        Bind a connection to ``user_id``.

        Registering an already registered connection for the same user is a
        no-op. A connection is never re-bound to a different user.

        Raises:
            RegistrationError: Unknown connection, user mismatch
            ConnectionLimitError: If the user is at the per-user limit
        """
        connection = self.registry.get(connection_id)
        if connection is None:
            raise RegistrationError("UNKNOWN_CONNECTION", f"Connection {connection_id} is not open")

        if connection.auth_user_id is not None and connection.auth_user_id != user_id:
            raise RegistrationError("REGISTER_MISMATCH", "Cannot register as a different user")

        if connection.user_id is not None:
            if connection.user_id == user_id:
                return connection
            raise RegistrationError("REGISTER_MISMATCH", "Connection is already registered to another user")

        user_connections = self.registry.count_for_user(user_id)
        if user_connections >= self.max_connections_per_user:
            logger.warning(f"User {user_id} connection limit reached: {user_connections}/{self.max_connections_per_user}")
            self.metrics.connection_limit_hit()
            raise ConnectionLimitError(
                f"Too many connections (max {self.max_connections_per_user})",
                code=4008
            )

        self.registry.bind(connection_id, user_id, registered_at=self._clock())
        self.metrics.connection_registered()

        try:
            change = await self.presence.increment(user_id)
        except UNAVAILABLE_ERRORS as e:
            # The heartbeat refresh re-seeds the counter once Redis is back
            logger.error(f"Presence increment failed for user {user_id}: {e}")
        else:
            if change.transitioned:
                self.bus.publish(UserOnlineEvent(user_id=user_id))

        logger.info(f"Socket registered: user={user_id}, connection={connection_id}, user_connections={self.registry.count_for_user(user_id)}")
        return connection

    async def deregister(self, connection_id: str, reason: str = "closed", notify_relay: bool = True) -> Optional[Connection]:
        """
        Forget a connection. Idempotent.

        Releases its presence count; when that was the user's last connection
        anywhere USER_OFFLINE is published, and when it was the last one on
        this process the call relay is told.
        """
        connection = self.registry.remove(connection_id)
        if connection is None:
            return None

        self.metrics.connection_closed()
        user_id = connection.user_id
        logger.info(f"Socket deregistered: user={user_id}, connection={connection_id}, reason={reason}")

        if user_id is None:
            return connection

        try:
            change = await self.presence.decrement(user_id)
        except UNAVAILABLE_ERRORS as e:
            logger.error(f"Presence decrement failed for user {user_id}: {e}")
        else:
            if change.transitioned:
                self.bus.publish(UserOfflineEvent(user_id=user_id))

        if notify_relay and self.relay is not None and not self.registry.has_user(user_id):
            self.relay.connection_lost(user_id)

        return connection

    def touch(self, connection: Connection):
        """Record inbound traffic on a connection."""
        connection.last_heartbeat_at = self._clock()
        self.metrics.message_received()

    async def refresh_presence(self, user_id: str) -> Optional[PresenceChange]:
        """Rewrite this process's presence count for the user and renew its TTL."""
        try:
            change = await self.presence.refresh(user_id, self.registry.count_for_user(user_id))
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Presence refresh failed for user {user_id}: {e}")
            return None
        if change is not None and change.transitioned:
            self.bus.publish(UserOnlineEvent(user_id=user_id))
        return change

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _send_with_timeout(self, connection: Connection, data: dict) -> bool:
        """
        Send data to a connection with timeout.

        Returns:
            True if successful, False otherwise
        """
        try:
            await asyncio.wait_for(
                connection.websocket.send_json(data),
                timeout=self.send_timeout
            )
            self.metrics.message_sent()
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Send timeout to connection {connection.connection_id} (user {connection.user_id})")
            self.metrics.send_timeout()
            return False
        except Exception as e:
            logger.error(f"Failed to send to connection {connection.connection_id} (user {connection.user_id}): {e}")
            self.metrics.send_error()
            return False

    async def send(self, connection: Connection, data: dict) -> bool:
        """Send a frame to one connection."""
        return await self._send_with_timeout(connection, data)

    async def send_to_user(self, user_id: str, data: dict) -> int:
        """Send a frame to every local connection of a user. Returns successful sends."""
        connections = self.registry.connections_for_user(user_id)
        if not connections:
            return 0
        results = await asyncio.gather(
            *[self._send_with_timeout(c, data) for c in connections],
            return_exceptions=True,
        )
        return sum(1 for r in results if r is True)

    def recipients(self, event: DomainEventBase) -> List[Connection]:
        """
        Local connections that should receive ``event``.

        Connections registered after this process received the event are left
        out. Both timestamps come from this process's clock.
        """
        received_at = event.received_at if event.received_at is not None else self._clock()
        return [
            c for c in self.registry.resolve(event.target())
            if c.registered_at is not None and c.registered_at <= received_at
        ]

    async def on_event(self, event: DomainEventBase):
        """
        Bus handler: push an event to every addressed local connection.

        Sends run concurrently; a failed or slow send never holds up the others.
        """
        connections = self.recipients(event)
        if not connections:
            logger.debug(f"No local recipients for {event.channel}")
            return

        frame = event.to_client_frame()
        results = await asyncio.gather(
            *[self._send_with_timeout(c, frame) for c in connections],
            return_exceptions=True,
        )
        success_count = sum(1 for r in results if r is True)
        logger.debug(f"Delivered {event.channel} to {success_count}/{len(connections)} local connection(s)")

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def sweep_heartbeats(self):
        """
        One heartbeat round.

        Closes connections silent for longer than the heartbeat timeout,
        refreshes presence for the users still connected, then probes every
        remaining connection with a ``heartbeat`` frame.
        """
        now = self._clock()
        cutoff = now - self.heartbeat_timeout

        for connection in self.registry.all():
            if connection.last_heartbeat_at < cutoff:
                logger.info(f"Heartbeat timeout: connection={connection.connection_id}, user={connection.user_id}")
                self.metrics.heartbeat_timeout()
                await self.deregister(connection.connection_id, reason="heartbeat timeout")
                await self._close_connection_safe(
                    connection,
                    code=HEARTBEAT_TIMEOUT_CLOSE_CODE,
                    reason="Heartbeat timeout",
                )

        for user_id in list(self.registry.users()):
            await self.refresh_presence(user_id)

        if self.relay is not None:
            self.relay.prune()

        frame = WSHeartbeat(timestamp=datetime.fromtimestamp(now, timezone.utc)).model_dump(mode="json")
        connections = self.registry.all()
        if connections:
            await asyncio.gather(
                *[self._send_with_timeout(c, frame) for c in connections],
                return_exceptions=True,
            )

    async def _heartbeat_loop(self):
        logger.info(f"Heartbeat loop started (interval={self.heartbeat_interval}s, timeout={self.heartbeat_timeout}s)")
        try:
            while self._running:
                await asyncio.sleep(self.heartbeat_interval)
                try:
                    await self.sweep_heartbeats()
                except Exception as e:
                    logger.error(f"Heartbeat sweep failed: {e}")
        except asyncio.CancelledError:
            logger.info("Heartbeat loop cancelled")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_connection_count(self) -> int:
        return self.registry.get_connection_count()

    def get_user_count(self) -> int:
        return self.registry.get_user_count()

    def get_metrics(self) -> dict:
        metrics = self.metrics.get_metrics()
        metrics.update({
            "server_id": self.server_id,
            "current_connections": self.get_connection_count(),
            "current_users": self.get_user_count(),
        })
        return metrics
