"""
Client side of the realtime socket.

``ClientSocketSession`` owns exactly one transport connection for the
authenticated user. It re-registers after every (re)connect, retries with
bounded exponential backoff, and keeps intermediaries from idling the socket
with a heartbeat task that runs independently of the reconnect logic.

Application code subscribes with ``on``/``off`` and sends with ``emit``.
Handlers survive reconnects; removing them is the subscriber's job.
"""

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from buddylynk_client.exceptions import SessionError

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]
StateListener = Callable[["SessionState"], Any]
Connector = Callable[[str], Awaitable[Any]]

CONNECT_ERRORS = (OSError, WebSocketException, asyncio.TimeoutError)


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff with a cap and a bounded number of attempts."""
    base_delay: float = 1.0
    max_delay: float = 5.0
    max_attempts: int = 10

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt ``attempt`` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


class ClientSocketSession:
    """
    Realtime session of one authenticated user.

    Args:
        url: Socket endpoint, e.g. ``ws://localhost:8000/ws``
        user_id: Authenticated user id, sent in ``register``
        token: Bearer token, passed as the ``token`` query parameter
        reconnect_policy: Backoff settings
        heartbeat_interval: Seconds between client pings
        connector: Coroutine function opening a transport for a URL
        sleep: Coroutine function used for backoff delays
    """

    def __init__(
        self,
        url: str,
        user_id: Optional[str],
        token: Optional[str],
        *,
        reconnect_policy: Optional[ReconnectPolicy] = None,
        heartbeat_interval: float = 30.0,
        open_timeout: float = 20.0,
        connector: Optional[Connector] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.user_id = user_id
        self.token = token
        self.reconnect_policy = reconnect_policy or ReconnectPolicy()
        self.heartbeat_interval = heartbeat_interval
        self._connector = connector or partial(websockets.connect, open_timeout=open_timeout)
        self._sleep = sleep

        self.state = SessionState.DISCONNECTED
        self.gave_up = False
        self.reconnect_attempts = 0
        self.connection_id: Optional[str] = None
        self.server_id: Optional[str] = None

        self._handlers: Dict[str, List[Handler]] = {}
        self._state_listeners: List[StateListener] = []
        self._transport = None
        self._run_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._closed = False
        self._connected = asyncio.Event()
        self._stopped = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    @property
    def connect_url(self) -> str:
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{urlencode({'token': self.token})}"

    async def start(self):
        """
        Begin connecting in the background.

        Raises:
            SessionError: Missing credentials, session closed or already started
        """
        if not self.user_id or not self.token:
            raise SessionError("An authenticated user is required before connecting")
        if self._closed:
            raise SessionError("Session was closed; create a new one")
        if self._run_task is not None and not self._run_task.done():
            raise SessionError("Session already started")

        self.gave_up = False
        self.reconnect_attempts = 0
        self._stopped.clear()
        self._set_state(SessionState.CONNECTING)
        self._run_task = asyncio.create_task(self._run())

    async def close(self):
        """Log out: close the transport and stop for good."""
        if self._closed:
            return
        self._closed = True

        await self._stop_heartbeat()

        transport = self._transport
        self._transport = None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"Error closing transport: {e}")

        if self._run_task is not None and not self._run_task.done():
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass

        self._set_state(SessionState.DISCONNECTED)
        self._stopped.set()
        await self.wait_for_listeners()
        logger.info(f"Session of user {self.user_id} closed")

    async def wait_until_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait for CONNECTED; False on timeout or when the session stopped."""
        if self.is_connected:
            return True

        waiters = {
            asyncio.ensure_future(self._connected.wait()),
            asyncio.ensure_future(self._stopped.wait()),
        }
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return self.is_connected

    async def wait_until_stopped(self):
        """Wait until the session gave up reconnecting or was closed."""
        await self._stopped.wait()

    async def wait_for_listeners(self):
        """Wait for async handlers and state listeners scheduled so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _run(self):
        attempt = 0
        try:
            while not self._closed:
                try:
                    transport = await self._connector(self.connect_url)
                except CONNECT_ERRORS as e:
                    logger.warning(f"Connect failed for user {self.user_id}: {e}")
                else:
                    attempt = 0
                    self.reconnect_attempts = 0
                    await self._on_connected(transport)
                    await self._receive_loop(transport)
                    await self._on_transport_lost()

                if self._closed:
                    return

                attempt += 1
                self.reconnect_attempts = attempt
                if attempt > self.reconnect_policy.max_attempts:
                    logger.error(
                        f"Giving up on user {self.user_id} after "
                        f"{self.reconnect_policy.max_attempts} reconnect attempts"
                    )
                    self.gave_up = True
                    self._set_state(SessionState.DISCONNECTED)
                    self._stopped.set()
                    return

                self._set_state(SessionState.RECONNECTING)
                delay = self.reconnect_policy.delay(attempt)
                logger.info(f"Reconnect attempt {attempt} in {delay:.1f}s")
                await self._sleep(delay)
        except Exception as e:
            logger.error(f"Session loop crashed: {e}", exc_info=True)
            self._set_state(SessionState.DISCONNECTED)
            self._stopped.set()

    async def _on_connected(self, transport):
        self._transport = transport
        self._set_state(SessionState.CONNECTED)

        # The server forgot this connection; every connect registers again
        await self._send({"type": "register", "user_id": self.user_id})

        await self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"Session of user {self.user_id} connected")

    async def _on_transport_lost(self):
        await self._stop_heartbeat()
        self._transport = None
        self.connection_id = None
        if not self._closed:
            logger.warning(f"Transport lost for user {self.user_id}")

    async def _receive_loop(self, transport):
        while True:
            try:
                raw = await transport.recv()
            except ConnectionClosed as e:
                logger.debug(f"Transport closed: {e}")
                return
            except OSError as e:
                logger.debug(f"Transport error: {e}")
                return
            await self._handle_raw(raw)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self):
        while self.is_connected:
            await asyncio.sleep(self.heartbeat_interval)
            if self.is_connected:
                await self.emit("ping")

    async def _stop_heartbeat(self):
        task = self._heartbeat_task
        self._heartbeat_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Inbound frames
    # ------------------------------------------------------------------

    async def _handle_raw(self, raw):
        try:
            frame = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-JSON frame: {raw!r}")
            return
        if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
            logger.warning(f"Ignoring frame without type: {frame!r}")
            return

        event_type = frame["type"]
        if "data" in frame:
            payload = frame["data"]
        else:
            payload = {k: v for k, v in frame.items() if k != "type"}

        if event_type == "heartbeat":
            await self.emit("pong")
        elif event_type == "system:connected":
            self.connection_id = payload.get("connection_id")
            self.server_id = payload.get("server_id")
        elif event_type == "system:error":
            logger.warning(f"Server error {payload.get('code')}: {payload.get('message')}")
            event_type = "error"

        self._dispatch(event_type, payload)

    def _dispatch(self, event: str, payload: Any):
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(f"Handler for '{event}' failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._track(result, f"handler for '{event}'")

    def _track(self, awaitable, label: str):
        async def runner():
            try:
                await awaitable
            except Exception as e:
                logger.error(f"Async {label} failed: {e}", exc_info=True)

        task = asyncio.ensure_future(runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ------------------------------------------------------------------
    # Subscription API
    # ------------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> bool:
        """Subscribe ``handler`` to ``event``. No-op while DISCONNECTED."""
        if self.state is SessionState.DISCONNECTED:
            logger.warning(f"Cannot subscribe to '{event}': session is disconnected")
            return False
        handlers = self._handlers.setdefault(event, [])
        if handler not in handlers:
            handlers.append(handler)
        return True

    def off(self, event: str, handler: Handler) -> bool:
        """Unsubscribe ``handler``. No-op while DISCONNECTED."""
        if self.state is SessionState.DISCONNECTED:
            logger.warning(f"Cannot unsubscribe from '{event}': session is disconnected")
            return False
        handlers = self._handlers.get(event)
        if not handlers or handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            del self._handlers[event]
        return True

    def handler_count(self, event: Optional[str] = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, ()))
        return sum(len(handlers) for handlers in self._handlers.values())

    async def emit(self, event: str, payload: Optional[dict] = None) -> bool:
        """
        Send a frame. Returns False (and logs) unless CONNECTED.

        A True result means the frame was written to the transport, not
        that the server processed it.
        """
        if not self.is_connected:
            logger.warning(f"Cannot emit '{event}': session is {self.state.value}")
            return False
        frame = {"type": event}
        if payload:
            frame.update(payload)
        return await self._send(frame)

    async def _send(self, frame: dict) -> bool:
        transport = self._transport
        if transport is None:
            return False
        try:
            await transport.send(json.dumps(frame))
            return True
        except (ConnectionClosed, OSError) as e:
            logger.warning(f"Send of '{frame.get('type')}' failed: {e}")
            return False

    # ------------------------------------------------------------------
    # State listeners
    # ------------------------------------------------------------------

    def add_state_listener(self, listener: StateListener):
        if listener not in self._state_listeners:
            self._state_listeners.append(listener)

    def remove_state_listener(self, listener: StateListener):
        if listener in self._state_listeners:
            self._state_listeners.remove(listener)

    def _set_state(self, state: SessionState):
        if state is self.state:
            return
        logger.debug(f"Session state {self.state.value} -> {state.value}")
        self.state = state

        if state is SessionState.CONNECTED:
            self._connected.set()
        else:
            self._connected.clear()

        for listener in list(self._state_listeners):
            try:
                result = listener(state)
            except Exception as e:
                logger.error(f"State listener failed: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                self._track(result, "state listener")
