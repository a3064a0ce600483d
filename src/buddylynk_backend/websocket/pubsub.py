"""
Event bus for realtime domain events.

Producers call ``publish(event)`` and move on: the event is stamped, queued and
handed to the transport by a single publisher task per process, so events
published by one process reach the transport in publish order.

Every process subscribes to every domain channel and dispatches each received
event to its registered handlers (the socket gateway, the call relay).

Two transports are provided:
- RedisEventBus: Redis pub/sub, for multi-instance deployments
- LocalEventBus: in-process broker, for single-instance deployments and tests
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis

from buddylynk_backend.settings import settings
from buddylynk_types.events import DomainChannel, DomainEventBase, parse_domain_event

logger = logging.getLogger(__name__)

# Pub/Sub channel prefix
CHANNEL_PREFIX = "rt:"

EventHandler = Callable[[DomainEventBase], Awaitable[None]]


@dataclass
class RawPubSubMessage:
    """Raw message received from Redis pub/sub."""
    channel: bytes | str  # Full channel name with prefix
    data: bytes | str  # Raw message data
    message_type: str  # Redis message type (e.g., "message", "subscribe")


@dataclass
class ParsedPubSubMessage:
    """Parsed pub/sub message ready for handling."""
    channel: str  # Logical channel name (prefix removed)
    data: dict  # Parsed JSON data


def parse_pubsub_message(raw: RawPubSubMessage) -> Optional[ParsedPubSubMessage]:
    """
    Parse and validate a raw pub/sub message.

    Skips subscribe confirmations, decodes bytes, strips the channel prefix and
    parses the JSON body.

    Returns:
        ParsedPubSubMessage if valid, None if it should be skipped
    """
    if raw.message_type != "message":
        return None

    channel = raw.channel
    if isinstance(channel, bytes):
        channel = channel.decode("utf-8")

    if channel.startswith(CHANNEL_PREFIX):
        channel = channel[len(CHANNEL_PREFIX):]

    data = raw.data
    if isinstance(data, bytes):
        data = data.decode("utf-8")

    try:
        parsed_data = json.loads(data)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in pubsub message on {channel}: {e}")
        return None

    if not isinstance(parsed_data, dict):
        logger.error(f"Unexpected pubsub payload on {channel}: {type(parsed_data).__name__}")
        return None

    return ParsedPubSubMessage(channel=channel, data=parsed_data)


def encode_event(event: DomainEventBase) -> str:
    return event.model_dump_json()


class EventBus(ABC):
    """
    Fire-and-forget domain event bus.

    Handlers are async callables receiving the typed event. They are run
    concurrently for each event, each with its own timeout; a failing handler
    never affects the others or the publisher.

    Example:
        async def on_event(event: DomainEventBase):
            if isinstance(event, MessageSentEvent):
                ...

        bus.register_handler("gateway", on_event)
        bus.publish(MessageSentEvent(...))
    """

    def __init__(
        self,
        handler_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._handlers: Dict[str, EventHandler] = {}
        self._handler_timeout = handler_timeout
        self._clock = clock
        self._outbox: Optional[asyncio.Queue] = None
        self._publisher_task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._running = False

    @property
    def handler_timeout(self) -> float:
        if self._handler_timeout is not None:
            return self._handler_timeout
        return settings.WS_HANDLER_TIMEOUT

    @property
    def running(self) -> bool:
        return self._running

    def register_handler(self, name: str, handler: EventHandler):
        """
        Register an event handler.

        Args:
            name: Unique name for this handler (for logging/debugging)
            handler: Async callback called with the parsed event
        """
        self._handlers[name] = handler
        logger.info(f"Registered event bus handler: {name}")

    def unregister_handler(self, name: str):
        if name in self._handlers:
            del self._handlers[name]
            logger.info(f"Unregistered event bus handler: {name}")

    def publish(self, event: DomainEventBase) -> None:
        """
        Queue an event for delivery and return immediately.

        Safe to call from the event loop thread or from worker threads (for
        example sync endpoints running in the threadpool). Events published
        while the bus is stopped are dropped with a warning.
        """
        if not self._running or self._loop is None or self._outbox is None:
            logger.warning(f"Event bus not running, dropping event on {event.channel}")
            return

        stamped = event.model_copy(update={"published_at": self._clock()})

        try:
            running_loop = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is self._loop:
            self._outbox.put_nowait(stamped)
        else:
            self._loop.call_soon_threadsafe(self._outbox.put_nowait, stamped)

    async def flush(self, timeout: Optional[float] = None):
        """Wait until every queued event has been handed to the transport."""
        if self._outbox is None:
            return
        if timeout is None:
            await self._outbox.join()
            return
        try:
            await asyncio.wait_for(self._outbox.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Event bus flush timed out with {self._outbox.qsize()} event(s) queued")

    async def start(self):
        """Start the transport and the publisher task."""
        if self._running:
            logger.warning("Event bus already running")
            return

        self._loop = asyncio.get_running_loop()
        self._outbox = asyncio.Queue()
        await self._start_transport()
        self._running = True
        self._publisher_task = asyncio.create_task(self._drain_outbox())
        logger.info(f"{type(self).__name__} started with {len(self._handlers)} handler(s)")

    async def stop(self):
        """Deliver what is queued, then stop the publisher task and the transport."""
        if not self._running:
            return

        logger.info(f"Stopping {type(self).__name__}...")
        await self.flush(timeout=2.0)
        self._running = False

        if self._publisher_task:
            self._publisher_task.cancel()
            try:
                await asyncio.wait_for(self._publisher_task, timeout=2.0)
            except asyncio.CancelledError:
                pass
            except asyncio.TimeoutError:
                logger.warning("Event bus publisher task did not stop within timeout")
            self._publisher_task = None

        await self._stop_transport()
        self._outbox = None
        logger.info(f"{type(self).__name__} stopped")

    async def _drain_outbox(self):
        while True:
            event = await self._outbox.get()
            try:
                await self._send(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Failed to publish event on {event.channel}: {e}")
            finally:
                self._outbox.task_done()

    async def _run_handler_with_timeout(
        self,
        handler_name: str,
        handler: EventHandler,
        event: DomainEventBase,
    ) -> bool:
        """
        Run a handler with timeout protection.

        Returns:
            True if handler completed successfully, False otherwise
        """
        try:
            await asyncio.wait_for(handler(event), timeout=self.handler_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Handler '{handler_name}' timed out after {self.handler_timeout}s on {event.channel}")
            return False
        except Exception as e:
            logger.error(f"Error in event handler '{handler_name}' on {event.channel}: {e}")
            return False

    async def dispatch(self, event: DomainEventBase):
        """
        Run every registered handler for a received event.

        The event is stamped with ``received_at`` from this bus's clock; the
        publisher's ``published_at`` comes from another machine's clock and is
        never compared with local timestamps.
        """
        if event.received_at is None:
            event = event.model_copy(update={"received_at": self._clock()})

        handler_tasks = [
            self._run_handler_with_timeout(handler_name, handler, event)
            for handler_name, handler in list(self._handlers.items())
        ]

        if handler_tasks:
            await asyncio.gather(*handler_tasks, return_exceptions=True)

    async def _dispatch_parsed(self, parsed: ParsedPubSubMessage):
        event = parse_domain_event(parsed.data)
        if event is None:
            logger.warning(f"Dropping unparseable event on channel {parsed.channel}")
            return
        if event.channel != parsed.channel:
            logger.warning(f"Event channel mismatch: payload {event.channel}, transport {parsed.channel}")
            return
        await self.dispatch(event)

    @abstractmethod
    async def _start_transport(self):
        ...

    @abstractmethod
    async def _stop_transport(self):
        ...

    @abstractmethod
    async def _send(self, event: DomainEventBase):
        ...


class RedisEventBus(EventBus):
    """Event bus over Redis pub/sub, one Redis channel per domain channel."""

    def __init__(
        self,
        redis_client: aioredis.Redis,
        handler_timeout: Optional[float] = None,
        poll_timeout: float = 0.5,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(handler_timeout=handler_timeout, clock=clock)
        self._redis = redis_client
        self._pubsub = None
        self._listener_task: Optional[asyncio.Task] = None
        self._poll_timeout = poll_timeout

    @staticmethod
    def channels() -> List[str]:
        return [f"{CHANNEL_PREFIX}{channel.value}" for channel in DomainChannel]

    async def _start_transport(self):
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(*self.channels())
        self._listener_task = asyncio.create_task(self._listen())

    async def _stop_transport(self):
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await asyncio.wait_for(self._listener_task, timeout=2.0)
            except asyncio.CancelledError:
                pass
            except asyncio.TimeoutError:
                logger.warning("PubSub listener task did not stop within timeout")
            except Exception as e:
                logger.warning(f"Error stopping PubSub listener task: {e}")
            self._listener_task = None

        if self._pubsub:
            try:
                await asyncio.wait_for(self._pubsub.unsubscribe(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("PubSub unsubscribe timed out")
            except Exception as e:
                logger.warning(f"Error unsubscribing from PubSub: {e}")
            try:
                await asyncio.wait_for(self._pubsub.aclose(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.warning("PubSub close timed out")
            except Exception as e:
                logger.warning(f"Error closing PubSub: {e}")
            self._pubsub = None

    async def _send(self, event: DomainEventBase):
        full_channel = f"{CHANNEL_PREFIX}{event.channel}"
        receivers = await self._redis.publish(full_channel, encode_event(event))
        logger.debug(f"Published to {full_channel} ({receivers} receiver(s))")

    async def _listen(self):
        """
        Background task that listens for pub/sub messages.

        Polls with a short timeout so shutdown is noticed promptly.
        """
        logger.info("PubSub listener loop started")
        consecutive_errors = 0
        max_consecutive_errors = 10

        try:
            while self._pubsub:
                try:
                    raw_message = await self._pubsub.get_message(
                        ignore_subscribe_messages=True,
                        timeout=self._poll_timeout,
                    )

                    if raw_message is None:
                        continue

                    await self._process_raw_message(raw_message)

                    consecutive_errors = 0

                except asyncio.CancelledError:
                    logger.info("PubSub listener received cancellation signal")
                    break
                except Exception as e:
                    consecutive_errors += 1
                    logger.error(f"PubSub listener error ({consecutive_errors}/{max_consecutive_errors}): {e}")

                    if consecutive_errors >= max_consecutive_errors:
                        logger.critical("PubSub listener exceeded max errors, stopping")
                        break

                    # Exponential backoff: 0.1s, 0.2s, 0.4s, ..., max 5s
                    backoff = min(0.1 * (2 ** (consecutive_errors - 1)), 5.0)
                    await asyncio.sleep(backoff)

        except asyncio.CancelledError:
            logger.info("PubSub listener cancelled")
        finally:
            logger.info("PubSub listener loop ended")

    async def _process_raw_message(self, raw_message: dict):
        raw = RawPubSubMessage(
            channel=raw_message.get("channel", ""),
            data=raw_message.get("data", ""),
            message_type=raw_message.get("type", "")
        )

        parsed = parse_pubsub_message(raw)
        if parsed is None:
            return

        await self._dispatch_parsed(parsed)


class LocalBroker:
    """
    In-process stand-in for Redis pub/sub.

    Every attached bus receives every published event, serialized and parsed
    exactly as it would be over Redis. Several buses sharing one broker behave
    like several server processes sharing one Redis.
    """

    def __init__(self):
        self._subscribers: List["LocalEventBus"] = []

    def attach(self, bus: "LocalEventBus"):
        if bus not in self._subscribers:
            self._subscribers.append(bus)

    def detach(self, bus: "LocalEventBus"):
        if bus in self._subscribers:
            self._subscribers.remove(bus)

    async def publish(self, channel: str, payload: str) -> int:
        subscribers = list(self._subscribers)
        for bus in subscribers:
            await bus._receive(
                RawPubSubMessage(
                    channel=f"{CHANNEL_PREFIX}{channel}",
                    data=payload,
                    message_type="message",
                )
            )
        return len(subscribers)


class LocalEventBus(EventBus):
    """Event bus backed by a ``LocalBroker``."""

    def __init__(
        self,
        broker: Optional[LocalBroker] = None,
        handler_timeout: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(handler_timeout=handler_timeout, clock=clock)
        self.broker = broker or LocalBroker()

    async def _start_transport(self):
        self.broker.attach(self)

    async def _stop_transport(self):
        self.broker.detach(self)

    async def _send(self, event: DomainEventBase):
        await self.broker.publish(event.channel, encode_event(event))

    async def _receive(self, raw: RawPubSubMessage):
        parsed = parse_pubsub_message(raw)
        if parsed is None:
            return
        await self._dispatch_parsed(parsed)
