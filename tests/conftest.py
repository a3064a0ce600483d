"""Pytest configuration and fixtures for the realtime tests."""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set
from urllib.parse import parse_qs, urlparse

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from buddylynk_backend.auth import SESSION_PREFIX, create_session, generate_token, hash_token
from buddylynk_backend.database import init_db
from buddylynk_backend.websocket.pubsub import LocalBroker, LocalEventBus
from buddylynk_backend.websocket.router import websocket_endpoint
from buddylynk_backend.websocket.services import RealtimeServices, build_realtime
from buddylynk_client.session import ClientSocketSession


# ============================================================================
# Redis
# ============================================================================


class FakeRedis:
    """
    In-memory stand-in for ``redis.asyncio.Redis`` with ``decode_responses=True``.

    Only the commands the realtime layer uses are implemented. Set ``fail`` to
    make every command raise a connection error. With a ``clock``, keys given
    a TTL disappear once the clock passes their deadline.
    """

    def __init__(self, clock=None):
        self.store: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[tuple] = []
        self.fail = False
        self.clock = clock
        self._deadlines: Dict[str, float] = {}

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")
        if self.clock is not None:
            now = self.clock()
            for key, deadline in list(self._deadlines.items()):
                if deadline <= now:
                    self.expire_now(key)

    def _set_ttl(self, key, seconds):
        if seconds:
            self.ttls[key] = seconds
            if self.clock is not None:
                self._deadlines[key] = self.clock() + seconds
        else:
            self.ttls.pop(key, None)
            self._deadlines.pop(key, None)

    async def get(self, key):
        self._check()
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False, get=False):
        self._check()
        previous = self.store.get(key)
        if nx and previous is not None:
            return None
        self.store[key] = str(value)
        self._set_ttl(key, ex)
        return previous if get else True

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self._set_ttl(key, None)
        return removed

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.store or key in self.sets)

    async def incrby(self, key, amount):
        self._check()
        value = int(self.store.get(key, 0)) + amount
        self.store[key] = str(value)
        return value

    async def incr(self, key):
        return await self.incrby(key, 1)

    async def decr(self, key):
        return await self.incrby(key, -1)

    async def expire(self, key, seconds):
        self._check()
        if key not in self.store and key not in self.sets:
            return False
        self._set_ttl(key, seconds)
        return True

    async def mget(self, keys):
        self._check()
        return [self.store.get(key) for key in keys]

    async def sadd(self, key, *members):
        self._check()
        members_set = self.sets.setdefault(key, set())
        added = len(set(members) - members_set)
        members_set.update(members)
        return added

    async def srem(self, key, *members):
        self._check()
        members_set = self.sets.get(key, set())
        removed = len(members_set & set(members))
        members_set.difference_update(members)
        if not members_set:
            self.sets.pop(key, None)
            self._set_ttl(key, None)
        return removed

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def publish(self, channel, message):
        self._check()
        self.published.append((channel, message))
        return 0

    def expire_now(self, key):
        """Drop a key as if its TTL ran out."""
        self.store.pop(key, None)
        self.sets.pop(key, None)
        self.ttls.pop(key, None)
        self._deadlines.pop(key, None)

    def issue_token(self, user_id: str) -> str:
        """Synchronous variant of ``create_session`` for sync tests."""
        token = generate_token()
        self.store[f"{SESSION_PREFIX}{hash_token(token)}"] = json.dumps({"user_id": user_id})
        return token


@pytest.fixture
def fake_redis():
    return FakeRedis()


# ============================================================================
# Clock
# ============================================================================


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Server-side sockets
# ============================================================================


class FakeWebSocket:
    """Records what the gateway sends to one connection."""

    def __init__(self, fail_send: bool = False, send_delay: Optional[float] = None):
        self.accepted = False
        self.sent: List[dict] = []
        self.closed = False
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.fail_send = fail_send
        self.send_delay = send_delay

    async def accept(self):
        self.accepted = True

    async def send_json(self, data: dict):
        if self.fail_send or self.closed:
            raise RuntimeError("Cannot call 'send' once a close message has been sent.")
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def frames(self, frame_type: str) -> List[dict]:
        return [f for f in self.sent if f.get("type") == frame_type]


@pytest.fixture
async def realtime(fake_redis, clock):
    """Started realtime services of a single process on a local bus."""
    services = build_realtime(
        fake_redis,
        bus=LocalEventBus(handler_timeout=1.0, clock=clock),
        disconnect_grace=0.05,
        server_id="test-server",
        heartbeat_interval=3600,
        heartbeat_timeout=30,
        send_timeout=0.5,
        clock=clock,
    )
    await services.start()
    yield services
    await services.stop()


# ============================================================================
# In-memory transport between ClientSocketSession and the /ws endpoint
# ============================================================================


class LoopbackServerSocket:
    """Server half of a loopback connection: the WebSocket calls the endpoint makes."""

    def __init__(self, transport: "LoopbackTransport"):
        self.transport = transport
        self.inbound: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_code: Optional[int] = None

    async def accept(self):
        pass

    async def send_json(self, data: dict):
        if self.closed:
            raise RuntimeError("Cannot call 'send' once a close message has been sent.")
        self.transport.deliver(json.dumps(data))

    async def receive(self) -> dict:
        return await self.inbound.get()

    async def close(self, code: int = 1000, reason: str = ""):
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.inbound.put_nowait({"type": "websocket.disconnect", "code": code})
        self.transport.server_closed(code)


class LoopbackTransport:
    """Client half of a loopback connection: what ClientSocketSession calls."""

    def __init__(self):
        self.server = LoopbackServerSocket(self)
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[dict] = []
        # Parsed JSON frames; text that is not JSON is kept as the raw string
        self.received: List[Any] = []
        self.closed = False
        self.close_code: Optional[int] = None

    def deliver(self, text: str):
        if self.closed:
            return
        try:
            frame = json.loads(text)
        except ValueError:
            frame = text
        self.received.append(frame)
        self.incoming.put_nowait(text)

    def server_closed(self, code: int):
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(None)

    async def send(self, text: str):
        if self.closed:
            raise ConnectionClosedError(None, None)
        self.sent.append(json.loads(text))
        if not self.server.closed:
            self.server.inbound.put_nowait({"type": "websocket.receive", "text": text})

    async def recv(self) -> str:
        item = await self.incoming.get()
        if item is None:
            raise ConnectionClosedOK(None, None)
        return item

    async def close(self):
        self.drop(1000)

    def drop(self, code: int = 1006):
        """Lose the connection, as a network failure would."""
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.incoming.put_nowait(None)
        if not self.server.closed:
            self.server.closed = True
            self.server.inbound.put_nowait({"type": "websocket.disconnect", "code": code})

    def frames(self, frame_type: str, direction: str = "received") -> List[dict]:
        frames = self.received if direction == "received" else self.sent
        return [f for f in frames if isinstance(f, dict) and f.get("type") == frame_type]


class ServerProcess:
    """One server process: its own realtime services behind the /ws endpoint."""

    def __init__(self, broker: LocalBroker, redis: FakeRedis, server_id: str, disconnect_grace: float = 0.1, **gateway_options):
        self.server_id = server_id
        self.redis = redis
        options = {"heartbeat_interval": 3600, "heartbeat_timeout": 30, "send_timeout": 0.5}
        options.update(gateway_options)
        self.realtime: RealtimeServices = build_realtime(
            redis,
            bus=LocalEventBus(broker, handler_timeout=1.0),
            disconnect_grace=disconnect_grace,
            server_id=server_id,
            **options,
        )
        self.transports: List[LoopbackTransport] = []
        self._endpoints: List[asyncio.Task] = []

    @property
    def gateway(self):
        return self.realtime.gateway

    async def start(self):
        await self.realtime.start()

    async def stop(self):
        for transport in self.transports:
            transport.drop(1001)
        if self._endpoints:
            await asyncio.gather(*self._endpoints, return_exceptions=True)
        await self.realtime.stop()

    async def connect(self, url: str) -> LoopbackTransport:
        token = parse_qs(urlparse(url).query).get("token", [""])[0]
        transport = LoopbackTransport()
        self.transports.append(transport)
        self._endpoints.append(asyncio.create_task(websocket_endpoint(
            websocket=transport.server,
            realtime=self.realtime,
            redis_client=self.redis,
            token=token,
        )))
        return transport

    @property
    def live_transports(self) -> List[LoopbackTransport]:
        return [t for t in self.transports if not t.closed]


async def no_wait(delay: float):
    await asyncio.sleep(0)


class Cluster:
    """Server processes sharing one Redis and one pub/sub broker, plus their clients."""

    def __init__(self, redis: FakeRedis):
        self.redis = redis
        self.broker = LocalBroker()
        self.processes: List[ServerProcess] = []
        self.sessions: List[ClientSocketSession] = []
        self.registrations: Dict[ClientSocketSession, "Recorder"] = {}

    async def spawn(self, server_id: str, **options) -> ServerProcess:
        process = ServerProcess(self.broker, self.redis, server_id, **options)
        await process.start()
        self.processes.append(process)
        return process

    @staticmethod
    def connector(*processes: ServerProcess):
        """Connect to ``processes`` in order, staying on the last one."""
        route = list(processes)

        async def connect(url: str):
            process = route.pop(0) if len(route) > 1 else route[0]
            return await process.connect(url)

        return connect

    async def session(self, user_id: str, *processes: ServerProcess, connected: bool = True, **options) -> ClientSocketSession:
        token = await create_session(self.redis, user_id)
        options.setdefault("sleep", no_wait)
        session = ClientSocketSession(
            "ws://buddylynk.test/ws",
            user_id,
            token,
            connector=self.connector(*processes),
            **options,
        )
        self.sessions.append(session)
        await session.start()
        registered = Recorder()
        session.on("registered", registered)
        self.registrations[session] = registered
        if connected:
            await eventually(lambda: len(registered) > 0)
        return session

    async def settle(self):
        """Flush every bus and let pushed frames reach the clients."""
        for _ in range(2):
            for process in self.processes:
                await process.realtime.bus.flush(timeout=2.0)
            await asyncio.sleep(0.02)
        for session in self.sessions:
            await session.wait_for_listeners()

    async def shutdown(self):
        for session in self.sessions:
            await session.close()
        for process in self.processes:
            await process.stop()


@pytest.fixture
async def cluster(fake_redis):
    cluster = Cluster(fake_redis)
    yield cluster
    await cluster.shutdown()


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll ``predicate`` until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if predicate():
            return
        if loop.time() > deadline:
            raise AssertionError("Condition not met within timeout")
        await asyncio.sleep(interval)


class Recorder:
    """Collects payloads handed to a session handler."""

    def __init__(self):
        self.items: List[Any] = []

    def __call__(self, payload):
        self.items.append(payload)

    def __len__(self):
        return len(self.items)


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(
        bind=db_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        class_=Session,
    )


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
async def connected_session():
    """A ClientSocketSession for "alice" over loopback transports with no server behind them."""
    transports: List[LoopbackTransport] = []

    async def connector(url):
        transport = LoopbackTransport()
        transports.append(transport)
        return transport

    session = ClientSocketSession("ws://buddylynk.test/ws", "alice", "token", connector=connector, sleep=no_wait)
    await session.start()
    assert await session.wait_until_connected(timeout=1)
    yield session, transports
    await session.close()
