"""
Presence counters in Redis.

Each process counts the live connections it holds for a user under its own
key, ``ws:online:<user_id>:<server_id>``. The key carries a short TTL that the
heartbeat sweep renews by rewriting the local count, so the share of a process
that dies without deregistering expires on its own instead of keeping the
user online.

A user is online while any per-process count is positive. The ids of the
processes holding counts are indexed in the set ``ws:online:<user_id>``, so
lookups never scan the keyspace.

USER_ONLINE / USER_OFFLINE transitions are decided by the marker key
``ws:announced:<user_id>``: the process that creates it announces the user
online, the process that deletes it announces the user offline. All
mutations are single-key commands, so concurrent processes never need a lock.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from buddylynk_backend.settings import settings

logger = logging.getLogger(__name__)

PRESENCE_PREFIX = "ws:online:"
ANNOUNCED_PREFIX = "ws:announced:"
LAST_SEEN_PREFIX = "ws:last_seen:"

# Errors meaning "presence store unreachable"
UNAVAILABLE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)


@dataclass
class PresenceChange:
    """Result of a counter mutation."""
    user_id: str
    # Live connections across every process after the mutation
    count: int
    # True when the user crossed between offline and online
    transitioned: bool


class PresenceStore:
    """
    Per-process online-connection counters backed by Redis.

    Args:
        redis_client: Async Redis client (``decode_responses=True``)
        server_id: Id of the process owning the counts written here
        ttl: Seconds a per-process count survives without a refresh
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        server_id: Optional[str] = None,
        ttl: Optional[int] = None,
    ):
        self._redis = redis_client
        self.server_id = server_id or settings.SERVER_ID
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else settings.WS_PRESENCE_TTL

    def key(self, user_id: str, server_id: Optional[str] = None) -> str:
        """Counter key of ``server_id`` (this process by default)."""
        return f"{PRESENCE_PREFIX}{user_id}:{server_id or self.server_id}"

    @staticmethod
    def index_key(user_id: str) -> str:
        return f"{PRESENCE_PREFIX}{user_id}"

    @staticmethod
    def announced_key(user_id: str) -> str:
        return f"{ANNOUNCED_PREFIX}{user_id}"

    async def increment(self, user_id: str) -> PresenceChange:
        """Count one more live connection here; ``transitioned`` when the user was not online anywhere."""
        key = self.key(user_id)
        await self._redis.incr(key)
        await self._redis.expire(key, self.ttl)
        await self._add_to_index(user_id)
        return await self._announce_online(user_id)

    async def decrement(self, user_id: str) -> PresenceChange:
        """
        Count one less live connection here.

        ``transitioned`` is set when no process holds a live count for the user
        any more and this call withdrew the online announcement. The local
        count never stays below zero: a decrement to zero or less deletes it.
        """
        key = self.key(user_id)
        count = await self._redis.decr(key)
        if count > 0:
            await self._redis.expire(key, self.ttl)
        else:
            await self._redis.delete(key)
            await self._redis.srem(self.index_key(user_id), self.server_id)

        total = await self.live_count(user_id)
        if total > 0:
            return PresenceChange(user_id=user_id, count=total, transitioned=False)

        await self._redis.set(
            f"{LAST_SEEN_PREFIX}{user_id}",
            datetime.now(timezone.utc).isoformat(),
        )
        withdrawn = await self._redis.delete(self.announced_key(user_id))
        return PresenceChange(user_id=user_id, count=0, transitioned=withdrawn > 0)

    async def refresh(self, user_id: str, local_count: int) -> Optional[PresenceChange]:
        """
        Rewrite this process's count for a user with ``local_count`` live connections here.

        Renews the TTL of the count and of the online announcement. The count
        is written as a whole, so drift left by a failed increment or decrement
        is corrected. If the announcement had vanished (TTL expiry, Redis
        restart) it is re-created and a transition is reported so the caller
        can announce the user as online again.

        Returns:
            PresenceChange when the user had to be announced again, else None
        """
        if local_count <= 0:
            return None

        previous = await self._redis.set(self.key(user_id), local_count, ex=self.ttl, get=True)
        await self._add_to_index(user_id)
        if previous is None:
            logger.info(f"Presence count for user {user_id} on {self.server_id} re-seeded with {local_count} connection(s)")

        change = await self._announce_online(user_id)
        return change if change.transitioned else None

    async def live_count(self, user_id: str) -> int:
        """
        Live connections of a user across every process.

        Processes whose count has expired are dropped from the index.
        """
        counts = await self._counts(user_id)
        expired = [server_id for server_id, value in counts.items() if value is None]
        if expired:
            await self._redis.srem(self.index_key(user_id), *expired)
            logger.debug(f"Dropped expired presence of user {user_id} on {', '.join(expired)}")
        return sum(_as_count(value) for value in counts.values())

    async def is_online(self, user_id: str) -> Optional[bool]:
        """
        True iff some process holds a live, positive count for the user.

        Returns None when Redis cannot be reached: presence is unknown, which
        callers must not render as offline.
        """
        try:
            counts = await self._counts(user_id)
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Presence lookup failed for user {user_id}: {e}")
            return None
        return _any_positive(counts)

    async def are_online(self, user_ids: Iterable[str]) -> Dict[str, Optional[bool]]:
        """Bulk variant of ``is_online``; every value is None when Redis is unreachable."""
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}

        statuses = {}
        try:
            for user_id in user_ids:
                statuses[user_id] = _any_positive(await self._counts(user_id))
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Bulk presence lookup failed for {len(user_ids)} user(s): {e}")
            return {user_id: None for user_id in user_ids}

        return statuses

    async def last_seen(self, user_id: str) -> Optional[datetime]:
        try:
            value = await self._redis.get(f"{LAST_SEEN_PREFIX}{user_id}")
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Last-seen lookup failed for user {user_id}: {e}")
            return None
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None

    async def _add_to_index(self, user_id: str):
        index = self.index_key(user_id)
        await self._redis.sadd(index, self.server_id)
        await self._redis.expire(index, self.ttl)

    async def _counts(self, user_id: str) -> Dict[str, Optional[str]]:
        """Raw per-process counts of a user; None for counts that have expired."""
        server_ids = sorted(await self._redis.smembers(self.index_key(user_id)))
        if not server_ids:
            return {}
        values = await self._redis.mget([self.key(user_id, server_id) for server_id in server_ids])
        return dict(zip(server_ids, values))

    async def _announce_online(self, user_id: str) -> PresenceChange:
        announced = self.announced_key(user_id)
        created = await self._redis.set(announced, self.server_id, ex=self.ttl, nx=True)
        if not created:
            await self._redis.expire(announced, self.ttl)
        total = await self.live_count(user_id)
        return PresenceChange(user_id=user_id, count=total, transitioned=bool(created))


def _as_count(value) -> int:
    if value is None:
        return 0
    try:
        return max(int(value), 0)
    except (TypeError, ValueError):
        return 0


def _any_positive(counts: Dict[str, Optional[str]]) -> bool:
    return any(_as_count(value) > 0 for value in counts.values())
