"""
Cached unread-message counters.

``unread:<user_id>`` in Redis is a cache of the database count. It is bumped
on every new message and overwritten from the database on sync; when Redis
misbehaves the database value is used directly.
"""

import logging
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.orm import Session

from buddylynk_backend.business_logic.messages import count_unread
from buddylynk_backend.settings import settings
from buddylynk_backend.websocket.presence import UNAVAILABLE_ERRORS

logger = logging.getLogger(__name__)

UNREAD_PREFIX = "unread:"


class UnreadCounter:
    """Redis cache of per-user unread counts."""

    def __init__(self, redis_client: aioredis.Redis, ttl: Optional[int] = None):
        self._redis = redis_client
        self._ttl = ttl

    @property
    def ttl(self) -> int:
        return self._ttl if self._ttl is not None else settings.UNREAD_COUNT_TTL

    @staticmethod
    def key(user_id: str) -> str:
        return f"{UNREAD_PREFIX}{user_id}"

    async def increment(self, user_id: str, db: Session) -> int:
        """
        Count one more unread message.

        A missing cache entry is seeded from the database (which already
        contains the new message) instead of being incremented from zero.
        """
        key = self.key(user_id)
        try:
            if await self._redis.exists(key):
                count = await self._redis.incr(key)
                await self._redis.expire(key, self.ttl)
                return count
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Unread cache increment failed for user {user_id}: {e}")
            return count_unread(user_id, db)

        return await self.sync(user_id, db)

    async def get(self, user_id: str, db: Session) -> int:
        """Cached count, falling back to (and re-seeding from) the database."""
        try:
            cached = await self._redis.get(self.key(user_id))
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Unread cache read failed for user {user_id}: {e}")
            return count_unread(user_id, db)

        if cached is not None:
            try:
                return max(int(cached), 0)
            except ValueError:
                logger.warning(f"Corrupt unread cache for user {user_id}: {cached!r}")

        return await self.sync(user_id, db)

    async def sync(self, user_id: str, db: Session) -> int:
        """Recompute from the database and overwrite the cache."""
        count = count_unread(user_id, db)
        try:
            await self._redis.set(self.key(user_id), count, ex=self.ttl)
        except UNAVAILABLE_ERRORS as e:
            logger.warning(f"Unread cache write failed for user {user_id}: {e}")
        return count
