"""
Bearer-token sessions backed by Redis.

Sign-in itself lives outside this service; it stores
``session:<sha256(token)>`` -> ``{"user_id": ...}`` and hands the plain token
to the client. This module only resolves tokens to user ids.
"""

import hashlib
import json
import logging
import secrets
from typing import Annotated, Optional

import redis.asyncio as aioredis
from fastapi import Depends, Header

from buddylynk_backend.exceptions import UnauthorizedException
from buddylynk_backend.redis_cache import get_redis_client
from buddylynk_backend.settings import settings

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"


def hash_token(token: str) -> str:
    """SHA-256 hex digest of a token, used as the Redis lookup key."""
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def generate_token(length: int = 32) -> str:
    return secrets.token_urlsafe(length)


async def create_session(redis_client: aioredis.Redis, user_id: str, ttl: Optional[int] = None) -> str:
    """
    Store a new session for ``user_id`` and return the plain token.

    Used by the sign-in service and by the ``issue-token`` CLI command.
    """
    token = generate_token()
    await redis_client.set(
        f"{SESSION_PREFIX}{hash_token(token)}",
        json.dumps({"user_id": user_id}),
        ex=ttl or settings.SESSION_TTL,
    )
    return token


async def resolve_session(redis_client: aioredis.Redis, token: str) -> Optional[str]:
    """
    Resolve a bearer token to a user id, refreshing the session TTL.

    Returns:
        The user id, or None when the token is unknown or the session malformed
    """
    if not token:
        return None

    token_hash = hash_token(token)
    session_key = f"{SESSION_PREFIX}{token_hash}"

    session_data_raw = await redis_client.get(session_key)
    if not session_data_raw:
        logger.debug(f"Session not found for token hash {token_hash[:8]}...")
        return None

    try:
        session_data = json.loads(session_data_raw)
    except json.JSONDecodeError:
        logger.error(f"Invalid session data format for token hash {token_hash[:8]}...")
        return None

    user_id = session_data.get("user_id") if isinstance(session_data, dict) else None
    if not user_id:
        return None

    await redis_client.expire(session_key, settings.SESSION_TTL)
    return str(user_id)


def _parse_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_current_user_id(
    redis_client: Annotated[aioredis.Redis, Depends(get_redis_client)],
    authorization: Annotated[Optional[str], Header()] = None,
) -> str:
    """FastAPI dependency: the authenticated user id for this request."""
    token = _parse_bearer(authorization)
    if token is None:
        raise UnauthorizedException(error_code="AUTH_001")

    user_id = await resolve_session(redis_client, token)
    if user_id is None:
        raise UnauthorizedException(error_code="AUTH_002")

    return user_id
