"""
WebSocket authentication.

The bearer token is passed as the ``token`` query parameter and resolved the
same way as for REST requests.
"""

import logging

import redis.asyncio as aioredis

from buddylynk_backend.auth import resolve_session

logger = logging.getLogger(__name__)


class WebSocketAuthError(Exception):
    """Exception raised when WebSocket authentication fails."""

    def __init__(self, code: int, reason: str):
        self.code = code
        self.reason = reason
        super().__init__(reason)


async def authenticate_websocket_token(redis_client: aioredis.Redis, token: str) -> str:
    """
    Authenticate a WebSocket connection using a session token.

    Returns:
        The authenticated user id

    Raises:
        WebSocketAuthError: If authentication fails
    """
    if not token:
        raise WebSocketAuthError(4001, "No token provided")

    try:
        user_id = await resolve_session(redis_client, token)
    except Exception as e:
        logger.error(f"WebSocket authentication error: {e}")
        raise WebSocketAuthError(4001, "Authentication failed")

    if user_id is None:
        raise WebSocketAuthError(4001, "Invalid or expired token")

    logger.info(f"WebSocket authentication successful for user {user_id}")
    return user_id
