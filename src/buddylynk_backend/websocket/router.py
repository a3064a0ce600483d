"""
WebSocket router and endpoint.
"""

import json
import logging
from typing import Annotated

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query

from buddylynk_backend.redis_cache import get_redis_client
from buddylynk_backend.websocket.auth import authenticate_websocket_token, WebSocketAuthError
from buddylynk_backend.websocket.gateway import ConnectionLimitError
from buddylynk_backend.websocket.handlers import handle_client_message, send_error
from buddylynk_backend.websocket.services import RealtimeServices, get_realtime
from buddylynk_types.websocket import WSConnected, WSError

logger = logging.getLogger(__name__)

ws_router = APIRouter()


@ws_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    redis_client: Annotated[aioredis.Redis, Depends(get_redis_client)],
    token: str = Query("", description="Bearer token for authentication"),
):
    """
    Realtime socket endpoint.

    Authentication:
        Pass the bearer token as a query parameter.
        Example: ws://localhost:8000/ws?token=<your_bearer_token>

    Connection Flow:
        1. Client connects with token
        2. Server validates token, accepts and sends system:connected
        3. Client sends {"type": "register", "user_id": ...}
        4. Server confirms with registered; the user is now online
        5. Server pushes domain events as {"type": <event>, "data": {...}}

    Keep-Alive:
        The server sends heartbeat every 25 seconds and expects any frame
        (typically pong) within 30 seconds. Clients may also send ping,
        answered with pong.
    """
    connection = None
    reason = "closed"

    try:
        user_id = await authenticate_websocket_token(redis_client, token)

        connection = await realtime.gateway.accept(websocket, auth_user_id=user_id)

        await realtime.gateway.send(connection, WSConnected(
            connection_id=connection.connection_id,
            server_id=realtime.gateway.server_id,
        ).model_dump())

        while True:
            try:
                message = await websocket.receive()

                if message["type"] == "websocket.receive":
                    text = message.get("text")
                    if text is None:
                        continue
                    try:
                        data = json.loads(text)
                    except json.JSONDecodeError as e:
                        logger.warning(f"WebSocket invalid JSON on connection={connection.connection_id}: {e}")
                        realtime.gateway.touch(connection)
                        await send_error(realtime, connection, "INVALID_JSON", "Message must be valid JSON")
                        continue
                    await handle_client_message(realtime, connection, data)

                elif message["type"] == "websocket.disconnect":
                    reason = f"client disconnect ({message.get('code')})"
                    break

            except WebSocketDisconnect as e:
                reason = f"client disconnect ({e.code})"
                break

    except WebSocketAuthError as e:
        logger.warning(f"WebSocket auth failed: {e.reason}")
        try:
            await websocket.accept()
            await websocket.send_json(WSError(
                code="AUTH_FAILED",
                message=e.reason
            ).model_dump())
            await websocket.close(code=e.code, reason=e.reason)
        except Exception as close_error:
            logger.debug(f"Could not report auth failure to client: {close_error}")

    except ConnectionLimitError as e:
        logger.warning(f"WebSocket connection limit: {e.message}")
        try:
            await websocket.accept()
            await websocket.send_json(WSError(
                code="CONNECTION_LIMIT",
                message=e.message
            ).model_dump())
            await websocket.close(code=e.code, reason=e.message)
        except Exception as close_error:
            logger.debug(f"Could not report connection limit to client: {close_error}")

    except RuntimeError as e:
        # Starlette raises RuntimeError when receiving on a socket closed by the server
        reason = f"transport closed ({e})"
        logger.debug(f"WebSocket receive after close: {e}")

    except Exception as e:
        reason = "internal error"
        logger.error(f"WebSocket error: {e}")
        try:
            await websocket.close(code=1011, reason="Internal error")
        except Exception as close_error:
            logger.debug(f"Could not close socket after error: {close_error}")

    finally:
        if connection:
            await realtime.gateway.deregister(connection.connection_id, reason=reason)
