"""
WebSocket event handlers.

Handles incoming client frames and dispatches appropriate actions.
"""

import logging
from datetime import datetime, timezone

from buddylynk_backend.websocket.connection_registry import Connection
from buddylynk_backend.websocket.gateway import ConnectionLimitError, RegistrationError
from buddylynk_backend.websocket.services import RealtimeServices
from buddylynk_types.websocket import (
    parse_client_event,
    WSRegister,
    WSPing,
    WSClientPong,
    WSCallOffer,
    WSCallAnswer,
    WSCallIceCandidate,
    WSCallEnd,
    WSTypingStart,
    WSTypingStop,
    WSRegistered,
    WSPong,
    WSError,
)

logger = logging.getLogger(__name__)


async def send_error(realtime: RealtimeServices, connection: Connection, code: str, message: str):
    await realtime.gateway.send(connection, WSError(code=code, message=message).model_dump())


async def handle_client_message(realtime: RealtimeServices, connection: Connection, raw_data: dict):
    """
    Handle an incoming frame from a WebSocket client.

    Every frame counts as liveness. Only ``register``, ``ping`` and ``pong``
    are accepted before the connection is registered.

    Args:
        realtime: Services of this process
        connection: The connection the frame arrived on
        raw_data: Raw JSON data from the client
    """
    realtime.gateway.touch(connection)

    event = parse_client_event(raw_data) if isinstance(raw_data, dict) else None

    if event is None:
        event_type = raw_data.get("type", "missing") if isinstance(raw_data, dict) else "missing"
        await send_error(realtime, connection, "INVALID_EVENT", f"Unknown or invalid event type: {event_type}")
        return

    try:
        if isinstance(event, WSRegister):
            await handle_register(realtime, connection, event)

        elif isinstance(event, (WSPing, WSClientPong)):
            await handle_liveness(realtime, connection, event)

        elif not connection.is_registered:
            await send_error(realtime, connection, "NOT_REGISTERED", f"Register before sending {event.type}")

        elif isinstance(event, WSCallOffer):
            realtime.relay.offer(
                from_user_id=connection.user_id,
                to_user_id=event.to,
                offer=event.offer,
                call_type=event.call_type,
                caller=event.caller,
            )

        elif isinstance(event, WSCallAnswer):
            realtime.relay.answer(connection.user_id, event.to, event.answer)

        elif isinstance(event, WSCallIceCandidate):
            realtime.relay.ice_candidate(connection.user_id, event.to, event.candidate)

        elif isinstance(event, WSCallEnd):
            realtime.relay.end(connection.user_id, event.to, event.reason)

        elif isinstance(event, (WSTypingStart, WSTypingStop)):
            realtime.publisher.typing(
                user_id=connection.user_id,
                receiver_id=event.receiver_id,
                is_typing=isinstance(event, WSTypingStart),
            )

        else:
            await send_error(realtime, connection, "UNHANDLED_EVENT", f"Event type not implemented: {event.type}")

    except Exception as e:
        logger.error(f"Error handling event {event.type}: {e}")
        await send_error(realtime, connection, "HANDLER_ERROR", str(e))


async def handle_register(realtime: RealtimeServices, connection: Connection, event: WSRegister):
    """
    Bind the connection to the user.

    The user id must be the one the connection authenticated as.
    """
    try:
        await realtime.gateway.register(connection.connection_id, event.user_id)
    except RegistrationError as e:
        logger.warning(f"Register rejected on connection {connection.connection_id}: {e.message}")
        await send_error(realtime, connection, e.code, e.message)
        return
    except ConnectionLimitError as e:
        await send_error(realtime, connection, "CONNECTION_LIMIT", e.message)
        await connection.websocket.close(code=e.code, reason=e.message)
        return

    await realtime.gateway.send(connection, WSRegistered(user_id=event.user_id).model_dump())


async def handle_liveness(realtime: RealtimeServices, connection: Connection, event):
    """
    Handle ``ping`` and ``pong``.

    Both refresh presence; ``ping`` is answered with ``pong``.
    """
    if connection.is_registered:
        await realtime.gateway.refresh_presence(connection.user_id)

    if isinstance(event, WSPing):
        await realtime.gateway.send(connection, WSPong(
            timestamp=datetime.now(timezone.utc)
        ).model_dump(mode="json"))
