from typing import Annotated

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from buddylynk_backend.auth import get_current_user_id
from buddylynk_backend.business_logic.messages import (
    create_message,
    delete_message,
    edit_message,
    get_message,
    mark_conversation_read,
)
from buddylynk_backend.business_logic.unread import UnreadCounter
from buddylynk_backend.database import get_db
from buddylynk_backend.exceptions import ForbiddenException
from buddylynk_backend.redis_cache import get_redis_client
from buddylynk_backend.websocket.services import RealtimeServices, get_realtime
from buddylynk_types.messages import (
    ConversationRead,
    MessageCreate,
    MessageGet,
    MessageUpdate,
    UnreadCount,
)

messages_router = APIRouter()

# Rate limiter for this router
limiter = Limiter(key_func=get_remote_address)


def get_unread_counter(
    redis_client: Annotated[aioredis.Redis, Depends(get_redis_client)],
) -> UnreadCounter:
    return UnreadCounter(redis_client)


@messages_router.post("", response_model=MessageGet, status_code=status.HTTP_201_CREATED)
@limiter.limit("120/minute")  # IP-based: generous for chat bursts
async def send_message(
    request: Request,
    payload: MessageCreate,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    unread: Annotated[UnreadCounter, Depends(get_unread_counter)],
    db: Session = Depends(get_db),
):
    """Send a direct message; the receiver is notified in real time."""
    message = create_message(user_id, payload, db)
    count = await unread.increment(message.receiver_id, db)

    realtime.publisher.message_sent(message)
    realtime.publisher.notification(
        user_id=message.receiver_id,
        kind="message",
        actor_id=user_id,
        text=message.content[:140],
        reference_id=message.id,
    )
    realtime.publisher.unread_count(message.receiver_id, count)

    return message


@messages_router.get("/unread-count", response_model=UnreadCount)
async def get_unread_count(
    user_id: Annotated[str, Depends(get_current_user_id)],
    unread: Annotated[UnreadCounter, Depends(get_unread_counter)],
    db: Session = Depends(get_db),
):
    """Unread direct messages for the current user (cached)."""
    return UnreadCount(user_id=user_id, count=await unread.get(user_id, db))


@messages_router.post("/unread-count/sync", response_model=UnreadCount)
async def sync_unread_count(
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    unread: Annotated[UnreadCounter, Depends(get_unread_counter)],
    db: Session = Depends(get_db),
):
    """
    Recompute the unread count from the database.

    Idempotent; clients call it after every (re)connect to recover updates
    they missed while offline. The fresh value is also pushed to the user's
    other devices.
    """
    count = await unread.sync(user_id, db)
    realtime.publisher.unread_count(user_id, count)
    return UnreadCount(user_id=user_id, count=count)


@messages_router.post("/conversations/{peer_id}/read", response_model=ConversationRead)
async def read_conversation(
    peer_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    unread: Annotated[UnreadCounter, Depends(get_unread_counter)],
    db: Session = Depends(get_db),
):
    """Mark every message from ``peer_id`` as read."""
    message_ids, read_at = mark_conversation_read(user_id, peer_id, db)
    count = await unread.sync(user_id, db)

    if message_ids:
        realtime.publisher.messages_read(
            reader_id=user_id,
            sender_id=peer_id,
            message_ids=message_ids,
            read_at=read_at,
        )
    realtime.publisher.unread_count(user_id, count)

    return ConversationRead(peer_id=peer_id, message_ids=message_ids, unread_count=count)


@messages_router.get("/{message_id}", response_model=MessageGet)
async def read_message(
    message_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    db: Session = Depends(get_db),
):
    message = get_message(message_id, db)
    if user_id not in (message.sender_id, message.receiver_id):
        raise ForbiddenException(user_id=user_id)
    return message


@messages_router.patch("/{message_id}", response_model=MessageGet)
async def update_message(
    message_id: str,
    payload: MessageUpdate,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    db: Session = Depends(get_db),
):
    """Edit a message (sender only)."""
    message = edit_message(message_id, user_id, payload.content, db)
    realtime.publisher.message_edited(message)
    return message


@messages_router.delete("/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_message(
    message_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
    unread: Annotated[UnreadCounter, Depends(get_unread_counter)],
    db: Session = Depends(get_db),
):
    """Delete a message (sender only)."""
    message, was_unread = delete_message(message_id, user_id, db)
    realtime.publisher.message_deleted(message)

    if was_unread:
        count = await unread.sync(message.receiver_id, db)
        realtime.publisher.unread_count(message.receiver_id, count)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
