"""Business logic for direct messages."""
from datetime import datetime, timezone
from typing import List

from sqlalchemy import func
from sqlalchemy.orm import Session

from buddylynk_backend.exceptions import BadRequestException, ForbiddenException, NotFoundException
from buddylynk_backend.model.message import DirectMessage
from buddylynk_types.messages import MessageCreate


def create_message(sender_id: str, payload: MessageCreate, db: Session) -> DirectMessage:
    """Persist a direct message from ``sender_id``."""
    if payload.receiver_id == sender_id:
        raise BadRequestException(detail="Cannot send a message to yourself")

    message = DirectMessage(
        sender_id=sender_id,
        receiver_id=payload.receiver_id,
        content=payload.content,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def get_message(message_id: str, db: Session) -> DirectMessage:
    """
    Fetch a live (not deleted) message.

    Raises:
        NotFoundException: If the message does not exist or was deleted
    """
    message = db.query(DirectMessage).filter(
        DirectMessage.id == message_id,
        DirectMessage.deleted_at.is_(None),
    ).first()

    if message is None:
        raise NotFoundException(error_code="NF_002", context={"message_id": message_id})
    return message


def _get_own_message(message_id: str, user_id: str, db: Session) -> DirectMessage:
    message = get_message(message_id, db)
    if message.sender_id != user_id:
        raise ForbiddenException(detail="Only the sender can change this message", user_id=user_id)
    return message


def edit_message(message_id: str, user_id: str, content: str, db: Session) -> DirectMessage:
    message = _get_own_message(message_id, user_id, db)
    message.content = content
    message.edited_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(message)
    return message


def delete_message(message_id: str, user_id: str, db: Session) -> tuple[DirectMessage, bool]:
    """
    Soft-delete a message.

    Returns:
        The message and whether it was still unread for the receiver
    """
    message = _get_own_message(message_id, user_id, db)
    was_unread = message.read_at is None
    message.deleted_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(message)
    return message, was_unread


def mark_conversation_read(reader_id: str, peer_id: str, db: Session) -> tuple[List[str], datetime]:
    """
    Mark every unread message from ``peer_id`` to ``reader_id`` as read.

    Returns:
        Ids of the messages that changed, and the read timestamp
    """
    read_at = datetime.now(timezone.utc)
    messages = db.query(DirectMessage).filter(
        DirectMessage.sender_id == peer_id,
        DirectMessage.receiver_id == reader_id,
        DirectMessage.read_at.is_(None),
        DirectMessage.deleted_at.is_(None),
    ).all()

    for message in messages:
        message.read_at = read_at
    db.commit()

    return [m.id for m in messages], read_at


def count_unread(user_id: str, db: Session) -> int:
    """Unread messages for ``user_id`` according to the database."""
    return db.query(func.count(DirectMessage.id)).filter(
        DirectMessage.receiver_id == user_id,
        DirectMessage.read_at.is_(None),
        DirectMessage.deleted_at.is_(None),
    ).scalar() or 0
