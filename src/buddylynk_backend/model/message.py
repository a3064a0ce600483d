import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, String, func

from .base import Base


class DirectMessage(Base):
    __tablename__ = 'direct_message'
    __table_args__ = (
        Index('dm_receiver_read_idx', 'receiver_id', 'read_at', 'deleted_at'),
        Index('dm_conversation_idx', 'sender_id', 'receiver_id', 'created_at'),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc), server_default=func.now())
    edited_at = Column(DateTime(timezone=True))
    read_at = Column(DateTime(timezone=True))
    deleted_at = Column(DateTime(timezone=True))

    sender_id = Column(String(64), nullable=False)
    receiver_id = Column(String(64), nullable=False)

    content = Column(String(10000), nullable=False)

    @property
    def is_unread(self) -> bool:
        return self.read_at is None and self.deleted_at is None
