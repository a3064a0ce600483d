"""Direct message DTOs."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageCreate(BaseModel):
    receiver_id: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1, max_length=10000)


class MessageUpdate(BaseModel):
    content: str = Field(..., min_length=1, max_length=10000)


class MessageGet(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_id: str
    receiver_id: str
    content: str
    created_at: datetime
    edited_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class UnreadCount(BaseModel):
    user_id: str
    count: int = Field(..., ge=0)


class ConversationRead(BaseModel):
    """Result of marking a conversation as read."""
    peer_id: str
    message_ids: list[str] = Field(default_factory=list)
    unread_count: int = Field(..., ge=0)
