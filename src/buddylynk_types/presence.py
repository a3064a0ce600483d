"""Presence DTOs."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class PresenceRecord(BaseModel):
    """
    Online state of a single user.

    ``is_online`` is None when the presence store could not be reached; callers
    must render that as "unknown", never as offline.
    """
    user_id: str
    is_online: Optional[bool] = None
    last_seen_at: Optional[datetime] = None


class OnlineStatusQuery(BaseModel):
    """Bulk presence lookup."""
    user_ids: list[str] = Field(..., min_length=1, max_length=500)


class OnlineStatusResponse(BaseModel):
    """user_id -> True/False, or None when unknown."""
    statuses: dict[str, Optional[bool]] = Field(default_factory=dict)
