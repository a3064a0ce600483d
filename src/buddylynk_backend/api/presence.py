from typing import Annotated

from fastapi import APIRouter, Depends

from buddylynk_backend.auth import get_current_user_id
from buddylynk_backend.websocket.services import RealtimeServices, get_realtime
from buddylynk_types.presence import OnlineStatusQuery, OnlineStatusResponse, PresenceRecord

presence_router = APIRouter()


@presence_router.post("/online-status", response_model=OnlineStatusResponse)
async def get_users_online_status(
    payload: OnlineStatusQuery,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
):
    """
    Presence snapshot for several users.

    Values are null when presence is unknown (presence store unreachable).
    """
    statuses = await realtime.presence.are_online(payload.user_ids)
    return OnlineStatusResponse(statuses=statuses)


@presence_router.get("/{target_user_id}/online-status", response_model=PresenceRecord)
async def get_user_online_status(
    target_user_id: str,
    user_id: Annotated[str, Depends(get_current_user_id)],
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
):
    is_online = await realtime.presence.is_online(target_user_id)
    last_seen_at = None
    if is_online is False:
        last_seen_at = await realtime.presence.last_seen(target_user_id)
    return PresenceRecord(user_id=target_user_id, is_online=is_online, last_seen_at=last_seen_at)
