from typing import Annotated

from fastapi import APIRouter, Depends

from buddylynk_backend.websocket.services import RealtimeServices, get_realtime

system_router = APIRouter()


@system_router.get("/realtime/metrics")
async def realtime_metrics(
    realtime: Annotated[RealtimeServices, Depends(get_realtime)],
) -> dict:
    """Socket metrics of the process serving this request."""
    return realtime.gateway.get_metrics()
