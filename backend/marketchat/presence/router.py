"""Presence REST API router.

Endpoints:
    GET  /presence/active    - List currently active user IDs
    POST /presence/heartbeat - Refresh the caller's presence record
"""
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from marketchat.auth import get_current_user_id

from .tracker import get_tracker

router = APIRouter(prefix="/presence", tags=["presence"])


class HeartbeatResponse(BaseModel):
    userId: str
    lastHeartbeatAt: float


@router.get("/active", response_model=List[str])
async def active_users(user_id: str = Depends(get_current_user_id)) -> List[str]:
    """Return the IDs of users with a heartbeat younger than the TTL."""
    return sorted(get_tracker().active_users())


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(user_id: str = Depends(get_current_user_id)) -> HeartbeatResponse:
    """Refresh the caller's presence. No body beyond the credential."""
    at = get_tracker().heartbeat(user_id)
    return HeartbeatResponse(userId=user_id, lastHeartbeatAt=at)
