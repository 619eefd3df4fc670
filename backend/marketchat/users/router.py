"""User directory REST API router.

Endpoints:
    GET /users/lookup?q=  - Find people to start a conversation with
    GET /users/me         - The caller's mirrored profile
    PUT /users/me         - Mirror the caller's profile from the auth service
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from marketchat.auth import get_current_user_id
from marketchat.config import get_config

from .schemas import ParticipantProfile, ProfileUpsert
from .service import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/users", tags=["users"])


def _directory() -> UserDirectory:
    return UserDirectory.get_instance(get_config().storage.users_db_path)


@router.get("/lookup", response_model=List[ParticipantProfile])
async def lookup_users(
    q: str = Query(..., min_length=1, max_length=200),
    user_id: str = Depends(get_current_user_id),
) -> List[ParticipantProfile]:
    """Search by name or email. The caller is never part of the result."""
    return _directory().lookup(q, exclude=user_id)


@router.get("/me", response_model=ParticipantProfile)
async def get_my_profile(user_id: str = Depends(get_current_user_id)) -> ParticipantProfile:
    return _directory().get(user_id)


@router.put("/me", response_model=ParticipantProfile)
async def update_my_profile(
    body: ProfileUpsert,
    user_id: str = Depends(get_current_user_id),
) -> ParticipantProfile:
    profile = _directory().upsert(user_id, body)
    logger.info("[users] Profile mirrored for %s", user_id)
    return profile
