"""Pydantic schemas for the user directory."""
from typing import Literal, Optional

from pydantic import BaseModel, Field


UserRole = Literal["buyer", "seller", "admin"]


class ParticipantProfile(BaseModel):
    """Public profile of a conversation participant."""
    id: str
    name: str = ""
    email: str = ""
    avatarUrl: Optional[str] = None
    role: UserRole = "buyer"


class ProfileUpsert(BaseModel):
    """Request body for mirroring a profile from the auth service."""
    name: str = Field(default="", max_length=200)
    email: str = Field(default="", max_length=320)
    avatarUrl: Optional[str] = Field(default=None, max_length=2048)
    role: UserRole = "buyer"
