"""Pydantic schemas for conversations and messages.

Wire names are camelCase; both the REST API and the socket channel
serialise these models with ``model_dump()``.
"""
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from marketchat.users.schemas import ParticipantProfile


class Message(BaseModel):
    """A persisted message. Immutable once stored.

    Attributes:
        id: Unique message ID (UUID).
        conversationId: Owning conversation.
        senderId: One of the conversation's two participants.
        text: Trimmed message text.
        createdAt: Server timestamp, seconds since epoch.
        seq: Server-assigned, strictly increasing sequence number.
    """
    id: str
    conversationId: str
    senderId: str
    text: str
    createdAt: float
    seq: int

    def sort_key(self):
        """Display order within a conversation."""
        return (self.createdAt, self.seq)


class Conversation(BaseModel):
    """A two-party conversation.

    ``participantIds`` is stored sorted so the unordered pair has exactly
    one representation.
    """
    id: str
    participantIds: List[str] = Field(..., min_length=2, max_length=2)
    createdAt: float
    updatedAt: float
    lastMessage: Optional[str] = None
    lastMessageSeq: int = 0

    def other_participant(self, user_id: str) -> str:
        a, b = self.participantIds
        return b if a == user_id else a

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participantIds


class ConversationSummary(Conversation):
    """Conversation as listed for one user, with the counterpart's profile."""
    otherParticipant: ParticipantProfile


class ConversationCreate(BaseModel):
    """Request body for ``POST /conversations``."""
    recipientId: str = Field(..., min_length=1)


class MessageCreate(BaseModel):
    """Request body for ``POST /messages``.

    Either ``conversationId`` or ``recipientId`` must be given; with only a
    recipient the conversation is created (or reused) first.
    """
    conversationId: Optional[str] = None
    recipientId: Optional[str] = None
    text: str

    @model_validator(mode="after")
    def _target_required(self) -> "MessageCreate":
        if not self.conversationId and not self.recipientId:
            raise ValueError("conversationId or recipientId is required")
        return self
