"""Conversation REST API router.

The REST API is the authoritative write path: a message exists once
``POST /messages`` returns 201, whether or not any socket push follows.

Endpoints:
    GET  /conversations                        - List the caller's conversations
    POST /conversations                        - Create or reuse a conversation
    GET  /conversations/{conversation_id}/messages - Message history, oldest first
    POST /messages                             - Persist (and fan out) a message
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query

from marketchat.auth import get_current_user_id
from marketchat.config import get_config
from marketchat.realtime.manager import message_router

from .schemas import Conversation, ConversationCreate, ConversationSummary, Message, MessageCreate
from .store import get_store

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    user_id: str = Depends(get_current_user_id),
) -> List[ConversationSummary]:
    """List the caller's conversations, most recently active first.

    Each entry includes the other participant's profile.
    """
    return get_store().list_conversations(user_id)


@router.post("/conversations", response_model=Conversation, status_code=201)
async def create_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_current_user_id),
) -> Conversation:
    """Create-or-get the conversation between the caller and ``recipientId``.

    Returns the existing conversation (still 201) if the pair already has one.
    """
    return get_store().create_or_get_conversation(user_id, body.recipientId)


@router.get("/conversations/{conversation_id}/messages", response_model=List[Message])
async def list_messages(
    conversation_id: str,
    since: Optional[int] = Query(None, ge=0, description="Only messages with a greater seq"),
    user_id: str = Depends(get_current_user_id),
) -> List[Message]:
    """Message history in display order.

    Args:
        conversation_id: The conversation to read.
        since: Optional seq cursor for incremental polling.

    Returns:
        Messages ordered by (createdAt, seq). 403 if the caller is not a
        participant, 404 if the conversation does not exist.
    """
    return get_store().list_messages(conversation_id, user_id, since_seq=since)


@router.post("/messages", response_model=Message, status_code=201)
async def send_message(
    body: MessageCreate,
    user_id: str = Depends(get_current_user_id),
    x_connection_id: Optional[str] = Header(default=None),
) -> Message:
    """Persist a message from the caller.

    With only ``recipientId`` the conversation is created (or reused) first.
    When ``messaging.publish_on_write`` is enabled the stored message is also
    pushed to the conversation room, skipping the connection named in
    ``X-Connection-Id`` so the sender's own socket does not echo it.
    """
    store = get_store()
    if body.conversationId:
        message = store.append_message(body.conversationId, user_id, body.text)
    else:
        message = store.send_to_recipient(user_id, body.recipientId, body.text)
    conversation_id = message.conversationId
    logger.info("[messages] %s sent %s in %s", user_id, message.id, conversation_id)

    if get_config().messaging.publish_on_write:
        await message_router.publish(conversation_id, message, exclude=x_connection_id)
    return message
