"""Socket endpoint for live conversation updates.

The socket is a latency optimisation; the REST API stays authoritative for
writes and is the correctness fallback for reads.

Protocol Message Types (JSON frames with a ``type`` field):
    Server → client:
        - connected:       {connectionId, userId} right after accept
        - room_joined:     {conversationId}
        - receive_message: {message}
        - error:           {error, detail}
    Client → server:
        - join_room:    {conversationId}
        - leave_room:   {}
        - send_message: {conversationId, message} (advisory fan-out trigger;
                        the stored message is re-read by id)
        - heartbeat:    {}

Authentication:
    ``/ws?token=<bearer>``. An invalid token closes the socket with code
    4401 before it is accepted.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from marketchat.auth import get_token_verifier
from marketchat.config import get_config
from marketchat.conversations.store import get_store
from marketchat.errors import Forbidden, InvalidMessage, MessagingError, Unauthorized
from marketchat.presence import get_tracker

from .manager import message_router

logger = logging.getLogger(__name__)

router = APIRouter()

CLOSE_UNAUTHORIZED = 4401
CLOSE_TRY_AGAIN_LATER = 1013


def _error_frame(err: MessagingError) -> dict:
    return {"type": "error", "error": err.code, "detail": err.message}


@router.websocket("/ws")
async def messaging_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="Bearer credential"),
) -> None:
    """WebSocket endpoint for one client connection.

    Protocol Flow:
        1. Client connects with ?token= → server verifies, accepts and sends
           {type: "connected", connectionId, userId}
        2. Client sends {type: "join_room", conversationId} whenever the
           focused conversation changes → {type: "room_joined"}
        3. After a successful REST send, client sends
           {type: "send_message", conversationId, message}
           → other room members receive {type: "receive_message", message}
        4. On disconnect the connection leaves its room
    """
    try:
        user_id = get_token_verifier().verify(token)
    except Unauthorized as e:
        logger.info(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=CLOSE_UNAUTHORIZED)
        return

    max_connections = get_config().realtime.max_connections
    if max_connections > 0 and len(message_router.connections) >= max_connections:
        logger.warning(
            f"[WS] Connection limit reached ({max_connections}). Rejecting user {user_id}"
        )
        await websocket.close(code=CLOSE_TRY_AGAIN_LATER)
        return

    connection_id = await message_router.connect(websocket, user_id)
    get_tracker().heartbeat(user_id)

    try:
        await websocket.send_json({
            "type": "connected",
            "connectionId": connection_id,
            "userId": user_id,
        })

        # Main message loop
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
                if not isinstance(data, dict):
                    raise ValueError("frame is not an object")
            except ValueError:
                await websocket.send_json(_error_frame(InvalidMessage("Malformed frame")))
                continue

            message_type = data.get("type")
            logger.debug("[WS] %s received: type=%s", connection_id, message_type)

            try:
                reply = await _handle_frame(connection_id, user_id, message_type, data)
            except MessagingError as e:
                logger.info(f"[WS] {message_type} from {user_id} failed: {e.message}")
                await websocket.send_json(_error_frame(e))
                continue

            if reply is not None:
                await websocket.send_json(reply)

    except WebSocketDisconnect:
        logger.info(f"[WS] User {user_id} disconnected ({connection_id})")
    finally:
        message_router.disconnect(connection_id)


async def _handle_frame(
    connection_id: str,
    user_id: str,
    message_type: Optional[str],
    data: dict,
) -> Optional[dict]:
    """Dispatch one client frame. Returns the direct reply, if any."""
    store = get_store()

    # --- Handle JOIN_ROOM (participants only) ---
    if message_type == "join_room":
        conversation_id = data.get("conversationId") or ""
        conversation = store.get_conversation(conversation_id)
        if not conversation.has_participant(user_id):
            raise Forbidden()
        message_router.join_room(connection_id, conversation_id)
        return {"type": "room_joined", "conversationId": conversation_id}

    # --- Handle LEAVE_ROOM ---
    if message_type == "leave_room":
        left = message_router.leave_room(connection_id)
        return {"type": "room_left", "conversationId": left}

    # --- Handle SEND_MESSAGE (advisory, persistence-gated) ---
    if message_type == "send_message":
        conversation_id = data.get("conversationId") or ""
        message = data.get("message") or {}
        message_id = message.get("id") if isinstance(message, dict) else None
        if not message_id:
            raise InvalidMessage("send_message requires message.id")
        await message_router.publish_stored(
            store,
            conversation_id,
            message_id,
            sender_id=user_id,
            exclude=connection_id,
        )
        return None

    # --- Handle HEARTBEAT ---
    if message_type == "heartbeat":
        get_tracker().heartbeat(user_id)
        return None

    raise InvalidMessage(f"Unknown frame type: {message_type}")
