"""Async REST client for the messaging API.

Thin wrapper over ``httpx.AsyncClient`` that returns the server's pydantic
models and turns failures into the shared error taxonomy:

    - network failures and timeouts -> ConnectivityError
    - error responses -> the domain error named in ``{"error", "detail"}``
"""
import logging
from typing import Any, List, Optional, Set

import httpx

from marketchat.conversations.schemas import Conversation, ConversationSummary, Message
from marketchat.errors import ConnectivityError, error_from_response
from marketchat.users.schemas import ParticipantProfile

logger = logging.getLogger(__name__)

CONNECTION_ID_HEADER = "X-Connection-Id"


class MessagingAPI:
    """REST calls made by one signed-in client.

    Args:
        base_url: Server root, e.g. ``http://localhost:8000``.
        token: Bearer credential issued by the auth service.
        timeout: Per-request timeout in seconds.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one bound to
            an ASGI transport). Its ``base_url`` is used as-is.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._headers = {"Authorization": f"Bearer {token}"}

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = {**self._headers, **kwargs.pop("headers", {})}
        try:
            resp = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            # Covers connect errors and timeouts
            raise ConnectivityError(f"{method} {path} failed: {e!r}") from e

        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = {}
            raise error_from_response(resp.status_code, body)
        return resp.json()

    # -- conversations -------------------------------------------------------

    async def list_conversations(self) -> List[ConversationSummary]:
        data = await self._request("GET", "/conversations")
        return [ConversationSummary.model_validate(c) for c in data]

    async def create_conversation(self, recipient_id: str) -> Conversation:
        data = await self._request("POST", "/conversations", json={"recipientId": recipient_id})
        return Conversation.model_validate(data)

    async def list_messages(self, conversation_id: str, since: Optional[int] = None) -> List[Message]:
        params = {"since": since} if since is not None else None
        data = await self._request(
            "GET", f"/conversations/{conversation_id}/messages", params=params
        )
        return [Message.model_validate(m) for m in data]

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        connection_id: Optional[str] = None,
    ) -> Message:
        """Persist a message. ``connection_id`` suppresses the push to our own socket."""
        headers = {CONNECTION_ID_HEADER: connection_id} if connection_id else {}
        data = await self._request(
            "POST",
            "/messages",
            json={"conversationId": conversation_id, "text": text},
            headers=headers,
        )
        return Message.model_validate(data)

    # -- presence ------------------------------------------------------------

    async def heartbeat(self) -> float:
        data = await self._request("POST", "/presence/heartbeat")
        return data["lastHeartbeatAt"]

    async def active_users(self) -> Set[str]:
        return set(await self._request("GET", "/presence/active"))

    # -- users ---------------------------------------------------------------

    async def lookup_users(self, query: str) -> List[ParticipantProfile]:
        data = await self._request("GET", "/users/lookup", params={"q": query})
        return [ParticipantProfile.model_validate(p) for p in data]
