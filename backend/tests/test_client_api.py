"""MessagingAPI against the in-process app over httpx's ASGI transport."""
import httpx
import pytest

from marketchat.client.api import MessagingAPI
from marketchat.errors import ConnectivityError, Forbidden, InvalidMessage, NotFound, Unauthorized
from marketchat.main import app


def make_api(token):
    transport = httpx.ASGITransport(app=app)
    return MessagingAPI("http://test", token, client=httpx.AsyncClient(transport=transport, base_url="http://test"))


@pytest.mark.asyncio
async def test_conversation_and_message_round_trip(make_token):
    alice = make_api(make_token("alice"))
    bob = make_api(make_token("bob"))
    try:
        convo = await alice.create_conversation("bob")
        sent = await alice.send_message(convo.id, "Still have the armchair?")
        listed = await bob.list_messages(convo.id)
        summaries = await bob.list_conversations()

        assert listed == [sent]
        assert summaries[0].id == convo.id
        assert summaries[0].otherParticipant.id == "alice"
        assert summaries[0].lastMessageSeq == sent.seq
        assert await bob.list_messages(convo.id, since=sent.seq) == []
    finally:
        await alice.aclose()
        await bob.aclose()


@pytest.mark.asyncio
async def test_presence_calls(make_token):
    api = make_api(make_token("alice"))
    try:
        assert await api.heartbeat() > 0
        assert await api.active_users() == {"alice"}
    finally:
        await api.aclose()


@pytest.mark.asyncio
async def test_error_responses_map_to_domain_errors(make_token):
    alice = make_api(make_token("alice"))
    mallory = make_api(make_token("mallory"))
    anonymous = make_api("bad-token")
    try:
        convo = await alice.create_conversation("bob")
        with pytest.raises(InvalidMessage):
            await alice.send_message(convo.id, "   ")
        with pytest.raises(Forbidden):
            await mallory.list_messages(convo.id)
        with pytest.raises(Forbidden):
            await mallory.send_message(convo.id, "hi")
        with pytest.raises(NotFound):
            await alice.list_messages("missing")
        with pytest.raises(Unauthorized):
            await anonymous.list_conversations()
    finally:
        for api in (alice, mallory, anonymous):
            await api.aclose()


@pytest.mark.asyncio
async def test_network_failure_is_connectivity_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="http://test")
    api = MessagingAPI("http://test", "token", client=client)
    try:
        with pytest.raises(ConnectivityError):
            await api.list_conversations()
    finally:
        await api.aclose()


@pytest.mark.asyncio
async def test_connection_id_header_sent():
    seen = {}

    def handler(request):
        seen.update(request.headers)
        return httpx.Response(201, json={
            "id": "m1", "conversationId": "c1", "senderId": "alice",
            "text": "hi", "createdAt": 1.0, "seq": 1,
        })

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://test")
    api = MessagingAPI("http://test", "token", client=client)
    try:
        message = await api.send_message("c1", "hi", connection_id="conn-1")
    finally:
        await api.aclose()

    assert message.id == "m1"
    assert seen["x-connection-id"] == "conn-1"
    assert seen["authorization"] == "Bearer token"
