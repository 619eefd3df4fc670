"""End-to-end tests for the /ws socket endpoint.

Each ``websocket_connect`` session runs on its own portal, so these tests
exercise the router across independent connections the way real clients
use it.
"""
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from marketchat.main import app
from marketchat.presence import get_tracker
from marketchat.realtime.manager import message_router


client = TestClient(app)


def open_socket(token):
    return client.websocket_connect(f"/ws?token={token}")


def receive_connected(ws, user_id):
    """Helper to receive and validate the server greeting."""
    connected = ws.receive_json()
    assert connected["type"] == "connected"
    assert connected["userId"] == user_id
    assert connected["connectionId"]
    return connected["connectionId"]


def join(ws, conversation_id):
    ws.send_json({"type": "join_room", "conversationId": conversation_id})
    reply = ws.receive_json()
    assert reply == {"type": "room_joined", "conversationId": conversation_id}


@pytest.fixture
def conversation(store):
    return store.create_or_get_conversation("alice", "bob")


def test_missing_token_closes_with_4401():
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws"):
            pass
    assert exc_info.value.code == 4401


def test_invalid_token_closes_with_4401():
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with open_socket("not-a-jwt"):
            pass
    assert exc_info.value.code == 4401
    assert message_router.connections == {}


def test_connect_counts_as_heartbeat(make_token):
    with open_socket(make_token("alice")) as ws:
        receive_connected(ws, "alice")
        assert get_tracker().is_active("alice")


def test_join_room_requires_participant(make_token, conversation):
    with open_socket(make_token("mallory")) as ws:
        receive_connected(ws, "mallory")
        ws.send_json({"type": "join_room", "conversationId": conversation.id})
        error = ws.receive_json()

    assert error["type"] == "error"
    assert error["error"] == "forbidden"
    assert message_router.get_room_size(conversation.id) == 0


def test_join_unknown_conversation(make_token):
    with open_socket(make_token("alice")) as ws:
        receive_connected(ws, "alice")
        ws.send_json({"type": "join_room", "conversationId": "missing"})
        assert ws.receive_json()["error"] == "not_found"


def test_malformed_and_unknown_frames_keep_connection(make_token, conversation):
    with open_socket(make_token("alice")) as ws:
        receive_connected(ws, "alice")
        ws.send_text("{not json")
        assert ws.receive_json()["error"] == "invalid_message"
        ws.send_json({"type": "shout"})
        assert ws.receive_json()["error"] == "invalid_message"
        # Still usable
        join(ws, conversation.id)


def test_rest_send_fans_out_to_other_connections(make_token, auth_headers, conversation):
    with open_socket(make_token("alice")) as ws_a, open_socket(make_token("bob")) as ws_b:
        conn_a = receive_connected(ws_a, "alice")
        receive_connected(ws_b, "bob")
        join(ws_a, conversation.id)
        join(ws_b, conversation.id)

        resp = client.post(
            "/messages",
            json={"conversationId": conversation.id, "text": "Hello"},
            headers={**auth_headers("alice"), "X-Connection-Id": conn_a},
        )
        assert resp.status_code == 201

        pushed = ws_b.receive_json()
        assert pushed["type"] == "receive_message"
        assert pushed["message"] == resp.json()

        # The origin connection got nothing before this reply
        ws_a.send_json({"type": "leave_room"})
        assert ws_a.receive_json() == {"type": "room_left", "conversationId": conversation.id}


def test_socket_send_is_gated_on_persistence(test_config, make_token, auth_headers, conversation):
    test_config.messaging.publish_on_write = False

    with open_socket(make_token("alice")) as ws_a, open_socket(make_token("bob")) as ws_b:
        receive_connected(ws_a, "alice")
        receive_connected(ws_b, "bob")
        join(ws_a, conversation.id)
        join(ws_b, conversation.id)

        # A message that was never stored is rejected, not broadcast
        ws_a.send_json({
            "type": "send_message",
            "conversationId": conversation.id,
            "message": {"id": "forged", "text": "spoofed"},
        })
        assert ws_a.receive_json()["error"] == "not_found"

        resp = client.post(
            "/messages",
            json={"conversationId": conversation.id, "text": "Hello"},
            headers=auth_headers("alice"),
        )
        stored = resp.json()

        # The client's copy of the text is ignored; the stored record is sent
        ws_a.send_json({
            "type": "send_message",
            "conversationId": conversation.id,
            "message": {**stored, "text": "tampered"},
        })
        pushed = ws_b.receive_json()
        assert pushed["message"] == stored


def test_rest_and_socket_publish_deliver_once(make_token, auth_headers, conversation):
    with open_socket(make_token("alice")) as ws_a, open_socket(make_token("bob")) as ws_b:
        conn_a = receive_connected(ws_a, "alice")
        receive_connected(ws_b, "bob")
        join(ws_a, conversation.id)
        join(ws_b, conversation.id)

        stored = client.post(
            "/messages",
            json={"conversationId": conversation.id, "text": "Hello"},
            headers={**auth_headers("alice"), "X-Connection-Id": conn_a},
        ).json()
        ws_a.send_json({"type": "send_message", "conversationId": conversation.id, "message": stored})

        second = client.post(
            "/messages",
            json={"conversationId": conversation.id, "text": "Second"},
            headers={**auth_headers("alice"), "X-Connection-Id": conn_a},
        ).json()

        # Bob sees each message exactly once, in order
        assert ws_b.receive_json()["message"]["id"] == stored["id"]
        assert ws_b.receive_json()["message"]["id"] == second["id"]


def test_disconnect_leaves_room(make_token, conversation):
    with open_socket(make_token("alice")) as ws:
        receive_connected(ws, "alice")
        join(ws, conversation.id)
        assert message_router.get_room_size(conversation.id) == 1

    assert message_router.get_room_size(conversation.id) == 0
