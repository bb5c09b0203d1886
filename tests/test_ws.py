from __future__ import annotations

import pytest
from starlette.websockets import WebSocketDisconnect


def _headers(viewer_id: str) -> dict[str, str]:
    return {"X-Viewer-Id": viewer_id}


def _open_conversation(client, viewer_id: str, other_id: str, listing_id: str) -> str:
    response = client.post(
        "/v1/conversations",
        json={"other_participant_id": other_id, "listing_id": listing_id},
        headers=_headers(viewer_id),
    )
    assert response.status_code == 201
    return response.json()["data"]["id"]


def test_ws_rejects_unknown_viewer(client, marketplace):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/v1/ws?viewer_id=nobody") as websocket:
            websocket.receive_json()


def test_ws_subscribe_forbidden_for_non_participant(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])

    with client.websocket_connect(f"/v1/ws?viewer_id={marketplace['carol']}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connection.welcome"
        assert welcome["viewer_id"] == marketplace["carol"]

        websocket.send_json({"op": "subscribe", "table": "messages", "filter": {"conversation_id": conversation_id}})
        response = websocket.receive_json()
        assert response["type"] == "error"
        assert response["error"]["code"] == "FORBIDDEN_FILTER"

        websocket.send_json({"op": "subscribe", "table": "conversations", "filter": {"participant_id": marketplace["bob"]}})
        response = websocket.receive_json()
        assert response["error"]["code"] == "FORBIDDEN_FILTER"


def test_ws_rejects_malformed_commands(client, marketplace):
    with client.websocket_connect("/v1/ws", headers=_headers(marketplace["alice"])) as websocket:
        assert websocket.receive_json()["type"] == "connection.welcome"

        websocket.send_text("not json")
        assert websocket.receive_json()["error"]["code"] == "INVALID_COMMAND"

        websocket.send_json({"op": "subscribe", "table": "messages", "filter": {}})
        assert websocket.receive_json()["error"]["code"] == "INVALID_COMMAND"

        websocket.send_json({"op": "ping", "ts": 42})
        assert websocket.receive_json() == {"type": "pong", "ts": 42}


def test_ws_delivers_change_events_to_subscribers(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])

    with client.websocket_connect(f"/v1/ws?viewer_id={marketplace['bob']}") as websocket:
        welcome = websocket.receive_json()
        assert welcome["type"] == "connection.welcome"

        websocket.send_json({"op": "subscribe", "table": "messages", "filter": {"conversation_id": conversation_id}})
        ack = websocket.receive_json()
        assert ack["type"] == "ack"
        assert ack["op"] == "subscribe"
        assert ack["ok"] is True
        assert ack["details"] == {"topic": f"messages:conversation_id=eq.{conversation_id}"}

        websocket.send_json(
            {"op": "subscribe", "table": "conversations", "filter": {"participant_id": marketplace["bob"]}}
        )
        assert websocket.receive_json()["type"] == "ack"

        send_payload = {"client_message_id": "client-msg-realtime-0001", "body": "hello over ws"}
        send_response = client.post(
            f"/v1/conversations/{conversation_id}/messages",
            json=send_payload,
            headers=_headers(marketplace["alice"]),
        )
        assert send_response.status_code == 201

        # The conversation insert may still be in flight when the subscription lands.
        frames: dict[str, dict] = {}
        while not {"messages.insert", "conversations.update"} <= frames.keys():
            frame = websocket.receive_json()
            frames[frame["type"]] = frame

        message_event = frames["messages.insert"]
        assert message_event["conversation_id"] == conversation_id
        assert message_event["record"]["body"] == send_payload["body"]
        assert message_event["record"]["sender_id"] == marketplace["alice"]
        assert isinstance(message_event["cursor"], int)

        conversation_event = frames["conversations.update"]
        assert conversation_event["record"]["id"] == conversation_id
