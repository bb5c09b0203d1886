from __future__ import annotations


def _headers(viewer_id: str) -> dict[str, str]:
    return {"X-Viewer-Id": viewer_id}


def _open_conversation(client, viewer_id: str, other_id: str, listing_id: str) -> str:
    response = client.post(
        "/v1/conversations",
        json={"other_participant_id": other_id, "listing_id": listing_id},
        headers=_headers(viewer_id),
    )
    assert response.status_code in (200, 201)
    return response.json()["data"]["id"]


def test_message_send_and_idempotency(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])
    payload = {"client_message_id": "client-msg-0001", "body": "Is the flat still available?"}

    first_send = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json=payload,
        headers=_headers(marketplace["alice"]),
    )
    assert first_send.status_code == 201

    second_send = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json=payload,
        headers=_headers(marketplace["alice"]),
    )
    assert second_send.status_code == 200

    first_message = first_send.json()["data"]
    second_message = second_send.json()["data"]
    assert first_message["id"] == second_message["id"]
    assert first_message["sender_id"] == marketplace["alice"]
    assert first_message["recipient_id"] == marketplace["bob"]
    assert first_message["is_read"] is False
    assert first_message["created_at"].endswith("Z") or first_message["created_at"].endswith("+00:00")

    listed = client.get(
        f"/v1/conversations/{conversation_id}/messages",
        headers=_headers(marketplace["bob"]),
    )
    assert listed.status_code == 200
    assert [message["id"] for message in listed.json()["data"]["messages"]] == [first_message["id"]]


def test_client_message_id_reuse_in_other_conversation_conflicts(client, marketplace):
    with_bob = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])
    with_carol = _open_conversation(client, marketplace["alice"], marketplace["carol"], marketplace["listing"])
    payload = {"client_message_id": "shared-key-0001", "body": "hello"}

    assert client.post(
        f"/v1/conversations/{with_bob}/messages", json=payload, headers=_headers(marketplace["alice"])
    ).status_code == 201

    conflict = client.post(
        f"/v1/conversations/{with_carol}/messages", json=payload, headers=_headers(marketplace["alice"])
    )
    assert conflict.status_code == 409
    assert conflict.json()["error"]["code"] == "client_message_conflict"


def test_send_rejects_blank_and_oversized_bodies(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])

    blank = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"client_message_id": "client-msg-0002", "body": "   "},
        headers=_headers(marketplace["alice"]),
    )
    assert blank.status_code == 422
    assert blank.json()["error"]["code"] == "validation_error"

    oversized = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"client_message_id": "client-msg-0003", "body": "x" * 2001},
        headers=_headers(marketplace["alice"]),
    )
    assert oversized.status_code == 422


def test_messages_are_listed_oldest_first(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])
    sent_ids = []
    for index, (sender, body) in enumerate(
        [("alice", "Hi, is parking included?"), ("bob", "Yes, one spot"), ("alice", "Great, thanks")]
    ):
        response = client.post(
            f"/v1/conversations/{conversation_id}/messages",
            json={"client_message_id": f"ordered-msg-{index:04d}", "body": body},
            headers=_headers(marketplace[sender]),
        )
        assert response.status_code == 201
        sent_ids.append(response.json()["data"]["id"])

    listed = client.get(
        f"/v1/conversations/{conversation_id}/messages",
        headers=_headers(marketplace["alice"]),
    ).json()["data"]["messages"]
    assert [message["id"] for message in listed] == sent_ids
    assert [message["body"] for message in listed][0] == "Hi, is parking included?"


def test_mark_read_clears_unread_for_recipient_only(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])
    for index in range(2):
        client.post(
            f"/v1/conversations/{conversation_id}/messages",
            json={"client_message_id": f"unread-msg-{index:04d}", "body": f"question {index}"},
            headers=_headers(marketplace["alice"]),
        )

    before = client.get("/v1/messages/unread-count", headers=_headers(marketplace["bob"]))
    assert before.json()["data"] == {"unread_count": 2}
    assert client.get("/v1/messages/unread-count", headers=_headers(marketplace["alice"])).json()["data"] == {
        "unread_count": 0
    }

    # The sender marking read must not touch the recipient's unread messages.
    by_sender = client.post(f"/v1/conversations/{conversation_id}/read", headers=_headers(marketplace["alice"]))
    assert by_sender.json()["data"] == {"conversation_id": conversation_id, "updated": 0}

    by_recipient = client.post(f"/v1/conversations/{conversation_id}/read", headers=_headers(marketplace["bob"]))
    assert by_recipient.status_code == 200
    assert by_recipient.json()["data"] == {"conversation_id": conversation_id, "updated": 2}

    after = client.get("/v1/messages/unread-count", headers=_headers(marketplace["bob"]))
    assert after.json()["data"] == {"unread_count": 0}


def test_non_participant_cannot_read_or_send(client, marketplace):
    conversation_id = _open_conversation(client, marketplace["alice"], marketplace["bob"], marketplace["listing"])

    listed = client.get(f"/v1/conversations/{conversation_id}/messages", headers=_headers(marketplace["carol"]))
    assert listed.status_code == 404
    assert listed.json()["error"]["code"] == "conversation_not_found"

    sent = client.post(
        f"/v1/conversations/{conversation_id}/messages",
        json={"client_message_id": "intruder-0001", "body": "hello"},
        headers=_headers(marketplace["carol"]),
    )
    assert sent.status_code == 404

    marked = client.post(f"/v1/conversations/{conversation_id}/read", headers=_headers(marketplace["carol"]))
    assert marked.status_code == 404
