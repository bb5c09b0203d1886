from __future__ import annotations

import asyncio

import httpx
import pytest

from estate_chat.core.errors import RemoteStoreError, SubscriptionError
from estate_chat.main import app
from estate_chat.schemas.changes import ChangeEventRead, ChangeFeed, ChangeFilter
from estate_chat.services import conversation_service
from estate_chat.sync import ConversationSyncViewModel, HttpRemoteStore, MessageDraft, PollingSubscription

BASE_URL = "http://test/v1"


def _store(viewer_id: str, **kwargs) -> HttpRemoteStore:
    return HttpRemoteStore(
        viewer_id=viewer_id,
        base_url=BASE_URL,
        transport=kwargs.pop("transport", None) or httpx.ASGITransport(app=app),
        poll_interval_sec=kwargs.pop("poll_interval_sec", 60.0),
        **kwargs,
    )


@pytest.fixture()
def conversation_id(database, marketplace) -> str:
    with database() as db:
        payload, _ = conversation_service.open_conversation(
            db,
            viewer_id=marketplace["alice"],
            other_participant_id=marketplace["bob"],
            listing_id=marketplace["listing"],
        )
    return payload["id"]


def test_store_round_trip_through_rest_api(marketplace, conversation_id):
    async def scenario() -> None:
        async with _store(marketplace["alice"]) as alice, _store(marketplace["bob"]) as bob:
            sent = await alice.insert_message(
                MessageDraft(
                    conversation_id=conversation_id,
                    sender_id=marketplace["alice"],
                    recipient_id=marketplace["bob"],
                    client_message_id="http-store-0001",
                    body="Is the deposit negotiable?",
                )
            )
            assert sent.sender_id == marketplace["alice"]
            assert sent.created_at.tzinfo is not None

            [summary] = await bob.list_conversations(marketplace["bob"])
            assert summary.id == conversation_id
            assert summary.unread_count == 1
            assert summary.other_participant_id(marketplace["bob"]) == marketplace["alice"]
            assert summary.last_message.body == "Is the deposit negotiable?"

            assert [message.id for message in await bob.list_messages(conversation_id)] == [sent.id]
            assert await bob.unread_count() == 1
            assert await bob.update_read_status(conversation_id, marketplace["bob"]) == 1
            assert await bob.unread_count() == 0

    asyncio.run(scenario())


def test_error_envelopes_raise_remote_store_error(marketplace, conversation_id):
    async def scenario() -> None:
        async with _store("nobody") as stranger, _store(marketplace["carol"]) as carol:
            with pytest.raises(RemoteStoreError) as exc_info:
                await stranger.list_conversations("nobody")
            assert exc_info.value.status_code == 401
            assert exc_info.value.code == "unknown_viewer"

            with pytest.raises(RemoteStoreError) as exc_info:
                await carol.list_messages(conversation_id)
            assert exc_info.value.status_code == 404
            assert exc_info.value.code == "conversation_not_found"

    asyncio.run(scenario())


def test_transport_failures_and_bad_bodies_raise_remote_store_error():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def bad_gateway(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="bad gateway")

    def no_envelope(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    async def scenario() -> None:
        for handler, code in ((refuse, "transport_error"), (bad_gateway, "invalid_response"), (no_envelope, "invalid_response")):
            async with _store("alice", transport=httpx.MockTransport(handler)) as store:
                with pytest.raises(RemoteStoreError) as exc_info:
                    await store.list_conversations("alice")
                assert exc_info.value.code == code

    asyncio.run(scenario())


def test_subscription_delivers_changes_after_its_start(marketplace, conversation_id):
    async def scenario() -> None:
        received: list[ChangeEventRead] = []

        async def collect(event: ChangeEventRead) -> None:
            received.append(event)

        async with _store(marketplace["alice"]) as alice, _store(marketplace["bob"]) as bob:
            await alice.insert_message(
                MessageDraft(
                    conversation_id=conversation_id,
                    sender_id=marketplace["alice"],
                    recipient_id=marketplace["bob"],
                    client_message_id="before-subscribe-01",
                    body="earlier",
                )
            )
            subscription = await bob.subscribe(
                "messages",
                ChangeFilter(column="conversation_id", value=conversation_id),
                collect,
            )
            start_cursor = subscription.cursor
            assert await subscription.poll_once() == 0

            later = await alice.insert_message(
                MessageDraft(
                    conversation_id=conversation_id,
                    sender_id=marketplace["alice"],
                    recipient_id=marketplace["bob"],
                    client_message_id="after-subscribe-01",
                    body="later",
                )
            )
            assert await subscription.poll_once() == 1
            await subscription.close()

        assert [event.record["id"] for event in received] == [later.id]
        assert subscription.cursor > start_cursor
        assert subscription.closed

    asyncio.run(scenario())


def test_polling_subscription_reports_drop():
    async def scenario() -> None:
        errors: list[SubscriptionError] = []

        async def fetch(after_id: int | None) -> ChangeFeed:
            if after_id is None:
                return ChangeFeed(cursor=7)
            raise RemoteStoreError(code="transport_error", message="connection reset")

        async def ignore(event: ChangeEventRead) -> None:
            return None

        subscription = PollingSubscription(
            name="messages:conversation_id=eq.c1",
            fetch=fetch,
            callback=ignore,
            interval_sec=0,
            on_error=errors.append,
        )
        await subscription.start()
        for _ in range(100):
            if subscription.closed:
                break
            await asyncio.sleep(0)

        assert subscription.closed
        assert subscription.cursor == 7
        assert [error.code for error in errors] == ["subscription_dropped"]
        await subscription.close()

    asyncio.run(scenario())


def test_view_model_over_http_store(marketplace, conversation_id):
    async def scenario() -> None:
        async with _store(marketplace["alice"]) as store:
            view_model = ConversationSyncViewModel(store, viewer_id=marketplace["alice"])
            [summary] = await view_model.start()
            assert summary.other_participant.full_name == "Bob Owner"

            await view_model.select_conversation(conversation_id)
            entry = await view_model.send_message("Could I view it tomorrow?")

            assert entry.pending is False
            assert [message.id for message in view_model.messages] == [entry.id]
            assert view_model.conversations[0].last_message.body == "Could I view it tomorrow?"
            await view_model.close()

    asyncio.run(scenario())
