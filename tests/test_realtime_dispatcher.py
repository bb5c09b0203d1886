from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import json

from sqlalchemy import select

import estate_chat.db.session as db_session
from estate_chat.models import ChangeEvent
from estate_chat.realtime.dispatcher import MAX_BACKOFF_SEC, RealtimeDispatcher, retry_delay


class _FakePublisher:
    def __init__(self, *, failures: int = 0) -> None:
        self._remaining_failures = failures
        self.published_event_ids: list[str] = []

    async def publish(self, event: ChangeEvent) -> int:
        if self._remaining_failures > 0:
            self._remaining_failures -= 1
            raise RuntimeError("simulated publish failure")
        self.published_event_ids.append(event.event_id)
        return 1


def _create_event(conversation_id: str = "conversation-1") -> ChangeEvent:
    record = {
        "id": "msg-1",
        "conversation_id": conversation_id,
        "sender_id": "profile-a",
        "recipient_id": "profile-b",
        "body": "hello",
        "created_at": datetime.now(UTC).isoformat(),
    }
    return ChangeEvent(
        table_name="messages",
        event_type="INSERT",
        conversation_id=conversation_id,
        participant_one="profile-a",
        participant_two="profile-b",
        record_json=json.dumps(record),
        next_attempt_at=datetime.now(UTC),
    )


def _dispatcher(publisher: _FakePublisher) -> RealtimeDispatcher:
    return RealtimeDispatcher(
        publisher=publisher,
        session_factory=db_session.SessionLocal,
        poll_interval_sec=0.01,
        batch_size=50,
    )


def test_dispatcher_marks_events_as_published(database):
    with database() as db:
        db.add(_create_event())
        db.commit()

    publisher = _FakePublisher()
    processed = asyncio.run(_dispatcher(publisher).process_once())
    assert processed == 1

    with database() as db:
        event = db.scalar(select(ChangeEvent))
        assert event is not None
        assert event.published_at is not None
        assert event.attempts == 0
        assert event.event_id in publisher.published_event_ids

    assert asyncio.run(_dispatcher(publisher).process_once()) == 0


def test_dispatcher_retries_after_publish_failure(database):
    with database() as db:
        db.add(_create_event())
        db.commit()

    publisher = _FakePublisher(failures=1)
    dispatcher = _dispatcher(publisher)
    first_processed = asyncio.run(dispatcher.process_once())
    assert first_processed == 1

    with database() as db:
        event = db.scalar(select(ChangeEvent))
        assert event is not None
        assert event.published_at is None
        assert event.attempts == 1
        assert event.last_error == "simulated publish failure"
        now = datetime.now(UTC)
        if event.next_attempt_at.tzinfo is None:
            now = now.replace(tzinfo=None)
        assert event.next_attempt_at > now
        event.next_attempt_at = now - timedelta(seconds=1)
        db.commit()

    second_processed = asyncio.run(dispatcher.process_once())
    assert second_processed == 1

    with database() as db:
        event = db.scalar(select(ChangeEvent))
        assert event is not None
        assert event.published_at is not None
        assert event.attempts == 1
        assert event.last_error is None
        assert event.event_id in publisher.published_event_ids


def test_dispatcher_publishes_in_cursor_order(database):
    with database() as db:
        db.add_all([_create_event("conversation-1"), _create_event("conversation-2"), _create_event("conversation-3")])
        db.commit()
        expected = [event.event_id for event in db.scalars(select(ChangeEvent).order_by(ChangeEvent.id.asc()))]

    publisher = _FakePublisher()
    assert asyncio.run(_dispatcher(publisher).process_once()) == 3
    assert publisher.published_event_ids == expected


def test_retry_delay_backs_off_exponentially_up_to_cap():
    assert retry_delay(1) == 0.5
    assert retry_delay(2) == 1.0
    assert retry_delay(3) == 2.0
    assert retry_delay(20) == MAX_BACKOFF_SEC
