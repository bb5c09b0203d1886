from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
import logging
from typing import Callable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from estate_chat.models import ChangeEvent

logger = logging.getLogger(__name__)

MAX_BACKOFF_SEC = 30.0
BASE_BACKOFF_SEC = 0.5


class EventPublisher(Protocol):
    async def publish(self, event: ChangeEvent) -> int: ...


def retry_delay(attempts: int) -> float:
    return min(MAX_BACKOFF_SEC, BASE_BACKOFF_SEC * (2 ** (attempts - 1)))


class RealtimeDispatcher:
    """Drains unpublished change events to websocket subscribers."""

    def __init__(
        self,
        *,
        publisher: EventPublisher,
        session_factory: Callable[[], Session],
        poll_interval_sec: float,
        batch_size: int,
    ) -> None:
        self._publisher = publisher
        self._session_factory = session_factory
        self._poll_interval_sec = poll_interval_sec
        self._batch_size = batch_size
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Change dispatcher started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Change dispatcher stopped")

    async def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                processed = await self.process_once()
                if processed == 0:
                    await asyncio.sleep(self._poll_interval_sec)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Change dispatcher crashed")
            raise

    async def process_once(self) -> int:
        now = datetime.now(UTC)
        with self._session_factory() as db:
            events = list(
                db.scalars(
                    select(ChangeEvent)
                    .where(ChangeEvent.published_at.is_(None))
                    .where(ChangeEvent.next_attempt_at <= now)
                    .order_by(ChangeEvent.id.asc())
                    .limit(self._batch_size)
                ).all()
            )
            if not events:
                return 0

            for event in events:
                try:
                    await self._publisher.publish(event)
                except Exception as exc:
                    event.attempts += 1
                    event.next_attempt_at = datetime.now(UTC) + timedelta(seconds=retry_delay(event.attempts))
                    event.last_error = str(exc)[:1000]
                    logger.warning(
                        "Change event publish failed event_id=%s attempts=%s error=%s",
                        event.event_id,
                        event.attempts,
                        exc,
                    )
                    continue
                event.published_at = datetime.now(UTC)
                event.last_error = None

            db.commit()
            logger.debug("Change dispatcher batch processed count=%s", len(events))
            return len(events)
