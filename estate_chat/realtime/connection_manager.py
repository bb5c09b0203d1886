from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from fastapi import WebSocket

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    connection_id: str
    viewer_id: str
    websocket: WebSocket
    outgoing_queue: asyncio.Queue[dict[str, object]]
    writer_task: asyncio.Task[None] | None
    topics: set[str] = field(default_factory=set)


class ConnectionManager:
    """Tracks websocket connections and the change topics each one listens to.

    A topic looks like ``messages:conversation_id=eq.<id>`` or
    ``conversations:participant_id=eq.<id>``.
    """

    def __init__(self, *, max_subscriptions_per_connection: int, queue_size: int = 200) -> None:
        self._max_subscriptions_per_connection = max_subscriptions_per_connection
        self._queue_size = queue_size
        self._connections: dict[str, ConnectionContext] = {}
        self._connections_by_topic: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def register(self, websocket: WebSocket, *, viewer_id: str) -> ConnectionContext:
        connection_id = str(uuid.uuid4())
        queue: asyncio.Queue[dict[str, object]] = asyncio.Queue(maxsize=self._queue_size)
        context = ConnectionContext(
            connection_id=connection_id,
            viewer_id=viewer_id,
            websocket=websocket,
            outgoing_queue=queue,
            writer_task=None,
        )

        async with self._lock:
            self._connections[connection_id] = context
            context.writer_task = asyncio.create_task(self._writer_loop(connection_id))
        logger.info("WebSocket connection registered connection_id=%s viewer_id=%s", connection_id, viewer_id)
        return context

    def _drop_topic_locked(self, topic: str, connection_id: str) -> None:
        topic_connections = self._connections_by_topic.get(topic)
        if topic_connections is None:
            return
        topic_connections.discard(connection_id)
        if not topic_connections:
            self._connections_by_topic.pop(topic, None)

    async def unregister(self, connection_id: str, *, close_socket: bool = True, close_code: int = 1000) -> None:
        async with self._lock:
            context = self._connections.pop(connection_id, None)
            if context is None:
                return
            for topic in list(context.topics):
                self._drop_topic_locked(topic, connection_id)
            context.topics.clear()

        current_task = asyncio.current_task()
        if context.writer_task is not None and context.writer_task is not current_task:
            context.writer_task.cancel()
            try:
                await context.writer_task
            except asyncio.CancelledError:
                pass

        if close_socket:
            try:
                await context.websocket.close(code=close_code)
            except Exception:
                logger.debug("WebSocket already closed connection_id=%s", connection_id)
        logger.info("WebSocket connection unregistered connection_id=%s viewer_id=%s", connection_id, context.viewer_id)

    async def _writer_loop(self, connection_id: str) -> None:
        while True:
            async with self._lock:
                context = self._connections.get(connection_id)
            if context is None:
                return

            try:
                payload = await context.outgoing_queue.get()
                await context.websocket.send_json(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "WebSocket writer failed connection_id=%s viewer_id=%s error=%s",
                    connection_id,
                    context.viewer_id,
                    exc,
                )
                await self.unregister(connection_id, close_socket=False)
                return

    async def send(self, connection_id: str, payload: dict[str, object]) -> bool:
        async with self._lock:
            context = self._connections.get(connection_id)

        if context is None:
            return False

        try:
            context.outgoing_queue.put_nowait(payload)
            return True
        except asyncio.QueueFull:
            logger.warning("Slow WebSocket client disconnected connection_id=%s", connection_id)
            await self.unregister(connection_id, close_socket=True, close_code=1013)
            return False

    async def fanout(self, topics: list[str], payload: dict[str, object]) -> int:
        async with self._lock:
            connection_ids: set[str] = set()
            for topic in topics:
                connection_ids.update(self._connections_by_topic.get(topic, set()))

        # A connection subscribed to several matching topics gets the frame once.
        delivered = 0
        for connection_id in sorted(connection_ids):
            if await self.send(connection_id, payload):
                delivered += 1
        return delivered

    async def subscribe(self, connection_id: str, topics: list[str]) -> None:
        normalized = list(dict.fromkeys(topics))
        if not normalized:
            return

        async with self._lock:
            context = self._connections.get(connection_id)
            if context is None:
                return

            projected_total = len(context.topics.union(normalized))
            if projected_total > self._max_subscriptions_per_connection:
                raise ValueError("Subscription limit exceeded")

            for topic in normalized:
                context.topics.add(topic)
                self._connections_by_topic.setdefault(topic, set()).add(connection_id)

    async def unsubscribe(self, connection_id: str, topics: list[str]) -> None:
        normalized = list(dict.fromkeys(topics))
        if not normalized:
            return

        async with self._lock:
            context = self._connections.get(connection_id)
            if context is None:
                return

            for topic in normalized:
                context.topics.discard(topic)
                self._drop_topic_locked(topic, connection_id)

    async def connection_count(self) -> int:
        async with self._lock:
            return len(self._connections)
