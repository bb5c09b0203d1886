from __future__ import annotations

import logging

from estate_chat.models import ChangeEvent
from estate_chat.realtime.connection_manager import ConnectionManager
from estate_chat.realtime.protocol import change_frame
from estate_chat.services import change_service

logger = logging.getLogger(__name__)


class RealtimePublisher:
    def __init__(self, connection_manager: ConnectionManager) -> None:
        self._connection_manager = connection_manager

    async def publish(self, event: ChangeEvent) -> int:
        serialized = change_service.serialize_event(event)
        frame = change_frame(serialized)
        topics = change_service.event_topics(event)
        delivered = await self._connection_manager.fanout(topics, frame)
        logger.debug(
            "Change event published event_id=%s table=%s type=%s conversation_id=%s delivered=%s",
            event.event_id,
            event.table_name,
            event.event_type,
            event.conversation_id,
            delivered,
        )
        return delivered
