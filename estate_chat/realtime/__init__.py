from estate_chat.realtime.connection_manager import ConnectionManager
from estate_chat.realtime.dispatcher import RealtimeDispatcher
from estate_chat.realtime.publisher import RealtimePublisher

__all__ = [
    "ConnectionManager",
    "RealtimeDispatcher",
    "RealtimePublisher",
]
