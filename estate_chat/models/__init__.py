from estate_chat.models.change_event import ChangeEvent
from estate_chat.models.conversation import Conversation
from estate_chat.models.listing import Listing
from estate_chat.models.message import Message
from estate_chat.models.profile import Profile

__all__ = [
    "ChangeEvent",
    "Conversation",
    "Listing",
    "Message",
    "Profile",
]
