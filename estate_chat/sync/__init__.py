from estate_chat.sync.http_store import HttpRemoteStore, PollingSubscription
from estate_chat.sync.remote import MessageDraft, RemoteStore, Subscription
from estate_chat.sync.state import LoadState, MessageEntry
from estate_chat.sync.view_model import ConversationSyncViewModel

__all__ = [
    "ConversationSyncViewModel",
    "HttpRemoteStore",
    "LoadState",
    "MessageDraft",
    "MessageEntry",
    "PollingSubscription",
    "RemoteStore",
    "Subscription",
]
