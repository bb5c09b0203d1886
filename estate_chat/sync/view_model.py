from __future__ import annotations

import asyncio
import logging
from typing import Callable, Coroutine

from estate_chat.core.errors import FetchError, RemoteStoreError, SendError, SubscriptionError, SyncError
from estate_chat.core.settings import get_settings
from estate_chat.schemas.changes import ChangeEventRead, ChangeFilter
from estate_chat.schemas.conversations import ConversationSummary
from estate_chat.schemas.messages import LastMessagePreview, MessageRead
from estate_chat.sync.remote import MessageDraft, RemoteStore, Subscription
from estate_chat.sync.state import LoadState, MessageEntry

logger = logging.getLogger(__name__)


class ConversationSyncViewModel:
    """One viewer's conversations and the active conversation's messages.

    Three inputs feed this state: bulk fetches, pushed change events and optimistic
    local sends. Every message fetch is tagged with a generation; a result whose
    generation is no longer current, or whose conversation is no longer active,
    is dropped instead of applied.
    """

    def __init__(
        self,
        store: RemoteStore,
        *,
        viewer_id: str,
        message_max_length: int | None = None,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self._store = store
        self.viewer_id = viewer_id
        self._message_max_length = message_max_length or get_settings().message_max_length
        self._on_change = on_change

        self._conversations: list[ConversationSummary] = []
        self._messages: list[MessageEntry] = []
        # Sends awaiting acknowledgment, in issuance order, keyed by pending id.
        self._in_flight: dict[str, MessageEntry] = {}
        self._active_id: str | None = None
        self._states: dict[str, LoadState] = {}

        self._message_generation = 0
        self._list_generation = 0
        self._applied_list_generation = 0

        self._conversation_subscription: Subscription | None = None
        self._message_subscription: Subscription | None = None
        self._background: set[asyncio.Task[None]] = set()

        self.last_error: SyncError | None = None
        self.stale = False

    @property
    def conversations(self) -> list[ConversationSummary]:
        return list(self._conversations)

    @property
    def messages(self) -> list[MessageEntry]:
        return list(self._messages)

    @property
    def active_conversation_id(self) -> str | None:
        return self._active_id

    @property
    def active_conversation(self) -> ConversationSummary | None:
        return self._find_conversation(self._active_id)

    @property
    def total_unread(self) -> int:
        return sum(conversation.unread_count for conversation in self._conversations)

    def load_state(self, conversation_id: str) -> LoadState:
        return self._states.get(conversation_id, LoadState.IDLE)

    # Lifecycle

    async def start(self) -> list[ConversationSummary]:
        await self._subscribe_conversations()
        return await self.load_conversations()

    async def refresh(self) -> list[ConversationSummary]:
        if self._conversation_subscription is None or self._conversation_subscription.closed:
            await self._subscribe_conversations()
        active_id = self._active_id
        if active_id is not None and (self._message_subscription is None or self._message_subscription.closed):
            await self._retarget_message_subscription(active_id)
        self.stale = not self._subscriptions_live()

        conversations = await self.load_conversations()
        if active_id is not None and active_id == self._active_id:
            await self._fetch_messages(active_id, self._begin_loading(active_id))
        return conversations

    async def close(self) -> None:
        for subscription in (self._message_subscription, self._conversation_subscription):
            if subscription is not None:
                await subscription.close()
        self._message_subscription = None
        self._conversation_subscription = None

        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()
        logger.debug("View-model closed viewer_id=%s", self.viewer_id)

    # Operations

    async def load_conversations(self) -> list[ConversationSummary]:
        self._list_generation += 1
        generation = self._list_generation
        try:
            rows = await self._store.list_conversations(self.viewer_id)
        except RemoteStoreError as exc:
            raise self._fetch_failed("conversations_unavailable", exc) from exc

        if generation < self._applied_list_generation:
            logger.debug("Discarding older conversation list generation=%s", generation)
            return self.conversations

        self._applied_list_generation = generation
        if self._active_id is not None:
            # The open conversation reads as seen even before the store acknowledges it.
            rows = [
                row.model_copy(update={"unread_count": 0}) if row.id == self._active_id else row
                for row in rows
            ]
        self._conversations = _sorted_by_activity(rows)
        logger.debug("Conversations loaded viewer_id=%s count=%s", self.viewer_id, len(rows))
        self._notify()
        return self.conversations

    async def select_conversation(self, conversation_id: str) -> list[MessageEntry]:
        previous_id = self._active_id
        self._active_id = conversation_id
        self._messages = [entry for entry in self._in_flight.values() if entry.conversation_id == conversation_id]
        if previous_id is not None and previous_id != conversation_id:
            self._states[previous_id] = LoadState.IDLE
        generation = self._begin_loading(conversation_id)
        self._zero_unread(conversation_id)
        self._notify()
        logger.info("Conversation selected viewer_id=%s conversation_id=%s", self.viewer_id, conversation_id)

        self._spawn(self._acknowledge_read(conversation_id))
        await self._retarget_message_subscription(conversation_id)
        if not self._is_current(conversation_id, generation):
            return self.messages
        return await self._fetch_messages(conversation_id, generation)

    async def send_message(self, text: str, *, client_message_id: str | None = None) -> MessageEntry:
        """Send ``text`` to the active conversation.

        Pass the ``client_message_id`` of a failed send to retry it; the store treats
        the repeat as the same message if the first attempt was committed.
        """
        body = text.strip()
        if not body:
            raise ValueError("Message text must not be empty")
        if len(body) > self._message_max_length:
            raise ValueError(f"Message text must be at most {self._message_max_length} characters")
        if client_message_id is not None and not 8 <= len(client_message_id) <= 64:
            raise ValueError("client_message_id must be 8 to 64 characters")

        conversation = self.active_conversation
        if conversation is None:
            raise SyncError(code="no_active_conversation", message="Select a loaded conversation before sending")

        pending = MessageEntry.pending_send(
            conversation_id=conversation.id,
            sender_id=self.viewer_id,
            recipient_id=conversation.other_participant_id(self.viewer_id),
            body=body,
            client_message_id=client_message_id,
        )
        self._in_flight[pending.id] = pending
        self._messages.append(pending)
        self._notify()

        draft = MessageDraft(
            conversation_id=pending.conversation_id,
            sender_id=pending.sender_id,
            recipient_id=pending.recipient_id,
            client_message_id=pending.client_message_id,
            body=body,
        )
        try:
            committed = await self._store.insert_message(draft)
        except RemoteStoreError as exc:
            self._messages = [entry for entry in self._messages if entry.id != pending.id]
            self._notify()
            logger.warning(
                "Send failed conversation_id=%s client_message_id=%s error=%s",
                pending.conversation_id,
                pending.client_message_id,
                exc.message,
            )
            raise SendError(code="send_failed", message=exc.message, text=text, pending=pending) from exc
        finally:
            self._in_flight.pop(pending.id, None)

        entry = MessageEntry.committed(committed)
        if not self._replace_pending(pending, entry) and entry.conversation_id == self._active_id:
            if all(other.id != entry.id for other in self._messages):
                self._messages.append(entry)
        self._record_last_message(entry)
        self._notify()
        return entry

    async def on_remote_message_event(self, event: ChangeEventRead) -> None:
        if event.table != "messages" or event.event_type != "INSERT":
            return
        if event.conversation_id != self._active_id:
            logger.debug("Ignoring message event for inactive conversation_id=%s", event.conversation_id)
            return
        if event.record.get("sender_id") == self.viewer_id:
            # Own sends are already shown through the optimistic entry.
            logger.debug("Ignoring echo of own message event_id=%s", event.event_id)
            return

        conversation_id = event.conversation_id
        generation = self._begin_loading(conversation_id)
        self._zero_unread(conversation_id)
        self._spawn(self._acknowledge_read(conversation_id))
        await self._fetch_messages(conversation_id, generation)

    async def on_remote_conversation_event(self, event: ChangeEventRead) -> None:
        logger.debug("Conversation change event_id=%s type=%s", event.event_id, event.event_type)
        await self.load_conversations()

    # Internals

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _spawn(self, coroutine: Coroutine[object, object, None]) -> None:
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _find_conversation(self, conversation_id: str | None) -> ConversationSummary | None:
        if conversation_id is None:
            return None
        return next((row for row in self._conversations if row.id == conversation_id), None)

    def _fetch_failed(self, code: str, exc: RemoteStoreError) -> FetchError:
        error = FetchError(code=code, message=exc.message)
        self.last_error = error
        logger.warning("Fetch failed viewer_id=%s code=%s error=%s", self.viewer_id, code, exc.message)
        self._notify()
        return error

    def _begin_loading(self, conversation_id: str) -> int:
        self._message_generation += 1
        self._states[conversation_id] = LoadState.LOADING
        return self._message_generation

    def _is_current(self, conversation_id: str, generation: int) -> bool:
        return generation == self._message_generation and conversation_id == self._active_id

    async def _fetch_messages(self, conversation_id: str, generation: int) -> list[MessageEntry]:
        try:
            rows = await self._store.list_messages(conversation_id)
        except RemoteStoreError as exc:
            if not self._is_current(conversation_id, generation):
                logger.debug("Dropping failure of superseded fetch conversation_id=%s", conversation_id)
                return self.messages
            self._states[conversation_id] = LoadState.LOADED if self._messages else LoadState.IDLE
            raise self._fetch_failed("messages_unavailable", exc) from exc

        if not self._is_current(conversation_id, generation):
            logger.debug(
                "Discarding stale messages conversation_id=%s generation=%s current=%s",
                conversation_id,
                generation,
                self._message_generation,
            )
            return self.messages

        self._messages = self._merge_fetched(conversation_id, rows)
        self._states[conversation_id] = LoadState.LOADED
        logger.debug("Messages loaded conversation_id=%s count=%s", conversation_id, len(self._messages))
        self._notify()
        return self.messages

    def _merge_fetched(self, conversation_id: str, rows: list[MessageRead]) -> list[MessageEntry]:
        merged = [MessageEntry.committed(row) for row in rows]
        known_ids = {entry.id for entry in merged}
        known_send_keys = {entry.send_key for entry in merged}
        for entry in self._messages:
            if entry.conversation_id != conversation_id:
                continue
            if entry.pending:
                if entry.send_key in known_send_keys:
                    continue
                merged.append(entry)
            elif entry.id not in known_ids:
                merged.append(entry)
                known_ids.add(entry.id)
        return merged

    def _replace_pending(self, pending: MessageEntry, committed: MessageEntry) -> bool:
        for index, entry in enumerate(self._messages):
            if entry.id != pending.id:
                continue
            if any(other.id == committed.id for other in self._messages):
                del self._messages[index]
            else:
                self._messages[index] = committed
            return True
        logger.debug("Pending message already reconciled client_message_id=%s", pending.client_message_id)
        return False

    def _record_last_message(self, entry: MessageEntry) -> None:
        preview = LastMessagePreview(body=entry.body, sender_id=entry.sender_id, created_at=entry.created_at)
        updated: list[ConversationSummary] = []
        for row in self._conversations:
            if row.id == entry.conversation_id:
                row = row.model_copy(
                    update={"last_message": preview, "updated_at": max(row.updated_at, entry.created_at)}
                )
            updated.append(row)
        self._conversations = _sorted_by_activity(updated)

    def _zero_unread(self, conversation_id: str) -> None:
        self._conversations = [
            row.model_copy(update={"unread_count": 0}) if row.id == conversation_id and row.unread_count else row
            for row in self._conversations
        ]

    async def _acknowledge_read(self, conversation_id: str) -> None:
        try:
            updated = await self._store.update_read_status(conversation_id, self.viewer_id)
        except RemoteStoreError as exc:
            logger.warning("Read acknowledgment failed conversation_id=%s error=%s", conversation_id, exc.message)
            return
        logger.debug("Read acknowledged conversation_id=%s updated=%s", conversation_id, updated)

    def _subscriptions_live(self) -> bool:
        subscriptions = [self._conversation_subscription]
        if self._active_id is not None:
            subscriptions.append(self._message_subscription)
        return all(subscription is not None and not subscription.closed for subscription in subscriptions)

    def _subscription_failed(self, error: SubscriptionError) -> None:
        self.stale = True
        self.last_error = error
        logger.warning("Subscription lost viewer_id=%s error=%s", self.viewer_id, error.message)
        self._notify()

    async def _subscribe_conversations(self) -> None:
        if self._conversation_subscription is not None:
            await self._conversation_subscription.close()
            self._conversation_subscription = None
        try:
            self._conversation_subscription = await self._store.subscribe(
                "conversations",
                ChangeFilter(column="participant_id", value=self.viewer_id),
                self._handle_conversation_change,
                on_error=self._subscription_failed,
            )
        except RemoteStoreError as exc:
            self._subscription_failed(SubscriptionError(code="subscribe_failed", message=exc.message))

    async def _retarget_message_subscription(self, conversation_id: str) -> None:
        previous, self._message_subscription = self._message_subscription, None
        if previous is not None:
            await previous.close()
        try:
            subscription = await self._store.subscribe(
                "messages",
                ChangeFilter(column="conversation_id", value=conversation_id),
                self._handle_message_change,
                on_error=self._subscription_failed,
            )
        except RemoteStoreError as exc:
            self._subscription_failed(SubscriptionError(code="subscribe_failed", message=exc.message))
            return

        if conversation_id != self._active_id:
            await subscription.close()
            return
        if self._message_subscription is not None:
            await self._message_subscription.close()
        self._message_subscription = subscription

    async def _handle_message_change(self, event: ChangeEventRead) -> None:
        try:
            await self.on_remote_message_event(event)
        except FetchError:
            logger.debug("Message refresh after push failed; last_error is set")

    async def _handle_conversation_change(self, event: ChangeEventRead) -> None:
        try:
            await self.on_remote_conversation_event(event)
        except FetchError:
            logger.debug("Conversation refresh after push failed; last_error is set")


def _sorted_by_activity(rows: list[ConversationSummary]) -> list[ConversationSummary]:
    return sorted(rows, key=lambda row: row.updated_at, reverse=True)
