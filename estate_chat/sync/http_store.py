from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError

from estate_chat.core.errors import RemoteStoreError, SubscriptionError
from estate_chat.core.settings import get_settings
from estate_chat.schemas.changes import ChangeFeed, ChangeFilter, ChangeTable
from estate_chat.schemas.conversations import ConversationSummary
from estate_chat.schemas.messages import MessageRead
from estate_chat.sync.remote import ChangeCallback, ErrorCallback, MessageDraft

logger = logging.getLogger(__name__)

VIEWER_HEADER = "X-Viewer-Id"

FeedFetcher = Callable[[int | None], Awaitable[ChangeFeed]]


class PollingSubscription:
    """Follows the change feed on an interval and hands each event to ``callback``.

    A transport failure ends the subscription and is reported through ``on_error``;
    reconnecting is left to the owner.
    """

    def __init__(
        self,
        *,
        name: str,
        fetch: FeedFetcher,
        callback: ChangeCallback,
        interval_sec: float,
        on_error: ErrorCallback | None = None,
    ) -> None:
        self.name = name
        self._fetch = fetch
        self._callback = callback
        self._interval_sec = interval_sec
        self._on_error = on_error
        self._cursor: int | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cursor(self) -> int | None:
        return self._cursor

    async def start(self) -> None:
        feed = await self._fetch(None)
        self._cursor = feed.cursor
        self._task = asyncio.create_task(self._run())
        logger.debug("Change subscription started name=%s cursor=%s", self.name, self._cursor)

    async def poll_once(self) -> int:
        feed = await self._fetch(self._cursor)
        for event in feed.events:
            try:
                await self._callback(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Change callback failed name=%s event_id=%s", self.name, event.event_id)
        self._cursor = feed.cursor
        return len(feed.events)

    async def _run(self) -> None:
        while not self._closed:
            await asyncio.sleep(self._interval_sec)
            try:
                await self.poll_once()
            except RemoteStoreError as exc:
                logger.warning("Change subscription dropped name=%s error=%s", self.name, exc.message)
                self._closed = True
                if self._on_error is not None:
                    self._on_error(SubscriptionError(code="subscription_dropped", message=exc.message))
                return

    async def close(self) -> None:
        self._closed = True
        task, self._task = self._task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug("Change subscription closed name=%s", self.name)


class HttpRemoteStore:
    """Remote store backed by the messaging service's REST API."""

    def __init__(
        self,
        *,
        viewer_id: str,
        base_url: str | None = None,
        timeout_sec: float | None = None,
        poll_interval_sec: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.viewer_id = viewer_id
        self._poll_interval_sec = poll_interval_sec if poll_interval_sec is not None else settings.remote_change_poll_sec
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.remote_base_url,
            timeout=timeout_sec if timeout_sec is not None else settings.remote_timeout_sec,
            transport=transport,
        )

    async def __aenter__(self) -> HttpRemoteStore:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, *, viewer_id: str | None = None, **kwargs: object) -> object:
        headers = {VIEWER_HEADER: viewer_id or self.viewer_id}
        try:
            response = await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("Remote store request failed method=%s path=%s error=%s", method, path, exc)
            raise RemoteStoreError(code="transport_error", message=str(exc) or type(exc).__name__) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise RemoteStoreError(
                status_code=response.status_code,
                code="invalid_response",
                message="Remote store returned a non-JSON body",
            ) from exc

        if response.is_error:
            error = payload.get("error") if isinstance(payload, dict) else None
            error = error if isinstance(error, dict) else {}
            logger.debug("Remote store error status=%s path=%s error=%s", response.status_code, path, error)
            raise RemoteStoreError(
                status_code=response.status_code,
                code=str(error.get("code", "http_error")),
                message=str(error.get("message", f"Remote store responded with {response.status_code}")),
            )

        if not isinstance(payload, dict) or "data" not in payload:
            raise RemoteStoreError(
                status_code=response.status_code,
                code="invalid_response",
                message="Remote store response has no data envelope",
            )
        return payload["data"]

    async def list_conversations(self, viewer_id: str) -> list[ConversationSummary]:
        data = await self._request("GET", "/conversations", viewer_id=viewer_id)
        try:
            return [ConversationSummary.model_validate(item) for item in _as_list(data)]
        except ValidationError as exc:
            raise RemoteStoreError(code="invalid_record", message=str(exc)) from exc

    async def list_messages(self, conversation_id: str) -> list[MessageRead]:
        data = await self._request("GET", f"/conversations/{conversation_id}/messages")
        items = data.get("messages") if isinstance(data, dict) else None
        try:
            return [MessageRead.model_validate(item) for item in _as_list(items)]
        except ValidationError as exc:
            raise RemoteStoreError(code="invalid_record", message=str(exc)) from exc

    async def insert_message(self, draft: MessageDraft) -> MessageRead:
        data = await self._request(
            "POST",
            f"/conversations/{draft.conversation_id}/messages",
            viewer_id=draft.sender_id,
            json={"client_message_id": draft.client_message_id, "body": draft.body},
        )
        try:
            return MessageRead.model_validate(data)
        except ValidationError as exc:
            raise RemoteStoreError(code="invalid_record", message=str(exc)) from exc

    async def update_read_status(self, conversation_id: str, viewer_id: str) -> int:
        data = await self._request("POST", f"/conversations/{conversation_id}/read", viewer_id=viewer_id)
        updated = data.get("updated") if isinstance(data, dict) else None
        return updated if isinstance(updated, int) else 0

    async def unread_count(self) -> int:
        data = await self._request("GET", "/messages/unread-count")
        count = data.get("unread_count") if isinstance(data, dict) else None
        return count if isinstance(count, int) else 0

    async def fetch_changes(self, table: ChangeTable, change_filter: ChangeFilter, after_id: int | None) -> ChangeFeed:
        params: dict[str, object] = {"table": table, change_filter.column: change_filter.value}
        if after_id is not None:
            params["after_id"] = after_id
        data = await self._request("GET", "/changes", params=params)
        try:
            return ChangeFeed.model_validate(data)
        except ValidationError as exc:
            raise RemoteStoreError(code="invalid_record", message=str(exc)) from exc

    async def subscribe(
        self,
        table: ChangeTable,
        change_filter: ChangeFilter,
        callback: ChangeCallback,
        *,
        on_error: ErrorCallback | None = None,
    ) -> PollingSubscription:
        async def fetch(after_id: int | None) -> ChangeFeed:
            return await self.fetch_changes(table, change_filter, after_id)

        subscription = PollingSubscription(
            name=f"{table}:{change_filter.topic_suffix}",
            fetch=fetch,
            callback=callback,
            interval_sec=self._poll_interval_sec,
            on_error=on_error,
        )
        await subscription.start()
        return subscription


def _as_list(data: object) -> list[object]:
    if not isinstance(data, list):
        raise RemoteStoreError(code="invalid_response", message="Expected a list in the response data")
    return data
