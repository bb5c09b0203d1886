from __future__ import annotations

import asyncio
from collections import deque
import logging
from time import monotonic

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

import estate_chat.db.session as db_session
from estate_chat.core.settings import get_settings
from estate_chat.models import Profile
from estate_chat.realtime.connection_manager import ConnectionManager
from estate_chat.realtime.protocol import (
    PingCommand,
    ProtocolError,
    SubscribeCommand,
    UnsubscribeCommand,
    ack_frame,
    error_frame,
    parse_command,
    pong_frame,
    welcome_frame,
)
from estate_chat.services import conversation_service

logger = logging.getLogger(__name__)
router = APIRouter(tags=["ws"])


def _extract_viewer_id(websocket: WebSocket) -> str | None:
    header_value = websocket.headers.get("x-viewer-id")
    if header_value and header_value.strip():
        return header_value.strip()
    query_value = websocket.query_params.get("viewer_id")
    return query_value.strip() if query_value and query_value.strip() else None


def _viewer_exists(viewer_id: str) -> bool:
    with db_session.open_session() as db:
        return db.get(Profile, viewer_id) is not None


def _may_follow(viewer_id: str, command: SubscribeCommand) -> bool:
    change_filter = command.change_filter()
    if change_filter.column == "participant_id":
        return change_filter.value == viewer_id
    with db_session.open_session() as db:
        allowed = conversation_service.participant_conversation_ids(
            db,
            viewer_id=viewer_id,
            conversation_ids=[change_filter.value],
        )
    return change_filter.value in allowed


def _command_allowed(events: deque[float], *, now: float, window_seconds: int, max_commands: int) -> bool:
    cutoff = now - window_seconds
    while events and events[0] <= cutoff:
        events.popleft()
    if len(events) >= max_commands:
        return False
    events.append(now)
    return True


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    settings = get_settings()
    viewer_id = _extract_viewer_id(websocket)
    if viewer_id is None or not _viewer_exists(viewer_id):
        await websocket.close(code=1008)
        return

    connection_manager: ConnectionManager | None = getattr(websocket.app.state, "connection_manager", None)
    if connection_manager is None:
        await websocket.close(code=1011)
        return

    await websocket.accept()
    context = await connection_manager.register(websocket, viewer_id=viewer_id)
    await connection_manager.send(
        context.connection_id,
        welcome_frame(connection_id=context.connection_id, viewer_id=viewer_id, heartbeat_sec=settings.ws_heartbeat_sec),
    )

    rate_events: deque[float] = deque()
    try:
        while True:
            try:
                raw_text = await asyncio.wait_for(websocket.receive_text(), timeout=settings.ws_idle_timeout_sec)
            except asyncio.TimeoutError:
                break
            except WebSocketDisconnect:
                break

            if not _command_allowed(
                rate_events,
                now=monotonic(),
                window_seconds=settings.ws_rate_limit_window_sec,
                max_commands=settings.ws_rate_limit_max_commands,
            ):
                await connection_manager.send(
                    context.connection_id,
                    error_frame(code="RATE_LIMITED", message="Command rate limit exceeded"),
                )
                continue

            try:
                command = parse_command(raw_text, max_bytes=settings.ws_max_command_bytes)
            except ProtocolError as exc:
                await connection_manager.send(context.connection_id, error_frame(code=exc.code, message=exc.message))
                continue

            if isinstance(command, PingCommand):
                await connection_manager.send(context.connection_id, pong_frame(ts=command.ts))
                continue

            if isinstance(command, SubscribeCommand):
                topic = command.topic()
                if not _may_follow(viewer_id, command):
                    await connection_manager.send(
                        context.connection_id,
                        error_frame(code="FORBIDDEN_FILTER", message="Not allowed to follow these changes"),
                    )
                    continue

                try:
                    await connection_manager.subscribe(context.connection_id, [topic])
                except ValueError:
                    await connection_manager.send(
                        context.connection_id,
                        error_frame(code="INVALID_COMMAND", message="Subscription limit exceeded"),
                    )
                    continue

                await connection_manager.send(context.connection_id, ack_frame(op="subscribe", details={"topic": topic}))
                continue

            if isinstance(command, UnsubscribeCommand):
                topic = command.topic()
                await connection_manager.unsubscribe(context.connection_id, [topic])
                await connection_manager.send(context.connection_id, ack_frame(op="unsubscribe", details={"topic": topic}))
                continue
    finally:
        await connection_manager.unregister(context.connection_id, close_socket=True)
        logger.info("WebSocket session closed connection_id=%s viewer_id=%s", context.connection_id, viewer_id)
