from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from estate_chat.schemas.changes import ChangeFilter, ChangeTable, topic_for


@dataclass(slots=True)
class ProtocolError(Exception):
    code: str
    message: str


class _TopicCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table: ChangeTable
    filter: dict[str, str]

    @model_validator(mode="after")
    def check_single_filter(self) -> "_TopicCommand":
        if len(self.filter) != 1:
            raise ValueError("filter must name exactly one column")
        return self

    def change_filter(self) -> ChangeFilter:
        column, value = next(iter(self.filter.items()))
        return ChangeFilter.model_validate({"column": column, "value": value})

    def topic(self) -> str:
        return topic_for(self.table, self.change_filter())


class SubscribeCommand(_TopicCommand):
    op: Literal["subscribe"]


class UnsubscribeCommand(_TopicCommand):
    op: Literal["unsubscribe"]


class PingCommand(BaseModel):
    model_config = ConfigDict(extra="forbid")

    op: Literal["ping"]
    ts: int | None = None


Command = SubscribeCommand | UnsubscribeCommand | PingCommand


def parse_command(raw_text: str, *, max_bytes: int) -> Command:
    payload_size = len(raw_text.encode("utf-8"))
    if payload_size > max_bytes:
        raise ProtocolError(code="INVALID_COMMAND", message="Frame is too large")

    try:
        decoded = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(code="INVALID_COMMAND", message="Invalid JSON payload") from exc

    if not isinstance(decoded, dict):
        raise ProtocolError(code="INVALID_COMMAND", message="Command payload must be an object")

    op = decoded.get("op")
    model: type[BaseModel]
    if op == "subscribe":
        model = SubscribeCommand
    elif op == "unsubscribe":
        model = UnsubscribeCommand
    elif op == "ping":
        model = PingCommand
    else:
        raise ProtocolError(code="INVALID_COMMAND", message="Unsupported command")

    try:
        command = model.model_validate(decoded)
        if isinstance(command, _TopicCommand):
            command.change_filter()
        return command
    except ValidationError as exc:
        raise ProtocolError(code="INVALID_COMMAND", message=str(exc.errors()[0]["msg"])) from exc


def welcome_frame(*, connection_id: str, viewer_id: str, heartbeat_sec: int) -> dict[str, object]:
    return {
        "type": "connection.welcome",
        "connection_id": connection_id,
        "viewer_id": viewer_id,
        "server_time": datetime.now(UTC).isoformat(),
        "heartbeat_sec": heartbeat_sec,
        "protocol_version": 1,
    }


def ack_frame(*, op: str, details: dict[str, object] | None = None) -> dict[str, object]:
    payload: dict[str, object] = {
        "type": "ack",
        "op": op,
        "ok": True,
    }
    if details:
        payload["details"] = details
    return payload


def error_frame(*, code: str, message: str, details: dict[str, object] | None = None) -> dict[str, object]:
    error_payload: dict[str, object] = {"code": code, "message": message}
    if details:
        error_payload["details"] = details
    return {"type": "error", "error": error_payload}


def pong_frame(*, ts: int | None = None) -> dict[str, object]:
    payload: dict[str, object] = {"type": "pong"}
    if ts is not None:
        payload["ts"] = ts
    return payload


def change_frame(event: dict[str, object]) -> dict[str, object]:
    """Wrap a serialized change event; ``type`` reads like ``messages.insert``."""
    return {
        "type": f"{event['table']}.{str(event['event_type']).lower()}",
        "event_id": event["event_id"],
        "cursor": event["id"],
        "conversation_id": event["conversation_id"],
        "occurred_at": event["occurred_at"],
        "record": event["record"],
    }
