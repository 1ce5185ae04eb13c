"""File and stream contracts exchanged with sandboxed executions.

Every document here has a strict reader: unknown keys, missing keys and wrong
types are rejected rather than defaulted, so a producer bug surfaces as a
quarantined file or a failed launch instead of silently wrong behavior.
"""

from __future__ import annotations

import json
import os
import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from mdclaw.errors import MalformedCommand
from mdclaw.orchestrator.models import (
    ChatInfo,
    ContextMode,
    NewMessage,
    RegisteredGroup,
    ScheduledTask,
    ScheduleType,
)
from mdclaw.storage.common import to_iso

CLOSE_MARKER_NAME = "_close"
REDACTED = "***"


class IpcCommandType(str, Enum):
    """Host-side actions a sandboxed execution may request."""

    SCHEDULE_TASK = "schedule_task"
    PAUSE_TASK = "pause_task"
    RESUME_TASK = "resume_task"
    CANCEL_TASK = "cancel_task"
    REGISTER_GROUP = "register_group"
    REFRESH_GROUPS = "refresh_groups"


ADMIN_ONLY_COMMANDS = frozenset({IpcCommandType.REGISTER_GROUP, IpcCommandType.REFRESH_GROUPS})
TASK_TARGET_COMMANDS = frozenset(
    {IpcCommandType.PAUSE_TASK, IpcCommandType.RESUME_TASK, IpcCommandType.CANCEL_TASK},
)

# required keys, optional keys
_PAYLOAD_FIELDS: dict[IpcCommandType, tuple[frozenset[str], frozenset[str]]] = {
    IpcCommandType.SCHEDULE_TASK: (
        frozenset({"prompt", "schedule_type", "schedule_value"}),
        frozenset({"context_mode", "chat_jid"}),
    ),
    IpcCommandType.PAUSE_TASK: (frozenset({"task_id"}), frozenset()),
    IpcCommandType.RESUME_TASK: (frozenset({"task_id"}), frozenset()),
    IpcCommandType.CANCEL_TASK: (frozenset({"task_id"}), frozenset()),
    IpcCommandType.REGISTER_GROUP: (
        frozenset({"name", "folder", "chat_jid"}),
        frozenset({"trigger"}),
    ),
    IpcCommandType.REFRESH_GROUPS: (frozenset(), frozenset()),
}


@dataclass(slots=True)
class ExecutionInput:
    """Structured document written once to a subprocess's standard input."""

    prompt: str
    session_id: str
    group_folder: str
    chat_jid: str
    is_main: bool
    is_scheduled_task: bool
    assistant_name: str
    secrets: dict[str, str] = field(default_factory=dict)

    def to_document(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "sessionId": self.session_id,
            "groupFolder": self.group_folder,
            "chatJid": self.chat_jid,
            "isMain": self.is_main,
            "isScheduledTask": self.is_scheduled_task,
            "assistantName": self.assistant_name,
            "secrets": dict(self.secrets),
        }

    def encode(self) -> bytes:
        return json.dumps(self.to_document(), ensure_ascii=False).encode("utf-8")

    def redacted(self) -> dict[str, Any]:
        """Document safe to log or archive."""

        document = self.to_document()
        document["secrets"] = {key: REDACTED for key in self.secrets}
        return document


_INPUT_FIELDS: dict[str, type] = {
    "prompt": str,
    "sessionId": str,
    "groupFolder": str,
    "chatJid": str,
    "isMain": bool,
    "isScheduledTask": bool,
    "assistantName": str,
    "secrets": dict,
}


def parse_execution_input(raw: bytes | str) -> ExecutionInput:
    """Deserialize and validate an execution input document."""

    document = _decode_object(raw, what="execution input")
    unknown = set(document) - set(_INPUT_FIELDS)
    if unknown:
        raise ValueError(f"execution input has unknown fields: {sorted(unknown)}")
    for name, expected in _INPUT_FIELDS.items():
        if name not in document:
            raise ValueError(f"execution input is missing {name}")
        if not isinstance(document[name], expected):
            raise TypeError(f"execution input {name} must be {expected.__name__}")
    secrets_map = document["secrets"]
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in secrets_map.items()):
        raise TypeError("execution input secrets must map strings to strings")
    return ExecutionInput(
        prompt=document["prompt"],
        session_id=document["sessionId"],
        group_folder=document["groupFolder"],
        chat_jid=document["chatJid"],
        is_main=document["isMain"],
        is_scheduled_task=document["isScheduledTask"],
        assistant_name=document["assistantName"],
        secrets=dict(secrets_map),
    )


@dataclass(slots=True)
class IpcCommand:
    """One host-bound request found in a group's ``tasks/`` directory."""

    type: IpcCommandType
    payload: dict[str, Any]
    source_group: str

    def to_document(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "payload": dict(self.payload),
            "source_group": self.source_group,
        }


def parse_command(raw: bytes | str) -> IpcCommand:
    """Deserialize a command file, raising ``MalformedCommand`` on any defect."""

    try:
        document = _decode_object(raw, what="command")
    except (TypeError, ValueError) as error:
        raise MalformedCommand(str(error)) from error

    claimed_source = document.get("source_group")
    source_group = claimed_source if isinstance(claimed_source, str) else None

    unknown = set(document) - {"type", "payload", "source_group"}
    if unknown:
        raise MalformedCommand(
            f"command has unknown fields: {sorted(unknown)}",
            source_group=source_group,
        )
    if source_group is None or not source_group:
        raise MalformedCommand("command.source_group must be a non-empty string")

    raw_type = document.get("type")
    try:
        command_type = IpcCommandType(raw_type)
    except ValueError as error:
        raise MalformedCommand(
            f"unknown command type: {raw_type!r}",
            source_group=source_group,
        ) from error

    payload = document.get("payload")
    if not isinstance(payload, dict):
        raise MalformedCommand("command.payload must be an object", source_group=source_group)

    _validate_payload(command_type, payload, source_group=source_group)
    return IpcCommand(type=command_type, payload=payload, source_group=source_group)


def _validate_payload(
    command_type: IpcCommandType,
    payload: dict[str, Any],
    *,
    source_group: str,
) -> None:
    required, optional = _PAYLOAD_FIELDS[command_type]
    missing = required - set(payload)
    if missing:
        raise MalformedCommand(
            f"{command_type.value} payload is missing {sorted(missing)}",
            source_group=source_group,
        )
    unknown = set(payload) - required - optional
    if unknown:
        raise MalformedCommand(
            f"{command_type.value} payload has unknown fields: {sorted(unknown)}",
            source_group=source_group,
        )
    for key in required:
        value = payload[key]
        if not isinstance(value, str) or not value.strip():
            raise MalformedCommand(
                f"{command_type.value}.{key} must be a non-empty string",
                source_group=source_group,
            )
    for key in optional & set(payload):
        if not isinstance(payload[key], str):
            raise MalformedCommand(
                f"{command_type.value}.{key} must be a string",
                source_group=source_group,
            )

    if command_type == IpcCommandType.SCHEDULE_TASK:
        try:
            ScheduleType(payload["schedule_type"])
            ContextMode(payload.get("context_mode", ContextMode.GROUP.value))
        except ValueError as error:
            raise MalformedCommand(
                f"schedule_task payload: {error}",
                source_group=source_group,
            ) from error


@dataclass(slots=True)
class OutboundMessage:
    """A message payload found in a group's ``messages/`` directory."""

    chat_jid: str
    text: str
    source_group: str

    def to_document(self) -> dict[str, Any]:
        return {
            "type": "message",
            "chat_jid": self.chat_jid,
            "text": self.text,
            "source_group": self.source_group,
        }


def parse_outbound_message(raw: bytes | str) -> OutboundMessage:
    try:
        document = _decode_object(raw, what="message")
    except (TypeError, ValueError) as error:
        raise MalformedCommand(str(error)) from error
    claimed_source = document.get("source_group")
    source_group = claimed_source if isinstance(claimed_source, str) else None
    if set(document) != {"type", "chat_jid", "text", "source_group"}:
        raise MalformedCommand(
            "message must have exactly type, chat_jid, text, source_group",
            source_group=source_group,
        )
    if document["type"] != "message":
        raise MalformedCommand(
            f"unknown message type: {document['type']!r}",
            source_group=source_group,
        )
    for key in ("chat_jid", "text", "source_group"):
        if not isinstance(document[key], str) or not document[key]:
            raise MalformedCommand(
                f"message.{key} must be a non-empty string",
                source_group=source_group,
            )
    return OutboundMessage(
        chat_jid=document["chat_jid"],
        text=document["text"],
        source_group=document["source_group"],
    )


@dataclass(slots=True)
class ContinuationMessage:
    """A follow-up message delivered into a live execution's ``input/`` directory."""

    sender: str
    sender_name: str
    content: str
    timestamp: str

    @classmethod
    def from_message(cls, message: NewMessage) -> ContinuationMessage:
        return cls(
            sender=message.sender,
            sender_name=message.sender_name,
            content=message.content,
            timestamp=to_iso(message.timestamp),
        )

    def to_document(self) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "sender_name": self.sender_name,
            "content": self.content,
            "timestamp": self.timestamp,
        }


def parse_continuation_message(raw: bytes | str) -> ContinuationMessage:
    document = _decode_object(raw, what="continuation message")
    fields = ("sender", "sender_name", "content", "timestamp")
    if set(document) != set(fields):
        raise ValueError(f"continuation message must have exactly {list(fields)}")
    for key in fields:
        if not isinstance(document[key], str):
            raise TypeError(f"continuation message {key} must be a string")
    return ContinuationMessage(**{key: document[key] for key in fields})


def tasks_snapshot(tasks: list[ScheduledTask]) -> list[dict[str, Any]]:
    return [
        {
            "id": task.task_id,
            "groupFolder": task.group_folder,
            "prompt": task.prompt,
            "schedule_type": task.schedule_type.value,
            "schedule_value": task.schedule_value,
            "context_mode": task.context_mode.value,
            "status": task.status.value,
            "next_run": to_iso(task.next_run) if task.next_run else None,
        }
        for task in tasks
    ]


def groups_snapshot(
    groups: list[RegisteredGroup],
    chats: list[ChatInfo] | None = None,
) -> list[dict[str, Any]]:
    """One entry per registered group, with the last activity its channel reported."""

    activity = {chat.jid: chat.last_activity for chat in chats or []}
    return [
        {
            "folder": group.folder,
            "name": group.name,
            "chat_jid": group.chat_jid,
            "trigger": group.trigger_pattern,
            "requires_trigger": group.requires_trigger,
            "added_at": to_iso(group.added_at) if group.added_at else None,
            "last_activity": (
                to_iso(activity[group.chat_jid]) if group.chat_jid in activity else None
            ),
        }
        for group in groups
    ]


def new_ipc_filename(now_ms: int | None = None) -> str:
    """``{epoch-ms}-{random}.json``; lexical order approximates arrival order."""

    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{stamp}-{secrets.token_hex(4)}.json"


def write_json_atomic(
    directory: Path,
    filename: str,
    payload: dict[str, Any] | list[Any],
) -> Path:
    """Write to a hidden temp file in ``directory`` and rename it into place."""

    directory.mkdir(parents=True, exist_ok=True)
    target = directory / filename
    temp_path = directory / f".{filename}.tmp"
    temp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    os.replace(temp_path, target)
    return target


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def _decode_object(raw: bytes | str, *, what: str) -> dict[str, Any]:
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    document = json.loads(text)
    if not isinstance(document, dict):
        raise TypeError(f"{what} must be a JSON object")
    return document
