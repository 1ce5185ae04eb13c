from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from mdclaw.errors import MalformedCommand
from mdclaw.orchestrator.contracts import (
    REDACTED,
    ContinuationMessage,
    ExecutionInput,
    IpcCommand,
    IpcCommandType,
    OutboundMessage,
    groups_snapshot,
    new_ipc_filename,
    parse_command,
    parse_continuation_message,
    parse_execution_input,
    parse_outbound_message,
    tasks_snapshot,
    write_json_atomic,
)
from mdclaw.orchestrator.ipc import write_command
from mdclaw.orchestrator.models import (
    ChatInfo,
    ContextMode,
    NewMessage,
    RegisteredGroup,
    ScheduledTask,
    ScheduleType,
    TaskStatus,
)

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("File Contracts"),
]


def _input(**overrides) -> ExecutionInput:
    values = {
        "prompt": "hi",
        "session_id": "s-1",
        "group_folder": "family",
        "chat_jid": "family@local",
        "is_main": False,
        "is_scheduled_task": False,
        "assistant_name": "Andy",
        "secrets": {"API_KEY": "top-secret"},
    }
    values.update(overrides)
    return ExecutionInput(**values)


def test_execution_input_document_uses_wire_field_names() -> None:
    document = json.loads(_input().encode())

    assert document == {
        "prompt": "hi",
        "sessionId": "s-1",
        "groupFolder": "family",
        "chatJid": "family@local",
        "isMain": False,
        "isScheduledTask": False,
        "assistantName": "Andy",
        "secrets": {"API_KEY": "top-secret"},
    }
    assert parse_execution_input(_input().encode()) == _input()


def test_redacted_input_never_contains_secret_values() -> None:
    redacted = _input().redacted()

    assert redacted["secrets"] == {"API_KEY": REDACTED}
    assert "top-secret" not in json.dumps(redacted)


def test_execution_input_reader_is_strict() -> None:
    document = _input().to_document()

    with pytest.raises(ValueError, match="unknown fields"):
        parse_execution_input(json.dumps({**document, "extra": 1}))
    missing = dict(document)
    del missing["sessionId"]
    with pytest.raises(ValueError, match="missing sessionId"):
        parse_execution_input(json.dumps(missing))
    with pytest.raises(TypeError, match="isMain"):
        parse_execution_input(json.dumps({**document, "isMain": "yes"}))
    with pytest.raises(TypeError, match="secrets"):
        parse_execution_input(json.dumps({**document, "secrets": {"A": 1}}))


def test_command_document_round_trips_through_disk(tmp_path: Path) -> None:
    command = IpcCommand(
        type=IpcCommandType.SCHEDULE_TASK,
        payload={
            "prompt": "daily digest",
            "schedule_type": "cron",
            "schedule_value": "0 9 * * *",
            "context_mode": "isolated",
        },
        source_group="family",
    )

    path = write_command(tmp_path / "tasks", command)

    assert path.parent == tmp_path / "tasks"
    assert parse_command(path.read_bytes()) == command


def test_parse_command_keeps_claimed_source_on_errors() -> None:
    with pytest.raises(MalformedCommand) as excinfo:
        parse_command(
            json.dumps({"type": "launch_rockets", "payload": {}, "source_group": "family"}),
        )

    assert excinfo.value.source_group == "family"
    assert "unknown command type" in str(excinfo.value)


@pytest.mark.parametrize(
    ("document", "message"),
    [
        ("not json", "Expecting value"),
        ("[1, 2]", "JSON object"),
        ({"type": "refresh_groups", "payload": {}}, "source_group"),
        ({"type": "refresh_groups", "payload": {}, "source_group": ""}, "source_group"),
        (
            {"type": "refresh_groups", "payload": {}, "source_group": "main", "x": 1},
            "unknown fields",
        ),
        ({"type": "pause_task", "payload": [], "source_group": "main"}, "payload"),
        ({"type": "pause_task", "payload": {}, "source_group": "main"}, "missing"),
        ({"type": "pause_task", "payload": {"task_id": " "}, "source_group": "main"}, "non-empty"),
        (
            {"type": "pause_task", "payload": {"task_id": "t", "why": "x"}, "source_group": "main"},
            "unknown fields",
        ),
        (
            {
                "type": "schedule_task",
                "payload": {"prompt": "p", "schedule_type": "weekly", "schedule_value": "1"},
                "source_group": "main",
            },
            "schedule_task payload",
        ),
        (
            {
                "type": "register_group",
                "payload": {"name": "n", "folder": "f", "chat_jid": "j", "trigger": 5},
                "source_group": "main",
            },
            "must be a string",
        ),
    ],
)
def test_parse_command_rejects_defects(document: object, message: str) -> None:
    raw = document if isinstance(document, str) else json.dumps(document)

    with pytest.raises(MalformedCommand, match=message):
        parse_command(raw)


def test_parse_command_rejects_invalid_utf8() -> None:
    with pytest.raises(MalformedCommand):
        parse_command(b"\xff\xfe{}")


def test_outbound_message_reader() -> None:
    message = OutboundMessage(chat_jid="family@local", text="hello", source_group="family")

    assert parse_outbound_message(json.dumps(message.to_document())) == message
    with pytest.raises(MalformedCommand, match="exactly"):
        parse_outbound_message(json.dumps({"type": "message", "chat_jid": "x"}))
    with pytest.raises(MalformedCommand, match="unknown message type"):
        parse_outbound_message(
            json.dumps({**message.to_document(), "type": "broadcast"}),
        )


def test_continuation_message_from_stored_message() -> None:
    stored = NewMessage(
        message_id="m1",
        chat_jid="family@local",
        sender="user-1",
        sender_name="Ann",
        content="and also this",
        timestamp=datetime(2026, 10, 19, 12, 0, 5, tzinfo=UTC),
    )

    message = ContinuationMessage.from_message(stored)

    assert message.to_document() == {
        "sender": "user-1",
        "sender_name": "Ann",
        "content": "and also this",
        "timestamp": "2026-10-19T12:00:05Z",
    }
    assert parse_continuation_message(json.dumps(message.to_document())) == message
    with pytest.raises(ValueError, match="exactly"):
        parse_continuation_message(json.dumps({"content": "x"}))


def test_ipc_filenames_sort_by_creation_time() -> None:
    first = new_ipc_filename(1_700_000_000_000)
    second = new_ipc_filename(1_700_000_000_001)

    assert re.fullmatch(r"1700000000000-[0-9a-f]{8}\.json", first)
    assert sorted([second, first]) == [first, second]
    assert new_ipc_filename(5) != new_ipc_filename(5)


def test_atomic_write_leaves_no_temp_file(tmp_path: Path) -> None:
    target = write_json_atomic(tmp_path / "tasks", "1-abc.json", {"a": 1})

    assert json.loads(target.read_text("utf-8")) == {"a": 1}
    assert [path.name for path in (tmp_path / "tasks").iterdir()] == ["1-abc.json"]


def test_snapshots_describe_tasks_and_groups() -> None:
    created = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)
    task = ScheduledTask(
        task_id="task-1",
        group_folder="family",
        chat_jid="family@local",
        prompt="water plants",
        schedule_type=ScheduleType.INTERVAL,
        schedule_value="3600000",
        context_mode=ContextMode.GROUP,
        status=TaskStatus.ACTIVE,
        next_run=datetime(2026, 10, 19, 9, 0, tzinfo=UTC),
        last_run=None,
        last_result=None,
        created_at=created,
    )
    group = RegisteredGroup(
        folder="family",
        name="Family",
        chat_jid="family@local",
        trigger_pattern="@Andy",
        added_at=created,
    )

    chat = ChatInfo(
        jid="family@local",
        name="Family",
        channel="local",
        is_group=True,
        last_activity=datetime(2026, 10, 19, 8, 30, tzinfo=UTC),
    )
    other = RegisteredGroup(
        folder="work",
        name="Work",
        chat_jid="work@local",
        trigger_pattern="@Andy",
    )

    tasks = tasks_snapshot([task])
    groups = groups_snapshot([group, other], [chat])

    assert tasks == [
        {
            "id": "task-1",
            "groupFolder": "family",
            "prompt": "water plants",
            "schedule_type": "interval",
            "schedule_value": "3600000",
            "context_mode": "group",
            "status": "active",
            "next_run": "2026-10-19T09:00:00Z",
        },
    ]
    assert groups == [
        {
            "folder": "family",
            "name": "Family",
            "chat_jid": "family@local",
            "trigger": "@Andy",
            "requires_trigger": True,
            "added_at": "2026-10-19T08:00:00Z",
            "last_activity": "2026-10-19T08:30:00Z",
        },
        {
            "folder": "work",
            "name": "Work",
            "chat_jid": "work@local",
            "trigger": "@Andy",
            "requires_trigger": True,
            "added_at": None,
            "last_activity": None,
        },
    ]
    assert tasks_snapshot([]) == []
