"""Durable store facade for chats, messages, groups, cursors and scheduled tasks."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from mdclaw.orchestrator.models import (
    ChatInfo,
    ContainerConfig,
    ContextMode,
    NewMessage,
    RegisteredGroup,
    ScheduledTask,
    ScheduledTaskCreate,
    ScheduleType,
    TaskRunStatus,
    TaskStatus,
)
from mdclaw.storage.alembic_runner import upgrade_head
from mdclaw.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from mdclaw.storage.sqlmodel_models import (
    Chat,
    GroupCursor,
    RegisteredGroupRow,
    ScheduledTaskRow,
    StoredMessage,
    TaskRunLog,
)

DEFAULT_MESSAGE_BATCH_LIMIT = 200


class OrchestratorRepository:
    """Persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- chats and messages ------------------------------------------------

    def store_chat_metadata(  # noqa: PLR0913
        self,
        chat_jid: str,
        timestamp: datetime,
        *,
        name: str | None = None,
        channel: str | None = None,
        is_group: bool | None = None,
    ) -> None:
        """Record that a conversation exists; later non-null fields win."""

        with Session(self.engine) as session:
            row = session.get(Chat, chat_jid)
            if row is None:
                session.add(
                    Chat(
                        jid=chat_jid,
                        name=name,
                        channel=channel,
                        is_group=bool(is_group),
                        last_activity=to_db_datetime(timestamp),
                    ),
                )
            else:
                if name is not None:
                    row.name = name
                if channel is not None:
                    row.channel = channel
                if is_group is not None:
                    row.is_group = is_group
                if to_db_datetime(timestamp) > to_db_datetime(row.last_activity):
                    row.last_activity = to_db_datetime(timestamp)
                session.add(row)
            session.commit()

    def list_chats(self) -> list[ChatInfo]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Chat).order_by(col(Chat.last_activity).desc()),
            ).all()
            return [
                ChatInfo(
                    jid=row.jid,
                    name=row.name,
                    channel=row.channel,
                    is_group=row.is_group,
                    last_activity=to_utc_aware(row.last_activity),
                )
                for row in rows
            ]

    def store_message(self, message: NewMessage) -> bool:
        """Persist a message; returns False when it was already stored."""

        with Session(self.engine) as session:
            if session.get(Chat, message.chat_jid) is None:
                session.add(
                    Chat(
                        jid=message.chat_jid,
                        last_activity=to_db_datetime(message.timestamp),
                    ),
                )
            existing = session.exec(
                select(StoredMessage).where(
                    StoredMessage.message_id == message.message_id,
                    StoredMessage.chat_jid == message.chat_jid,
                ),
            ).one_or_none()
            if existing is not None:
                session.commit()
                return False
            session.add(
                StoredMessage(
                    message_id=message.message_id,
                    chat_jid=message.chat_jid,
                    sender=message.sender,
                    sender_name=message.sender_name,
                    content=message.content,
                    timestamp=to_db_datetime(message.timestamp),
                    is_from_me=message.is_from_me,
                    is_bot_message=message.is_bot_message,
                ),
            )
            session.commit()
            return True

    def get_messages_since(
        self,
        chat_jid: str,
        since: datetime | None,
        *,
        limit: int = DEFAULT_MESSAGE_BATCH_LIMIT,
    ) -> list[NewMessage]:
        """Non-bot messages strictly newer than ``since``, oldest first."""

        statement = select(StoredMessage).where(
            StoredMessage.chat_jid == chat_jid,
            StoredMessage.is_bot_message == False,  # noqa: E712
        )
        if since is not None:
            statement = statement.where(StoredMessage.timestamp > to_db_datetime(since))
        statement = statement.order_by(
            col(StoredMessage.timestamp).asc(),
            col(StoredMessage.message_id).asc(),
        ).limit(limit)
        with Session(self.engine) as session:
            return [_to_message(row) for row in session.exec(statement).all()]

    # -- cursors -----------------------------------------------------------

    def get_cursors(self) -> dict[str, datetime | None]:
        with Session(self.engine) as session:
            rows = session.exec(select(GroupCursor)).all()
            return {
                row.group_folder: (
                    to_utc_aware(row.last_timestamp) if row.last_timestamp is not None else None
                )
                for row in rows
            }

    def set_cursor(self, group_folder: str, timestamp: datetime | None) -> None:
        with Session(self.engine) as session:
            row = session.get(GroupCursor, group_folder)
            value = to_db_datetime(timestamp) if timestamp is not None else None
            if row is None:
                row = GroupCursor(
                    group_folder=group_folder,
                    last_timestamp=value,
                    updated_at=utc_now(),
                )
            else:
                row.last_timestamp = value
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    # -- registered groups -------------------------------------------------

    def list_registered_groups(self) -> list[RegisteredGroup]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RegisteredGroupRow).order_by(col(RegisteredGroupRow.folder).asc()),
            ).all()
            return [_to_group(row) for row in rows]

    def get_registered_group(self, folder: str) -> RegisteredGroup | None:
        with Session(self.engine) as session:
            row = session.get(RegisteredGroupRow, folder)
            return _to_group(row) if row is not None else None

    def upsert_registered_group(self, group: RegisteredGroup) -> RegisteredGroup:
        """Create or re-register a group; the original ``added_at`` is kept."""

        config_json = json.dumps(group.container_config.to_dict(), sort_keys=True)
        with Session(self.engine) as session:
            row = session.get(RegisteredGroupRow, group.folder)
            if row is None:
                row = RegisteredGroupRow(
                    folder=group.folder,
                    name=group.name,
                    chat_jid=group.chat_jid,
                    trigger_pattern=group.trigger_pattern,
                    requires_trigger=group.requires_trigger,
                    container_config_json=config_json,
                    added_at=to_db_datetime(group.added_at or utc_now()),
                )
            else:
                row.name = group.name
                row.chat_jid = group.chat_jid
                row.trigger_pattern = group.trigger_pattern
                row.requires_trigger = group.requires_trigger
                row.container_config_json = config_json
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_group(row)

    # -- scheduled tasks ---------------------------------------------------

    def create_task(self, payload: ScheduledTaskCreate) -> ScheduledTask:
        now = utc_now()
        with Session(self.engine) as session:
            row = ScheduledTaskRow(
                task_id=payload.task_id or f"task-{uuid4().hex[:12]}",
                group_folder=payload.group_folder,
                chat_jid=payload.chat_jid,
                prompt=payload.prompt,
                schedule_type=payload.schedule_type.value,
                schedule_value=payload.schedule_value,
                context_mode=payload.context_mode.value,
                status=TaskStatus.ACTIVE.value,
                next_run=to_db_datetime(payload.next_run) if payload.next_run else None,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get_task(self, task_id: str) -> ScheduledTask | None:
        with Session(self.engine) as session:
            row = session.get(ScheduledTaskRow, task_id)
            return _to_task(row) if row is not None else None

    def list_tasks(self, *, group_folder: str | None = None) -> list[ScheduledTask]:
        statement = select(ScheduledTaskRow)
        if group_folder is not None:
            statement = statement.where(ScheduledTaskRow.group_folder == group_folder)
        statement = statement.order_by(col(ScheduledTaskRow.created_at).asc())
        with Session(self.engine) as session:
            return [_to_task(row) for row in session.exec(statement).all()]

    def set_task_status(self, task_id: str, status: TaskStatus) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ScheduledTaskRow)
                .where(col(ScheduledTaskRow.task_id) == task_id)
                .values(status=status.value),
            )
            session.commit()
            return result.rowcount == 1

    def set_task_next_run(self, task_id: str, next_run: datetime | None) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(ScheduledTaskRow)
                .where(col(ScheduledTaskRow.task_id) == task_id)
                .values(next_run=to_db_datetime(next_run) if next_run else None),
            )
            session.commit()

    def get_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ScheduledTaskRow)
                .where(
                    ScheduledTaskRow.status == TaskStatus.ACTIVE.value,
                    col(ScheduledTaskRow.next_run).is_not(None),
                    col(ScheduledTaskRow.next_run) <= to_db_datetime(now),
                )
                .order_by(col(ScheduledTaskRow.next_run).asc()),
            ).all()
            return [_to_task(row) for row in rows]

    def update_task_after_run(
        self,
        task_id: str,
        *,
        next_run: datetime | None,
        last_result: str,
        status: TaskStatus | None = None,
    ) -> None:
        values: dict[str, object] = {
            "next_run": to_db_datetime(next_run) if next_run else None,
            "last_run": to_db_datetime(utc_now()),
            "last_result": last_result,
        }
        if status is not None:
            values["status"] = status.value
        with Session(self.engine) as session:
            session.exec(
                sa_update(ScheduledTaskRow)
                .where(
                    col(ScheduledTaskRow.task_id) == task_id,
                    col(ScheduledTaskRow.status) != TaskStatus.CANCELED.value,
                )
                .values(**values),
            )
            session.commit()

    def log_task_run(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        run_at: datetime,
        duration_ms: int,
        status: TaskRunStatus,
        result: str | None,
        error: str | None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                TaskRunLog(
                    task_id=task_id,
                    run_at=to_db_datetime(run_at),
                    duration_ms=duration_ms,
                    status=status.value,
                    result=result,
                    error=error,
                ),
            )
            session.commit()

    def list_task_runs(self, task_id: str) -> list[TaskRunLog]:
        with Session(self.engine) as session:
            return list(
                session.exec(
                    select(TaskRunLog)
                    .where(TaskRunLog.task_id == task_id)
                    .order_by(col(TaskRunLog.run_at).asc()),
                ).all(),
            )


def _to_message(row: StoredMessage) -> NewMessage:
    return NewMessage(
        message_id=row.message_id,
        chat_jid=row.chat_jid,
        sender=row.sender,
        sender_name=row.sender_name,
        content=row.content,
        timestamp=to_utc_aware(row.timestamp),
        is_from_me=row.is_from_me,
        is_bot_message=row.is_bot_message,
    )


def _to_group(row: RegisteredGroupRow) -> RegisteredGroup:
    raw_config = json.loads(row.container_config_json) if row.container_config_json else None
    return RegisteredGroup(
        folder=row.folder,
        name=row.name,
        chat_jid=row.chat_jid,
        trigger_pattern=row.trigger_pattern,
        requires_trigger=row.requires_trigger,
        container_config=ContainerConfig.from_dict(raw_config),
        added_at=to_utc_aware(row.added_at),
    )


def _to_task(row: ScheduledTaskRow) -> ScheduledTask:
    return ScheduledTask(
        task_id=row.task_id,
        group_folder=row.group_folder,
        chat_jid=row.chat_jid,
        prompt=row.prompt,
        schedule_type=ScheduleType(row.schedule_type),
        schedule_value=row.schedule_value,
        context_mode=ContextMode(row.context_mode),
        status=TaskStatus(row.status),
        next_run=to_utc_aware(row.next_run) if row.next_run is not None else None,
        last_run=to_utc_aware(row.last_run) if row.last_run is not None else None,
        last_result=row.last_result,
        created_at=to_utc_aware(row.created_at),
    )
