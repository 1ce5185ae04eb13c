"""SQLModel ORM tables for the orchestrator store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Chat(SQLModel, table=True):
    __tablename__ = "chats"  # type: ignore[bad-override]

    jid: str = Field(primary_key=True)
    name: str | None = None
    channel: str | None = None
    is_group: bool = False
    last_activity: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StoredMessage(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_messages_chat_time", "chat_jid", "timestamp"),)

    message_id: str = Field(primary_key=True)
    chat_jid: str = Field(
        sa_column=Column(
            ForeignKey("chats.jid", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
    )
    sender: str
    sender_name: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    is_from_me: bool = False
    is_bot_message: bool = False


class RegisteredGroupRow(SQLModel, table=True):
    __tablename__ = "registered_groups"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("chat_jid", name="uq_registered_groups_chat_jid"),)

    folder: str = Field(primary_key=True)
    name: str
    chat_jid: str
    trigger_pattern: str
    requires_trigger: bool = True
    container_config_json: str | None = Field(default=None, sa_column=Column(Text))
    added_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GroupCursor(SQLModel, table=True):
    __tablename__ = "group_cursors"  # type: ignore[bad-override]

    group_folder: str = Field(primary_key=True)
    last_timestamp: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ScheduledTaskRow(SQLModel, table=True):
    __tablename__ = "scheduled_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_scheduled_tasks_status_next_run", "status", "next_run"),
        Index("idx_scheduled_tasks_group_folder", "group_folder"),
    )

    task_id: str = Field(primary_key=True)
    group_folder: str
    chat_jid: str
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    schedule_type: str
    schedule_value: str
    context_mode: str = "group"
    status: str = "active"
    next_run: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_run: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_result: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRunLog(SQLModel, table=True):
    __tablename__ = "task_run_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_run_logs_task_time", "task_id", "run_at"),)

    run_id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("scheduled_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    duration_ms: int
    status: str
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
