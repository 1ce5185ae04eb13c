"""Initial orchestrator store: chats, messages, groups, cursors, scheduled tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "chats",
        sa.Column("jid", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=True),
        sa.Column("channel", sa.String(), nullable=True),
        sa.Column("is_group", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("jid"),
    )

    op.create_table(
        "messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("chat_jid", sa.String(), nullable=False),
        sa.Column("sender", sa.String(), nullable=False),
        sa.Column("sender_name", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("is_from_me", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_bot_message", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(["chat_jid"], ["chats.jid"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id", "chat_jid"),
    )
    op.create_index(
        "idx_messages_chat_time",
        "messages",
        ["chat_jid", "timestamp"],
        unique=False,
    )

    op.create_table(
        "registered_groups",
        sa.Column("folder", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("chat_jid", sa.String(), nullable=False),
        sa.Column("trigger_pattern", sa.String(), nullable=False),
        sa.Column("requires_trigger", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("container_config_json", sa.Text(), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("folder"),
        sa.UniqueConstraint("chat_jid", name="uq_registered_groups_chat_jid"),
    )

    op.create_table(
        "group_cursors",
        sa.Column("group_folder", sa.String(), nullable=False),
        sa.Column("last_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("group_folder"),
    )

    op.create_table(
        "scheduled_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("group_folder", sa.String(), nullable=False),
        sa.Column("chat_jid", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("schedule_type", sa.String(), nullable=False),
        sa.Column("schedule_value", sa.String(), nullable=False),
        sa.Column("context_mode", sa.String(), nullable=False, server_default="group"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_result", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index(
        "idx_scheduled_tasks_status_next_run",
        "scheduled_tasks",
        ["status", "next_run"],
        unique=False,
    )
    op.create_index(
        "idx_scheduled_tasks_group_folder",
        "scheduled_tasks",
        ["group_folder"],
        unique=False,
    )

    op.create_table(
        "task_run_logs",
        sa.Column("run_id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["scheduled_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "idx_task_run_logs_task_time",
        "task_run_logs",
        ["task_id", "run_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_task_run_logs_task_time", table_name="task_run_logs")
    op.drop_table("task_run_logs")
    op.drop_index("idx_scheduled_tasks_group_folder", table_name="scheduled_tasks")
    op.drop_index("idx_scheduled_tasks_status_next_run", table_name="scheduled_tasks")
    op.drop_table("scheduled_tasks")
    op.drop_table("group_cursors")
    op.drop_table("registered_groups")
    op.drop_index("idx_messages_chat_time", table_name="messages")
    op.drop_table("messages")
    op.drop_table("chats")
