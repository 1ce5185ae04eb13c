"""Domain models for groups, messages, scheduled tasks and executions."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from mdclaw.errors import ExecutionCrash, ExecutionTimeout, MdclawError


class OrchestratorState(str, Enum):
    """Lifecycle states of the control loop."""

    INITIALIZING = "initializing"
    RECOVERING = "recovering"
    POLLING = "polling"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class ExitKind(str, Enum):
    """Classification of how an execution ended."""

    CLEAN = "clean"
    TIMEOUT = "timeout"
    CRASHED = "crashed"


class FailureClass(str, Enum):
    """Normalized failure classes recorded in run logs."""

    TIMEOUT = "timeout"
    OUTPUT_LIMIT = "output_limit"
    SPAWN_FAILED = "spawn_failed"
    NONZERO_EXIT = "nonzero_exit"
    KILLED = "killed"
    TRANSPORT = "transport"


class ScheduleType(str, Enum):
    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ContextMode(str, Enum):
    GROUP = "group"
    ISOLATED = "isolated"


class TaskStatus(str, Enum):
    """Durable scheduled-task lifecycle states."""

    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELED = "canceled"


class TaskRunStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


@dataclass(slots=True)
class NewMessage:
    """One inbound or outbound chat message as stored."""

    message_id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: datetime
    is_from_me: bool = False
    is_bot_message: bool = False


@dataclass(slots=True)
class ChatInfo:
    """Conversation metadata reported by transport adapters."""

    jid: str
    name: str | None
    channel: str | None
    is_group: bool
    last_activity: datetime


@dataclass(slots=True, frozen=True)
class AdditionalMount:
    """Extra host directory exposed to a group's sandbox."""

    host_path: str
    container_path: str
    readonly: bool = True


@dataclass(slots=True)
class ContainerConfig:
    """Per-group sandbox overrides."""

    timeout_seconds: float | None = None
    additional_mounts: list[AdditionalMount] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timeout_seconds": self.timeout_seconds,
            "additional_mounts": [
                {
                    "host_path": mount.host_path,
                    "container_path": mount.container_path,
                    "readonly": mount.readonly,
                }
                for mount in self.additional_mounts
            ],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> ContainerConfig:
        if not raw:
            return cls()
        timeout = raw.get("timeout_seconds")
        if timeout is not None and not isinstance(timeout, int | float):
            raise TypeError("container_config.timeout_seconds must be a number")
        mounts_raw = raw.get("additional_mounts", [])
        if not isinstance(mounts_raw, list):
            raise TypeError("container_config.additional_mounts must be an array")
        mounts: list[AdditionalMount] = []
        for item in mounts_raw:
            if not isinstance(item, dict):
                raise TypeError("container_config.additional_mounts[] must be an object")
            host_path = item.get("host_path")
            container_path = item.get("container_path")
            if not isinstance(host_path, str) or not isinstance(container_path, str):
                raise TypeError("additional mount paths must be strings")
            mounts.append(
                AdditionalMount(
                    host_path=host_path,
                    container_path=container_path,
                    readonly=bool(item.get("readonly", True)),
                ),
            )
        return cls(
            timeout_seconds=float(timeout) if timeout is not None else None,
            additional_mounts=mounts,
        )


@dataclass(slots=True)
class RegisteredGroup:
    """A conversation registered for agent executions."""

    folder: str
    name: str
    chat_jid: str
    trigger_pattern: str
    requires_trigger: bool = True
    container_config: ContainerConfig = field(default_factory=ContainerConfig)
    added_at: datetime | None = None


@dataclass(slots=True)
class ScheduledTaskCreate:
    """Input payload for creating a scheduled task."""

    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode = ContextMode.GROUP
    next_run: datetime | None = None
    task_id: str | None = None


@dataclass(slots=True)
class ScheduledTask:
    """Readable scheduled task view."""

    task_id: str
    group_folder: str
    chat_jid: str
    prompt: str
    schedule_type: ScheduleType
    schedule_value: str
    context_mode: ContextMode
    status: TaskStatus
    next_run: datetime | None
    last_run: datetime | None
    last_result: str | None
    created_at: datetime


@dataclass(slots=True)
class ExecutionHandle:
    """Live state of one sandboxed subprocess serving a group."""

    group_folder: str
    session_id: str
    container_name: str
    input_dir: Path
    deadline: float
    started_at: float
    process: subprocess.Popen[bytes] | None = None
    active: bool = True
    is_scheduled_task: bool = False
    last_activity_at: float = 0.0
    close_requested: bool = False
    kill_reason: str | None = None


@dataclass(slots=True)
class ExecutionResult:
    """How one execution ended."""

    exit_kind: ExitKind
    exit_code: int | None
    session_id: str
    output_bytes: int = 0
    blocks: int = 0
    duration_ms: int = 0
    failure_class: FailureClass | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_kind == ExitKind.CLEAN

    def as_error(self) -> MdclawError | None:
        """Map a failed ending onto the error taxonomy; None for a clean exit."""

        if self.exit_kind == ExitKind.TIMEOUT:
            return ExecutionTimeout(self.error or "execution timed out")
        if self.exit_kind == ExitKind.CRASHED:
            return ExecutionCrash(self.error or "execution crashed", exit_code=self.exit_code)
        return None
