"""File-based command bus between sandboxed executions and the host.

Each group owns ``ipc/<folder>/``. Executions drop JSON documents into
``tasks/`` (host actions) and ``messages/`` (outbound chat text); the host
scans both in filename order, acts on each file at most once and removes it.
Files that fail to parse or fail authorization are moved to the shared
quarantine directory with a ``.meta.json`` sidecar and never retried.
"""

from __future__ import annotations

import errno
import logging
import os
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from mdclaw.errors import (
    CommandRejected,
    MalformedCommand,
    ResourceExhausted,
    StoreUnavailable,
    TransportDisconnected,
    UnauthorizedCommand,
)
from mdclaw.orchestrator.contracts import (
    ADMIN_ONLY_COMMANDS,
    TASK_TARGET_COMMANDS,
    ContinuationMessage,
    IpcCommand,
    IpcCommandType,
    OutboundMessage,
    groups_snapshot,
    load_json,
    new_ipc_filename,
    parse_command,
    parse_continuation_message,
    parse_outbound_message,
    tasks_snapshot,
    write_json,
    write_json_atomic,
)
from mdclaw.orchestrator.models import (
    ContextMode,
    RegisteredGroup,
    ScheduledTask,
    ScheduledTaskCreate,
    ScheduleType,
    TaskStatus,
)
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.scheduler import compute_next_run, validate_schedule
from mdclaw.orchestrator.services import GroupRegistry
from mdclaw.orchestrator.workdir import GroupWorkspace, WorkspaceManager
from mdclaw.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


@dataclass(slots=True)
class ScanSummary:
    """Counters for one command bus scan."""

    processed: int = 0
    applied: int = 0
    rejected: int = 0
    quarantined: int = 0

    def add(self, other: ScanSummary) -> None:
        self.processed += other.processed
        self.applied += other.applied
        self.rejected += other.rejected
        self.quarantined += other.quarantined


@dataclass(slots=True)
class QuarantineEntry:
    """A quarantined command file and why it was rejected."""

    path: Path
    reason: str
    error_kind: str
    claimed_source_group: str | None
    directory_group: str
    quarantined_at: str
    meta: dict[str, Any] = field(default_factory=dict)


class CommandBus:
    """Scans group IPC directories and applies authorized commands."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        workspaces: WorkspaceManager,
        registry: GroupRegistry,
        repository: OrchestratorRepository,
        send_message: Callable[[str, str], None],
        on_tasks_changed: Callable[[str], None] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.workspaces = workspaces
        self.registry = registry
        self.repository = repository
        self._send_message = send_message
        self._on_tasks_changed = on_tasks_changed
        self._clock = clock
        self._scan_lock = threading.Lock()

    def scan_once(self) -> ScanSummary:
        """Process pending files of every registered group."""

        summary = ScanSummary()
        with self._scan_lock:
            for folder in self.registry.folders():
                summary.add(self._scan_group_locked(folder))
        return summary

    def scan_group(self, folder: str) -> ScanSummary:
        with self._scan_lock:
            return self._scan_group_locked(folder)

    def _scan_group_locked(self, folder: str) -> ScanSummary:
        workspace = self.workspaces.workspace(folder)
        summary = ScanSummary()
        for path in _pending_files(workspace.tasks_dir):
            summary.add(self._process_file(folder, path, self._apply_command_file))
        for path in _pending_files(workspace.messages_dir):
            summary.add(self._process_file(folder, path, self._apply_message_file))
        return summary

    def _process_file(
        self,
        folder: str,
        path: Path,
        apply: Callable[[str, Path, bytes], None],
    ) -> ScanSummary:
        summary = ScanSummary(processed=1)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return ScanSummary()

        try:
            apply(folder, path, raw)
        except MalformedCommand as error:
            self.quarantine(
                folder,
                path,
                reason=str(error),
                error_kind="malformed",
                claimed_source_group=error.source_group,
            )
            summary.quarantined += 1
            return summary
        except UnauthorizedCommand as error:
            self.quarantine(
                folder,
                path,
                reason=str(error),
                error_kind="unauthorized",
                claimed_source_group=error.source_group,
            )
            summary.quarantined += 1
            return summary
        except CommandRejected as error:
            logger.warning("IPC command %s from %s rejected: %s", path.name, folder, error)
            path.unlink(missing_ok=True)
            summary.rejected += 1
            return summary
        except SQLAlchemyError as error:
            path.unlink(missing_ok=True)
            raise StoreUnavailable(f"Store failed while applying {path.name}: {error}") from error

        summary.applied += 1
        return summary

    # -- tasks/ ------------------------------------------------------------

    def _apply_command_file(self, folder: str, path: Path, raw: bytes) -> None:
        command = parse_command(raw)
        target = self.authorize(command, directory_group=folder)
        path.unlink(missing_ok=True)
        self.dispatch(command, target=target)
        logger.info("IPC %s from %s applied (%s)", command.type.value, folder, path.name)

    def authorize(self, command: IpcCommand, *, directory_group: str) -> Any:
        """Check a parsed command against its directory; returns the resolved target."""

        source = command.source_group
        if source != directory_group:
            raise UnauthorizedCommand(
                f"source_group {source!r} does not match directory {directory_group!r}",
                source_group=source,
            )
        is_admin = self.registry.is_admin(source)
        if command.type in ADMIN_ONLY_COMMANDS and not is_admin:
            raise UnauthorizedCommand(
                f"{command.type.value} is restricted to the administrative group",
                source_group=source,
            )

        if command.type in TASK_TARGET_COMMANDS:
            task = self.repository.get_task(command.payload["task_id"])
            if task is None:
                raise CommandRejected(f"Task {command.payload['task_id']} not found")
            if not is_admin and task.group_folder != source:
                raise UnauthorizedCommand(
                    f"Task {task.task_id} belongs to group {task.group_folder!r}",
                    source_group=source,
                )
            return task

        if command.type == IpcCommandType.SCHEDULE_TASK:
            return self._authorize_schedule(command)

        if command.type == IpcCommandType.REGISTER_GROUP:
            try:
                self.workspaces.workspace(command.payload["folder"])
            except ValueError as error:
                raise MalformedCommand(str(error), source_group=source) from error
        return None

    def _authorize_schedule(self, command: IpcCommand) -> RegisteredGroup:
        source = command.source_group
        payload = command.payload
        try:
            validate_schedule(ScheduleType(payload["schedule_type"]), payload["schedule_value"])
        except ValueError as error:
            raise MalformedCommand(str(error), source_group=source) from error

        own_group = self.registry.get(source)
        if own_group is None:
            raise CommandRejected(f"Group {source} is not registered")
        chat_jid = payload.get("chat_jid")
        if not chat_jid or chat_jid == own_group.chat_jid:
            return own_group
        if not self.registry.is_admin(source):
            raise UnauthorizedCommand(
                f"Group {source!r} may only schedule tasks for its own conversation",
                source_group=source,
            )
        target = self.registry.by_jid(chat_jid)
        if target is None:
            raise CommandRejected(f"Conversation {chat_jid} is not registered")
        return target

    def dispatch(self, command: IpcCommand, *, target: Any = None) -> None:
        payload = command.payload
        if command.type == IpcCommandType.SCHEDULE_TASK:
            self._schedule_task(payload, group=target)
        elif command.type == IpcCommandType.PAUSE_TASK:
            self._set_task_status(target, TaskStatus.PAUSED)
        elif command.type == IpcCommandType.RESUME_TASK:
            self._resume_task(target)
        elif command.type == IpcCommandType.CANCEL_TASK:
            self._set_task_status(target, TaskStatus.CANCELED)
        elif command.type == IpcCommandType.REGISTER_GROUP:
            self.registry.register(
                name=payload["name"],
                folder=payload["folder"],
                chat_jid=payload["chat_jid"],
                trigger=payload.get("trigger") or None,
            )
            self.write_groups_snapshot(self.registry.admin_folder)
        elif command.type == IpcCommandType.REFRESH_GROUPS:
            self.registry.refresh()
            self.write_groups_snapshot(self.registry.admin_folder)

    def _schedule_task(self, payload: dict[str, Any], *, group: RegisteredGroup) -> None:
        schedule_type = ScheduleType(payload["schedule_type"])
        task = self.repository.create_task(
            ScheduledTaskCreate(
                group_folder=group.folder,
                chat_jid=group.chat_jid,
                prompt=payload["prompt"],
                schedule_type=schedule_type,
                schedule_value=payload["schedule_value"],
                context_mode=ContextMode(payload.get("context_mode", ContextMode.GROUP.value)),
                next_run=compute_next_run(
                    schedule_type,
                    payload["schedule_value"],
                    now=self._clock(),
                    first=True,
                ),
            ),
        )
        logger.info(
            "Scheduled task %s for %s (%s)",
            task.task_id,
            group.folder,
            schedule_type.value,
        )
        self._tasks_changed(group.folder)

    def _set_task_status(self, task: ScheduledTask, status: TaskStatus) -> None:
        self.repository.set_task_status(task.task_id, status)
        self._tasks_changed(task.group_folder)

    def _resume_task(self, task: ScheduledTask) -> None:
        self.repository.set_task_status(task.task_id, TaskStatus.ACTIVE)
        if task.next_run is None and task.schedule_type != ScheduleType.ONCE:
            self.repository.set_task_next_run(
                task.task_id,
                compute_next_run(task.schedule_type, task.schedule_value, now=self._clock()),
            )
        self._tasks_changed(task.group_folder)

    def _tasks_changed(self, folder: str) -> None:
        if self._on_tasks_changed is not None:
            self._on_tasks_changed(folder)

    # -- messages/ ---------------------------------------------------------

    def _apply_message_file(self, folder: str, path: Path, raw: bytes) -> None:
        message = parse_outbound_message(raw)
        self._authorize_message(message, directory_group=folder)
        path.unlink(missing_ok=True)
        try:
            self._send_message(message.chat_jid, message.text)
        except TransportDisconnected as error:
            logger.warning(
                "IPC message from %s to %s dropped: %s",
                folder,
                message.chat_jid,
                error,
            )
            return
        logger.info("IPC message from %s sent to %s", folder, message.chat_jid)

    def _authorize_message(self, message: OutboundMessage, *, directory_group: str) -> None:
        source = message.source_group
        if source != directory_group:
            raise UnauthorizedCommand(
                f"source_group {source!r} does not match directory {directory_group!r}",
                source_group=source,
            )
        target = self.registry.by_jid(message.chat_jid)
        if target is None:
            raise CommandRejected(f"Conversation {message.chat_jid} is not registered")
        if not self.registry.is_admin(source) and target.folder != source:
            raise UnauthorizedCommand(
                f"Group {source!r} may not message {message.chat_jid}",
                source_group=source,
            )

    # -- quarantine --------------------------------------------------------

    def quarantine(
        self,
        folder: str,
        path: Path,
        *,
        reason: str,
        error_kind: str,
        claimed_source_group: str | None,
    ) -> Path:
        """Move a rejected file aside with a metadata sidecar."""

        quarantine_dir = self.workspaces.quarantine_dir
        target = quarantine_dir / f"{folder}-{path.name}"
        try:
            quarantine_dir.mkdir(parents=True, exist_ok=True)
            os.replace(path, target)
            write_json(
                target.with_name(target.name + META_SUFFIX),
                {
                    "reason": reason,
                    "error_kind": error_kind,
                    "claimed_source_group": claimed_source_group,
                    "directory_group": folder,
                    "original_name": path.name,
                    "quarantined_at": to_iso(self._clock()),
                },
            )
        except OSError as error:
            _raise_if_disk_full(error)
            raise
        logger.warning(
            "IPC file %s from %s quarantined (%s): %s",
            path.name,
            folder,
            error_kind,
            reason,
        )
        return target

    def list_quarantine(self) -> list[QuarantineEntry]:
        quarantine_dir = self.workspaces.quarantine_dir
        if not quarantine_dir.exists():
            return []
        entries: list[QuarantineEntry] = []
        for meta_path in sorted(quarantine_dir.glob(f"*{META_SUFFIX}")):
            meta = load_json(meta_path)
            entries.append(
                QuarantineEntry(
                    path=meta_path.with_name(meta_path.name[: -len(META_SUFFIX)]),
                    reason=str(meta.get("reason", "")),
                    error_kind=str(meta.get("error_kind", "")),
                    claimed_source_group=meta.get("claimed_source_group"),
                    directory_group=str(meta.get("directory_group", "")),
                    quarantined_at=str(meta.get("quarantined_at", "")),
                    meta=meta,
                ),
            )
        return entries

    # -- snapshots ---------------------------------------------------------

    def write_tasks_snapshot(self, folder: str) -> None:
        """Own tasks for a group; every task for the administrative group."""

        workspace = self.workspaces.materialize(folder)
        if self.registry.is_admin(folder):
            tasks = self.repository.list_tasks()
        else:
            tasks = self.repository.list_tasks(group_folder=folder)
        _write_snapshot(
            workspace.ipc_dir,
            workspace.tasks_snapshot_path.name,
            tasks_snapshot(tasks),
        )

    def write_groups_snapshot(self, folder: str) -> None:
        """Full registered-group list for the administrative group, empty otherwise."""

        workspace = self.workspaces.materialize(folder)
        groups = self.registry.all() if self.registry.is_admin(folder) else []
        _write_snapshot(
            workspace.ipc_dir,
            workspace.groups_snapshot_path.name,
            groups_snapshot(groups, self.repository.list_chats()),
        )


def write_command(directory: Path, command: IpcCommand, *, now_ms: int | None = None) -> Path:
    """Producer side: atomically place a command file in a ``tasks/`` directory."""

    return write_json_atomic(directory, new_ipc_filename(now_ms), command.to_document())


def write_input_message(workspace: GroupWorkspace, message: ContinuationMessage) -> Path:
    """Deliver one follow-up message into a live execution's ``input/`` directory."""

    try:
        return write_json_atomic(
            workspace.input_dir,
            new_ipc_filename(),
            message.to_document(),
        )
    except OSError as error:
        _raise_if_disk_full(error)
        raise


def write_close_marker(workspace: GroupWorkspace) -> Path:
    """Ask the execution to end its run after the current turn."""

    try:
        workspace.input_dir.mkdir(parents=True, exist_ok=True)
        workspace.close_marker_path.touch()
    except OSError as error:
        _raise_if_disk_full(error)
        raise
    return workspace.close_marker_path


def drain_input_messages(workspace: GroupWorkspace) -> list[ContinuationMessage]:
    """Remove follow-up files an execution never read; return them oldest first."""

    unread: list[ContinuationMessage] = []
    for path in _pending_files(workspace.input_dir):
        try:
            unread.append(parse_continuation_message(path.read_bytes()))
        except (OSError, ValueError, TypeError) as error:
            logger.warning("Discarding unreadable input file %s: %s", path.name, error)
        path.unlink(missing_ok=True)
    return unread


def clear_close_marker(workspace: GroupWorkspace) -> None:
    workspace.close_marker_path.unlink(missing_ok=True)


def _write_snapshot(directory: Path, filename: str, payload: list[dict[str, Any]]) -> None:
    try:
        write_json_atomic(directory, filename, payload)
    except OSError as error:
        _raise_if_disk_full(error)
        raise


def _pending_files(directory: Path) -> list[Path]:
    if not directory.is_dir():
        return []
    return sorted(
        path
        for path in directory.iterdir()
        if path.is_file() and path.suffix == ".json" and not path.name.startswith(".")
    )


def _raise_if_disk_full(error: OSError) -> None:
    if error.errno in {errno.ENOSPC, errno.EDQUOT}:
        raise ResourceExhausted(f"Disk full: {error}") from error
