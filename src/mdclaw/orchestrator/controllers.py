"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from mdclaw.channels import build_channels
from mdclaw.config import Settings
from mdclaw.errors import TransportDisconnected
from mdclaw.orchestrator.backend import build_sandbox_backend
from mdclaw.orchestrator.engine import Orchestrator
from mdclaw.orchestrator.execution_queue import ExecutionQueue
from mdclaw.orchestrator.ipc import CommandBus
from mdclaw.orchestrator.models import NewMessage, TaskStatus
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.runner import ContainerRunner
from mdclaw.orchestrator.services import GroupRegistry
from mdclaw.orchestrator.workdir import WorkspaceManager
from mdclaw.storage.common import to_iso, utc_now


@dataclass(slots=True)
class RunCommand:
    """CLI input for the long-running orchestrator."""

    db_path: Path | None


@dataclass(slots=True)
class GroupsListCommand:
    """CLI input for group listing."""

    db_path: Path | None


@dataclass(slots=True)
class GroupRegisterCommand:
    """CLI input for manual group registration."""

    db_path: Path | None
    name: str
    folder: str
    chat_jid: str
    trigger: str | None
    requires_trigger: bool


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for scheduled task listing."""

    db_path: Path | None
    group_folder: str | None
    include_finished: bool


@dataclass(slots=True)
class QuarantineListCommand:
    """CLI input for quarantined command listing."""

    db_path: Path | None


@dataclass(slots=True)
class SendMessageCommand:
    """CLI input for injecting an inbound message."""

    db_path: Path | None
    chat_jid: str
    sender: str
    sender_name: str | None
    text: str


def build_orchestrator(settings: Settings) -> Orchestrator:
    """Wire every component from settings."""

    repository = OrchestratorRepository(settings.db_path)
    workspaces = WorkspaceManager(groups_root=settings.groups_dir, ipc_root=settings.ipc_dir)
    registry = GroupRegistry(
        repository,
        workspaces=workspaces,
        admin_folder=settings.assistant.main_group_folder,
        default_trigger=settings.assistant.default_trigger,
    )
    channels = build_channels(
        settings.channels,
        outbox_dir=settings.outbox_dir,
        on_message=lambda _chat_jid, message: repository.store_message(message),
        on_chat_metadata=repository.store_chat_metadata,
    )
    backend = build_sandbox_backend(settings.container)
    runner = ContainerRunner(
        backend=backend,
        workspaces=workspaces,
        secrets=settings.secrets,
        secrets_dir=settings.secrets_dir,
        assistant_name=settings.assistant.name,
        timeout_seconds=settings.container.timeout_seconds,
        max_output_bytes=settings.container.max_output_bytes,
        secrets_mode=settings.container.secrets_mode,
    )
    orchestrator_ref: list[Orchestrator] = []
    command_bus = CommandBus(
        workspaces=workspaces,
        registry=registry,
        repository=repository,
        send_message=lambda chat_jid, text: _deliver_or_raise(orchestrator_ref, chat_jid, text),
    )
    orchestrator = Orchestrator(
        settings=settings,
        repository=repository,
        registry=registry,
        channels=channels,
        runner=runner,
        queue=ExecutionQueue(max_concurrent=settings.container.max_concurrent),
        command_bus=command_bus,
        prepare_sandbox=backend.prepare,
    )
    orchestrator_ref.append(orchestrator)
    return orchestrator


def _deliver_or_raise(orchestrator_ref: list[Orchestrator], chat_jid: str, text: str) -> None:
    if not orchestrator_ref[0].deliver(chat_jid, text):
        raise TransportDisconnected(f"Message to {chat_jid} was not delivered")


class OrchestratorCliController:
    """Coordinates orchestrator run and inspection CLI operations."""

    def run(self, command: RunCommand) -> int:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        return build_orchestrator(settings).run()

    def list_groups(self, command: GroupsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            groups = repository.list_registered_groups()
        if not groups:
            return ["No registered groups."]
        lines = ["folder | name | chat_jid | trigger | requires_trigger | added_at"]
        for group in groups:
            admin = " (admin)" if group.folder == settings.assistant.main_group_folder else ""
            lines.append(
                f"{group.folder}{admin} | {group.name} | {group.chat_jid} | "
                f"{group.trigger_pattern} | {group.requires_trigger} | "
                f"{to_iso(group.added_at) if group.added_at else '-'}",
            )
        return lines

    def register_group(self, command: GroupRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            registry = GroupRegistry(
                repository,
                workspaces=WorkspaceManager(
                    groups_root=settings.groups_dir,
                    ipc_root=settings.ipc_dir,
                ),
                admin_folder=settings.assistant.main_group_folder,
                default_trigger=settings.assistant.default_trigger,
            )
            registry.load()
            group = registry.register(
                name=command.name,
                folder=command.folder,
                chat_jid=command.chat_jid,
                trigger=command.trigger,
                requires_trigger=command.requires_trigger,
            )
        return [
            f"Group registered: folder={group.folder} name={group.name} "
            f"chat_jid={group.chat_jid} trigger={group.trigger_pattern} "
            f"requires_trigger={group.requires_trigger}",
        ]

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(group_folder=command.group_folder)
        if not command.include_finished:
            tasks = [
                task
                for task in tasks
                if task.status in {TaskStatus.ACTIVE, TaskStatus.PAUSED}
            ]
        if not tasks:
            return ["No scheduled tasks."]
        lines = ["task_id | group | status | schedule | next_run | last_result"]
        for task in tasks:
            lines.append(
                f"{task.task_id} | {task.group_folder} | {task.status.value} | "
                f"{task.schedule_type.value}:{task.schedule_value} | "
                f"{to_iso(task.next_run) if task.next_run else '-'} | "
                f"{task.last_result or '-'}",
            )
        return lines

    def list_quarantine(self, command: QuarantineListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            workspaces = WorkspaceManager(
                groups_root=settings.groups_dir,
                ipc_root=settings.ipc_dir,
            )
            command_bus = CommandBus(
                workspaces=workspaces,
                registry=GroupRegistry(
                    repository,
                    workspaces=workspaces,
                    admin_folder=settings.assistant.main_group_folder,
                    default_trigger=settings.assistant.default_trigger,
                ),
                repository=repository,
                send_message=_no_send,
            )
            entries = command_bus.list_quarantine()
        if not entries:
            return ["No quarantined commands."]
        lines = ["file | directory | claimed_source | kind | quarantined_at | reason"]
        for entry in entries:
            lines.append(
                f"{entry.path.name} | {entry.directory_group} | "
                f"{entry.claimed_source_group or '-'} | {entry.error_kind} | "
                f"{entry.quarantined_at} | {entry.reason}",
            )
        return lines

    def send(self, command: SendMessageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        now = utc_now()
        message = NewMessage(
            message_id=f"local-{uuid4().hex}",
            chat_jid=command.chat_jid,
            sender=command.sender,
            sender_name=command.sender_name or command.sender,
            content=command.text,
            timestamp=now,
        )
        with _repository(settings) as repository:
            repository.store_chat_metadata(command.chat_jid, now, channel="local")
            repository.store_message(message)
        return [f"Message stored: id={message.message_id} chat_jid={command.chat_jid}"]


def _no_send(chat_jid: str, text: str) -> None:
    raise RuntimeError("Sending is not available from inspection commands")


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
