"""Directory layout helpers for group workspaces and their IPC namespaces."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from mdclaw.orchestrator.contracts import CLOSE_MARKER_NAME

GROUP_FOLDER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
QUARANTINE_DIR_NAME = "_quarantine"
TASKS_SNAPSHOT_NAME = "current_tasks.json"
GROUPS_SNAPSHOT_NAME = "available_groups.json"


def validate_group_folder(folder: str) -> str:
    """Return ``folder`` if it is a safe single path segment."""

    if not GROUP_FOLDER_PATTERN.fullmatch(folder):
        raise ValueError(
            f"Invalid group folder {folder!r}: use letters, digits, '-' or '_' "
            "(max 64 chars, must not start with a separator)",
        )
    return folder


@dataclass(slots=True)
class GroupWorkspace:
    """Materialized per-group paths on the host."""

    folder: str
    group_dir: Path
    logs_dir: Path
    ipc_dir: Path
    tasks_dir: Path
    messages_dir: Path
    input_dir: Path

    @property
    def tasks_snapshot_path(self) -> Path:
        return self.ipc_dir / TASKS_SNAPSHOT_NAME

    @property
    def groups_snapshot_path(self) -> Path:
        return self.ipc_dir / GROUPS_SNAPSHOT_NAME

    @property
    def close_marker_path(self) -> Path:
        return self.input_dir / CLOSE_MARKER_NAME


class WorkspaceManager:
    """Creates deterministic per-group directory layout."""

    def __init__(self, *, groups_root: Path, ipc_root: Path) -> None:
        self.groups_root = groups_root
        self.ipc_root = ipc_root

    @property
    def quarantine_dir(self) -> Path:
        return self.ipc_root / QUARANTINE_DIR_NAME

    def workspace(self, folder: str) -> GroupWorkspace:
        validate_group_folder(folder)
        group_dir = self.groups_root / folder
        ipc_dir = self.ipc_root / folder
        return GroupWorkspace(
            folder=folder,
            group_dir=group_dir,
            logs_dir=group_dir / "logs",
            ipc_dir=ipc_dir,
            tasks_dir=ipc_dir / "tasks",
            messages_dir=ipc_dir / "messages",
            input_dir=ipc_dir / "input",
        )

    def materialize(self, folder: str) -> GroupWorkspace:
        workspace = self.workspace(folder)
        for directory in (
            workspace.group_dir,
            workspace.logs_dir,
            workspace.tasks_dir,
            workspace.messages_dir,
            workspace.input_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)
        return workspace
