"""Registered-group set shared by the control loop and the command bus."""

from __future__ import annotations

import logging
import threading

from mdclaw.errors import CommandRejected
from mdclaw.orchestrator.models import ContainerConfig, RegisteredGroup
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.workdir import WorkspaceManager, validate_group_folder
from mdclaw.storage.common import utc_now

logger = logging.getLogger(__name__)


class GroupRegistry:
    """In-memory view of registered groups, persisted through the repository."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        workspaces: WorkspaceManager,
        admin_folder: str,
        default_trigger: str,
    ) -> None:
        self.repository = repository
        self.workspaces = workspaces
        self.admin_folder = admin_folder
        self.default_trigger = default_trigger
        self._lock = threading.RLock()
        self._groups: dict[str, RegisteredGroup] = {}

    def load(self) -> list[RegisteredGroup]:
        """Replace the in-memory set with the stored one."""

        groups = self.repository.list_registered_groups()
        with self._lock:
            self._groups = {group.folder: group for group in groups}
        for group in groups:
            self.workspaces.materialize(group.folder)
        logger.info("Loaded %d registered groups", len(groups))
        return groups

    refresh = load

    def is_admin(self, folder: str) -> bool:
        return folder == self.admin_folder

    def get(self, folder: str) -> RegisteredGroup | None:
        with self._lock:
            return self._groups.get(folder)

    def by_jid(self, chat_jid: str) -> RegisteredGroup | None:
        with self._lock:
            for group in self._groups.values():
                if group.chat_jid == chat_jid:
                    return group
        return None

    def all(self) -> list[RegisteredGroup]:
        with self._lock:
            return sorted(self._groups.values(), key=lambda group: group.folder)

    def folders(self) -> list[str]:
        with self._lock:
            return sorted(self._groups)

    def register(  # noqa: PLR0913
        self,
        *,
        name: str,
        folder: str,
        chat_jid: str,
        trigger: str | None = None,
        requires_trigger: bool = True,
        container_config: ContainerConfig | None = None,
    ) -> RegisteredGroup:
        """Create or re-register a group and materialize its workspace."""

        validate_group_folder(folder)
        with self._lock:
            owner = self.by_jid(chat_jid)
            if owner is not None and owner.folder != folder:
                raise CommandRejected(
                    f"Conversation {chat_jid} is already registered to group {owner.folder}",
                )
            existing = self._groups.get(folder)
            group = RegisteredGroup(
                folder=folder,
                name=name,
                chat_jid=chat_jid,
                trigger_pattern=trigger or self.default_trigger,
                requires_trigger=requires_trigger,
                container_config=container_config
                or (existing.container_config if existing else ContainerConfig()),
                added_at=existing.added_at if existing else utc_now(),
            )
            stored = self.repository.upsert_registered_group(group)
            self._groups[folder] = stored
        self.workspaces.materialize(folder)
        logger.info("Registered group %s (%s) for %s", folder, name, chat_jid)
        return stored
