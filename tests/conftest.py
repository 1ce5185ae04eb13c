"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from mdclaw.orchestrator.models import NewMessage
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.services import GroupRegistry
from mdclaw.orchestrator.workdir import WorkspaceManager

SRC_DIR = Path(__file__).resolve().parents[1] / "src"
ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m mdclaw.orchestrator.backend.echo_agent "
    "--ipc-dir {ipc_dir} --max-wait-seconds 10"
)
ECHO_AGENT_WITH_SECRETS_FILE_TEMPLATE = (
    ECHO_AGENT_COMMAND_TEMPLATE + " --secrets-file {secrets_file}"
)
BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


def _make_message(
    chat_jid: str,
    content: str,
    *,
    offset_seconds: int = 0,
    message_id: str | None = None,
    sender: str = "user-1",
    sender_name: str = "Ann",
    is_bot_message: bool = False,
) -> NewMessage:
    return NewMessage(
        message_id=message_id or f"{chat_jid}-{offset_seconds}",
        chat_jid=chat_jid,
        sender=sender,
        sender_name=sender_name,
        content=content,
        timestamp=BASE_TIME + timedelta(seconds=offset_seconds),
        is_from_me=is_bot_message,
        is_bot_message=is_bot_message,
    )


@pytest.fixture()
def make_message():
    """Factory for stored messages at fixed offsets from a base time."""

    return _make_message


@pytest.fixture()
def echo_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Make the package importable by echo agent subprocesses."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def echo_command_template(echo_agent_env: None) -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def echo_secrets_file_template(echo_agent_env: None) -> str:
    return ECHO_AGENT_WITH_SECRETS_FILE_TEMPLATE


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "mdclaw.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def workspaces(tmp_path: Path) -> WorkspaceManager:
    return WorkspaceManager(groups_root=tmp_path / "groups", ipc_root=tmp_path / "ipc")


@pytest.fixture()
def registry(repository: OrchestratorRepository, workspaces: WorkspaceManager) -> GroupRegistry:
    """Registry with the administrative group ``main`` and a regular group ``family``."""

    groups = GroupRegistry(
        repository,
        workspaces=workspaces,
        admin_folder="main",
        default_trigger="@Andy",
    )
    groups.register(name="Main", folder="main", chat_jid="main@local", requires_trigger=False)
    groups.register(name="Family", folder="family", chat_jid="family@local")
    return groups
