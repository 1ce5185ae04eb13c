"""Sandbox backend interface for launching agent executions."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from mdclaw.orchestrator.models import ContainerConfig
from mdclaw.orchestrator.workdir import GroupWorkspace

CONTAINER_GROUP_DIR = "/data"
CONTAINER_IPC_DIR = "/ipc"
CONTAINER_SECRETS_FILE = "/secrets.json"


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class SandboxLaunch:
    """Everything a backend needs to build one launch command."""

    group_folder: str
    container_name: str
    workspace: GroupWorkspace
    is_main: bool
    container_config: ContainerConfig
    secrets_file: Path | None = None


class SandboxBackend(Protocol):
    """Capability interface implemented by sandbox runtimes."""

    name: str
    supports_inline_secrets: bool

    def prepare(self) -> None:
        """Verify the runtime and image are usable; raise ``BackendRunError`` otherwise."""

    def build_command(self, launch: SandboxLaunch) -> list[str]:
        """Return argv that starts the execution with stdin attached."""

    def stop_command(self, container_name: str) -> list[str] | None:
        """Return argv that stops a running execution gracefully, if the runtime has one."""


def sanitized_environment(
    secret_keys: Iterable[str],
    *,
    base: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Copy of the host environment with every credential key removed."""

    env = dict(os.environ if base is None else base)
    for key in secret_keys:
        env.pop(key, None)
    return env
