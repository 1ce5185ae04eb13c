"""Sandbox backends for agent executions."""

from __future__ import annotations

from mdclaw.config import ContainerSettings
from mdclaw.orchestrator.backend.base import (
    BackendRunError,
    SandboxBackend,
    SandboxLaunch,
    sanitized_environment,
)
from mdclaw.orchestrator.backend.docker_backend import DockerSandbox
from mdclaw.orchestrator.backend.local_backend import LocalProcessSandbox


def build_sandbox_backend(settings: ContainerSettings) -> SandboxBackend:
    """Select the sandbox variant configured for this process."""

    if settings.backend in {"docker", "podman"}:
        return DockerSandbox(image=settings.image, cli=settings.backend)
    if settings.backend == "local":
        return LocalProcessSandbox(settings.local_command_template)
    raise ValueError(f"Unsupported container backend: {settings.backend}")


__all__ = [
    "BackendRunError",
    "DockerSandbox",
    "LocalProcessSandbox",
    "SandboxBackend",
    "SandboxLaunch",
    "build_sandbox_backend",
    "sanitized_environment",
]
