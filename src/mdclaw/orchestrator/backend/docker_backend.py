"""Container runtime backend (docker or podman CLI)."""

from __future__ import annotations

import os
import subprocess

from mdclaw.orchestrator.backend.base import (
    CONTAINER_GROUP_DIR,
    CONTAINER_IPC_DIR,
    CONTAINER_SECRETS_FILE,
    BackendRunError,
    SandboxLaunch,
)

PREPARE_TIMEOUT_SECONDS = 30
STOP_TIMEOUT_SECONDS = 10


class DockerSandbox:
    """Run each execution in a throwaway container."""

    supports_inline_secrets = True

    def __init__(
        self,
        *,
        image: str,
        cli: str = "docker",
        network: str | None = None,
        run_as_host_user: bool = True,
    ) -> None:
        self.image = image
        self.cli = cli
        self.name = cli
        self.network = network
        self.run_as_host_user = run_as_host_user

    def prepare(self) -> None:
        try:
            completed = subprocess.run(  # noqa: S603
                [self.cli, "image", "inspect", self.image],
                capture_output=True,
                timeout=PREPARE_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Container CLI not found: {self.cli}",
                transient=False,
            ) from error
        except (OSError, subprocess.SubprocessError) as error:
            raise BackendRunError(
                f"Container runtime check failed: {error}",
                transient=True,
            ) from error
        if completed.returncode != 0:
            raise BackendRunError(
                f"Sandbox image {self.image!r} is not available to {self.cli}",
                transient=False,
            )

    def build_command(self, launch: SandboxLaunch) -> list[str]:
        workspace = launch.workspace
        args = [self.cli, "run", "-i", "--rm", "--name", launch.container_name]
        if self.network:
            args.append(f"--network={self.network}")
        if self.run_as_host_user and hasattr(os, "getuid"):
            args.extend(["--user", f"{os.getuid()}:{os.getgid()}"])
        args.extend(_mount(workspace.group_dir.resolve(), CONTAINER_GROUP_DIR, readonly=False))
        args.extend(_mount(workspace.ipc_dir.resolve(), CONTAINER_IPC_DIR, readonly=False))
        for mount in launch.container_config.additional_mounts:
            args.extend(_mount(mount.host_path, mount.container_path, readonly=mount.readonly))
        if launch.secrets_file is not None:
            args.extend(
                _mount(launch.secrets_file.resolve(), CONTAINER_SECRETS_FILE, readonly=True),
            )
        args.append(self.image)
        return args

    def stop_command(self, container_name: str) -> list[str] | None:
        return [self.cli, "stop", "-t", str(STOP_TIMEOUT_SECONDS), container_name]


def _mount(host_path: object, container_path: str, *, readonly: bool) -> list[str]:
    spec = f"{host_path}:{container_path}"
    if readonly:
        spec += ":ro"
    return ["-v", spec]
