"""Host-process backend driven by a command template (development and tests)."""

from __future__ import annotations

import shlex

from mdclaw.orchestrator.backend.base import BackendRunError, SandboxLaunch


class LocalProcessSandbox:
    """Run the agent as a plain host subprocess; offers no isolation."""

    name = "local"
    supports_inline_secrets = True

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def prepare(self) -> None:
        _build_run_args(
            command_template=self.command_template,
            values={"ipc_dir": "", "group_dir": "", "group_folder": "", "secrets_file": ""},
        )

    def build_command(self, launch: SandboxLaunch) -> list[str]:
        return _build_run_args(
            command_template=self.command_template,
            values={
                "ipc_dir": str(launch.workspace.ipc_dir.resolve()),
                "group_dir": str(launch.workspace.group_dir.resolve()),
                "group_folder": launch.group_folder,
                "secrets_file": str(launch.secrets_file) if launch.secrets_file else "",
            },
        )

    def stop_command(self, container_name: str) -> list[str] | None:
        return None


def _build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("Local backend command template is empty.", transient=False)
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "Local backend command template rendered empty command.",
            transient=False,
        )
    return argv
