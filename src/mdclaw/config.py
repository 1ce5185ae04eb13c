"""Runtime configuration for the orchestrator."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_CONTAINER_BACKENDS = ("docker", "podman", "local")
SUPPORTED_SECRETS_MODES = ("inline", "file")
SUPPORTED_CHANNELS = ("local",)
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

DEFAULT_LOCAL_COMMAND_TEMPLATE = (
    f"{sys.executable} -m mdclaw.orchestrator.backend.echo_agent --ipc-dir {{ipc_dir}}"
)


@dataclass(slots=True)
class AssistantSettings:
    """Identity of the assistant and the privileged group."""

    name: str = "Andy"
    main_group_folder: str = "main"

    @property
    def default_trigger(self) -> str:
        return f"@{self.name}"


@dataclass(slots=True)
class TimingSettings:
    """Control-loop intervals and grace periods."""

    poll_interval_seconds: float = 2.0
    ipc_poll_interval_seconds: float = 1.0
    scheduler_poll_interval_seconds: float = 60.0
    idle_timeout_seconds: float = 1_800.0
    shutdown_grace_seconds: float = 30.0


@dataclass(slots=True)
class ContainerSettings:
    """Sandbox runtime selection and per-execution limits."""

    backend: str = "docker"
    image: str = "mdclaw"
    timeout_seconds: float = 1_800.0
    max_output_bytes: int = 10 * 1024 * 1024
    max_concurrent: int = 5
    local_command_template: str = DEFAULT_LOCAL_COMMAND_TEMPLATE
    secrets_mode: str = "inline"


@dataclass(slots=True)
class SecretSettings:
    """Names of credentials forwarded to executions and where to read them."""

    keys: tuple[str, ...] = ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")
    env_file: Path | None = None

    def load(self) -> dict[str, str]:
        """Resolve configured secrets from the env file, then the host environment."""

        values: dict[str, str] = {}
        if self.env_file is not None and self.env_file.exists():
            file_values = _read_env_file(self.env_file)
            for key in self.keys:
                if file_values.get(key):
                    values[key] = file_values[key]
        for key in self.keys:
            if key in values:
                continue
            value = os.getenv(key)
            if value:
                values[key] = value
        return values


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".mdclaw/mdclaw.db")
    data_dir: Path = Path(".mdclaw")
    log_level: str = "INFO"
    channels: tuple[str, ...] = ("local",)
    assistant: AssistantSettings = field(default_factory=AssistantSettings)
    timing: TimingSettings = field(default_factory=TimingSettings)
    container: ContainerSettings = field(default_factory=ContainerSettings)
    secrets: SecretSettings = field(default_factory=SecretSettings)

    @property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @property
    def groups_dir(self) -> Path:
        return self.data_dir / "groups"

    @property
    def outbox_dir(self) -> Path:
        return self.data_dir / "outbox"

    @property
    def secrets_dir(self) -> Path:
        return self.data_dir / "secrets"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        data_dir = Path(os.getenv("MDCLAW_DATA_DIR", ".mdclaw"))
        env_file = os.getenv("MDCLAW_SECRETS_FILE")
        return cls(
            db_path=db_path or Path(os.getenv("MDCLAW_DB_PATH", str(data_dir / "mdclaw.db"))),
            data_dir=data_dir,
            log_level=os.getenv("MDCLAW_LOG_LEVEL", "INFO").strip().upper(),
            channels=_env_csv("MDCLAW_CHANNELS", default=("local",)),
            assistant=AssistantSettings(
                name=os.getenv("MDCLAW_ASSISTANT_NAME", "Andy"),
                main_group_folder=os.getenv("MDCLAW_MAIN_GROUP_FOLDER", "main"),
            ),
            timing=TimingSettings(
                poll_interval_seconds=float(os.getenv("MDCLAW_POLL_INTERVAL_SECONDS", "2.0")),
                ipc_poll_interval_seconds=float(
                    os.getenv("MDCLAW_IPC_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                scheduler_poll_interval_seconds=float(
                    os.getenv("MDCLAW_SCHEDULER_POLL_INTERVAL_SECONDS", "60.0"),
                ),
                idle_timeout_seconds=float(os.getenv("MDCLAW_IDLE_TIMEOUT_SECONDS", "1800")),
                shutdown_grace_seconds=float(os.getenv("MDCLAW_SHUTDOWN_GRACE_SECONDS", "30")),
            ),
            container=ContainerSettings(
                backend=os.getenv("MDCLAW_CONTAINER_BACKEND", "docker").strip().lower(),
                image=os.getenv("MDCLAW_CONTAINER_IMAGE", "mdclaw"),
                timeout_seconds=float(os.getenv("MDCLAW_CONTAINER_TIMEOUT_SECONDS", "1800")),
                max_output_bytes=int(
                    os.getenv("MDCLAW_CONTAINER_MAX_OUTPUT_BYTES", str(10 * 1024 * 1024)),
                ),
                max_concurrent=int(os.getenv("MDCLAW_MAX_CONCURRENT_CONTAINERS", "5")),
                local_command_template=os.getenv(
                    "MDCLAW_LOCAL_COMMAND_TEMPLATE",
                    DEFAULT_LOCAL_COMMAND_TEMPLATE,
                ),
                secrets_mode=os.getenv("MDCLAW_SECRETS_MODE", "inline").strip().lower(),
            ),
            secrets=SecretSettings(
                keys=_env_csv(
                    "MDCLAW_SECRET_KEYS",
                    default=("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN"),
                ),
                env_file=Path(env_file) if env_file else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any value is out of range."""

        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(
                f"MDCLAW_LOG_LEVEL must be one of {', '.join(SUPPORTED_LOG_LEVELS)}.",
            )
        unknown_channels = [name for name in self.channels if name not in SUPPORTED_CHANNELS]
        if not self.channels or unknown_channels:
            raise ValueError(
                f"MDCLAW_CHANNELS must list channels from {', '.join(SUPPORTED_CHANNELS)}.",
            )
        if not self.assistant.name.strip():
            raise ValueError("MDCLAW_ASSISTANT_NAME must be non-empty.")
        if not self.assistant.main_group_folder.strip():
            raise ValueError("MDCLAW_MAIN_GROUP_FOLDER must be non-empty.")

        timing = self.timing
        if timing.poll_interval_seconds <= 0:
            raise ValueError("MDCLAW_POLL_INTERVAL_SECONDS must be > 0.")
        if timing.ipc_poll_interval_seconds <= 0:
            raise ValueError("MDCLAW_IPC_POLL_INTERVAL_SECONDS must be > 0.")
        if timing.scheduler_poll_interval_seconds <= 0:
            raise ValueError("MDCLAW_SCHEDULER_POLL_INTERVAL_SECONDS must be > 0.")
        if timing.idle_timeout_seconds <= 0:
            raise ValueError("MDCLAW_IDLE_TIMEOUT_SECONDS must be > 0.")
        if timing.shutdown_grace_seconds < 0:
            raise ValueError("MDCLAW_SHUTDOWN_GRACE_SECONDS must be >= 0.")

        container = self.container
        if container.backend not in SUPPORTED_CONTAINER_BACKENDS:
            raise ValueError(
                "MDCLAW_CONTAINER_BACKEND must be one of "
                f"{', '.join(SUPPORTED_CONTAINER_BACKENDS)}.",
            )
        if container.secrets_mode not in SUPPORTED_SECRETS_MODES:
            raise ValueError(
                f"MDCLAW_SECRETS_MODE must be one of {', '.join(SUPPORTED_SECRETS_MODES)}.",
            )
        if container.timeout_seconds <= 0:
            raise ValueError("MDCLAW_CONTAINER_TIMEOUT_SECONDS must be > 0.")
        if container.max_output_bytes <= 0:
            raise ValueError("MDCLAW_CONTAINER_MAX_OUTPUT_BYTES must be > 0.")
        if container.max_concurrent <= 0:
            raise ValueError("MDCLAW_MAX_CONCURRENT_CONTAINERS must be > 0.")
        if container.backend == "local" and "{ipc_dir}" not in container.local_command_template:
            raise ValueError("MDCLAW_LOCAL_COMMAND_TEMPLATE must include {ipc_dir}.")


def _env_csv(name: str, *, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _read_env_file(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw_line in path.read_text("utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if key.startswith("export "):
            key = key[len("export ") :].strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key] = value
    return values
