from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from mdclaw.config import (
    DEFAULT_LOCAL_COMMAND_TEMPLATE,
    ContainerSettings,
    SecretSettings,
    Settings,
    TimingSettings,
)

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "MDCLAW_DATA_DIR",
        "MDCLAW_DB_PATH",
        "MDCLAW_CHANNELS",
        "MDCLAW_ASSISTANT_NAME",
        "MDCLAW_CONTAINER_BACKEND",
        "MDCLAW_SECRET_KEYS",
        "MDCLAW_SECRETS_FILE",
        "MDCLAW_LOG_LEVEL",
        "MDCLAW_MAX_CONCURRENT_CONTAINERS",
        "MDCLAW_POLL_INTERVAL_SECONDS",
        "MDCLAW_IPC_POLL_INTERVAL_SECONDS",
        "MDCLAW_SCHEDULER_POLL_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".mdclaw/mdclaw.db")
    assert settings.ipc_dir == Path(".mdclaw/ipc")
    assert settings.groups_dir == Path(".mdclaw/groups")
    assert settings.channels == ("local",)
    assert settings.assistant.default_trigger == "@Andy"
    assert settings.container.backend == "docker"
    assert settings.container.max_concurrent == 5
    assert settings.timing.poll_interval_seconds == 2.0
    assert settings.timing.ipc_poll_interval_seconds == 1.0
    assert settings.timing.scheduler_poll_interval_seconds == 60.0
    assert settings.secrets.keys == ("ANTHROPIC_API_KEY", "CLAUDE_CODE_OAUTH_TOKEN")
    settings.validate()


def test_from_env_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("MDCLAW_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("MDCLAW_ASSISTANT_NAME", "Rex")
    monkeypatch.setenv("MDCLAW_CONTAINER_BACKEND", " Local ")
    monkeypatch.setenv("MDCLAW_MAX_CONCURRENT_CONTAINERS", "2")
    monkeypatch.setenv("MDCLAW_SECRET_KEYS", "A_KEY, B_KEY,,")
    monkeypatch.setenv("MDCLAW_LOG_LEVEL", "debug")

    settings = Settings.from_env(db_path=tmp_path / "custom.db")

    assert settings.db_path == tmp_path / "custom.db"
    assert settings.outbox_dir == tmp_path / "outbox"
    assert settings.assistant.default_trigger == "@Rex"
    assert settings.container.backend == "local"
    assert settings.container.max_concurrent == 2
    assert settings.secrets.keys == ("A_KEY", "B_KEY")
    assert settings.log_level == "DEBUG"
    settings.validate()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(log_level="LOUD"), "MDCLAW_LOG_LEVEL"),
        (Settings(channels=("telegram",)), "MDCLAW_CHANNELS"),
        (Settings(timing=TimingSettings(poll_interval_seconds=0)), "MDCLAW_POLL_INTERVAL"),
        (Settings(timing=TimingSettings(shutdown_grace_seconds=-1)), "SHUTDOWN_GRACE"),
        (Settings(container=ContainerSettings(backend="lxc")), "MDCLAW_CONTAINER_BACKEND"),
        (Settings(container=ContainerSettings(secrets_mode="env")), "MDCLAW_SECRETS_MODE"),
        (Settings(container=ContainerSettings(max_concurrent=0)), "MAX_CONCURRENT"),
        (Settings(container=ContainerSettings(max_output_bytes=0)), "MAX_OUTPUT_BYTES"),
        (
            Settings(container=ContainerSettings(backend="local", local_command_template="agent")),
            "must include",
        ),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_default_local_template_runs_echo_agent() -> None:
    settings = Settings(container=ContainerSettings(backend="local"))

    assert "mdclaw.orchestrator.backend.echo_agent" in DEFAULT_LOCAL_COMMAND_TEMPLATE
    settings.validate()


def test_secrets_prefer_env_file_over_host_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# credentials\nexport A_KEY='from-file'\nUNRELATED=1\nB_KEY=\n",
        "utf-8",
    )
    monkeypatch.setenv("A_KEY", "from-env")
    monkeypatch.setenv("B_KEY", "b-from-env")
    monkeypatch.delenv("C_KEY", raising=False)

    secrets = SecretSettings(keys=("A_KEY", "B_KEY", "C_KEY"), env_file=env_file)

    assert secrets.load() == {"A_KEY": "from-file", "B_KEY": "b-from-env"}


def test_settings_are_plain_dataclasses() -> None:
    settings = Settings()
    changed = replace(settings, container=replace(settings.container, image="custom"))

    assert changed.container.image == "custom"
    assert settings.container.image == "mdclaw"
