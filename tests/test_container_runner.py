from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path

import allure
import pytest

from mdclaw.config import SecretSettings
from mdclaw.orchestrator.backend import LocalProcessSandbox
from mdclaw.orchestrator.contracts import ContinuationMessage
from mdclaw.orchestrator.models import (
    ContainerConfig,
    ExecutionHandle,
    ExecutionResult,
    ExitKind,
    FailureClass,
    RegisteredGroup,
)
from mdclaw.orchestrator.runner import ContainerRunner, ExecutionRequest
from mdclaw.orchestrator.workdir import WorkspaceManager

pytestmark = [
    allure.epic("Agent Execution"),
    allure.feature("Container Runner"),
]

SECRET_KEY = "MDCLAW_TEST_TOKEN"
SECRET_VALUE = "s3cret-value-123"
WAIT_SECONDS = 20.0


def _group(timeout_seconds: float | None = None) -> RegisteredGroup:
    return RegisteredGroup(
        folder="family",
        name="Family",
        chat_jid="family@local",
        trigger_pattern="@Andy",
        container_config=ContainerConfig(timeout_seconds=timeout_seconds),
    )


def _runner(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    template: str,
    **overrides,
) -> ContainerRunner:
    options = {
        "backend": LocalProcessSandbox(template),
        "workspaces": workspaces,
        "secrets": SecretSettings(keys=(SECRET_KEY,)),
        "secrets_dir": tmp_path / "secrets",
        "assistant_name": "Andy",
        "timeout_seconds": 60.0,
    }
    options.update(overrides)
    return ContainerRunner(**options)


def _request(prompt: str, *, scheduled: bool = True, group: RegisteredGroup | None = None):
    return ExecutionRequest(
        group=group or _group(),
        prompt=prompt,
        chat_jid="family@local",
        is_main=False,
        is_scheduled_task=scheduled,
    )


def test_reply_blocks_are_streamed_and_run_is_logged(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    blocks: list[str] = []
    started: list[ExecutionHandle] = []

    result = runner.run(_request("hello there"), on_block=blocks.append, on_start=started.append)

    assert result.ok
    assert result.exit_code == 0
    assert result.blocks == 1
    assert blocks == ["echo: hello there"]
    assert started and started[0].container_name.startswith("mdclaw-family-")
    assert not started[0].active
    [log_path] = workspaces.workspace("family").logs_dir.glob("run-*.log")
    assert "Exit: clean (code=0)" in log_path.read_text("utf-8")


def test_inline_secrets_reach_agent_but_not_logs(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(SECRET_KEY, SECRET_VALUE)
    runner = _runner(tmp_path, workspaces, echo_command_template)
    blocks: list[str] = []

    result = runner.run(_request("who am i"), on_block=blocks.append)

    assert result.ok
    assert blocks == [f"echo: who am i [secrets: {SECRET_KEY}]"]
    [log_path] = workspaces.workspace("family").logs_dir.glob("run-*.log")
    log_text = log_path.read_text("utf-8")
    assert SECRET_VALUE not in log_text
    assert '"MDCLAW_TEST_TOKEN": "***"' in log_text


def test_secrets_file_fallback_is_removed_after_run(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_secrets_file_template: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv(SECRET_KEY, SECRET_VALUE)
    runner = _runner(tmp_path, workspaces, echo_secrets_file_template, secrets_mode="file")
    blocks: list[str] = []

    result = runner.run(_request("from file"), on_block=blocks.append)

    assert result.ok
    assert blocks == [f"echo: from file [secrets: {SECRET_KEY}]"]
    assert list((tmp_path / "secrets").iterdir()) == []


def test_nonzero_exit_is_a_crash_with_partial_output(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    blocks: list[str] = []

    result = runner.run(_request("boom [[exit:3]]"), on_block=blocks.append)

    assert result.exit_kind == ExitKind.CRASHED
    assert result.failure_class == FailureClass.NONZERO_EXIT
    assert result.exit_code == 3
    assert blocks == ["echo: boom"]
    [log_path] = workspaces.workspace("family").logs_dir.glob("run-*.log")
    assert "=== Stderr (tail) ===" in log_path.read_text("utf-8")


def test_deadline_kills_execution(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)

    result = runner.run(_request("slow [[sleep:30]]", group=_group(1.0)), on_block=lambda _t: None)

    assert result.exit_kind == ExitKind.TIMEOUT
    assert result.failure_class == FailureClass.TIMEOUT
    assert result.duration_ms < 15_000


def test_output_limit_kills_execution(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template, max_output_bytes=1_000)
    blocks: list[str] = []

    result = runner.run(_request("loud [[flood:50000]]"), on_block=blocks.append)

    assert result.exit_kind == ExitKind.CRASHED
    assert result.failure_class == FailureClass.OUTPUT_LIMIT
    assert blocks == []


def test_missing_sandbox_command_is_spawn_failure(
    tmp_path: Path,
    workspaces: WorkspaceManager,
) -> None:
    runner = _runner(tmp_path, workspaces, "/nonexistent/mdclaw-agent --ipc-dir {ipc_dir}")

    result = runner.run(_request("hello"), on_block=lambda _t: None)

    assert result.exit_kind == ExitKind.CRASHED
    assert result.failure_class == FailureClass.SPAWN_FAILED
    assert result.exit_code is None


@dataclass
class _InteractiveRun:
    thread: threading.Thread
    blocks: list[str] = field(default_factory=list)
    handles: list[ExecutionHandle] = field(default_factory=list)
    results: list[ExecutionResult] = field(default_factory=list)
    block_seen: threading.Condition = field(default_factory=threading.Condition)

    def wait_for_blocks(self, count: int) -> None:
        with self.block_seen:
            assert self.block_seen.wait_for(lambda: len(self.blocks) >= count, timeout=WAIT_SECONDS)


def _start_interactive(runner: ContainerRunner, prompt: str) -> _InteractiveRun:
    run = _InteractiveRun(thread=threading.Thread(target=lambda: None))

    def _on_block(text: str) -> None:
        with run.block_seen:
            run.blocks.append(text)
            run.block_seen.notify_all()

    def _target() -> None:
        run.results.append(
            runner.run(
                _request(prompt, scheduled=False),
                on_block=_on_block,
                on_start=run.handles.append,
            ),
        )

    run.thread = threading.Thread(target=_target, daemon=True)
    run.thread.start()
    return run


def test_follow_up_messages_and_close_marker(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    run = _start_interactive(runner, "first")

    run.wait_for_blocks(1)
    runner.send_message(
        run.handles[0],
        ContinuationMessage(
            sender="user-1",
            sender_name="Ann",
            content="second",
            timestamp="2026-10-19T12:00:05Z",
        ),
    )
    run.wait_for_blocks(2)
    runner.request_close(run.handles[0])
    runner.request_close(run.handles[0])
    run.thread.join(WAIT_SECONDS)

    assert not run.thread.is_alive()
    assert run.results[0].ok
    assert run.blocks == ["echo: first", "echo: second"]
    assert run.handles[0].close_requested
    assert not workspaces.workspace("family").close_marker_path.exists()


def test_shutdown_kill_is_classified_as_killed(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    run = _start_interactive(runner, "stay")

    run.wait_for_blocks(1)
    runner.kill(run.handles[0], "shutdown")
    run.thread.join(WAIT_SECONDS)

    assert not run.thread.is_alive()
    assert run.results[0].exit_kind == ExitKind.CRASHED
    assert run.results[0].failure_class == FailureClass.KILLED
    assert run.handles[0].kill_reason == "shutdown"


def test_stale_input_files_are_discarded_before_launch(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    input_dir = workspaces.materialize("family").input_dir
    (input_dir / "1760875200000-deadbeef.json").write_text(
        '{"sender": "user-1", "sender_name": "Ann", "content": "old", '
        '"timestamp": "2026-10-19T11:00:00Z"}',
        "utf-8",
    )

    result = runner.run(_request("fresh"), on_block=lambda text: None)

    assert result.ok
    assert list(input_dir.glob("*.json")) == []


def test_unread_follow_ups_are_collected_oldest_first(
    tmp_path: Path,
    workspaces: WorkspaceManager,
    echo_command_template: str,
) -> None:
    runner = _runner(tmp_path, workspaces, echo_command_template)
    input_dir = workspaces.materialize("family").input_dir
    (input_dir / "1760875200000-00000001.json").write_text(
        '{"sender": "user-1", "sender_name": "Ann", "content": "first", '
        '"timestamp": "2026-10-19T12:00:01Z"}',
        "utf-8",
    )
    (input_dir / "1760875200001-00000002.json").write_text(
        '{"sender": "user-1", "sender_name": "Ann", "content": "second", '
        '"timestamp": "2026-10-19T12:00:02Z"}',
        "utf-8",
    )
    (input_dir / "1760875200002-00000003.json").write_text("{not json", "utf-8")

    unread = runner.collect_unread("family")

    assert [message.content for message in unread] == ["first", "second"]
    assert list(input_dir.glob("*.json")) == []
    assert runner.collect_unread("family") == []
