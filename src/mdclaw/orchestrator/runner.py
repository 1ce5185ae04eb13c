"""Supervised lifecycle of one sandboxed agent execution."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from mdclaw.config import SecretSettings
from mdclaw.orchestrator.backend.base import (
    BackendRunError,
    SandboxBackend,
    SandboxLaunch,
    sanitized_environment,
)
from mdclaw.orchestrator.contracts import ContinuationMessage, ExecutionInput
from mdclaw.orchestrator.failure_classifier import classify_exit
from mdclaw.orchestrator.ipc import (
    clear_close_marker,
    drain_input_messages,
    write_close_marker,
    write_input_message,
)
from mdclaw.orchestrator.models import (
    ExecutionHandle,
    ExecutionResult,
    ExitKind,
    RegisteredGroup,
)
from mdclaw.orchestrator.output_parser import OutputParser
from mdclaw.orchestrator.workdir import WorkspaceManager
from mdclaw.storage.common import utc_now

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024
STDERR_TAIL_LINES = 40
STOP_COMMAND_TIMEOUT_SECONDS = 15.0
TERMINATE_GRACE_SECONDS = 2.0


@dataclass(slots=True)
class ExecutionRequest:
    """One turn to run for a group."""

    group: RegisteredGroup
    prompt: str
    chat_jid: str
    is_main: bool
    is_scheduled_task: bool = False


class ContainerRunner:
    """Launches, streams, supervises and classifies agent executions."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backend: SandboxBackend,
        workspaces: WorkspaceManager,
        secrets: SecretSettings,
        secrets_dir: Path,
        assistant_name: str,
        timeout_seconds: float = 1_800.0,
        max_output_bytes: int = 10 * 1024 * 1024,
        secrets_mode: str = "inline",
    ) -> None:
        self.backend = backend
        self.workspaces = workspaces
        self.secrets = secrets
        self.secrets_dir = secrets_dir
        self.assistant_name = assistant_name
        self.timeout_seconds = timeout_seconds
        self.max_output_bytes = max_output_bytes
        self.secrets_mode = secrets_mode

    def run(  # noqa: PLR0915
        self,
        request: ExecutionRequest,
        *,
        on_block: Callable[[str], None],
        on_start: Callable[[ExecutionHandle], None] | None = None,
    ) -> ExecutionResult:
        """Run one execution to completion, streaming blocks to ``on_block``."""

        folder = request.group.folder
        workspace = self.workspaces.materialize(folder)
        clear_close_marker(workspace)
        stale = drain_input_messages(workspace)
        if stale:
            logger.warning("Discarded %d stale input files for %s", len(stale), folder)

        session_id = str(uuid4())
        container_name = f"mdclaw-{folder}-{int(time.time() * 1000)}"
        started_at = time.monotonic()
        timeout = request.group.container_config.timeout_seconds or self.timeout_seconds

        secret_values = self.secrets.load()
        secrets_file: Path | None = None
        inline_secrets = secret_values
        if secret_values and (
            self.secrets_mode == "file" or not self.backend.supports_inline_secrets
        ):
            secrets_file = self._write_secrets_file(container_name, secret_values)
            inline_secrets = {}

        document = ExecutionInput(
            prompt=request.prompt,
            session_id=session_id,
            group_folder=folder,
            chat_jid=request.chat_jid,
            is_main=request.is_main,
            is_scheduled_task=request.is_scheduled_task,
            assistant_name=self.assistant_name,
            secrets=inline_secrets,
        )
        launch = SandboxLaunch(
            group_folder=folder,
            container_name=container_name,
            workspace=workspace,
            is_main=request.is_main,
            container_config=request.group.container_config,
            secrets_file=secrets_file,
        )

        try:
            process = self._spawn(launch)
        except BackendRunError as error:
            self._remove_secrets_file(secrets_file)
            logger.error("Execution for %s failed to start: %s", folder, error)
            classification = classify_exit(
                exit_code=None,
                timed_out=False,
                output_overflow=False,
                spawn_error=str(error),
            )
            return ExecutionResult(
                exit_kind=classification.exit_kind,
                exit_code=None,
                session_id=session_id,
                failure_class=classification.failure_class,
                error=str(error),
            )

        handle = ExecutionHandle(
            group_folder=folder,
            session_id=session_id,
            container_name=container_name,
            input_dir=workspace.input_dir,
            deadline=started_at + timeout,
            started_at=started_at,
            process=process,
            is_scheduled_task=request.is_scheduled_task,
            last_activity_at=started_at,
        )
        logger.info(
            "Execution started for %s (session=%s, container=%s, backend=%s)",
            folder,
            session_id,
            container_name,
            self.backend.name,
        )
        if on_start is not None:
            try:
                on_start(handle)
            except Exception:
                self.kill(handle, "rejected")
                self._remove_secrets_file(secrets_file)
                raise

        stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        stderr_thread = threading.Thread(
            target=_drain_stderr,
            args=(process, stderr_tail, folder),
            name=f"mdclaw-stderr-{folder}",
            daemon=True,
        )
        stderr_thread.start()
        deadline_timer = threading.Timer(timeout, self.kill, args=(handle, "timeout"))
        deadline_timer.daemon = True
        deadline_timer.start()

        def _deliver(text: str) -> None:
            handle.last_activity_at = time.monotonic()
            try:
                on_block(text)
            except Exception:  # noqa: BLE001
                logger.exception("Output block handler failed for %s", folder)

        parser = OutputParser(_deliver)
        output_bytes = 0
        overflow = False
        try:
            _write_stdin(process, document, folder=folder)
            assert process.stdout is not None
            while True:
                chunk = process.stdout.read1(READ_CHUNK_BYTES)
                if not chunk:
                    break
                output_bytes += len(chunk)
                if overflow:
                    continue
                if output_bytes > self.max_output_bytes:
                    overflow = True
                    logger.warning(
                        "Execution for %s exceeded %d output bytes; terminating",
                        folder,
                        self.max_output_bytes,
                    )
                    threading.Thread(
                        target=self.kill,
                        args=(handle, "output_limit"),
                        daemon=True,
                    ).start()
                    continue
                parser.feed(chunk)
            exit_code = process.wait()
        finally:
            deadline_timer.cancel()
            handle.active = False
            self._remove_secrets_file(secrets_file)

        stderr_thread.join(timeout=5)
        if parser.close():
            logger.warning("Execution for %s ended inside an unterminated output block", folder)

        duration_ms = int((time.monotonic() - started_at) * 1000)
        stderr_text = "\n".join(stderr_tail)
        classification = classify_exit(
            exit_code=exit_code,
            timed_out=handle.kill_reason == "timeout",
            output_overflow=overflow,
            killed=handle.kill_reason == "shutdown",
            stderr_tail=stderr_text,
        )
        result = ExecutionResult(
            exit_kind=classification.exit_kind,
            exit_code=exit_code,
            session_id=session_id,
            output_bytes=output_bytes,
            blocks=parser.blocks_emitted,
            duration_ms=duration_ms,
            failure_class=classification.failure_class,
            error=(
                None if classification.exit_kind == ExitKind.CLEAN else classification.reason_code
            ),
        )
        log_level = logging.INFO if result.ok else logging.WARNING
        logger.log(
            log_level,
            "Execution for %s finished: %s (exit=%s, blocks=%d, bytes=%d, %d ms)",
            folder,
            result.exit_kind.value,
            exit_code,
            result.blocks,
            output_bytes,
            duration_ms,
        )
        self._write_run_log(workspace.logs_dir, document, result, stderr_text)
        return result

    def send_message(self, handle: ExecutionHandle, message: ContinuationMessage) -> Path:
        """Route a follow-up message into a live execution."""

        handle.last_activity_at = time.monotonic()
        return write_input_message(self.workspaces.workspace(handle.group_folder), message)

    def collect_unread(self, group_folder: str) -> list[ContinuationMessage]:
        """Take back follow-ups left in ``input/`` after an execution ended."""

        return drain_input_messages(self.workspaces.workspace(group_folder))

    def request_close(self, handle: ExecutionHandle) -> None:
        """Write the close marker once; the execution ends its own run."""

        if handle.close_requested or not handle.active:
            return
        handle.close_requested = True
        write_close_marker(self.workspaces.workspace(handle.group_folder))
        logger.info("Close requested for %s (session=%s)", handle.group_folder, handle.session_id)

    def kill(self, handle: ExecutionHandle, reason: str) -> None:
        """Stop an execution: runtime stop command first, then terminate and kill."""

        process = handle.process
        if process is None or process.poll() is not None:
            return
        if handle.kill_reason is None:
            handle.kill_reason = reason
        logger.warning(
            "Stopping execution for %s (%s, container=%s)",
            handle.group_folder,
            reason,
            handle.container_name,
        )
        stop_args = self.backend.stop_command(handle.container_name)
        if stop_args:
            try:
                subprocess.run(  # noqa: S603
                    stop_args,
                    capture_output=True,
                    timeout=STOP_COMMAND_TIMEOUT_SECONDS,
                    check=False,
                )
            except (OSError, subprocess.SubprocessError) as error:
                logger.warning("Stop command failed for %s: %s", handle.container_name, error)
        if process.poll() is None:
            _terminate_process(process)

    def _spawn(self, launch: SandboxLaunch) -> subprocess.Popen[bytes]:
        run_args = self.backend.build_command(launch)
        env = sanitized_environment(self.secrets.keys)
        try:
            return subprocess.Popen(  # noqa: S603
                run_args,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"Sandbox command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(f"Sandbox failed to start: {error}", transient=True) from error

    def _write_secrets_file(self, container_name: str, values: dict[str, str]) -> Path:
        self.secrets_dir.mkdir(parents=True, exist_ok=True)
        path = self.secrets_dir / f"{container_name}.json"
        descriptor = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump(values, handle)
        return path

    @staticmethod
    def _remove_secrets_file(path: Path | None) -> None:
        if path is not None:
            path.unlink(missing_ok=True)

    def _write_run_log(
        self,
        logs_dir: Path,
        document: ExecutionInput,
        result: ExecutionResult,
        stderr_text: str,
    ) -> None:
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        lines = [
            "=== Execution Run Log ===",
            f"Timestamp: {stamp}",
            f"Group: {document.group_folder}",
            f"Session: {result.session_id}",
            f"IsMain: {document.is_main}",
            f"IsScheduledTask: {document.is_scheduled_task}",
            f"Exit: {result.exit_kind.value} (code={result.exit_code})",
            f"Failure: {result.failure_class.value if result.failure_class else '-'}",
            f"Duration: {result.duration_ms}ms",
            f"Output: {result.output_bytes} bytes, {result.blocks} blocks",
            "",
            "=== Input (redacted) ===",
            json.dumps(document.redacted(), ensure_ascii=False, indent=2),
        ]
        if not result.ok and stderr_text:
            lines.extend(["", "=== Stderr (tail) ===", stderr_text])
        logs_dir.mkdir(parents=True, exist_ok=True)
        (logs_dir / f"run-{stamp}.log").write_text("\n".join(lines) + "\n", "utf-8")


def _write_stdin(
    process: subprocess.Popen[bytes],
    document: ExecutionInput,
    *,
    folder: str,
) -> None:
    assert process.stdin is not None
    try:
        process.stdin.write(document.encode())
        process.stdin.flush()
    except BrokenPipeError:
        logger.warning("Execution for %s closed stdin before reading input", folder)
    finally:
        with contextlib.suppress(BrokenPipeError):
            process.stdin.close()


def _drain_stderr(
    process: subprocess.Popen[bytes],
    tail: deque[str],
    folder: str,
) -> None:
    assert process.stderr is not None
    for raw_line in iter(process.stderr.readline, b""):
        line = raw_line.decode("utf-8", errors="replace").rstrip()
        if line:
            tail.append(line)
            logger.debug("[%s] %s", folder, line)


def _terminate_process(process: subprocess.Popen[bytes]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=TERMINATE_GRACE_SECONDS)
