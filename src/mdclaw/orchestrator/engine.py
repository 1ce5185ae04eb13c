"""Control-loop state machine that turns inbound messages into executions.

One control thread ticks three timers: the message poll, the command bus scan
and the scheduler. Executions run on worker threads owned by the execution
queue. Cursor and handle tables live in an ``OrchestratorContext`` guarded by
locks; every read-modify-write of a group's Cursor holds that group's lock so
the rollback after a failed execution cannot interleave with continuation
routing for the same group.
"""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError

from mdclaw.channels.base import Channel
from mdclaw.config import Settings
from mdclaw.errors import MdclawError, StoreUnavailable, TransportDisconnected
from mdclaw.orchestrator.backend.base import BackendRunError
from mdclaw.orchestrator.context import format_messages, format_outbound, is_triggered
from mdclaw.orchestrator.contracts import ContinuationMessage
from mdclaw.orchestrator.execution_queue import ExecutionQueue
from mdclaw.orchestrator.ipc import CommandBus
from mdclaw.orchestrator.models import (
    ExecutionHandle,
    ExecutionResult,
    NewMessage,
    OrchestratorState,
    RegisteredGroup,
    ScheduledTask,
)
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.runner import ContainerRunner, ExecutionRequest
from mdclaw.orchestrator.scheduler import TaskScheduler
from mdclaw.orchestrator.services import GroupRegistry
from mdclaw.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

LOOP_SLEEP_SECONDS = 0.05
FORCED_KILL_WAIT_SECONDS = 5.0

_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.INITIALIZING: frozenset({OrchestratorState.RECOVERING}),
    OrchestratorState.RECOVERING: frozenset({OrchestratorState.POLLING}),
    OrchestratorState.POLLING: frozenset(),
    OrchestratorState.SHUTTING_DOWN: frozenset({OrchestratorState.STOPPED}),
    OrchestratorState.STOPPED: frozenset(),
}


@dataclass(slots=True)
class OrchestratorContext:
    """Mutable orchestration state shared by the control and worker threads."""

    cursors: dict[str, datetime | None] = field(default_factory=dict)
    handles: dict[str, ExecutionHandle] = field(default_factory=dict)
    fatal_error: BaseException | None = None
    lock: threading.RLock = field(default_factory=threading.RLock)
    _group_locks: dict[str, threading.Lock] = field(default_factory=dict)

    def group_lock(self, folder: str) -> threading.Lock:
        with self.lock:
            return self._group_locks.setdefault(folder, threading.Lock())

    def cursor(self, folder: str) -> datetime | None:
        with self.lock:
            return self.cursors.get(folder)

    def live_handle(self, folder: str) -> ExecutionHandle | None:
        with self.lock:
            handle = self.handles.get(folder)
            return handle if handle is not None and handle.active else None

    def active_handles(self) -> list[ExecutionHandle]:
        with self.lock:
            return [handle for handle in self.handles.values() if handle.active]


class Orchestrator:
    """Drives startup, polling, execution, command processing and shutdown."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        repository: OrchestratorRepository,
        registry: GroupRegistry,
        channels: list[Channel],
        runner: ContainerRunner,
        queue: ExecutionQueue,
        command_bus: CommandBus,
        context_builder: Callable[[list[NewMessage]], str] = format_messages,
        outbound_formatter: Callable[[str], str] = format_outbound,
        prepare_sandbox: Callable[[], None] | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.registry = registry
        self.channels = channels
        self.runner = runner
        self.queue = queue
        self.command_bus = command_bus
        self.context_builder = context_builder
        self.outbound_formatter = outbound_formatter
        self._prepare_sandbox = prepare_sandbox
        self.scheduler = TaskScheduler(
            repository,
            submit=self.submit_scheduled_task,
            retry_delay_seconds=settings.timing.scheduler_poll_interval_seconds,
        )
        self.context = OrchestratorContext()
        self.state = OrchestratorState.INITIALIZING
        self._stop_requested = False
        self._force_exit = False
        self._stop_signal_name: str | None = None

    # -- lifecycle ---------------------------------------------------------

    def run(self) -> int:
        """Run until a termination signal; returns the process exit code."""

        exit_code = 0
        with self._signal_handlers():
            try:
                self.start()
                self._control_loop()
            except (MdclawError, SQLAlchemyError, BackendRunError, OSError) as error:
                logger.error("Fatal orchestrator error: %s", error)
                exit_code = 1
            finally:
                self.shutdown()
        return exit_code

    def start(self) -> None:
        """Initialize, recover backlog and enter the polling state."""

        self.initialize()
        self.recover()
        self._set_state(OrchestratorState.POLLING)

    def initialize(self) -> None:
        self._require_state(OrchestratorState.INITIALIZING)
        logger.info("Initializing orchestrator (db=%s)", self.settings.db_path)
        self.repository.init_schema()
        self.registry.load()
        with self.context.lock:
            self.context.cursors = self.repository.get_cursors()
        if self._prepare_sandbox is not None:
            self._prepare_sandbox()
        for channel in self.channels:
            channel.connect()

    def recover(self) -> None:
        """Queue backlog left over from a previous process."""

        self._set_state(OrchestratorState.RECOVERING)
        recovered = 0
        for group in self.registry.all():
            messages = self._messages_since_cursor(group)
            if messages:
                recovered += 1
                logger.info(
                    "Recovering %d pending messages for %s",
                    len(messages),
                    group.folder,
                )
                self._process_group(group, messages)
        logger.info("Recovery complete (%d groups with backlog)", recovered)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if self._stop_requested:
            self._force_exit = True
            logger.warning("Second stop request (%s); forcing exit", signal_name)
            return
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.info("Stop requested (%s)", signal_name)

    def shutdown(self) -> None:
        if self.state in {OrchestratorState.SHUTTING_DOWN, OrchestratorState.STOPPED}:
            return
        self._set_state(OrchestratorState.SHUTTING_DOWN)
        self.queue.stop_admissions()
        dropped = self.queue.drop_pending()
        if dropped:
            logger.info("Dropped %d queued executions; they recover on next start", dropped)

        for handle in self.context.active_handles():
            try:
                self.runner.request_close(handle)
            except (OSError, MdclawError) as error:
                logger.warning("Could not close %s: %s", handle.group_folder, error)

        deadline = time.monotonic() + self.settings.timing.shutdown_grace_seconds
        while (
            self.queue.running_count
            and not self._force_exit
            and time.monotonic() < deadline
        ):
            self.queue.wait_idle(timeout=0.1)

        if self.queue.running_count:
            for handle in self.context.active_handles():
                self.runner.kill(handle, "shutdown")
            if not self._force_exit:
                self.queue.wait_idle(timeout=FORCED_KILL_WAIT_SECONDS)

        for channel in self.channels:
            try:
                channel.disconnect()
            except TransportDisconnected as error:
                logger.warning("Channel %s disconnect failed: %s", channel.name, error)
        self.repository.close()
        self._set_state(OrchestratorState.STOPPED)
        logger.info("Orchestrator stopped")

    # -- control loop ------------------------------------------------------

    def _control_loop(self) -> None:
        timing = self.settings.timing
        now = time.monotonic()
        next_poll = next_scan = next_schedule = now
        while not self._stop_requested:
            self._raise_fatal()
            now = time.monotonic()
            if now >= next_poll:
                self._tick(self.poll_once)
                next_poll = now + timing.poll_interval_seconds
            if now >= next_scan:
                self._tick(self.command_bus.scan_once)
                next_scan = now + timing.ipc_poll_interval_seconds
            if now >= next_schedule:
                self._tick(self.scheduler.run_due)
                next_schedule = now + timing.scheduler_poll_interval_seconds
            self.close_idle_handles(now)
            self._sleep_with_stop(min(next_poll, next_scan, next_schedule) - time.monotonic())
        self._raise_fatal()

    def _tick(self, action: Callable[[], object]) -> None:
        try:
            action()
        except SQLAlchemyError as error:
            raise StoreUnavailable(f"Store failed: {error}") from error
        except MdclawError as error:
            if not error.recoverable:
                raise
            logger.warning("%s failed: %s", getattr(action, "__name__", "tick"), error)

    def _raise_fatal(self) -> None:
        with self.context.lock:
            error = self.context.fatal_error
        if error is not None:
            raise error

    def poll_once(self) -> None:
        """Fetch new messages for every group owned by a connected channel."""

        seen: set[str] = set()
        for channel in self.channels:
            if not channel.is_connected():
                try:
                    channel.connect()
                except TransportDisconnected as error:
                    logger.warning("Channel %s still disconnected: %s", channel.name, error)
                    continue
            for group in self.registry.all():
                if group.folder in seen or not channel.owns_jid(group.chat_jid):
                    continue
                seen.add(group.folder)
                messages = self._messages_since_cursor(group)
                if not messages:
                    continue
                handle = self.context.live_handle(group.folder)
                if (
                    handle is not None
                    and not handle.is_scheduled_task
                    and not handle.close_requested
                ):
                    self._route_to_handle(group, handle, messages)
                    continue
                if self.queue.has_pending(group.folder):
                    continue
                self._process_group(group, messages)

    def close_idle_handles(self, now: float | None = None) -> None:
        current = time.monotonic() if now is None else now
        idle_timeout = self.settings.timing.idle_timeout_seconds
        for handle in self.context.active_handles():
            if handle.close_requested or handle.is_scheduled_task:
                continue
            if current - handle.last_activity_at >= idle_timeout:
                logger.info("Execution for %s idle; requesting close", handle.group_folder)
                self.runner.request_close(handle)

    # -- per-group processing ----------------------------------------------

    def _messages_since_cursor(self, group: RegisteredGroup) -> list[NewMessage]:
        return self.repository.get_messages_since(
            group.chat_jid,
            self.context.cursor(group.folder),
        )

    def _process_group(self, group: RegisteredGroup, messages: list[NewMessage]) -> None:
        folder = group.folder
        if not is_triggered(group, messages, is_admin=self.registry.is_admin(folder)):
            with self.context.group_lock(folder):
                self._set_cursor(folder, messages[-1].timestamp)
            logger.debug(
                "%d messages for %s without trigger; cursor advanced",
                len(messages),
                folder,
            )
            return
        self._submit_group(group)

    def _submit_group(self, group: RegisteredGroup) -> None:
        self.queue.submit(
            group.folder,
            lambda: self._guard_fatal(self._execute_group, group.folder),
            label="messages",
        )

    def _route_to_handle(
        self,
        group: RegisteredGroup,
        handle: ExecutionHandle,
        messages: list[NewMessage],
    ) -> None:
        with self.context.group_lock(group.folder):
            # The execution may have ended since the handle was looked up.
            if not handle.active:
                return
            for message in messages:
                self.runner.send_message(handle, ContinuationMessage.from_message(message))
            self._set_cursor(group.folder, messages[-1].timestamp)
        logger.info(
            "Routed %d messages into live execution for %s",
            len(messages),
            group.folder,
        )

    def _execute_group(self, folder: str) -> None:
        group = self.registry.get(folder)
        if group is None:
            return
        with self.context.group_lock(folder):
            before = self.context.cursor(folder)
            messages = self.repository.get_messages_since(group.chat_jid, before)
            if not messages:
                return
            self._set_cursor(folder, messages[-1].timestamp)

        delivery = _DeliveryTracker()

        def _on_block(text: str) -> None:
            delivery.record(self.deliver(group.chat_jid, text))

        try:
            result = self._run_execution(
                group,
                prompt=self.context_builder(messages),
                chat_jid=group.chat_jid,
                is_scheduled_task=False,
                on_block=_on_block,
            )
        finally:
            self._reclaim_unread(group, floor=before)

        failure = result.as_error()
        if (failure is not None or delivery.failed) and delivery.delivered == 0:
            with self.context.group_lock(folder):
                self._set_cursor(folder, before)
            logger.warning(
                "Execution for %s ended with no delivered output (%s); cursor rolled back",
                folder,
                failure or "transport errors",
            )
        elif failure is not None:
            logger.warning(
                "Execution for %s failed after %d delivered blocks (%s); cursor kept",
                folder,
                delivery.delivered,
                failure,
            )
        self.command_bus.scan_group(folder)

    def _reclaim_unread(self, group: RegisteredGroup, *, floor: datetime | None) -> None:
        """Move the cursor back before follow-ups the ended execution never read."""

        with self.context.group_lock(group.folder):
            unread = self.runner.collect_unread(group.folder)
            if not unread:
                return
            first = min(from_iso(message.timestamp) for message in unread)
            earlier = [
                message.timestamp
                for message in self.repository.get_messages_since(group.chat_jid, floor)
                if message.timestamp < first
            ]
            self._set_cursor(group.folder, earlier[-1] if earlier else floor)
        logger.warning(
            "Execution for %s ended with %d unread follow-ups; cursor moved back",
            group.folder,
            len(unread),
        )

    def submit_scheduled_task(self, task: ScheduledTask) -> bool:
        group = self.registry.get(task.group_folder)
        if group is None:
            logger.warning(
                "Scheduled task %s targets unknown group %s",
                task.task_id,
                task.group_folder,
            )
            return False
        try:
            self.queue.submit(
                group.folder,
                lambda: self._guard_fatal(self._execute_scheduled_task, task),
                label=f"task:{task.task_id}",
                on_drop=lambda: self.scheduler.rearm(task),
            )
        except RuntimeError as error:
            logger.warning("Scheduled task %s not queued: %s", task.task_id, error)
            return False
        return True

    def _execute_scheduled_task(self, task: ScheduledTask) -> None:
        group = self.registry.get(task.group_folder)
        if group is None:
            self.scheduler.rearm(task)
            return
        started_at = utc_now()
        started = time.monotonic()
        outputs: list[str] = []
        delivery = _DeliveryTracker()
        result: ExecutionResult | None = None
        failure: str | None = None

        def _on_block(text: str) -> None:
            outputs.append(text)
            delivery.record(self.deliver(task.chat_jid, text))

        try:
            result = self._run_execution(
                group,
                prompt=task.prompt,
                chat_jid=task.chat_jid,
                is_scheduled_task=True,
                on_block=_on_block,
            )
            ended = result.as_error()
            if ended is not None:
                failure = f"{type(ended).__name__}: {ended}"
        except Exception as error:
            failure = f"{type(error).__name__}: {error}"
            raise
        finally:
            self.scheduler.record_run(
                task,
                started_at=started_at,
                duration_ms=(
                    result.duration_ms
                    if result is not None
                    else int((time.monotonic() - started) * 1000)
                ),
                succeeded=failure is None,
                output="\n".join(outputs) or None,
                error=failure,
            )
        self.command_bus.scan_group(group.folder)

    def _run_execution(
        self,
        group: RegisteredGroup,
        *,
        prompt: str,
        chat_jid: str,
        is_scheduled_task: bool,
        on_block: Callable[[str], None],
    ) -> ExecutionResult:
        self.command_bus.write_tasks_snapshot(group.folder)
        self.command_bus.write_groups_snapshot(group.folder)
        request = ExecutionRequest(
            group=group,
            prompt=prompt,
            chat_jid=chat_jid,
            is_main=self.registry.is_admin(group.folder),
            is_scheduled_task=is_scheduled_task,
        )
        try:
            return self.runner.run(request, on_block=on_block, on_start=self._register_handle)
        finally:
            with self.context.lock:
                handle = self.context.handles.get(group.folder)
                if handle is not None and not handle.active:
                    del self.context.handles[group.folder]

    def _register_handle(self, handle: ExecutionHandle) -> None:
        with self.context.lock:
            existing = self.context.handles.get(handle.group_folder)
            if existing is not None and existing.active:
                raise RuntimeError(
                    f"Group {handle.group_folder} already has a live execution",
                )
            self.context.handles[handle.group_folder] = handle

    def deliver(self, chat_jid: str, text: str) -> bool:
        """Send one reply to its conversation; False when nothing was delivered."""

        formatted = self.outbound_formatter(text)
        if not formatted:
            return True
        channel = next((item for item in self.channels if item.owns_jid(chat_jid)), None)
        if channel is None:
            logger.warning("No channel owns %s; reply dropped", chat_jid)
            return False
        try:
            channel.send_message(chat_jid, formatted)
        except TransportDisconnected as error:
            logger.warning("Reply to %s not delivered: %s", chat_jid, error)
            return False
        self.repository.store_message(
            NewMessage(
                message_id=f"bot-{uuid4().hex}",
                chat_jid=chat_jid,
                sender=self.settings.assistant.name,
                sender_name=self.settings.assistant.name,
                content=formatted,
                timestamp=utc_now(),
                is_from_me=True,
                is_bot_message=True,
            ),
        )
        return True

    # -- helpers -----------------------------------------------------------

    def _set_cursor(self, folder: str, timestamp: datetime | None) -> None:
        with self.context.lock:
            self.context.cursors[folder] = timestamp
        self.repository.set_cursor(folder, timestamp)

    def _guard_fatal(self, action: Callable[..., None], *args: object) -> None:
        try:
            action(*args)
        except SQLAlchemyError as error:
            self._record_fatal(StoreUnavailable(f"Store failed: {error}"))
            raise
        except MdclawError as error:
            if not error.recoverable:
                self._record_fatal(error)
            raise

    def _record_fatal(self, error: BaseException) -> None:
        with self.context.lock:
            if self.context.fatal_error is None:
                self.context.fatal_error = error
        self._stop_requested = True

    def _require_state(self, expected: OrchestratorState) -> None:
        if self.state != expected:
            raise RuntimeError(f"Expected state {expected.value}, got {self.state.value}")

    def _set_state(self, new_state: OrchestratorState) -> None:
        allowed = _TRANSITIONS[self.state]
        if new_state != OrchestratorState.SHUTTING_DOWN and new_state not in allowed:
            raise RuntimeError(f"Invalid transition {self.state.value} -> {new_state.value}")
        logger.debug("Orchestrator %s -> %s", self.state.value, new_state.value)
        self.state = new_state

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + max(0.0, seconds)
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(LOOP_SLEEP_SECONDS, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


@dataclass(slots=True)
class _DeliveryTracker:
    delivered: int = 0
    failed: bool = False

    def record(self, ok: bool) -> None:
        if ok:
            self.delivered += 1
        else:
            self.failed = True
