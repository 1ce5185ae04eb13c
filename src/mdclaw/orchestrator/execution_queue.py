"""Per-group FIFO execution queue with a global concurrency limit.

Items for one group run strictly in submission order and never overlap; at
most ``max_concurrent`` items run across all groups. Free slots are handed
out round-robin over groups whose queue head is waiting, so a busy group
re-joins the back of the line after each item instead of holding a slot.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class WorkState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DROPPED = "dropped"


@dataclass(slots=True, eq=False)
class WorkHandle:
    """Caller-side view of one submitted item."""

    item_id: int
    group_folder: str
    label: str
    state: WorkState = WorkState.QUEUED
    error: BaseException | None = None
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


@dataclass(slots=True, eq=False)
class _WorkItem:
    handle: WorkHandle
    work: Callable[[], None]
    on_drop: Callable[[], None] | None = None


class ExecutionQueue:
    """The only authority deciding when a queued execution may start."""

    def __init__(
        self,
        *,
        max_concurrent: int = 5,
        thread_name_prefix: str = "mdclaw-exec",
    ) -> None:
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be > 0")
        self.max_concurrent = max_concurrent
        self._thread_name_prefix = thread_name_prefix
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._fifos: dict[str, deque[_WorkItem]] = {}
        self._running_groups: set[str] = set()
        self._ready: deque[str] = deque()
        self._running = 0
        self._accepting = True
        self._admitting = True
        self._ids = itertools.count(1)

    def submit(
        self,
        group_folder: str,
        work: Callable[[], None],
        *,
        label: str = "",
        on_drop: Callable[[], None] | None = None,
    ) -> WorkHandle:
        """Append ``work`` to the group's FIFO and admit whatever is eligible.

        ``on_drop`` runs if the item is discarded by ``drop_pending`` before it starts.
        """

        with self._lock:
            if not self._accepting:
                raise RuntimeError("Execution queue is shut down")
            handle = WorkHandle(item_id=next(self._ids), group_folder=group_folder, label=label)
            fifo = self._fifos.setdefault(group_folder, deque())
            fifo.append(_WorkItem(handle=handle, work=work, on_drop=on_drop))
            if group_folder not in self._running_groups and group_folder not in self._ready:
                self._ready.append(group_folder)
            logger.debug(
                "Queued %s for %s (item=%d, pending=%d)",
                label or "work",
                group_folder,
                handle.item_id,
                len(fifo),
            )
            self._admit_locked()
        return handle

    def has_pending(self, group_folder: str) -> bool:
        """True when the group has an item that has not started yet."""

        with self._lock:
            fifo = self._fifos.get(group_folder)
            if not fifo:
                return False
            waiting = len(fifo) - (1 if group_folder in self._running_groups else 0)
            return waiting > 0

    @property
    def running_count(self) -> int:
        with self._lock:
            return self._running

    @property
    def pending_count(self) -> int:
        with self._lock:
            return sum(len(fifo) for fifo in self._fifos.values()) - self._running

    def stop_admissions(self) -> None:
        """Reject new submissions and start nothing else that is queued."""

        with self._lock:
            self._accepting = False
            self._admitting = False

    def drop_pending(self) -> int:
        """Discard every queued item that has not started."""

        dropped: list[_WorkItem] = []
        with self._lock:
            for group_folder, fifo in self._fifos.items():
                keep = 1 if group_folder in self._running_groups else 0
                while len(fifo) > keep:
                    item = fifo.pop()
                    item.handle.state = WorkState.DROPPED
                    dropped.append(item)
            self._ready.clear()
            self._idle.notify_all()
        for item in dropped:
            if item.on_drop is not None:
                try:
                    item.on_drop()
                except Exception:  # noqa: BLE001
                    logger.exception("Drop hook for %s failed", item.handle.group_folder)
            item.handle._done.set()
        return len(dropped)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is running; returns False on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: self._running == 0, timeout=timeout)

    def _admit_locked(self) -> None:
        while self._admitting and self._running < self.max_concurrent and self._ready:
            group_folder = self._ready.popleft()
            fifo = self._fifos.get(group_folder)
            if not fifo or group_folder in self._running_groups:
                continue
            item = fifo[0]
            self._running += 1
            self._running_groups.add(group_folder)
            item.handle.state = WorkState.RUNNING
            thread = threading.Thread(
                target=self._run_item,
                args=(item,),
                name=f"{self._thread_name_prefix}-{group_folder}-{item.handle.item_id}",
                daemon=True,
            )
            thread.start()

    def _run_item(self, item: _WorkItem) -> None:
        handle = item.handle
        try:
            item.work()
        except Exception as error:  # noqa: BLE001
            handle.state = WorkState.FAILED
            handle.error = error
            logger.exception("Queued %s for %s failed", handle.label or "work", handle.group_folder)
        else:
            handle.state = WorkState.SUCCEEDED
        finally:
            with self._lock:
                self._running -= 1
                self._running_groups.discard(handle.group_folder)
                fifo = self._fifos.get(handle.group_folder)
                if fifo and fifo[0] is item:
                    fifo.popleft()
                if fifo:
                    self._ready.append(handle.group_folder)
                else:
                    self._fifos.pop(handle.group_folder, None)
                self._admit_locked()
                self._idle.notify_all()
            handle._done.set()
