"""Recurring and one-shot scheduled executions."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from croniter import croniter

from mdclaw.orchestrator.models import (
    ScheduledTask,
    ScheduleType,
    TaskRunStatus,
    TaskStatus,
)
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.storage.common import from_iso, to_utc_aware, utc_now

logger = logging.getLogger(__name__)

RESULT_PREVIEW_CHARS = 200


def validate_schedule(schedule_type: ScheduleType, schedule_value: str) -> None:
    """Raise ``ValueError`` when ``schedule_value`` does not fit ``schedule_type``."""

    if schedule_type == ScheduleType.CRON:
        if not croniter.is_valid(schedule_value):
            raise ValueError(f"Invalid cron expression: {schedule_value!r}")
        return
    if schedule_type == ScheduleType.INTERVAL:
        try:
            milliseconds = int(schedule_value)
        except ValueError as error:
            raise ValueError(f"Invalid interval: {schedule_value!r}") from error
        if milliseconds <= 0:
            raise ValueError(f"Interval must be > 0 ms: {schedule_value!r}")
        return
    try:
        from_iso(schedule_value)
    except ValueError as error:
        raise ValueError(f"Invalid timestamp: {schedule_value!r}") from error


def compute_next_run(
    schedule_type: ScheduleType,
    schedule_value: str,
    *,
    now: datetime,
    first: bool = False,
) -> datetime | None:
    """Next due time after ``now``; a one-shot task only has a first run."""

    now = to_utc_aware(now)
    if schedule_type == ScheduleType.CRON:
        return to_utc_aware(croniter(schedule_value, now).get_next(datetime))
    if schedule_type == ScheduleType.INTERVAL:
        return now + timedelta(milliseconds=int(schedule_value))
    if first:
        return from_iso(schedule_value)
    return None


class TaskScheduler:
    """Submits due tasks and records their outcomes."""

    def __init__(
        self,
        repository: OrchestratorRepository,
        *,
        submit: Callable[[ScheduledTask], bool],
        retry_delay_seconds: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self._submit = submit
        self.retry_delay_seconds = retry_delay_seconds
        self._clock = clock

    def run_due(self, now: datetime | None = None) -> int:
        """Submit every due task once; returns how many were submitted."""

        current = now or self._clock()
        submitted = 0
        for task in self.repository.get_due_tasks(current):
            self.repository.set_task_next_run(
                task.task_id,
                compute_next_run(task.schedule_type, task.schedule_value, now=current),
            )
            try:
                accepted = self._submit(task)
            except Exception:  # noqa: BLE001
                logger.exception("Scheduled task %s failed to submit", task.task_id)
                accepted = False
            if not accepted:
                logger.warning("Scheduled task %s not submitted; retrying", task.task_id)
                self.rearm(task)
                continue
            submitted += 1
            logger.info("Scheduled task %s submitted for %s", task.task_id, task.group_folder)
        return submitted

    def rearm(self, task: ScheduledTask) -> None:
        """Restore the due time of a submission that never ran."""

        current = self.repository.get_task(task.task_id)
        if current is None or current.status != TaskStatus.ACTIVE:
            return
        self.repository.set_task_next_run(task.task_id, task.next_run)
        logger.info("Scheduled task %s re-armed for %s", task.task_id, task.next_run)

    def record_run(  # noqa: PLR0913
        self,
        task: ScheduledTask,
        *,
        started_at: datetime,
        duration_ms: int,
        succeeded: bool,
        output: str | None,
        error: str | None,
    ) -> None:
        """Append a run log entry and update the task's bookkeeping."""

        self.repository.log_task_run(
            task_id=task.task_id,
            run_at=started_at,
            duration_ms=duration_ms,
            status=TaskRunStatus.SUCCESS if succeeded else TaskRunStatus.ERROR,
            result=output,
            error=error,
        )
        summary = _result_summary(output=output, error=error)
        current = self.repository.get_task(task.task_id)
        if current is None:
            return

        if task.schedule_type == ScheduleType.ONCE:
            if succeeded:
                self.repository.update_task_after_run(
                    task.task_id,
                    next_run=None,
                    last_result=summary,
                    status=TaskStatus.COMPLETED,
                )
                return
            retry_at = self._clock() + timedelta(seconds=self.retry_delay_seconds)
            self.repository.update_task_after_run(
                task.task_id,
                next_run=retry_at,
                last_result=summary,
            )
            logger.warning("One-shot task %s failed; retry at %s", task.task_id, retry_at)
            return

        self.repository.update_task_after_run(
            task.task_id,
            next_run=current.next_run,
            last_result=summary,
        )


def _result_summary(*, output: str | None, error: str | None) -> str:
    if error:
        return f"Error: {error}"[:RESULT_PREVIEW_CHARS]
    if output:
        return output[:RESULT_PREVIEW_CHARS]
    return "Completed"
