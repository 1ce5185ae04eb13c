from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from mdclaw.orchestrator.models import (
    ScheduledTask,
    ScheduledTaskCreate,
    ScheduleType,
    TaskStatus,
)
from mdclaw.orchestrator.repository import OrchestratorRepository
from mdclaw.orchestrator.scheduler import TaskScheduler, compute_next_run, validate_schedule

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Task Scheduler"),
]

NOW = datetime(2026, 10, 19, 8, 30, tzinfo=UTC)


@pytest.mark.parametrize(
    ("schedule_type", "value"),
    [
        (ScheduleType.CRON, "0 9 * * 1-5"),
        (ScheduleType.INTERVAL, "300000"),
        (ScheduleType.ONCE, "2026-10-20T09:00:00Z"),
        (ScheduleType.ONCE, "2026-10-20T09:00:00"),
    ],
)
def test_valid_schedules(schedule_type: ScheduleType, value: str) -> None:
    validate_schedule(schedule_type, value)


@pytest.mark.parametrize(
    ("schedule_type", "value"),
    [
        (ScheduleType.CRON, "61 * * * *"),
        (ScheduleType.INTERVAL, "0"),
        (ScheduleType.INTERVAL, "five minutes"),
        (ScheduleType.ONCE, "tomorrow"),
    ],
)
def test_invalid_schedules(schedule_type: ScheduleType, value: str) -> None:
    with pytest.raises(ValueError):
        validate_schedule(schedule_type, value)


def test_cron_next_run_is_evaluated_in_utc() -> None:
    assert compute_next_run(ScheduleType.CRON, "0 9 * * *", now=NOW) == NOW.replace(
        hour=9,
        minute=0,
    )


def test_interval_next_run_counts_from_now() -> None:
    assert compute_next_run(ScheduleType.INTERVAL, "90000", now=NOW) == NOW + timedelta(
        seconds=90,
    )


def test_once_only_has_a_first_run() -> None:
    value = "2026-10-20T09:00:00Z"

    assert compute_next_run(ScheduleType.ONCE, value, now=NOW, first=True) == datetime(
        2026,
        10,
        20,
        9,
        0,
        tzinfo=UTC,
    )
    assert compute_next_run(ScheduleType.ONCE, value, now=NOW) is None


def _create(repository: OrchestratorRepository, schedule_type: ScheduleType, value: str) -> str:
    return repository.create_task(
        ScheduledTaskCreate(
            group_folder="family",
            chat_jid="family@local",
            prompt="report",
            schedule_type=schedule_type,
            schedule_value=value,
            next_run=NOW - timedelta(minutes=1),
        ),
    ).task_id


def test_run_due_submits_and_rearms(repository: OrchestratorRepository) -> None:
    task_id = _create(repository, ScheduleType.INTERVAL, "600000")
    submitted: list[ScheduledTask] = []
    scheduler = TaskScheduler(
        repository,
        submit=lambda task: submitted.append(task) is None,
        clock=lambda: NOW,
    )

    assert scheduler.run_due() == 1
    assert scheduler.run_due() == 0

    assert [task.task_id for task in submitted] == [task_id]
    assert repository.get_task(task_id).next_run == NOW + timedelta(minutes=10)


def test_refused_submission_is_retried_next_tick(repository: OrchestratorRepository) -> None:
    task_id = _create(repository, ScheduleType.INTERVAL, "600000")
    scheduler = TaskScheduler(repository, submit=lambda task: False, clock=lambda: NOW)

    assert scheduler.run_due() == 0
    assert repository.get_task(task_id).next_run == NOW - timedelta(minutes=1)


def test_failing_submission_does_not_stop_other_tasks(repository: OrchestratorRepository) -> None:
    first = _create(repository, ScheduleType.INTERVAL, "600000")
    second = _create(repository, ScheduleType.INTERVAL, "600000")

    def _submit(task: ScheduledTask) -> bool:
        if task.task_id == first:
            raise RuntimeError("queue exploded")
        return True

    scheduler = TaskScheduler(repository, submit=_submit, clock=lambda: NOW)

    assert scheduler.run_due() == 1
    assert repository.get_task(second).next_run == NOW + timedelta(minutes=10)


def test_successful_one_shot_task_completes(repository: OrchestratorRepository) -> None:
    task_id = _create(repository, ScheduleType.ONCE, "2026-10-19T08:29:00Z")
    scheduler = TaskScheduler(repository, submit=lambda task: True, clock=lambda: NOW)
    scheduler.run_due()
    task = repository.get_task(task_id)

    scheduler.record_run(
        task,
        started_at=NOW,
        duration_ms=50,
        succeeded=True,
        output="all good",
        error=None,
    )

    stored = repository.get_task(task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.next_run is None
    assert stored.last_result == "all good"
    assert repository.get_due_tasks(NOW + timedelta(days=1)) == []


def test_failed_one_shot_task_is_retried(repository: OrchestratorRepository) -> None:
    task_id = _create(repository, ScheduleType.ONCE, "2026-10-19T08:29:00Z")
    scheduler = TaskScheduler(
        repository,
        submit=lambda task: True,
        retry_delay_seconds=120,
        clock=lambda: NOW,
    )
    scheduler.run_due()

    scheduler.record_run(
        repository.get_task(task_id),
        started_at=NOW,
        duration_ms=50,
        succeeded=False,
        output=None,
        error="timeout",
    )

    stored = repository.get_task(task_id)
    assert stored.status == TaskStatus.ACTIVE
    assert stored.next_run == NOW + timedelta(minutes=2)
    assert stored.last_result == "Error: timeout"
    [run] = repository.list_task_runs(task_id)
    assert run.status == "error"


def test_recurring_task_keeps_next_run_after_recording(
    repository: OrchestratorRepository,
) -> None:
    task_id = _create(repository, ScheduleType.CRON, "0 9 * * *")
    scheduler = TaskScheduler(repository, submit=lambda task: True, clock=lambda: NOW)
    scheduler.run_due()

    scheduler.record_run(
        repository.get_task(task_id),
        started_at=NOW,
        duration_ms=10,
        succeeded=True,
        output=None,
        error=None,
    )

    stored = repository.get_task(task_id)
    assert stored.next_run == NOW.replace(hour=9, minute=0)
    assert stored.last_result == "Completed"


def test_one_shot_task_survives_a_failing_submission(repository: OrchestratorRepository) -> None:
    task_id = _create(repository, ScheduleType.ONCE, "2026-10-19T08:29:00Z")

    def _submit(task: ScheduledTask) -> bool:
        raise RuntimeError("queue exploded")

    scheduler = TaskScheduler(repository, submit=_submit, clock=lambda: NOW)

    assert scheduler.run_due() == 0
    assert [task.task_id for task in repository.get_due_tasks(NOW)] == [task_id]


def test_rearm_restores_due_time_of_active_tasks_only(
    repository: OrchestratorRepository,
) -> None:
    active = _create(repository, ScheduleType.ONCE, "2026-10-19T08:29:00Z")
    canceled = _create(repository, ScheduleType.ONCE, "2026-10-19T08:29:00Z")
    scheduler = TaskScheduler(repository, submit=lambda task: True, clock=lambda: NOW)
    due = {task.task_id: task for task in repository.get_due_tasks(NOW)}
    scheduler.run_due()
    repository.set_task_status(canceled, TaskStatus.CANCELED)

    scheduler.rearm(due[active])
    scheduler.rearm(due[canceled])

    assert repository.get_task(active).next_run == NOW - timedelta(minutes=1)
    assert repository.get_task(canceled).next_run is None
