from datetime import UTC, datetime

import pytest

from multiverse.errors import InvariantViolation, NotFoundError
from multiverse.events import TASK_STATE_CHANGE, RecordingEmitter
from multiverse.queue import FilesystemQueue
from multiverse.scheduler import Scheduler, TaskStatus
from multiverse.state.models import NodeRuntime, NodesRuntime

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _scheduler(repo, events=None) -> Scheduler:
    return Scheduler(repo, FilesystemQueue(repo.queue_dir), events, clock=lambda: NOW)


def _status(repo, task_id: str) -> str:
    return repo.state.load_tasks().get(task_id).status


def test_schedule_task_without_dependencies_enqueues(repo, make_task) -> None:
    make_task("a")
    events = RecordingEmitter()
    scheduler = _scheduler(repo, events)

    job = scheduler.schedule_task("a")

    assert job is not None
    assert job.task_id == "a"
    assert job.payload == {"action": "run_task"}
    assert _status(repo, "a") == TaskStatus.QUEUED
    assert [item.job_id for item in scheduler.queue.pending("default")] == [job.job_id]
    assert [
        (payload["old_status"], payload["new_status"])
        for payload in events.named(TASK_STATE_CHANGE)
    ] == [("PENDING", "READY"), ("READY", "QUEUED")]
    assert repo.state.load_tasks().queue_meta.last_scheduled_at == NOW.isoformat()


def test_schedule_task_blocks_on_unfinished_dependency(repo, make_task) -> None:
    make_task("a")
    make_task("b", deps=["a"])
    scheduler = _scheduler(repo)

    assert scheduler.schedule_task("b") is None
    assert _status(repo, "b") == TaskStatus.BLOCKED
    assert scheduler.queue.pending("default") == []


def test_unknown_dependency_is_unsatisfied(repo, make_task) -> None:
    make_task("b", deps=["ghost"])

    assert _scheduler(repo).schedule_task("b") is None
    assert _status(repo, "b") == TaskStatus.BLOCKED


def test_dependency_satisfied_by_implemented_runtime(repo, make_task) -> None:
    make_task("a")
    make_task("b", deps=["a"])
    repo.state.save_nodes_runtime(NodesRuntime(nodes=[NodeRuntime(node_id="a", status="implemented")]))

    assert _scheduler(repo).schedule_task("b") is not None


def test_schedule_ready_tasks_orders_by_priority_then_age(repo, make_task) -> None:
    make_task("low", created_at="2026-01-01T00:00:02+00:00")
    make_task("high", priority=5, created_at="2026-01-01T00:00:03+00:00")
    make_task("older", created_at="2026-01-01T00:00:01+00:00")
    make_task("waiting", deps=["low"])

    scheduled = _scheduler(repo).schedule_ready_tasks()

    assert scheduled == ["high", "older", "low"]
    assert _status(repo, "waiting") == TaskStatus.PENDING


def test_schedule_ready_tasks_breaks_exact_ties_by_task_id(repo, make_task) -> None:
    stamp = "2026-01-01T00:00:01+00:00"
    for task_id in ("c", "a", "b"):
        make_task(task_id, created_at=stamp)

    assert _scheduler(repo).schedule_ready_tasks() == ["a", "b", "c"]


def test_blocked_tasks_return_to_pending_once_dependencies_finish(repo, make_task) -> None:
    make_task("a", status="SUCCEEDED")
    make_task("b", deps=["a"], status="BLOCKED")
    make_task("c", deps=["b"])
    scheduler = _scheduler(repo)

    assert scheduler.update_blocked_tasks() == ["b"]
    assert scheduler.set_blocked_for_unsatisfied() == ["c"]
    assert _status(repo, "b") == TaskStatus.PENDING
    assert _status(repo, "c") == TaskStatus.BLOCKED


def test_reset_retry_tasks_waits_for_due_time(repo, make_task) -> None:
    make_task("due", status="RETRY_WAIT")
    make_task("later", status="RETRY_WAIT")
    tasks = repo.state.load_tasks()
    tasks.get("due").next_retry_at = "2026-03-01T11:59:00+00:00"
    tasks.get("later").next_retry_at = "2026-03-01T12:05:00+00:00"
    repo.state.save_tasks(tasks)

    assert _scheduler(repo).reset_retry_tasks() == ["due"]
    tasks = repo.state.load_tasks()
    assert tasks.get("due").status == TaskStatus.PENDING
    assert tasks.get("due").next_retry_at is None
    assert tasks.get("later").status == TaskStatus.RETRY_WAIT


def test_illegal_transition_leaves_task_untouched(repo, make_task) -> None:
    make_task("a")
    events = RecordingEmitter()

    with pytest.raises(InvariantViolation):
        _scheduler(repo, events).transition("a", TaskStatus.SUCCEEDED)

    assert _status(repo, "a") == TaskStatus.PENDING
    assert events.events == []


def test_failed_task_can_be_rescheduled(repo, make_task) -> None:
    make_task("a", status="FAILED")

    assert _scheduler(repo).schedule_task("a") is not None
    assert _status(repo, "a") == TaskStatus.QUEUED


def test_running_task_cannot_be_rescheduled(repo, make_task) -> None:
    make_task("a", status="RUNNING")

    with pytest.raises(InvariantViolation):
        _scheduler(repo).schedule_task("a")


def test_cancel_task(repo, make_task) -> None:
    make_task("a")
    make_task("b")
    scheduler = _scheduler(repo)
    scheduler.schedule_task("a")

    assert scheduler.cancel_task("a").status == TaskStatus.CANCELED
    with pytest.raises(InvariantViolation):
        scheduler.cancel_task("b")
    with pytest.raises(NotFoundError):
        scheduler.cancel_task("ghost")


def test_transition_applies_mutation(repo, make_task) -> None:
    make_task("a", status="QUEUED")

    def _begin(task) -> None:
        task.attempt_count += 1

    task = _scheduler(repo).transition("a", TaskStatus.RUNNING, _begin)

    assert task.attempt_count == 1
    stored = repo.state.load_tasks().get("a")
    assert stored.status == TaskStatus.RUNNING
    assert stored.attempt_count == 1
    assert stored.updated_at == NOW.isoformat()
