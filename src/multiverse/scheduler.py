from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from datetime import datetime
from enum import StrEnum

from multiverse.errors import InvariantViolation, NotFoundError
from multiverse.events import TASK_STATE_CHANGE, EventEmitter, NullEmitter, task_state_change
from multiverse.queue import FilesystemQueue
from multiverse.state.models import (
    Job,
    NodeDesign,
    NodesRuntime,
    TasksState,
    TaskState,
    parse_iso,
    to_iso,
    utcnow,
)
from multiverse.state.repository import WorkspaceRepository

log = logging.getLogger(__name__)


class TaskStatus(StrEnum):
    PENDING = "PENDING"
    BLOCKED = "BLOCKED"
    READY = "READY"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    RETRY_WAIT = "RETRY_WAIT"
    CANCELED = "CANCELED"
    COMPLETED = "COMPLETED"


S = TaskStatus

ALLOWED_TRANSITIONS: frozenset[tuple[TaskStatus, TaskStatus]] = frozenset(
    {
        (S.PENDING, S.READY),
        (S.PENDING, S.BLOCKED),
        (S.BLOCKED, S.PENDING),
        (S.READY, S.QUEUED),
        (S.QUEUED, S.RUNNING),
        (S.RUNNING, S.SUCCEEDED),
        (S.RUNNING, S.RETRY_WAIT),
        (S.RUNNING, S.FAILED),
        (S.RETRY_WAIT, S.PENDING),
        (S.RUNNING, S.CANCELED),
        (S.QUEUED, S.CANCELED),
        (S.READY, S.CANCELED),
        # Operator reschedule through schedule_task().
        (S.FAILED, S.READY),
        (S.FAILED, S.BLOCKED),
        (S.BLOCKED, S.READY),
    }
)

SCHEDULABLE = {S.PENDING, S.FAILED, S.BLOCKED}
DEPENDENCY_DONE = {S.SUCCEEDED, S.COMPLETED, S.CANCELED}
RUNTIME_DONE = {"implemented", "verified"}
CANCELABLE = {S.RUNNING, S.QUEUED, S.READY}


def check_transition(task_id: str, old: str, new: str) -> None:
    try:
        pair = (TaskStatus(old), TaskStatus(new))
    except ValueError as exc:
        raise InvariantViolation(f"unknown task status for {task_id}: {old} -> {new}") from exc
    if pair not in ALLOWED_TRANSITIONS:
        raise InvariantViolation(f"illegal transition for {task_id}: {old} -> {new}")


def scheduling_order(tasks: list[TaskState]) -> list[TaskState]:
    """Highest priority first; equal priorities run oldest `created_at` first.

    Ascending `task_id` settles exact ties, so a tick is deterministic.
    """
    return sorted(tasks, key=lambda task: (-task.priority, task.created_at, task.task_id))


class Scheduler:
    """Moves tasks through the state machine and feeds the per-pool queues.

    Every public method reloads ``tasks.json``, mutates it and saves it
    before emitting ``task:stateChange`` events.
    """

    def __init__(
        self,
        repo: WorkspaceRepository,
        queue: FilesystemQueue,
        events: EventEmitter | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.queue = queue
        self.events = events or NullEmitter()
        self.clock = clock
        self._lock = threading.RLock()

    def _emit_change(self, task_id: str, old: str, new: str) -> None:
        self.events.emit(TASK_STATE_CHANGE, task_state_change(task_id, old, new))

    def _apply(self, task: TaskState, new: TaskStatus) -> tuple[str, str, str]:
        old = task.status
        check_transition(task.task_id, old, new)
        task.status = str(new)
        task.updated_at = to_iso(self.clock())
        log.info("task %s: %s -> %s", task.task_id, old, new)
        return task.task_id, old, str(new)

    def _save(self, tasks: TasksState, changes: list[tuple[str, str, str]]) -> None:
        if not changes:
            return
        self.repo.state.save_tasks(tasks)
        for change in changes:
            self._emit_change(*change)

    def _load_task(self, tasks: TasksState, task_id: str) -> TaskState:
        task = tasks.get(task_id)
        if task is None:
            raise NotFoundError(f"task not found: {task_id}", kind="task", key=task_id)
        return task

    def dependencies_of(self, task: TaskState) -> list[str]:
        node: NodeDesign | None = self.repo.design.find_node(task.node_id)
        if node is None:
            log.debug("no node design for %s; treating task %s as dependency-free",
                      task.node_id, task.task_id)
            return []
        return list(node.dependencies)

    def dependencies_satisfied(
        self,
        task: TaskState,
        tasks: TasksState,
        runtime: NodesRuntime | None = None,
    ) -> bool:
        dependencies = self.dependencies_of(task)
        if not dependencies:
            return True
        runtime = runtime if runtime is not None else self.repo.state.load_nodes_runtime()
        done_runtime = {node.node_id for node in runtime.nodes if node.status in RUNTIME_DONE}
        for dep in dependencies:
            related = [item for item in tasks.tasks if item.node_id == dep or item.task_id == dep]
            if any(item.status in DEPENDENCY_DONE for item in related):
                continue
            if dep in done_runtime:
                continue
            return False
        return True

    def _enqueue(self, tasks: TasksState, task: TaskState) -> Job:
        stamp = time.time_ns()
        job = Job(
            job_id=f"job-{task.task_id}-{stamp}",
            task_id=task.task_id,
            pool_id=task.pool_id or "default",
            payload={"action": "run_task"},
        )
        self.queue.enqueue(job)
        tasks.queue_meta.last_scheduled_at = to_iso(self.clock())
        return job

    def _schedule_loaded(
        self,
        tasks: TasksState,
        task: TaskState,
        runtime: NodesRuntime,
    ) -> Job | None:
        if task.status not in SCHEDULABLE:
            raise InvariantViolation(
                f"task {task.task_id} cannot be scheduled from status {task.status}"
            )
        if not self.dependencies_satisfied(task, tasks, runtime):
            if task.status != S.BLOCKED:
                self._save(tasks, [self._apply(task, S.BLOCKED)])
            return None
        self._save(tasks, [self._apply(task, S.READY)])
        job = self._enqueue(tasks, task)
        self._save(tasks, [self._apply(task, S.QUEUED)])
        return job

    def schedule_task(self, task_id: str) -> Job | None:
        """READY + enqueue + QUEUED when deps are met; BLOCKED (returns None) otherwise."""
        with self._lock:
            tasks = self.repo.state.load_tasks()
            task = self._load_task(tasks, task_id)
            return self._schedule_loaded(tasks, task, self.repo.state.load_nodes_runtime())

    def schedule_ready_tasks(self) -> list[str]:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            runtime = self.repo.state.load_nodes_runtime()
            ready = [
                task
                for task in tasks.tasks
                if task.status == S.PENDING and self.dependencies_satisfied(task, tasks, runtime)
            ]
            scheduled: list[str] = []
            for task in scheduling_order(ready):
                if self._schedule_loaded(tasks, task, runtime) is not None:
                    scheduled.append(task.task_id)
            return scheduled

    def update_blocked_tasks(self) -> list[str]:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            runtime = self.repo.state.load_nodes_runtime()
            changes = [
                self._apply(task, S.PENDING)
                for task in scheduling_order(tasks.tasks)
                if task.status == S.BLOCKED and self.dependencies_satisfied(task, tasks, runtime)
            ]
            self._save(tasks, changes)
            return [task_id for task_id, _, _ in changes]

    def set_blocked_for_unsatisfied(self) -> list[str]:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            runtime = self.repo.state.load_nodes_runtime()
            changes = [
                self._apply(task, S.BLOCKED)
                for task in scheduling_order(tasks.tasks)
                if task.status == S.PENDING
                and not self.dependencies_satisfied(task, tasks, runtime)
            ]
            self._save(tasks, changes)
            return [task_id for task_id, _, _ in changes]

    def reset_retry_tasks(self) -> list[str]:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            now = self.clock()
            changes: list[tuple[str, str, str]] = []
            for task in scheduling_order(tasks.tasks):
                if task.status != S.RETRY_WAIT:
                    continue
                due = parse_iso(task.next_retry_at)
                if due is not None and now < due:
                    continue
                task.next_retry_at = None
                changes.append(self._apply(task, S.PENDING))
            self._save(tasks, changes)
            return [task_id for task_id, _, _ in changes]

    def transition(
        self,
        task_id: str,
        new_status: TaskStatus,
        mutate: Callable[[TaskState], None] | None = None,
    ) -> TaskState:
        """Validated single-task transition with an optional in-place update."""
        with self._lock:
            tasks = self.repo.state.load_tasks()
            task = self._load_task(tasks, task_id)
            changes = []
            if task.status != new_status:
                changes.append(self._apply(task, new_status))
            else:
                task.updated_at = to_iso(self.clock())
            if mutate is not None:
                mutate(task)
            self.repo.state.save_tasks(tasks)
            for change in changes:
                self._emit_change(*change)
            return task

    def update_task(self, task_id: str, mutate: Callable[[TaskState], None]) -> TaskState:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            task = self._load_task(tasks, task_id)
            mutate(task)
            task.updated_at = to_iso(self.clock())
            self.repo.state.save_tasks(tasks)
            return task

    def cancel_task(self, task_id: str) -> TaskState:
        with self._lock:
            tasks = self.repo.state.load_tasks()
            task = self._load_task(tasks, task_id)
            if task.status not in CANCELABLE:
                raise InvariantViolation(
                    f"task {task_id} cannot be canceled from status {task.status}"
                )
        return self.transition(task_id, S.CANCELED)
