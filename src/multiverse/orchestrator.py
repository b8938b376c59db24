from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path

from multiverse.backlog import BacklogStore, create_failure_item
from multiverse.config import MultiverseConfig, RecoveryPolicyName
from multiverse.errors import MultiverseError, OrchestratorStateError, ProcessFailure
from multiverse.events import (
    BACKLOG_ADDED,
    EXECUTION_STATE_CHANGE,
    EventEmitter,
    NullEmitter,
    execution_state_change,
)
from multiverse.executor import ExecResult, TaskExecutor, excerpt
from multiverse.queue import FilesystemQueue
from multiverse.retry import NextAction, RetryPolicy
from multiverse.scheduler import Scheduler, TaskStatus
from multiverse.state.legacy import migrate_legacy_tasks
from multiverse.state.models import Attempt, Job, NodeRuntime, TaskState, parse_iso, to_iso, utcnow
from multiverse.state.repository import WorkspaceRepository
from multiverse.workers.agent_runner import AgentRunnerAdapter, task_title
from multiverse.workers.base import AdapterConfig

log = logging.getLogger(__name__)

RUNTIME_AUTHOR = "orchestrator"


class ExecutionState(StrEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"


class Orchestrator:
    """Tick-driven execution loop over one workspace.

    ``start``/``pause``/``resume``/``stop`` may be called from any thread;
    ``run`` drives ticks on the event loop until ``stop``. A tick resets due
    retries, refreshes blocked tasks, schedules ready work, then runs at
    most one job per pool to completion.
    """

    def __init__(
        self,
        repo: WorkspaceRepository,
        *,
        scheduler: Scheduler | None = None,
        queue: FilesystemQueue | None = None,
        executor: TaskExecutor | None = None,
        adapter: AgentRunnerAdapter | None = None,
        retry_policy: RetryPolicy | None = None,
        backlog: BacklogStore | None = None,
        events: EventEmitter | None = None,
        pool_ids: list[str] | None = None,
        tick_seconds: float = 2.0,
        recovery_policy: RecoveryPolicyName = "requeue",
        task_timeout: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repo = repo
        self.events = events or NullEmitter()
        self.queue = queue or FilesystemQueue(repo.queue_dir)
        self.scheduler = scheduler or Scheduler(repo, self.queue, self.events, clock=clock)
        self.executor = executor or TaskExecutor(self.events)
        self.adapter = adapter or AgentRunnerAdapter()
        self.retry_policy = retry_policy or RetryPolicy()
        self.backlog = backlog or BacklogStore(repo.backlog_dir)
        self.pool_ids = list(pool_ids or ["default"])
        self.tick_seconds = tick_seconds
        self.recovery_policy = recovery_policy
        self.task_timeout = task_timeout
        self.clock = clock

        self._state = ExecutionState.IDLE
        self._lock = threading.Lock()
        self._tick_lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake: asyncio.Event | None = None
        self._current_cancel: asyncio.Event | None = None
        self._stop_requested = False

    @classmethod
    def from_config(
        cls,
        config: MultiverseConfig,
        *,
        repo: WorkspaceRepository | None = None,
        events: EventEmitter | None = None,
    ) -> Orchestrator:
        settings = config.orchestrator
        if repo is None:
            repo = WorkspaceRepository(
                config.workspace_path(), project_root=Path(settings.project_root)
            )
        events = events or NullEmitter()
        return cls(
            repo,
            executor=TaskExecutor(events, grace_seconds=settings.grace_seconds),
            adapter=AgentRunnerAdapter(AdapterConfig(cli_path=settings.agent_runner_path)),
            retry_policy=RetryPolicy.from_config(config.retry),
            events=events,
            pool_ids=settings.pool_ids,
            tick_seconds=settings.tick_seconds,
            recovery_policy=settings.recovery_policy,
        )

    @property
    def state(self) -> ExecutionState:
        with self._lock:
            return self._state

    def _set_state(self, new: ExecutionState) -> ExecutionState:
        old = self._state
        self._state = new
        log.info("execution state: %s -> %s", old, new)
        return old

    def _emit_state(self, old: ExecutionState, new: ExecutionState) -> None:
        self.events.emit(EXECUTION_STATE_CHANGE, execution_state_change(str(old), str(new)))

    def _signal(self, event: asyncio.Event | None) -> None:
        if event is None:
            return
        loop = self._loop
        if loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)
        else:
            event.set()

    def recover(self) -> list[Job]:
        migrated = migrate_legacy_tasks(self.repo)
        if migrated:
            log.info("migrated %d legacy task(s)", len(migrated))
        recovered: list[Job] = []
        for pool_id in self.pool_ids:
            recovered.extend(self.queue.recover(pool_id, self.recovery_policy))
        return recovered

    def start(self) -> None:
        with self._lock:
            if self._state != ExecutionState.IDLE:
                raise OrchestratorStateError(f"cannot start from state {self._state}")
            self.recover()
            self._stop_requested = False
            old = self._set_state(ExecutionState.RUNNING)
        self._emit_state(old, ExecutionState.RUNNING)
        self._signal(self._wake)

    def pause(self) -> None:
        with self._lock:
            if self._state != ExecutionState.RUNNING:
                raise OrchestratorStateError(f"cannot pause from state {self._state}")
            old = self._set_state(ExecutionState.PAUSED)
        self._emit_state(old, ExecutionState.PAUSED)

    def resume(self) -> None:
        with self._lock:
            if self._state != ExecutionState.PAUSED:
                raise OrchestratorStateError(f"cannot resume from state {self._state}")
            old = self._set_state(ExecutionState.RUNNING)
        self._emit_state(old, ExecutionState.RUNNING)
        self._signal(self._wake)

    def stop(self) -> None:
        with self._lock:
            if self._state == ExecutionState.IDLE:
                return
            self._stop_requested = True
            old = self._set_state(ExecutionState.IDLE)
            cancel = self._current_cancel
        self._emit_state(old, ExecutionState.IDLE)
        self._signal(cancel)
        self._signal(self._wake)

    async def run(self) -> None:
        """Tick every ``tick_seconds`` until ``stop`` is called."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        try:
            while self.state != ExecutionState.IDLE:
                try:
                    await self.tick()
                except Exception:
                    log.exception("tick failed")
                if self.state == ExecutionState.IDLE:
                    break
                self._wake.clear()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=self.tick_seconds)
        finally:
            self._wake = None
            self._loop = None

    async def tick(self) -> list[str]:
        """One scheduling pass; returns the ids of jobs processed."""
        if self._tick_lock.locked():
            log.debug("tick already in progress; skipping")
            return []
        async with self._tick_lock:
            if self.state != ExecutionState.RUNNING:
                return []
            self.scheduler.reset_retry_tasks()
            self.scheduler.update_blocked_tasks()
            self.scheduler.set_blocked_for_unsatisfied()
            self.scheduler.schedule_ready_tasks()
            processed: list[str] = []
            for pool_id in self.pool_ids:
                if self.state == ExecutionState.IDLE:
                    break
                job = self.queue.dequeue(pool_id)
                if job is None:
                    continue
                log.info("dequeued job %s for task %s on pool %s", job.job_id, job.task_id, pool_id)
                await self.process_job(job)
                processed.append(job.job_id)
            return processed

    def _update_runtime(
        self,
        node_id: str,
        status: str,
        note: str,
        files: list[str] | None = None,
    ) -> None:
        runtime = self.repo.state.load_nodes_runtime()
        entry = runtime.get(node_id)
        if entry is None:
            entry = NodeRuntime(node_id=node_id)
            runtime.nodes.append(entry)
        now = to_iso(self.clock())
        entry.status = status
        if files is not None:
            entry.implementation.files = list(files)
            entry.implementation.last_modified_at = now
            entry.implementation.last_modified_by = RUNTIME_AUTHOR
        entry.add_note(RUNTIME_AUTHOR, note, at=now)
        self.repo.state.save_nodes_runtime(runtime)

    async def process_job(self, job: Job) -> TaskState | None:
        cancel = asyncio.Event()
        with self._lock:
            self._current_cancel = cancel
            if self._stop_requested:
                cancel.set()
        try:
            task = self.repo.state.load_tasks().get(job.task_id)
            if task is None:
                log.warning("job %s references unknown task %s", job.job_id, job.task_id)
                return None
            if task.status not in {TaskStatus.QUEUED, TaskStatus.RUNNING}:
                log.warning(
                    "skipping job %s: task %s is %s", job.job_id, task.task_id, task.status
                )
                return None

            def _begin(item: TaskState) -> None:
                item.attempt_count += 1
                item.next_retry_at = None

            task = self.scheduler.transition(task.task_id, TaskStatus.RUNNING, _begin)
            attempt = Attempt(
                attempt_id=f"{task.task_id}-attempt-{task.attempt_count}",
                task_id=task.task_id,
                started_at=to_iso(self.clock()),
            )
            title = task.task_id
            try:
                node = self.repo.design.find_node(task.node_id)
                title = task_title(task, node)
                self._update_runtime(
                    task.node_id, "in_progress", f"attempt {task.attempt_count} started"
                )
                request = self.adapter.request_for_task(
                    task,
                    node,
                    workdir=str(self.repo.project_root),
                    timeout=self.task_timeout,
                )
                plan = self.adapter.build(request)
                result = await self.executor.run(task.task_id, title, plan, cancel)
            except ProcessFailure as exc:
                log.error("task %s could not start: %s", task.task_id, exc)
                result = ExecResult(exit_code=exc.exit_code, error=str(exc))
            except Exception as exc:
                # The task is RUNNING now; record the attempt so the retry policy decides.
                log.exception("attempt %d of task %s failed", task.attempt_count, task.task_id)
                result = ExecResult(exit_code=None, error=f"worker execution failed: {exc}")
            return self._finish(task, title, attempt, result)
        except (MultiverseError, OSError):
            log.exception("job %s for task %s failed", job.job_id, job.task_id)
            return None
        finally:
            with self._lock:
                self._current_cancel = None
            self.queue.complete(job.job_id, job.pool_id)

    def _finish(
        self,
        task: TaskState,
        title: str,
        attempt: Attempt,
        result: ExecResult,
    ) -> TaskState:
        now = self.clock()
        attempt.finished_at = to_iso(now)
        attempt.exit_code = result.exit_code
        attempt.error_summary = result.error
        attempt.output = excerpt(result.output)

        if result.succeeded:
            attempt.status = "SUCCEEDED"

            def _succeeded(item: TaskState) -> None:
                item.attempts.append(attempt)
                item.outputs.status = "succeeded"
                if result.artifacts:
                    item.outputs.artifacts["files"] = list(result.artifacts)

            updated = self.scheduler.transition(task.task_id, TaskStatus.SUCCEEDED, _succeeded)
            self._update_runtime(
                task.node_id, "implemented", "task succeeded", files=result.artifacts
            )
            log.info("task %s succeeded on attempt %d", task.task_id, task.attempt_count)
            return updated

        if result.canceled:
            attempt.status = "CANCELED"
            updated = self.scheduler.transition(
                task.task_id, TaskStatus.CANCELED, lambda item: item.attempts.append(attempt)
            )
            self._update_runtime(task.node_id, "planned", "execution canceled")
            log.warning("task %s canceled during attempt %d", task.task_id, task.attempt_count)
            return updated

        attempt.status = "FAILED"
        error = result.error or "worker failed"
        action = self.retry_policy.determine_next_action(task.attempt_count)
        log.warning(
            "task %s failed on attempt %d (%s); next action %s",
            task.task_id,
            task.attempt_count,
            error,
            action,
        )

        if action == NextAction.RETRY:
            started = parse_iso(attempt.started_at) or now
            due = now + self.retry_policy.calculate_backoff(task.attempt_count)
            if due <= started:
                due = started + timedelta(microseconds=1)

            def _retry(item: TaskState) -> None:
                item.attempts.append(attempt)
                item.next_retry_at = to_iso(due)

            updated = self.scheduler.transition(task.task_id, TaskStatus.RETRY_WAIT, _retry)
            self._update_runtime(
                task.node_id, "in_progress", f"attempt {task.attempt_count} failed: {error}"
            )
            return updated

        def _failed(item: TaskState) -> None:
            item.attempts.append(attempt)
            item.outputs.status = "failed"

        updated = self.scheduler.transition(task.task_id, TaskStatus.FAILED, _failed)
        self._update_runtime(task.node_id, "blocked", f"task failed: {error}")
        if action == NextAction.BACKLOG:
            item = self.backlog.add(
                create_failure_item(task.task_id, title, error, task.attempt_count)
            )
            log.warning("task %s escalated to backlog item %s", task.task_id, item.id)
            self.events.emit(BACKLOG_ADDED, {"item": item.to_dict()})
        return updated
