from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from multiverse.errors import ProcessFailure
from multiverse.events import (
    PROCESS_CONTAINER_UPDATE,
    PROCESS_META_UPDATE,
    PROCESS_WORKER_UPDATE,
    TASK_LOG,
    EventEmitter,
    NullEmitter,
    container_update,
    meta_update,
    task_log,
    worker_update,
)
from multiverse.state.models import parse_iso, to_iso
from multiverse.workers.base import ExecPlan

log = logging.getLogger(__name__)

GRACEFUL_SHUTDOWN_SECONDS = 5.0
OUTPUT_EXCERPT_CHARS = 4000
READ_CHUNK_BYTES = 64 * 1024


@dataclass(slots=True)
class ExecResult:
    exit_code: int | None
    output: str = ""
    error: str | None = None
    canceled: bool = False
    timed_out: bool = False
    artifacts: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.canceled and not self.timed_out


def excerpt(output: str, limit: int = OUTPUT_EXCERPT_CHARS) -> str:
    return output if len(output) <= limit else output[-limit:]


async def _spawn(plan: ExecPlan, *, merge_stderr: bool) -> asyncio.subprocess.Process:
    env = {**os.environ, **plan.env} if plan.env else None
    try:
        return await asyncio.create_subprocess_exec(
            *plan.argv,
            cwd=plan.workdir or None,
            env=env,
            stdin=asyncio.subprocess.PIPE if plan.stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise ProcessFailure(
            f"Worker binary not found: {plan.command}", exit_code=None, retriable=False
        ) from exc
    except PermissionError as exc:
        raise ProcessFailure(
            f"Worker binary not executable: {plan.command}", exit_code=None, retriable=False
        ) from exc


async def iter_lines(stream: asyncio.StreamReader) -> AsyncIterator[bytes]:
    """Yield newline-terminated lines of any length, then the unterminated tail."""
    pending = b""
    while chunk := await stream.read(READ_CHUNK_BYTES):
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for line in complete:
            yield line
    if pending:
        yield pending


async def _feed_stdin(process: asyncio.subprocess.Process, data: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(data.encode("utf-8"))
        await process.stdin.drain()
    except (BrokenPipeError, ConnectionResetError):
        log.debug("worker closed stdin early")
    finally:
        process.stdin.close()


async def terminate(process: asyncio.subprocess.Process, grace_seconds: float) -> None:
    """SIGTERM, then SIGKILL once the grace period has elapsed."""
    if process.returncode is not None:
        return
    with contextlib.suppress(ProcessLookupError):
        process.terminate()
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        log.warning("worker pid %s ignored SIGTERM; sending SIGKILL", process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def _wait(
    process: asyncio.subprocess.Process,
    *,
    cancel: asyncio.Event | None,
    timeout: float | None,
    grace_seconds: float,
) -> tuple[bool, bool]:
    """Wait for exit; returns ``(canceled, timed_out)``."""
    waiter = asyncio.ensure_future(process.wait())
    watchers = [waiter]
    canceler = None
    if cancel is not None:
        canceler = asyncio.ensure_future(cancel.wait())
        watchers.append(canceler)
    try:
        done, _ = await asyncio.wait(
            watchers, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        if canceler is not None and not canceler.done():
            canceler.cancel()
    if waiter in done:
        return False, False
    canceled = canceler is not None and canceler in done
    await terminate(process, grace_seconds)
    await waiter
    return canceled, not canceled


async def execute_plan(
    plan: ExecPlan,
    *,
    cancel: asyncio.Event | None = None,
    grace_seconds: float = GRACEFUL_SHUTDOWN_SECONDS,
) -> ExecResult:
    """Run a plan to completion and return its combined stdout/stderr."""
    process = await _spawn(plan, merge_stderr=True)
    feeder = asyncio.ensure_future(_feed_stdin(process, plan.stdin)) if plan.stdin else None
    reader = asyncio.ensure_future(process.stdout.read()) if process.stdout else None
    canceled, timed_out = await _wait(
        process, cancel=cancel, timeout=plan.timeout, grace_seconds=grace_seconds
    )
    output = (await reader).decode("utf-8", errors="replace") if reader else ""
    if feeder is not None:
        await feeder
    result = ExecResult(
        exit_code=process.returncode,
        output=output,
        canceled=canceled,
        timed_out=timed_out,
    )
    if canceled:
        result.error = "execution canceled"
    elif timed_out:
        result.error = f"execution timed out after {plan.timeout:.1f}s"
    elif process.returncode != 0:
        result.error = f"exit status {process.returncode}"
    return result


class TaskExecutor:
    """Spawns a worker for one task and streams its output as events.

    stdout and stderr are read by two concurrent readers. Every line is
    mirrored as ``task:log``; stdout lines that decode to a JSON object
    with ``event_type`` are translated into process HUD events.
    """

    def __init__(
        self,
        events: EventEmitter | None = None,
        *,
        grace_seconds: float = GRACEFUL_SHUTDOWN_SECONDS,
    ) -> None:
        self.events = events or NullEmitter()
        self.grace_seconds = grace_seconds

    def _emit(self, name: str, payload: dict[str, Any]) -> None:
        self.events.emit(name, payload)

    def handle_structured_log(
        self,
        task_id: str,
        title: str,
        entry: dict[str, Any],
    ) -> list[str] | None:
        """Translate one structured log entry; returns artifacts when reported."""
        event_type = entry.get("event_type")
        if not isinstance(event_type, str):
            return None
        stamp = parse_iso(entry.get("time"))
        timestamp = to_iso(stamp) if stamp is not None else None

        if event_type == "meta:thinking":
            detail = entry.get("detail")
            self._emit(
                PROCESS_META_UPDATE,
                meta_update(
                    task_id,
                    "THINKING",
                    detail if isinstance(detail, str) else "",
                    task_title=title,
                    timestamp=timestamp,
                ),
            )
        elif event_type == "container:starting":
            self._emit(
                PROCESS_CONTAINER_UPDATE,
                container_update(task_id, "STARTING", image="unknown", timestamp=timestamp),
            )
        elif event_type == "container:started":
            self._emit(
                PROCESS_CONTAINER_UPDATE,
                container_update(task_id, "RUNNING", container_id="running", timestamp=timestamp),
            )
        elif event_type == "worker:running":
            command = entry.get("command")
            self._emit(
                PROCESS_WORKER_UPDATE,
                worker_update(
                    task_id,
                    "RUNNING",
                    command=command if isinstance(command, str) else "",
                    timestamp=timestamp,
                ),
            )
        elif event_type == "worker:completed":
            raw_code = entry.get("exit_code")
            exit_code = int(raw_code) if isinstance(raw_code, int | float) else 0
            raw_artifacts = entry.get("artifacts")
            artifacts = (
                [item for item in raw_artifacts if isinstance(item, str)]
                if isinstance(raw_artifacts, list)
                else []
            )
            self._emit(
                PROCESS_WORKER_UPDATE,
                worker_update(
                    task_id,
                    "IDLE",
                    exit_code=exit_code,
                    artifacts=artifacts,
                    timestamp=timestamp,
                ),
            )
            return artifacts or None
        return None

    async def _read_stream(
        self,
        stream: asyncio.StreamReader | None,
        name: str,
        task_id: str,
        title: str,
        lines: list[str],
        artifacts: list[str],
    ) -> None:
        if stream is None:
            return
        async for raw_line in iter_lines(stream):
            line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
            lines.append(line)
            log.debug("[%s %s] %s", task_id, name, line)
            if name == "stdout" and line.startswith("{"):
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    entry = None
                if isinstance(entry, dict):
                    reported = self.handle_structured_log(task_id, title, entry)
                    if reported:
                        artifacts[:] = reported
            self._emit(TASK_LOG, task_log(task_id, name, line))

    async def run(
        self,
        task_id: str,
        title: str,
        plan: ExecPlan,
        cancel: asyncio.Event | None = None,
    ) -> ExecResult:
        self._emit(
            PROCESS_META_UPDATE,
            meta_update(task_id, "RUNNING", "Initializing agent-runner...", task_title=title),
        )
        try:
            process = await _spawn(plan, merge_stderr=False)
        except ProcessFailure as exc:
            self._emit(
                PROCESS_META_UPDATE,
                meta_update(task_id, "ERROR", f"Execution failed: {exc}", task_title=title),
            )
            raise
        log.info("worker pid %s started for task %s: %s", process.pid, task_id, plan.command)

        lines: list[str] = []
        artifacts: list[str] = []
        readers = [
            asyncio.ensure_future(
                self._read_stream(process.stdout, "stdout", task_id, title, lines, artifacts)
            ),
            asyncio.ensure_future(
                self._read_stream(process.stderr, "stderr", task_id, title, lines, artifacts)
            ),
        ]
        feeder = asyncio.ensure_future(_feed_stdin(process, plan.stdin)) if plan.stdin else None

        canceled, timed_out = await _wait(
            process, cancel=cancel, timeout=plan.timeout, grace_seconds=self.grace_seconds
        )
        # Readers finish on EOF after exit so the final bytes are kept.
        await asyncio.gather(*readers)
        if feeder is not None:
            await feeder

        result = ExecResult(
            exit_code=process.returncode,
            output="\n".join(lines),
            canceled=canceled,
            timed_out=timed_out,
            artifacts=list(artifacts),
        )
        if result.succeeded:
            self._emit(
                PROCESS_META_UPDATE,
                meta_update(task_id, "DONE", "Task completed successfully", task_title=title),
            )
        else:
            if canceled:
                result.error = "execution canceled"
            elif timed_out:
                result.error = f"execution timed out after {plan.timeout:.1f}s"
            else:
                result.error = f"exit status {process.returncode}"
            self._emit(
                PROCESS_META_UPDATE,
                meta_update(task_id, "ERROR", f"Execution failed: {result.error}", task_title=title),
            )
        log.info(
            "worker for task %s finished: exit=%s canceled=%s timed_out=%s",
            task_id,
            process.returncode,
            canceled,
            timed_out,
        )
        return result
