from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Literal

from multiverse.errors import InvariantViolation, PersistenceIOError
from multiverse.state.models import Job
from multiverse.state.repository import read_json

log = logging.getLogger(__name__)

RecoveryPolicy = Literal["requeue", "surface"]

_SEQUENCE_RE = re.compile(r"-(\d+)$")


def job_sequence(job_id: str) -> int:
    match = _SEQUENCE_RE.search(job_id)
    return int(match.group(1)) if match else 0


def _link_exclusive(source: Path, target: Path) -> None:
    # os.rename silently replaces on POSIX; link() refuses an existing target.
    try:
        os.link(source, target)
    except FileExistsError as exc:
        raise PersistenceIOError(
            f"Refusing to overwrite existing queue record: {target}",
            stage="queue_rename",
            path=str(target),
        ) from exc
    except OSError as exc:
        raise PersistenceIOError(
            f"Queue rename failed {source} -> {target}: {exc}",
            stage="queue_rename",
            path=str(target),
        ) from exc
    source.unlink()


class FilesystemQueue:
    """Per-pool FIFO under ``queue/<pool>/{pending,inflight}`` with at-least-once delivery."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self._lock = threading.Lock()

    def _pending_dir(self, pool_id: str) -> Path:
        return self.root / pool_id / "pending"

    def _inflight_dir(self, pool_id: str) -> Path:
        return self.root / pool_id / "inflight"

    def _ensure_pool(self, pool_id: str) -> None:
        self._pending_dir(pool_id).mkdir(parents=True, exist_ok=True)
        self._inflight_dir(pool_id).mkdir(parents=True, exist_ok=True)

    def enqueue(self, job: Job) -> None:
        if not job.job_id or "/" in job.job_id or "\\" in job.job_id:
            raise InvariantViolation(f"invalid job id: {job.job_id!r}")
        with self._lock:
            self._ensure_pool(job.pool_id)
            target = self._pending_dir(job.pool_id) / f"{job.job_id}.json"
            inflight = self._inflight_dir(job.pool_id) / f"{job.job_id}.json"
            if target.exists() or inflight.exists():
                raise InvariantViolation(f"duplicate enqueue of job {job.job_id}")
            tmp_path = target.with_name(target.name + ".tmp")
            try:
                with tmp_path.open("w", encoding="utf-8") as handle:
                    handle.write(json.dumps(job.to_dict(), ensure_ascii=False, indent=2))
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                raise PersistenceIOError(
                    f"Failed to write job {job.job_id}: {exc}",
                    stage="queue_enqueue",
                    path=str(target),
                ) from exc
            _link_exclusive(tmp_path, target)
        log.info("enqueued job %s for task %s on pool %s", job.job_id, job.task_id, job.pool_id)

    def _sorted_jobs(self, directory: Path) -> list[Path]:
        if not directory.exists():
            return []
        return sorted(
            directory.glob("*.json"),
            key=lambda path: (job_sequence(path.stem), path.stem),
        )

    def pending(self, pool_id: str) -> list[Job]:
        jobs: list[Job] = []
        for path in self._sorted_jobs(self._pending_dir(pool_id)):
            raw = read_json(path)
            if isinstance(raw, dict):
                jobs.append(Job.from_dict(raw))
        return jobs

    def inflight(self, pool_id: str) -> list[Job]:
        jobs: list[Job] = []
        for path in self._sorted_jobs(self._inflight_dir(pool_id)):
            raw = read_json(path)
            if isinstance(raw, dict):
                jobs.append(Job.from_dict(raw))
        return jobs

    def dequeue(self, pool_id: str) -> Job | None:
        with self._lock:
            candidates = self._sorted_jobs(self._pending_dir(pool_id))
            if not candidates:
                return None
            self._ensure_pool(pool_id)
            source = candidates[0]
            target = self._inflight_dir(pool_id) / source.name
            _link_exclusive(source, target)
            raw = read_json(target)
        if not isinstance(raw, dict):
            raise PersistenceIOError(f"Unreadable job record: {target}", path=str(target))
        job = Job.from_dict(raw)
        log.debug("dequeued job %s from pool %s", job.job_id, pool_id)
        return job

    def complete(self, job_id: str, pool_id: str) -> None:
        path = self._inflight_dir(pool_id) / f"{job_id}.json"
        try:
            path.unlink()
        except FileNotFoundError:
            log.warning("complete() for unknown in-flight job %s on pool %s", job_id, pool_id)

    def recover(self, pool_id: str, policy: RecoveryPolicy = "requeue") -> list[Job]:
        """Handle records left in ``inflight/`` by a crash.

        ``requeue`` moves them back to ``pending/`` and returns them;
        ``surface`` leaves them in place and returns them to the caller.
        """
        if policy not in {"requeue", "surface"}:
            raise InvariantViolation(f"unknown recovery policy: {policy}")
        with self._lock:
            leftovers = self._sorted_jobs(self._inflight_dir(pool_id))
            jobs: list[Job] = []
            for path in leftovers:
                raw = read_json(path)
                if not isinstance(raw, dict):
                    continue
                jobs.append(Job.from_dict(raw))
                if policy == "requeue":
                    _link_exclusive(path, self._pending_dir(pool_id) / path.name)
        if jobs:
            log.warning(
                "recovered %d in-flight job(s) on pool %s with policy %s",
                len(jobs),
                pool_id,
                policy,
            )
        return jobs
