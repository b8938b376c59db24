from pathlib import Path

import pytest

from multiverse.errors import InvariantViolation
from multiverse.queue import FilesystemQueue, job_sequence
from multiverse.state.models import Job


def _job(job_id: str, pool_id: str = "default") -> Job:
    return Job(job_id=job_id, task_id=job_id.split("-")[1], pool_id=pool_id)


def test_dequeue_is_fifo_by_sequence(tmp_path: Path) -> None:
    queue = FilesystemQueue(tmp_path / "queue")
    for job_id in ["job-c-30", "job-a-100", "job-b-20"]:
        queue.enqueue(_job(job_id))

    assert [job.job_id for job in queue.pending("default")] == ["job-b-20", "job-c-30", "job-a-100"]

    job = queue.dequeue("default")

    assert job is not None
    assert job.job_id == "job-b-20"
    assert [item.job_id for item in queue.inflight("default")] == ["job-b-20"]
    queue.complete(job.job_id, job.pool_id)
    assert queue.inflight("default") == []


def test_pools_are_independent(tmp_path: Path) -> None:
    queue = FilesystemQueue(tmp_path / "queue")
    queue.enqueue(_job("job-a-1", pool_id="gpu"))

    assert queue.dequeue("default") is None
    assert queue.dequeue("gpu").task_id == "a"


def test_enqueue_rejects_duplicates_and_bad_ids(tmp_path: Path) -> None:
    queue = FilesystemQueue(tmp_path / "queue")
    queue.enqueue(_job("job-a-1"))

    with pytest.raises(InvariantViolation):
        queue.enqueue(_job("job-a-1"))
    queue.dequeue("default")
    with pytest.raises(InvariantViolation):
        queue.enqueue(_job("job-a-1"))
    with pytest.raises(InvariantViolation):
        queue.enqueue(Job(job_id="../escape", task_id="a"))


def test_recover_requeues_inflight_jobs(tmp_path: Path) -> None:
    FilesystemQueue(tmp_path / "queue").enqueue(_job("job-a-1"))
    crashed = FilesystemQueue(tmp_path / "queue")
    crashed.dequeue("default")

    restarted = FilesystemQueue(tmp_path / "queue")
    recovered = restarted.recover("default")

    assert [job.job_id for job in recovered] == ["job-a-1"]
    assert restarted.inflight("default") == []
    assert restarted.dequeue("default").job_id == "job-a-1"


def test_recover_surface_leaves_jobs_inflight(tmp_path: Path) -> None:
    queue = FilesystemQueue(tmp_path / "queue")
    queue.enqueue(_job("job-a-1"))
    queue.dequeue("default")

    recovered = queue.recover("default", "surface")

    assert [job.job_id for job in recovered] == ["job-a-1"]
    assert [job.job_id for job in queue.inflight("default")] == ["job-a-1"]
    assert queue.pending("default") == []
    with pytest.raises(InvariantViolation):
        queue.recover("default", "drop")


def test_complete_unknown_job_is_harmless(tmp_path: Path) -> None:
    FilesystemQueue(tmp_path / "queue").complete("job-x-1", "default")


def test_job_sequence_parses_trailing_number() -> None:
    assert job_sequence("job-task-1700000000000") == 1700000000000
    assert job_sequence("manual") == 0
