from collections.abc import Callable
from pathlib import Path

import pytest

from multiverse.state.models import NodeDesign, TaskState
from multiverse.state.repository import WorkspaceRepository
from multiverse.wbs import new_wbs, place_node


@pytest.fixture
def repo(tmp_path: Path) -> WorkspaceRepository:
    project = tmp_path / "project"
    project.mkdir()
    repository = WorkspaceRepository(tmp_path / "workspace", project_root=project)
    repository.init()
    return repository


@pytest.fixture
def make_task(repo: WorkspaceRepository) -> Callable[..., TaskState]:
    counter = {"n": 0}

    def _make(
        task_id: str,
        *,
        deps: tuple[str, ...] | list[str] = (),
        status: str = "PENDING",
        priority: int = 0,
        created_at: str | None = None,
        name: str | None = None,
        summary: str = "",
        parent: str | None = None,
        pool_id: str = "default",
    ) -> TaskState:
        counter["n"] += 1
        task = TaskState(
            task_id=task_id,
            node_id=task_id,
            status=status,
            pool_id=pool_id,
            priority=priority,
            created_at=created_at or f"2026-01-01T00:00:{counter['n']:02d}+00:00",
        )
        tasks = repo.state.load_tasks()
        tasks.tasks.append(task)
        repo.state.save_tasks(tasks)
        repo.design.save_node(
            NodeDesign(
                node_id=task_id,
                name=name if name is not None else f"Task {task_id}",
                summary=summary,
                dependencies=list(deps),
            )
        )
        wbs = repo.load_wbs_or_none() or new_wbs(str(repo.project_root))
        place_node(wbs, task_id, parent or wbs.root_node_id, None)
        repo.design.save_wbs(wbs)
        return task

    return _make
