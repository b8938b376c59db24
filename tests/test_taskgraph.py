import pytest

from multiverse.errors import InvariantViolation, NotFoundError
from multiverse.taskgraph import TaskGraphManager


def test_execution_order_is_topological_and_stable(repo, make_task) -> None:
    make_task("c", deps=["b"])
    make_task("b", deps=["a"])
    make_task("a")
    make_task("d")

    manager = TaskGraphManager(repo)

    assert manager.execution_order() == ["a", "d", "b", "c"]
    assert manager.detect_cycle() == []


def test_cycle_is_reported(repo, make_task) -> None:
    make_task("a", deps=["b"])
    make_task("b", deps=["a"])
    make_task("c")
    manager = TaskGraphManager(repo)

    assert manager.detect_cycle() == ["a", "b"]
    with pytest.raises(InvariantViolation):
        manager.execution_order()


def test_ready_and_blocked_views(repo, make_task) -> None:
    make_task("a")
    make_task("b", deps=["a"])
    make_task("c", deps=["ghost"])
    make_task("d", status="QUEUED")
    manager = TaskGraphManager(repo)

    assert manager.blocked_tasks() == ["b", "c"]
    assert manager.ready_tasks() == ["a"]


def test_dependency_info(repo, make_task) -> None:
    make_task("a", status="SUCCEEDED")
    make_task("b", deps=["a", "ghost"])
    manager = TaskGraphManager(repo)

    info = manager.dependency_info("b")
    assert info.depends_on == ["a"]
    assert info.unsatisfied == ["ghost"]
    assert not info.all_satisfied
    assert manager.dependency_info("a").depended_by == ["b"]
    with pytest.raises(NotFoundError):
        manager.dependency_info("zzz")
