from typing import Any

import pytest

from multiverse.errors import InvariantViolation, PersistenceIOError, ValidationFailure
from multiverse.events import TASK_CREATED, RecordingEmitter
from multiverse.meta.protocol import PlanPatchResponse
from multiverse.planpatch import PlanPatchEngine


def _patch(*operations: dict[str, Any], understanding: str = "ok") -> PlanPatchResponse:
    return PlanPatchResponse.from_dict(
        {"understanding": understanding, "operations": list(operations)}
    )


def _root_children(repo) -> list[str]:
    wbs = repo.design.load_wbs()
    return wbs.entry(wbs.root_node_id).children


def test_create_resolves_temp_ids_and_persists_everything(repo) -> None:
    events = RecordingEmitter()
    engine = PlanPatchEngine(repo, events, runner_max_loops=7, worker_kind="claude-code")

    result = engine.apply(
        "s1",
        _patch(
            {
                "op": "create",
                "temp_id": "temp-001",
                "title": "Design API",
                "description": "Write the API design",
                "wbs_level": 1,
            },
            {
                "op": "create",
                "temp_id": "temp-002",
                "title": "Implement API",
                "dependencies": ["temp-001"],
                "suggested_impl": {
                    "language": "python",
                    "file_paths": ["src/api.py (New File)", " "],
                },
            },
        ),
    )

    first = result.temp_to_real["temp-001"]
    second = result.temp_to_real["temp-002"]
    assert result.created_task_ids == [first, second]
    node = repo.design.get_node(second)
    assert node.name == "Implement API"
    assert node.dependencies == [first]
    assert node.suggested_impl.file_paths == ["src/api.py"]
    task = repo.state.load_tasks().get(first)
    assert task.status == "PENDING"
    assert task.scheduled_by == "chat:s1"
    assert task.inputs == {"runner_max_loops": 7, "runner_worker_kind": "claude-code"}
    assert _root_children(repo) == [first, second]
    assert repo.state.load_nodes_runtime().get(first).status == "planned"
    actions = repo.history.list_actions()
    assert [action.kind for action in actions] == ["plan_patch"]
    assert actions[0].payload["created_task_ids"] == [first, second]
    assert [payload["task"]["task_id"] for payload in events.named(TASK_CREATED)] == [
        first,
        second,
    ]


def test_rejected_patch_writes_nothing(repo) -> None:
    engine = PlanPatchEngine(repo)

    with pytest.raises(ValidationFailure, match="unresolved dependency"):
        engine.apply(
            "s1",
            _patch(
                {"op": "create", "temp_id": "temp-001", "title": "Good"},
                {"op": "create", "temp_id": "temp-002", "title": "Bad", "dependencies": ["nope"]},
            ),
        )

    assert repo.state.load_tasks().tasks == []
    assert repo.load_wbs_or_none() is None
    assert repo.design.list_node_ids() == []
    assert repo.history.list_actions() == []


def test_create_requires_title_and_unique_temp_ids(repo) -> None:
    engine = PlanPatchEngine(repo)

    with pytest.raises(ValidationFailure):
        engine.apply("s1", _patch({"op": "create", "temp_id": "temp-001", "title": " "}))
    with pytest.raises(ValidationFailure):
        engine.apply(
            "s1",
            _patch(
                {"op": "create", "temp_id": "temp-001", "title": "A"},
                {"op": "create", "temp_id": "temp-001", "title": "B"},
            ),
        )
    with pytest.raises(ValidationFailure):
        engine.apply("s1", _patch({"op": "rename", "task_id": "x"}))


def test_update_changes_only_supplied_fields(repo, make_task) -> None:
    make_task("a", summary="keep me", name="Old")
    make_task("b")

    result = PlanPatchEngine(repo).apply(
        "s1", _patch({"op": "update", "task_id": "a", "title": "New", "dependencies": ["b"]})
    )

    node = repo.design.get_node("a")
    assert result.updated_task_ids == ["a"]
    assert node.name == "New"
    assert node.summary == "keep me"
    assert node.dependencies == ["b"]


def test_update_unknown_task_or_dependency_is_rejected(repo, make_task) -> None:
    make_task("a")
    engine = PlanPatchEngine(repo)

    with pytest.raises(ValidationFailure):
        engine.apply("s1", _patch({"op": "update", "task_id": "ghost", "title": "x"}))
    with pytest.raises(ValidationFailure, match="unknown dependency"):
        engine.apply("s1", _patch({"op": "update", "task_id": "a", "dependencies": ["ghost"]}))


def test_update_introducing_cycle_is_rejected(repo, make_task) -> None:
    make_task("a", deps=["b"])
    make_task("b")

    with pytest.raises(InvariantViolation):
        PlanPatchEngine(repo).apply(
            "s1", _patch({"op": "update", "task_id": "b", "dependencies": ["a"]})
        )

    assert repo.design.get_node("b").dependencies == []


def test_move_reorders_siblings(repo, make_task) -> None:
    for task_id in ["a", "b", "c"]:
        make_task(task_id)

    result = PlanPatchEngine(repo).apply(
        "s1", _patch({"op": "move", "task_id": "c", "position": {"before": "a"}})
    )

    assert result.moved_task_ids == ["c"]
    assert _root_children(repo) == ["c", "a", "b"]


def test_move_under_own_descendant_is_rejected(repo, make_task) -> None:
    make_task("a")
    make_task("b")

    with pytest.raises(ValidationFailure):
        PlanPatchEngine(repo).apply(
            "s1",
            _patch(
                {"op": "move", "task_id": "b", "parent_id": "a"},
                {"op": "move", "task_id": "a", "parent_id": "b"},
            ),
        )

    assert _root_children(repo) == ["a", "b"]


def test_delete_without_cascade_reparents_children(repo, make_task) -> None:
    make_task("a")
    make_task("b", parent="a")
    make_task("c", parent="b")
    make_task("d", deps=["b"])

    result = PlanPatchEngine(repo).apply(
        "s1", _patch({"op": "delete", "task_id": "b", "cascade": False})
    )

    wbs = repo.design.load_wbs()
    assert result.deleted_task_ids == ["b"]
    assert wbs.entry("a").children == ["c"]
    assert wbs.entry("c").parent_id == "a"
    assert wbs.entry("b") is None
    assert repo.state.load_tasks().get("b") is None
    assert repo.state.load_nodes_runtime().get("b").status == "obsolete"
    assert repo.design.find_node("b") is not None
    assert repo.design.get_node("d").dependencies == []


def test_delete_without_cascade_splices_children_in_place(repo, make_task) -> None:
    make_task("p")
    for task_id in ("s1", "x", "s2"):
        make_task(task_id, parent="p")
    for task_id in ("a", "b", "c"):
        make_task(task_id, parent="x")

    PlanPatchEngine(repo).apply("s1", _patch({"op": "delete", "task_id": "x", "cascade": False}))

    wbs = repo.design.load_wbs()
    assert wbs.entry("p").children == ["s1", "a", "b", "c", "s2"]
    assert [wbs.entry(child).parent_id for child in ("a", "b", "c")] == ["p", "p", "p"]
    assert [action.kind for action in repo.history.list_actions()] == ["plan_patch"]


def test_delete_with_cascade_removes_subtree(repo, make_task) -> None:
    make_task("a")
    make_task("b", parent="a")
    make_task("c", parent="b")

    result = PlanPatchEngine(repo).apply(
        "s1", _patch({"op": "delete", "task_id": "a", "cascade": True})
    )

    assert result.deleted_task_ids == ["a", "b", "c"]
    assert repo.state.load_tasks().tasks == []
    assert _root_children(repo) == []


def test_delete_guards(repo, make_task) -> None:
    make_task("a", status="RUNNING")
    engine = PlanPatchEngine(repo)

    with pytest.raises(ValidationFailure, match="running"):
        engine.apply("s1", _patch({"op": "delete", "task_id": "a"}))
    with pytest.raises(ValidationFailure, match="root"):
        engine.apply("s1", _patch({"op": "delete", "task_id": "node-root"}))
    with pytest.raises(ValidationFailure):
        engine.apply("s1", _patch({"op": "delete", "task_id": "ghost"}))


def test_create_placement_with_parent_and_unknown_anchor(repo, make_task) -> None:
    make_task("a")
    make_task("a1", parent="a")

    result = PlanPatchEngine(repo).apply(
        "s1",
        _patch(
            {
                "op": "create",
                "temp_id": "temp-001",
                "title": "Child",
                "parent_id": "a",
                "position": {"before": "ghost"},
            },
            {"op": "create", "temp_id": "temp-002", "title": "Grandchild", "parent_id": "temp-001"},
        ),
    )

    child = result.temp_to_real["temp-001"]
    grandchild = result.temp_to_real["temp-002"]
    wbs = repo.design.load_wbs()
    assert wbs.entry("a").children == ["a1", child]
    assert wbs.entry(grandchild).parent_id == child


def test_empty_patch_still_records_history(repo) -> None:
    result = PlanPatchEngine(repo).apply("s1", _patch(understanding="nothing to do"))

    assert result.created_tasks == []
    assert result.action is not None
    actions = repo.history.list_actions()
    assert len(actions) == 1
    assert actions[0].payload["operations_count"] == 0
    assert actions[0].payload["meta_understanding"] == "nothing to do"


def test_move_to_missing_parent_is_rejected(repo, make_task) -> None:
    make_task("a")

    with pytest.raises(ValidationFailure, match="does not exist"):
        PlanPatchEngine(repo).apply(
            "s1", _patch({"op": "move", "task_id": "a", "parent_id": "ghost"})
        )

    assert repo.history.list_actions() == []
    assert _root_children(repo) == ["a"]


def test_failed_wbs_save_is_recorded_in_history(repo, make_task, monkeypatch) -> None:
    make_task("a")

    def _fail(wbs) -> None:
        raise PersistenceIOError("disk full", stage="save_wbs", path="wbs.json")

    monkeypatch.setattr(repo.design, "save_wbs", _fail)

    with pytest.raises(PersistenceIOError):
        PlanPatchEngine(repo).apply(
            "s1", _patch({"op": "create", "temp_id": "temp-001", "title": "New"})
        )

    actions = repo.history.list_actions()
    assert [action.kind for action in actions] == ["plan_patch", "state_save_failed"]
    assert actions[1].payload["stage"] == "save_wbs"
    assert actions[1].payload["original_action_id"] == actions[0].id
    assert _root_children(repo) == ["a"]
    assert [task.task_id for task in repo.state.load_tasks().tasks] == ["a"]
