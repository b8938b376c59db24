from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from multiverse.config import DEFAULT_RUNNER_MAX_LOOPS, DEFAULT_WORKER_KIND
from multiverse.errors import InvariantViolation, PersistenceIOError, ValidationFailure
from multiverse.events import TASK_CREATED, EventEmitter, NullEmitter
from multiverse.meta.protocol import (
    OP_CREATE,
    OP_DELETE,
    OP_MOVE,
    OP_UPDATE,
    PlanOperation,
    PlanPatchResponse,
)
from multiverse.scheduler import TaskStatus
from multiverse.state.models import (
    WBS,
    Action,
    Implementation,
    NodeDesign,
    NodeRuntime,
    NodesRuntime,
    RuntimeNote,
    SuggestedImpl,
    TasksState,
    TaskState,
    to_iso,
    utcnow,
)
from multiverse.state.repository import WorkspaceRepository
from multiverse.wbs import (
    Position,
    descendants,
    detach,
    ensure_root,
    find_dependency_cycle,
    new_wbs,
    place_node,
    remove_node,
    validate_wbs,
)

log = logging.getLogger(__name__)

NEW_FILE_SUFFIX = " (New File)"
PATCH_AUTHOR = "chat-handler"


@dataclass(slots=True)
class PlanPatchResult:
    created_tasks: list[TaskState] = field(default_factory=list)
    updated_task_ids: list[str] = field(default_factory=list)
    deleted_task_ids: list[str] = field(default_factory=list)
    moved_task_ids: list[str] = field(default_factory=list)
    temp_to_real: dict[str, str] = field(default_factory=dict)
    action: Action | None = None

    @property
    def created_task_ids(self) -> list[str]:
        return [task.task_id for task in self.created_tasks]


def clean_file_paths(paths: list[str]) -> list[str]:
    return [path.removesuffix(NEW_FILE_SUFFIX).strip() for path in paths if path.strip()]


def suggested_impl_from_op(raw: dict[str, Any]) -> SuggestedImpl:
    impl = SuggestedImpl.from_dict(raw)
    impl.file_paths = clean_file_paths(impl.file_paths)
    return impl


@dataclass(slots=True)
class _Staging:
    """In-memory copy of everything a patch may touch; nothing is written until commit."""

    wbs: WBS
    runtime: NodesRuntime
    tasks: TasksState
    nodes: dict[str, NodeDesign] = field(default_factory=dict)
    dirty_nodes: set[str] = field(default_factory=set)
    deleted: set[str] = field(default_factory=set)


class PlanPatchEngine:
    """Applies a meta-agent plan patch as one validated transaction.

    Operations are staged against in-memory copies of the WBS, node designs,
    runtime and task state. Invariants and the dependency graph are checked
    before the first byte is written, so a rejected patch leaves the
    workspace and the history untouched.
    """

    def __init__(
        self,
        repo: WorkspaceRepository,
        events: EventEmitter | None = None,
        *,
        runner_max_loops: int = DEFAULT_RUNNER_MAX_LOOPS,
        worker_kind: str = DEFAULT_WORKER_KIND,
    ) -> None:
        self.repo = repo
        self.events = events or NullEmitter()
        self.runner_max_loops = runner_max_loops
        self.worker_kind = worker_kind

    def _stage(self) -> _Staging:
        wbs = self.repo.load_wbs_or_none()
        if wbs is None:
            wbs = new_wbs(str(self.repo.project_root))
        else:
            ensure_root(wbs)
        return _Staging(
            wbs=wbs,
            runtime=self.repo.state.load_nodes_runtime(),
            tasks=self.repo.state.load_tasks(),
        )

    def _node(self, staging: _Staging, node_id: str) -> NodeDesign | None:
        if node_id not in staging.nodes:
            node = self.repo.design.find_node(node_id)
            if node is None:
                return None
            staging.nodes[node_id] = node
        return staging.nodes[node_id]

    @staticmethod
    def _known_ids(staging: _Staging) -> set[str]:
        known = set(staging.wbs.node_ids())
        for task in staging.tasks.tasks:
            known.add(task.task_id)
            known.add(task.node_id)
        known.update(staging.nodes)
        known.difference_update(staging.deleted)
        return known

    @staticmethod
    def _resolve(ref: str, temp_to_real: dict[str, str]) -> str:
        ref = ref.strip()
        return temp_to_real.get(ref, ref)

    def _node_id_for(self, staging: _Staging, ref: str) -> str:
        task = staging.tasks.get(ref)
        return task.node_id if task is not None else ref

    def _allocate_ids(self, operations: list[PlanOperation]) -> dict[str, str]:
        temp_to_real: dict[str, str] = {}
        for op in operations:
            if op.op != OP_CREATE:
                continue
            temp_id = (op.temp_id or "").strip()
            if not temp_id:
                raise ValidationFailure("plan_patch create op requires temp_id")
            if temp_id in temp_to_real:
                raise ValidationFailure(f"duplicate temp_id in plan_patch: {temp_id}")
            if not (op.title or "").strip():
                raise ValidationFailure(
                    f"plan_patch create op requires title (temp_id={temp_id})"
                )
            temp_to_real[temp_id] = str(uuid.uuid4())
        return temp_to_real

    def _resolve_dependencies(
        self,
        staging: _Staging,
        deps: list[str],
        temp_to_real: dict[str, str],
        *,
        created_ids: set[str],
        owner: str,
        for_update: bool,
    ) -> list[str]:
        known = self._known_ids(staging) | created_ids
        resolved: list[str] = []
        for raw in deps:
            if not raw.strip():
                continue
            dep = self._resolve(raw, temp_to_real)
            if dep not in known:
                if for_update:
                    raise ValidationFailure(
                        f"unknown dependency id in update: {raw} (task_id={owner})"
                    )
                raise ValidationFailure(f"unresolved dependency: {raw} (from temp_id={owner})")
            dep = self._node_id_for(staging, dep)
            if dep not in resolved:
                resolved.append(dep)
        return resolved

    def _create(
        self,
        staging: _Staging,
        op: PlanOperation,
        temp_to_real: dict[str, str],
        session_id: str,
        now: str,
    ) -> TaskState:
        temp_id = (op.temp_id or "").strip()
        task_id = temp_to_real[temp_id]
        dependencies = self._resolve_dependencies(
            staging,
            op.dependencies or [],
            temp_to_real,
            created_ids=set(temp_to_real.values()),
            owner=temp_id,
            for_update=False,
        )
        node = NodeDesign(
            node_id=task_id,
            wbs_id=staging.wbs.wbs_id,
            name=(op.title or "").strip(),
            summary=op.description or "",
            phase_name=op.phase_name or "",
            milestone=op.milestone or "",
            wbs_level=op.wbs_level or 0,
            dependencies=dependencies,
            acceptance_criteria=list(op.acceptance_criteria or []),
            suggested_impl=suggested_impl_from_op(op.suggested_impl or {}),
            created_at=now,
            updated_at=now,
        )
        staging.nodes[task_id] = node
        staging.dirty_nodes.add(task_id)

        task = TaskState(
            task_id=task_id,
            node_id=task_id,
            status=TaskStatus.PENDING,
            pool_id="default",
            created_at=now,
            updated_at=now,
            scheduled_by=f"chat:{session_id}" if session_id else "chat",
            inputs={
                "runner_max_loops": self.runner_max_loops,
                "runner_worker_kind": self.worker_kind,
            },
        )
        staging.tasks.tasks.append(task)

        runtime = NodeRuntime(
            node_id=task_id,
            implementation=Implementation(last_modified_at=now, last_modified_by=PATCH_AUTHOR),
        )
        runtime.add_note(PATCH_AUTHOR, f"created from chat session {session_id}", at=now)
        staging.runtime.nodes.append(runtime)

        root = ensure_root(staging.wbs)
        place_node(staging.wbs, task_id, root.node_id, None)
        return task

    def _require_existing(
        self,
        staging: _Staging,
        ref: str | None,
        verb: str,
        temp_to_real: dict[str, str],
    ) -> str:
        target = self._resolve(ref or "", temp_to_real)
        if not target:
            raise ValidationFailure(f"plan_patch {verb} op requires task_id")
        if target not in self._known_ids(staging):
            raise ValidationFailure(f"unknown task_id in plan_patch {verb}: {ref}")
        return target

    def _update(
        self,
        staging: _Staging,
        target: str,
        op: PlanOperation,
        temp_to_real: dict[str, str],
        now: str,
    ) -> None:
        node_id = self._node_id_for(staging, target)
        node = self._node(staging, node_id)
        if node is None:
            node = NodeDesign(
                node_id=node_id, wbs_id=staging.wbs.wbs_id, created_at=now, updated_at=now
            )
            staging.nodes[node_id] = node
        if op.title is not None and op.title.strip():
            node.name = op.title.strip()
        if op.description is not None:
            node.summary = op.description
        if op.phase_name is not None:
            node.phase_name = op.phase_name
        if op.milestone is not None:
            node.milestone = op.milestone
        if op.wbs_level is not None:
            node.wbs_level = op.wbs_level
        if op.acceptance_criteria is not None:
            node.acceptance_criteria = list(op.acceptance_criteria)
        if op.dependencies is not None:
            node.dependencies = [
                dep
                for dep in self._resolve_dependencies(
                    staging,
                    op.dependencies,
                    temp_to_real,
                    created_ids=set(),
                    owner=target,
                    for_update=True,
                )
                if dep != node_id
            ]
        if op.suggested_impl is not None:
            node.suggested_impl = suggested_impl_from_op(op.suggested_impl)
        node.updated_at = now
        staging.dirty_nodes.add(node_id)

        task = staging.tasks.get(target)
        if task is None:
            task = next((item for item in staging.tasks.tasks if item.node_id == node_id), None)
        if task is not None:
            task.updated_at = now

    @staticmethod
    def _has_field_updates(op: PlanOperation) -> bool:
        return any(
            value is not None
            for value in (
                op.title,
                op.description,
                op.phase_name,
                op.milestone,
                op.wbs_level,
                op.acceptance_criteria,
                op.dependencies,
                op.suggested_impl,
            )
        )

    def _move(
        self,
        staging: _Staging,
        node_id: str,
        parent_ref: str | None,
        position: dict[str, Any] | None,
        temp_to_real: dict[str, str],
    ) -> None:
        parent_id = self._resolve(parent_ref or "", temp_to_real) or staging.wbs.root_node_id
        parent_id = self._node_id_for(staging, parent_id)
        if parent_id in staging.deleted:
            raise ValidationFailure(f"move target parent does not exist: {parent_id}")
        anchor = Position.from_dict(position)
        if anchor is not None:
            if anchor.before:
                anchor.before = self._node_id_for(
                    staging, self._resolve(anchor.before, temp_to_real)
                )
            if anchor.after:
                anchor.after = self._node_id_for(
                    staging, self._resolve(anchor.after, temp_to_real)
                )
        place_node(staging.wbs, node_id, parent_id, anchor)

    @staticmethod
    def _is_running(staging: _Staging, node_id: str) -> bool:
        return any(
            task.status == TaskStatus.RUNNING
            for task in staging.tasks.tasks
            if task.task_id == node_id or task.node_id == node_id
        )

    @staticmethod
    def _mark_obsolete(staging: _Staging, node_id: str, now: str) -> None:
        runtime = staging.runtime.get(node_id)
        if runtime is not None:
            runtime.status = "obsolete"
            runtime.add_note(PATCH_AUTHOR, "marked obsolete by plan_patch", at=now)
            return
        staging.runtime.nodes.append(
            NodeRuntime(
                node_id=node_id,
                status="obsolete",
                implementation=Implementation(
                    last_modified_at=now, last_modified_by=PATCH_AUTHOR
                ),
                notes=[
                    RuntimeNote(at=now, by=PATCH_AUTHOR, text="added obsolete node by plan_patch")
                ],
            )
        )

    def _delete(
        self,
        staging: _Staging,
        op: PlanOperation,
        temp_to_real: dict[str, str],
        now: str,
    ) -> list[str]:
        ref = self._resolve(op.task_id or "", temp_to_real)
        if not ref:
            raise ValidationFailure("plan_patch delete op requires task_id")
        node_id = self._node_id_for(staging, ref)
        if node_id in staging.deleted or ref in staging.deleted:
            return []
        if ref not in self._known_ids(staging):
            raise ValidationFailure(f"unknown task_id in plan_patch delete: {op.task_id}")
        if node_id == staging.wbs.root_node_id:
            raise ValidationFailure(f"cannot delete root node: {node_id}")

        targets = [node_id]
        if op.cascade:
            targets.extend(descendants(staging.wbs, node_id))
        for target in targets:
            if target == staging.wbs.root_node_id:
                raise ValidationFailure(f"cannot delete root node: {target}")
            if self._is_running(staging, target):
                raise ValidationFailure(f"cannot delete running task: {target}")

        removed_tasks = [
            task.task_id for task in staging.tasks.tasks if task.node_id in targets
        ]
        staging.tasks.tasks[:] = [
            task
            for task in staging.tasks.tasks
            if task.node_id not in targets and task.task_id not in targets
        ]
        for target in targets:
            self._mark_obsolete(staging, target, now)
        if staging.wbs.entry(node_id) is not None:
            remove_node(staging.wbs, node_id, cascade=op.cascade)
        else:
            detach(staging.wbs, node_id)
        staging.deleted.update(targets)
        staging.deleted.update(removed_tasks)

        deleted_ids: list[str] = []
        for item in [*targets, *removed_tasks]:
            if item not in deleted_ids:
                deleted_ids.append(item)
        return deleted_ids

    def _cleanup_deleted_dependencies(self, staging: _Staging, now: str) -> None:
        if not staging.deleted:
            return
        node_ids = set(self.repo.design.list_node_ids()) | set(staging.nodes)
        for node_id in sorted(node_ids - staging.deleted):
            node = self._node(staging, node_id)
            if node is None:
                continue
            kept = [dep for dep in node.dependencies if dep not in staging.deleted]
            if kept != node.dependencies:
                node.dependencies = kept
                node.updated_at = now
                staging.dirty_nodes.add(node_id)

    def _validate(self, staging: _Staging) -> None:
        validate_wbs(staging.wbs)
        graph: dict[str, list[str]] = {}
        node_ids = set(self.repo.design.list_node_ids()) | set(staging.nodes)
        for node_id in sorted(node_ids - staging.deleted):
            node = self._node(staging, node_id)
            if node is not None:
                graph[node_id] = [dep for dep in node.dependencies if dep not in staging.deleted]
        cycle = find_dependency_cycle(graph)
        if cycle:
            raise InvariantViolation(f"dependency cycle in plan: {', '.join(cycle)}")

    def _record_failure(self, kind: str, payload: dict[str, Any]) -> None:
        try:
            self.repo.history.record(kind, payload)
        except PersistenceIOError:
            log.exception("could not record %s action", kind)

    def _commit(
        self,
        staging: _Staging,
        session_id: str,
        response: PlanPatchResponse,
        result: PlanPatchResult,
        now: str,
    ) -> None:
        for node_id in sorted(staging.dirty_nodes - staging.deleted):
            self.repo.design.save_node(staging.nodes[node_id])

        action = self.repo.history.new_action(
            "plan_patch",
            {
                "session_id": session_id,
                "operations_count": len(response.operations),
                "created_task_ids": result.created_task_ids,
                "updated_task_ids": list(result.updated_task_ids),
                "deleted_task_ids": list(result.deleted_task_ids),
                "moved_task_ids": list(result.moved_task_ids),
                "meta_understanding": response.understanding,
            },
        )
        try:
            self.repo.history.append_action(action)
        except PersistenceIOError as exc:
            log.warning("history append failed, recording failure: %s", exc)
            self._record_failure(
                "history_failed", {"original_action_id": action.id, "error": str(exc)}
            )
        result.action = action

        staging.wbs.updated_at = now
        stages = (
            ("save_wbs", lambda: self.repo.design.save_wbs(staging.wbs)),
            ("save_nodes_runtime", lambda: self.repo.state.save_nodes_runtime(staging.runtime)),
            ("save_tasks_state", lambda: self.repo.state.save_tasks(staging.tasks)),
        )
        for stage, save in stages:
            try:
                save()
            except PersistenceIOError as exc:
                self._record_failure(
                    "state_save_failed",
                    {"original_action_id": action.id, "stage": stage, "error": str(exc)},
                )
                raise

    def apply(self, session_id: str, response: PlanPatchResponse) -> PlanPatchResult:
        now = to_iso(utcnow())
        staging = self._stage()
        result = PlanPatchResult()
        temp_to_real = self._allocate_ids(response.operations)
        result.temp_to_real = dict(temp_to_real)

        placements: dict[str, PlanOperation] = {}
        for op in response.operations:
            if op.op != OP_CREATE:
                continue
            task = self._create(staging, op, temp_to_real, session_id, now)
            result.created_tasks.append(task)
            if (op.parent_id or "").strip() or op.position:
                placements[task.task_id] = op

        for op in response.operations:
            if op.op == OP_CREATE:
                continue
            if op.op == OP_UPDATE:
                target = self._require_existing(staging, op.task_id, "update", temp_to_real)
                self._update(staging, target, op, temp_to_real, now)
                if target not in result.updated_task_ids:
                    result.updated_task_ids.append(target)
            elif op.op == OP_MOVE:
                target = self._require_existing(staging, op.task_id, "move", temp_to_real)
                node_id = self._node_id_for(staging, target)
                if node_id == staging.wbs.root_node_id:
                    raise ValidationFailure(f"cannot move root node: {node_id}")
                self._move(staging, node_id, op.parent_id, op.position, temp_to_real)
                if self._has_field_updates(op):
                    self._update(staging, target, op, temp_to_real, now)
                    if target not in result.updated_task_ids:
                        result.updated_task_ids.append(target)
                result.moved_task_ids.append(target)
            elif op.op == OP_DELETE:
                for deleted in self._delete(staging, op, temp_to_real, now):
                    if deleted not in result.deleted_task_ids:
                        result.deleted_task_ids.append(deleted)
            else:
                raise ValidationFailure(f"unknown plan_patch op: {op.op}")

        for task_id, op in placements.items():
            if task_id in staging.deleted:
                continue
            self._move(staging, task_id, op.parent_id, op.position, temp_to_real)

        self._cleanup_deleted_dependencies(staging, now)
        result.created_tasks = [
            task for task in result.created_tasks if task.task_id not in staging.deleted
        ]
        self._validate(staging)
        self._commit(staging, session_id, response, result, now)

        for task in result.created_tasks:
            self.events.emit(TASK_CREATED, {"task": task.to_dict()})
        log.info(
            "plan patch applied for session %s: %d created, %d updated, %d moved, %d deleted",
            session_id,
            len(result.created_tasks),
            len(result.updated_task_ids),
            len(result.moved_task_ids),
            len(result.deleted_task_ids),
        )
        return result
