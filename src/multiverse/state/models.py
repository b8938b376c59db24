from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

NODE_STATUSES = {"planned", "in_progress", "implemented", "verified", "blocked", "obsolete"}
VERIFICATION_STATUSES = {"not_tested", "passed", "failed", "flaky"}
TASK_KINDS = {"planning", "implementation", "test", "refactor", "analysis"}
DEFAULT_ROOT_NODE_ID = "node-root"


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def utcnow_iso() -> str:
    return to_iso(utcnow())


def parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None]


def _dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass(slots=True)
class NodeIndexEntry:
    node_id: str
    parent_id: str | None = None
    children: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeIndexEntry:
        parent = data.get("parent_id")
        return cls(
            node_id=str(data.get("node_id", "")),
            parent_id=str(parent) if parent else None,
            children=_str_list(data.get("children")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "parent_id": self.parent_id,
            "children": list(self.children),
        }


@dataclass(slots=True)
class WBS:
    wbs_id: str
    project_root: str = ""
    created_at: str = ""
    updated_at: str = ""
    root_node_id: str = DEFAULT_ROOT_NODE_ID
    node_index: list[NodeIndexEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WBS:
        return cls(
            wbs_id=str(data.get("wbs_id", "")),
            project_root=str(data.get("project_root", "")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            root_node_id=str(data.get("root_node_id", DEFAULT_ROOT_NODE_ID)),
            node_index=[
                NodeIndexEntry.from_dict(item)
                for item in data.get("node_index", []) or []
                if isinstance(item, dict)
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "wbs_id": self.wbs_id,
            "project_root": self.project_root,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "root_node_id": self.root_node_id,
            "node_index": [entry.to_dict() for entry in self.node_index],
        }

    def entry(self, node_id: str) -> NodeIndexEntry | None:
        for item in self.node_index:
            if item.node_id == node_id:
                return item
        return None

    def node_ids(self) -> set[str]:
        return {item.node_id for item in self.node_index}


@dataclass(slots=True)
class Estimate:
    story_points: int = 0
    difficulty: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Estimate:
        data = _dict(data)
        return cls(
            story_points=_int(data.get("story_points")),
            difficulty=str(data.get("difficulty", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"story_points": self.story_points, "difficulty": self.difficulty}


@dataclass(slots=True)
class SuggestedImpl:
    language: str = ""
    framework: str = ""
    module_paths: list[str] = field(default_factory=list)
    file_paths: list[str] = field(default_factory=list)
    constraints: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> SuggestedImpl:
        data = _dict(data)
        return cls(
            language=str(data.get("language", "") or ""),
            framework=str(data.get("framework", "") or ""),
            module_paths=_str_list(data.get("module_paths")),
            file_paths=_str_list(data.get("file_paths")),
            constraints=_str_list(data.get("constraints")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "language": self.language,
            "framework": self.framework,
            "module_paths": list(self.module_paths),
            "file_paths": list(self.file_paths),
            "constraints": list(self.constraints),
        }

    def is_empty(self) -> bool:
        return not (
            self.language or self.framework or self.module_paths or self.file_paths
            or self.constraints
        )


@dataclass(slots=True)
class NodeDesign:
    node_id: str
    wbs_id: str = ""
    name: str = ""
    summary: str = ""
    phase_name: str = ""
    milestone: str = ""
    wbs_level: int = 0
    kind: str = "feature"
    priority: str = "medium"
    estimate: Estimate = field(default_factory=Estimate)
    dependencies: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    design_notes: list[str] = field(default_factory=list)
    suggested_impl: SuggestedImpl = field(default_factory=SuggestedImpl)
    created_at: str = ""
    updated_at: str = ""
    created_by: str = "agent:planner"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeDesign:
        return cls(
            node_id=str(data.get("node_id", "")),
            wbs_id=str(data.get("wbs_id", "")),
            name=str(data.get("name", "")),
            summary=str(data.get("summary", "")),
            phase_name=str(data.get("phase_name", "") or ""),
            milestone=str(data.get("milestone", "") or ""),
            wbs_level=_int(data.get("wbs_level")),
            kind=str(data.get("kind", "feature")),
            priority=str(data.get("priority", "medium")),
            estimate=Estimate.from_dict(data.get("estimate")),
            dependencies=_str_list(data.get("dependencies")),
            acceptance_criteria=_str_list(data.get("acceptance_criteria")),
            design_notes=_str_list(data.get("design_notes")),
            suggested_impl=SuggestedImpl.from_dict(data.get("suggested_impl")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            created_by=str(data.get("created_by", "agent:planner")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "wbs_id": self.wbs_id,
            "name": self.name,
            "summary": self.summary,
            "phase_name": self.phase_name,
            "milestone": self.milestone,
            "wbs_level": self.wbs_level,
            "kind": self.kind,
            "priority": self.priority,
            "estimate": self.estimate.to_dict(),
            "dependencies": list(self.dependencies),
            "acceptance_criteria": list(self.acceptance_criteria),
            "design_notes": list(self.design_notes),
            "suggested_impl": self.suggested_impl.to_dict(),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "created_by": self.created_by,
        }


@dataclass(slots=True)
class RuntimeNote:
    at: str
    by: str
    text: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RuntimeNote:
        return cls(
            at=str(data.get("at", "")),
            by=str(data.get("by", "")),
            text=str(data.get("text", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"at": self.at, "by": self.by, "text": self.text}


@dataclass(slots=True)
class Implementation:
    files: list[str] = field(default_factory=list)
    last_modified_at: str = ""
    last_modified_by: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "files": list(self.files),
            "last_modified_at": self.last_modified_at,
            "last_modified_by": self.last_modified_by,
        }


@dataclass(slots=True)
class Verification:
    status: str = "not_tested"
    last_test_task_id: str = ""
    last_test_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "last_test_task_id": self.last_test_task_id,
            "last_test_at": self.last_test_at,
        }


@dataclass(slots=True)
class NodeRuntime:
    node_id: str
    status: str = "planned"
    implementation: Implementation = field(default_factory=Implementation)
    verification: Verification = field(default_factory=Verification)
    notes: list[RuntimeNote] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeRuntime:
        impl = _dict(data.get("implementation"))
        verification = _dict(data.get("verification"))
        return cls(
            node_id=str(data.get("node_id", "")),
            status=str(data.get("status", "planned")),
            implementation=Implementation(
                files=_str_list(impl.get("files")),
                last_modified_at=str(impl.get("last_modified_at", "")),
                last_modified_by=str(impl.get("last_modified_by", "")),
            ),
            verification=Verification(
                status=str(verification.get("status", "not_tested")),
                last_test_task_id=str(verification.get("last_test_task_id", "")),
                last_test_at=str(verification.get("last_test_at", "")),
            ),
            notes=[
                RuntimeNote.from_dict(item)
                for item in data.get("notes", []) or []
                if isinstance(item, dict)
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "status": self.status,
            "implementation": self.implementation.to_dict(),
            "verification": self.verification.to_dict(),
            "notes": [note.to_dict() for note in self.notes],
        }

    def add_note(self, by: str, text: str, at: str | None = None) -> None:
        self.notes.append(RuntimeNote(at=at or utcnow_iso(), by=by, text=text))


@dataclass(slots=True)
class NodesRuntime:
    nodes: list[NodeRuntime] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodesRuntime:
        return cls(
            nodes=[
                NodeRuntime.from_dict(item)
                for item in data.get("nodes", []) or []
                if isinstance(item, dict)
            ]
        )

    def to_dict(self) -> dict[str, Any]:
        return {"nodes": [node.to_dict() for node in self.nodes]}

    def get(self, node_id: str) -> NodeRuntime | None:
        for node in self.nodes:
            if node.node_id == node_id:
                return node
        return None


@dataclass(slots=True)
class Attempt:
    attempt_id: str
    task_id: str
    status: str = "RUNNING"
    started_at: str = ""
    finished_at: str | None = None
    exit_code: int | None = None
    error_summary: str | None = None
    output: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Attempt:
        exit_code = data.get("exit_code")
        return cls(
            attempt_id=str(data.get("attempt_id", "")),
            task_id=str(data.get("task_id", "")),
            status=str(data.get("status", "RUNNING")),
            started_at=str(data.get("started_at", "")),
            finished_at=data.get("finished_at"),
            exit_code=int(exit_code) if exit_code is not None else None,
            error_summary=data.get("error_summary"),
            output=str(data.get("output", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "task_id": self.task_id,
            "status": self.status,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "exit_code": self.exit_code,
            "error_summary": self.error_summary,
            "output": self.output,
        }


@dataclass(slots=True)
class TaskOutputs:
    status: str = ""
    artifacts: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "artifacts": dict(self.artifacts)}


@dataclass(slots=True)
class TaskState:
    task_id: str
    node_id: str
    kind: str = "implementation"
    status: str = "PENDING"
    pool_id: str = "default"
    created_at: str = ""
    updated_at: str = ""
    scheduled_by: str = ""
    assigned_agent: str = ""
    priority: int = 0
    attempt_count: int = 0
    next_retry_at: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: TaskOutputs = field(default_factory=TaskOutputs)
    attempts: list[Attempt] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskState:
        inputs = _dict(data.get("inputs"))
        # Older workspaces kept retry bookkeeping inside inputs.
        attempt_count = data.get("attempt_count")
        if attempt_count is None:
            attempt_count = inputs.pop("attempt_count", 0)
        else:
            inputs.pop("attempt_count", None)
        next_retry_at = data.get("next_retry_at")
        legacy_retry = inputs.pop("next_retry_at", None)
        if next_retry_at is None and isinstance(legacy_retry, str) and legacy_retry:
            next_retry_at = legacy_retry
        outputs = _dict(data.get("outputs"))
        return cls(
            task_id=str(data.get("task_id", "")),
            node_id=str(data.get("node_id", "")),
            kind=str(data.get("kind", "implementation")),
            status=str(data.get("status", "PENDING")).upper(),
            pool_id=str(data.get("pool_id", "") or "default"),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
            scheduled_by=str(data.get("scheduled_by", "")),
            assigned_agent=str(data.get("assigned_agent", "")),
            priority=_int(data.get("priority")),
            attempt_count=_int(attempt_count),
            next_retry_at=str(next_retry_at) if next_retry_at else None,
            inputs=inputs,
            outputs=TaskOutputs(
                status=str(outputs.get("status", "")),
                artifacts=_dict(outputs.get("artifacts")),
            ),
            attempts=[
                Attempt.from_dict(item)
                for item in data.get("attempts", []) or []
                if isinstance(item, dict)
            ],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "node_id": self.node_id,
            "kind": self.kind,
            "status": self.status,
            "pool_id": self.pool_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "scheduled_by": self.scheduled_by,
            "assigned_agent": self.assigned_agent,
            "priority": self.priority,
            "attempt_count": self.attempt_count,
            "next_retry_at": self.next_retry_at,
            "inputs": dict(self.inputs),
            "outputs": self.outputs.to_dict(),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
        }


@dataclass(slots=True)
class QueueMeta:
    last_scheduled_at: str = ""
    next_task_id_seq: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_scheduled_at": self.last_scheduled_at,
            "next_task_id_seq": self.next_task_id_seq,
        }


@dataclass(slots=True)
class TasksState:
    tasks: list[TaskState] = field(default_factory=list)
    queue_meta: QueueMeta = field(default_factory=QueueMeta)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TasksState:
        meta = _dict(data.get("queue_meta"))
        return cls(
            tasks=[
                TaskState.from_dict(item)
                for item in data.get("tasks", []) or []
                if isinstance(item, dict)
            ],
            queue_meta=QueueMeta(
                last_scheduled_at=str(meta.get("last_scheduled_at", "")),
                next_task_id_seq=_int(meta.get("next_task_id_seq")),
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": [task.to_dict() for task in self.tasks],
            "queue_meta": self.queue_meta.to_dict(),
        }

    def get(self, task_id: str) -> TaskState | None:
        for task in self.tasks:
            if task.task_id == task_id:
                return task
        return None


@dataclass(slots=True)
class AgentState:
    agent_id: str
    kind: str = ""
    max_parallel: int = 1
    running_tasks: list[str] = field(default_factory=list)
    capabilities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "kind": self.kind,
            "max_parallel": self.max_parallel,
            "running_tasks": list(self.running_tasks),
            "capabilities": list(self.capabilities),
        }


@dataclass(slots=True)
class AgentsState:
    agents: list[AgentState] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentsState:
        agents: list[AgentState] = []
        for item in data.get("agents", []) or []:
            if not isinstance(item, dict):
                continue
            agents.append(
                AgentState(
                    agent_id=str(item.get("agent_id", "")),
                    kind=str(item.get("kind", "")),
                    max_parallel=_int(item.get("max_parallel"), 1),
                    running_tasks=_str_list(item.get("running_tasks")),
                    capabilities=_str_list(item.get("capabilities")),
                )
            )
        return cls(agents=agents)

    def to_dict(self) -> dict[str, Any]:
        return {"agents": [agent.to_dict() for agent in self.agents]}


@dataclass(slots=True)
class Action:
    id: str
    at: str
    kind: str
    workspace_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Action:
        return cls(
            id=str(data.get("id", "")),
            at=str(data.get("at", "")),
            kind=str(data.get("kind", "")),
            workspace_id=str(data.get("workspace_id", "")),
            payload=_dict(data.get("payload")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "at": self.at,
            "kind": self.kind,
            "workspace_id": self.workspace_id,
            "payload": dict(self.payload),
        }


@dataclass(slots=True)
class Job:
    job_id: str
    task_id: str
    pool_id: str = "default"
    payload: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        return cls(
            job_id=str(data.get("job_id", "")),
            task_id=str(data.get("task_id", "")),
            pool_id=str(data.get("pool_id", "default")),
            payload={str(k): str(v) for k, v in _dict(data.get("payload")).items()},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "task_id": self.task_id,
            "pool_id": self.pool_id,
            "payload": dict(self.payload),
        }


@dataclass(slots=True)
class BacklogItem:
    id: str
    task_id: str
    type: str
    title: str
    description: str = ""
    priority: int = 3
    created_at: str = ""
    resolved_at: str | None = None
    resolution: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BacklogItem:
        return cls(
            id=str(data.get("id", "")),
            task_id=str(data.get("task_id", "")),
            type=str(data.get("type", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            priority=_int(data.get("priority"), 3),
            created_at=str(data.get("created_at", "")),
            resolved_at=data.get("resolved_at"),
            resolution=data.get("resolution"),
            metadata=_dict(data.get("metadata")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "type": self.type,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "created_at": self.created_at,
            "resolved_at": self.resolved_at,
            "resolution": self.resolution,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class Snapshot:
    id: str
    description: str
    created_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        return cls(
            id=str(data.get("id", "")),
            description=str(data.get("description", "")),
            created_at=str(data.get("created_at", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "description": self.description, "created_at": self.created_at}
