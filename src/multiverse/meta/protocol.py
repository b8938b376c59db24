from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from multiverse.errors import ValidationFailure
from multiverse.state.models import WBS

OP_CREATE = "create"
OP_UPDATE = "update"
OP_MOVE = "move"
OP_DELETE = "delete"


def _opt_str_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise ValidationFailure(f"expected a list, got {type(value).__name__}")
    return [str(item) for item in value if item is not None]


def _opt_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _opt_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailure(f"expected an integer, got {value!r}") from exc


@dataclass(slots=True)
class MetaMessage:
    type: str
    version: int = 1
    payload: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetaMessage:
        return cls(
            type=str(data.get("type", "")),
            version=int(data.get("version", 1) or 1),
            payload=data.get("payload"),
        )


@dataclass(slots=True)
class ConversationMessage:
    role: str
    content: str

    def to_dict(self) -> dict[str, Any]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class ExistingTaskSummary:
    id: str
    title: str
    status: str
    dependencies: list[str] = field(default_factory=list)
    phase_name: str = ""
    milestone: str = ""
    wbs_level: int = 0
    parent_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status,
            "dependencies": list(self.dependencies),
            "phase_name": self.phase_name,
            "milestone": self.milestone,
            "wbs_level": self.wbs_level,
            "parent_id": self.parent_id,
        }


@dataclass(slots=True)
class DecomposeContext:
    workspace_path: str = ""
    existing_tasks: list[ExistingTaskSummary] = field(default_factory=list)
    conversation_history: list[ConversationMessage] = field(default_factory=list)


@dataclass(slots=True)
class DecomposeRequest:
    user_input: str
    context: DecomposeContext = field(default_factory=DecomposeContext)


@dataclass(slots=True)
class PotentialConflict:
    file: str
    tasks: list[str] = field(default_factory=list)
    warning: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PotentialConflict:
        return cls(
            file=str(data.get("file", "")),
            tasks=_opt_str_list(data.get("tasks")) or [],
            warning=str(data.get("warning", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"file": self.file, "tasks": list(self.tasks), "warning": self.warning}


@dataclass(slots=True)
class DecomposedTask:
    id: str
    title: str
    description: str = ""
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    wbs_level: int = 0
    estimated_effort: str = ""
    suggested_impl: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecomposedTask:
        impl = data.get("suggested_impl")
        return cls(
            id=str(data.get("id", "")),
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            acceptance_criteria=_opt_str_list(data.get("acceptance_criteria")) or [],
            dependencies=_opt_str_list(data.get("dependencies")) or [],
            wbs_level=_opt_int(data.get("wbs_level")) or 0,
            estimated_effort=str(data.get("estimated_effort", "")),
            suggested_impl=dict(impl) if isinstance(impl, dict) else {},
        )


@dataclass(slots=True)
class DecomposedPhase:
    name: str
    milestone: str = ""
    tasks: list[DecomposedTask] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecomposedPhase:
        return cls(
            name=str(data.get("name", "")),
            milestone=str(data.get("milestone", "")),
            tasks=[
                DecomposedTask.from_dict(item)
                for item in data.get("tasks", []) or []
                if isinstance(item, dict)
            ],
        )


@dataclass(slots=True)
class DecomposeResponse:
    understanding: str = ""
    phases: list[DecomposedPhase] = field(default_factory=list)
    potential_conflicts: list[PotentialConflict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecomposeResponse:
        return cls(
            understanding=str(data.get("understanding", "")),
            phases=[
                DecomposedPhase.from_dict(item)
                for item in data.get("phases", []) or []
                if isinstance(item, dict)
            ],
            potential_conflicts=[
                PotentialConflict.from_dict(item)
                for item in data.get("potential_conflicts", []) or []
                if isinstance(item, dict)
            ],
        )


@dataclass(slots=True)
class PlanPatchContext:
    workspace_path: str = ""
    existing_tasks: list[ExistingTaskSummary] = field(default_factory=list)
    existing_wbs: WBS | None = None
    conversation_history: list[ConversationMessage] = field(default_factory=list)


@dataclass(slots=True)
class PlanPatchRequest:
    user_input: str
    context: PlanPatchContext = field(default_factory=PlanPatchContext)


@dataclass(slots=True)
class PlanOperation:
    """One plan-patch op; ``None`` fields were not supplied and are left untouched."""

    op: str
    temp_id: str | None = None
    task_id: str | None = None
    title: str | None = None
    description: str | None = None
    acceptance_criteria: list[str] | None = None
    dependencies: list[str] | None = None
    wbs_level: int | None = None
    phase_name: str | None = None
    milestone: str | None = None
    suggested_impl: dict[str, Any] | None = None
    parent_id: str | None = None
    position: dict[str, Any] | None = None
    cascade: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanOperation:
        impl = data.get("suggested_impl")
        position = data.get("position")
        if position is not None and not isinstance(position, dict):
            raise ValidationFailure("plan_patch position must be a mapping")
        return cls(
            op=str(data.get("op", "")).strip().lower(),
            temp_id=_opt_str(data.get("temp_id")),
            task_id=_opt_str(data.get("task_id")),
            title=_opt_str(data.get("title")),
            description=_opt_str(data.get("description")),
            acceptance_criteria=_opt_str_list(data.get("acceptance_criteria")),
            dependencies=_opt_str_list(data.get("dependencies")),
            wbs_level=_opt_int(data.get("wbs_level")),
            phase_name=_opt_str(data.get("phase_name")),
            milestone=_opt_str(data.get("milestone")),
            suggested_impl=dict(impl) if isinstance(impl, dict) else None,
            parent_id=_opt_str(data.get("parent_id")),
            position=dict(position) if isinstance(position, dict) else None,
            cascade=bool(data.get("cascade", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"op": self.op}
        for key in (
            "temp_id",
            "task_id",
            "title",
            "description",
            "acceptance_criteria",
            "dependencies",
            "wbs_level",
            "phase_name",
            "milestone",
            "suggested_impl",
            "parent_id",
            "position",
        ):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.op == OP_DELETE:
            data["cascade"] = self.cascade
        return data


@dataclass(slots=True)
class PlanPatchResponse:
    understanding: str = ""
    operations: list[PlanOperation] = field(default_factory=list)
    potential_conflicts: list[PotentialConflict] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlanPatchResponse:
        raw_ops = data.get("operations", []) or []
        if not isinstance(raw_ops, list):
            raise ValidationFailure("plan_patch operations must be a list")
        return cls(
            understanding=str(data.get("understanding", "") or ""),
            operations=[PlanOperation.from_dict(item) for item in raw_ops if isinstance(item, dict)],
            potential_conflicts=[
                PotentialConflict.from_dict(item)
                for item in data.get("potential_conflicts", []) or []
                if isinstance(item, dict)
            ],
        )
