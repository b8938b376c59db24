from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from multiverse.config import ToolCandidate
from multiverse.errors import UnsupportedModeError, ValidationFailure

DEFAULT_MODE = "exec"


@dataclass(slots=True)
class WorkerRequest:
    """Tool-agnostic request; adapters pick the fields they understand."""

    prompt: str
    mode: str = ""
    model: str = ""
    temperature: float | None = None
    max_tokens: int | None = None
    reasoning_effort: str = ""
    workdir: str = ""
    timeout: float | None = None
    extra_env: dict[str, str] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    tool_specific: dict[str, Any] = field(default_factory=dict)
    use_stdin: bool = False


@dataclass(slots=True)
class ExecPlan:
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    workdir: str = ""
    timeout: float | None = None
    stdin: str = ""

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(slots=True)
class Capability:
    kind: str
    default_model: str = ""
    supports_stdin: bool = False
    notes: str = ""


@dataclass(slots=True)
class AdapterConfig:
    kind: str = ""
    cli_path: str = ""
    model: str = ""
    system_prompt: str = ""
    extra_env: dict[str, str] = field(default_factory=dict)
    flags: list[str] = field(default_factory=list)
    tool_specific: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_candidate(cls, candidate: ToolCandidate) -> AdapterConfig:
        return cls(
            kind=candidate.tool,
            cli_path=candidate.cli_path,
            model=candidate.model,
            system_prompt=candidate.system_prompt,
            extra_env=dict(candidate.env),
            flags=list(candidate.flags),
            tool_specific=dict(candidate.tool_specific),
        )


def merge_env(
    base: Mapping[str, str] | None,
    override: Mapping[str, str] | None,
) -> dict[str, str]:
    merged = dict(base or {})
    merged.update(override or {})
    return merged


def first_non_empty(*values: str) -> str:
    for value in values:
        if value:
            return value
    return ""


def ensure_prompt(prompt: str) -> None:
    if not prompt:
        raise ValidationFailure("prompt is required")


def resolve_mode(kind: str, mode: str) -> str:
    mode = mode or DEFAULT_MODE
    if mode != DEFAULT_MODE:
        raise UnsupportedModeError(
            f"{kind}: mode not supported: {mode} (only '{DEFAULT_MODE}' is supported)"
        )
    return mode


def tool_flag(request: WorkerRequest, key: str, default: bool) -> bool:
    value = request.tool_specific.get(key)
    return value if isinstance(value, bool) else default


class WorkerAdapter(ABC):
    """Turns a :class:`WorkerRequest` into an :class:`ExecPlan` for one CLI tool."""

    default_cli: str = ""
    default_model: str = ""

    def __init__(self, config: AdapterConfig | None = None) -> None:
        config = config or AdapterConfig()
        self.cli_path = first_non_empty(config.cli_path, self.default_cli)
        self.model = config.model
        self.env = merge_env(None, config.extra_env)
        self.flags = list(config.flags)
        self.tool_specific = dict(config.tool_specific)

    @property
    @abstractmethod
    def kind(self) -> str:
        """Registry key of this adapter."""

    def capabilities(self) -> Capability:
        return Capability(
            kind=self.kind,
            default_model=first_non_empty(self.model, self.default_model),
            supports_stdin=True,
        )

    @abstractmethod
    def build(self, request: WorkerRequest) -> ExecPlan:
        """Resolve the request into a concrete command line."""

    def _plan(self, request: WorkerRequest, args: list[str]) -> ExecPlan:
        return ExecPlan(
            command=self.cli_path,
            args=args,
            env=merge_env(self.env, request.extra_env),
            workdir=request.workdir,
            timeout=request.timeout,
        )
