from __future__ import annotations

from multiverse.workers.base import (
    Capability,
    ExecPlan,
    WorkerAdapter,
    WorkerRequest,
    ensure_prompt,
    first_non_empty,
    resolve_mode,
    tool_flag,
)

DEFAULT_CODEX_MODEL = "gpt-5.2-codex"
DEFAULT_META_MODEL = "gpt-5.2"
DEFAULT_REASONING_EFFORT = "medium"
DOCKER_PROJECT_DIR = "/workspace/project"

_EFFORT_ALIASES = {"xhigh": "high", "extra_high": "high", "very_high": "high"}
_EFFORT_LEVELS = {"none", "low", "medium", "high"}


def normalize_reasoning_effort(value: str) -> str:
    effort = value.strip().lower()
    effort = _EFFORT_ALIASES.get(effort, effort)
    return effort if effort in _EFFORT_LEVELS else DEFAULT_REASONING_EFFORT


class CodexAdapter(WorkerAdapter):
    default_cli = "codex"
    default_model = DEFAULT_CODEX_MODEL

    @property
    def kind(self) -> str:
        return "codex-cli"

    def capabilities(self) -> Capability:
        return Capability(
            kind=self.kind,
            default_model=first_non_empty(self.model, self.default_model),
            supports_stdin=True,
            notes="codex exec only; runs sandbox-free inside the worker container by default.",
        )

    def build(self, request: WorkerRequest) -> ExecPlan:
        ensure_prompt(request.prompt)
        resolve_mode(self.kind, request.mode)
        docker_mode = tool_flag(request, "docker_mode", True)
        json_output = tool_flag(request, "json_output", True)

        args = ["exec"]
        if docker_mode:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        if request.workdir:
            args.extend(["-C", request.workdir])
        elif docker_mode:
            args.extend(["-C", DOCKER_PROJECT_DIR])
        if json_output:
            args.append("--json")

        args.extend(["-m", first_non_empty(request.model, self.model, self.default_model)])

        effort = request.reasoning_effort
        if not effort:
            configured = request.tool_specific.get("reasoning_effort")
            effort = configured if isinstance(configured, str) else ""
        args.extend(["-c", f"reasoning_effort={normalize_reasoning_effort(effort)}"])

        if request.temperature is not None:
            args.extend(["-c", f"temperature={request.temperature:.2f}"])
        if request.max_tokens is not None:
            args.extend(["-c", f"max_tokens={request.max_tokens}"])

        args.extend(self.flags)
        args.extend(request.flags)

        plan = self._plan(request, args)
        if request.use_stdin:
            plan.args.append("-")
            plan.stdin = request.prompt
        else:
            plan.args.append(request.prompt)
        return plan
