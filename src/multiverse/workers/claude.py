from __future__ import annotations

from multiverse.workers.base import (
    AdapterConfig,
    Capability,
    ExecPlan,
    WorkerAdapter,
    WorkerRequest,
    ensure_prompt,
    first_non_empty,
    resolve_mode,
)

DEFAULT_CLAUDE_MODEL = "claude-haiku-4-5-20251001"


class ClaudeCodeAdapter(WorkerAdapter):
    """Wraps ``claude --model <m> -p <prompt>``; registered as two kinds."""

    default_cli = "claude"
    default_model = DEFAULT_CLAUDE_MODEL

    def __init__(self, config: AdapterConfig | None = None, *, kind: str = "claude-code") -> None:
        super().__init__(config)
        self._kind = kind

    @property
    def kind(self) -> str:
        return self._kind

    def capabilities(self) -> Capability:
        return Capability(
            kind=self.kind,
            default_model=first_non_empty(self.model, self.default_model),
            supports_stdin=True,
            notes="Claude Code CLI print mode.",
        )

    def build(self, request: WorkerRequest) -> ExecPlan:
        ensure_prompt(request.prompt)
        resolve_mode(self.kind, request.mode)
        args = ["--model", first_non_empty(request.model, self.model, self.default_model)]
        args.extend(self.flags)
        args.extend(request.flags)

        plan = self._plan(request, args)
        if request.use_stdin:
            plan.args.extend(["-p", "-"])
            plan.stdin = request.prompt
        else:
            plan.args.extend(["-p", request.prompt])
        return plan
