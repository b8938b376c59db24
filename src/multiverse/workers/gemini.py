from __future__ import annotations

from multiverse.workers.base import (
    ExecPlan,
    WorkerAdapter,
    WorkerRequest,
    ensure_prompt,
    first_non_empty,
    resolve_mode,
    tool_flag,
)

DEFAULT_GEMINI_MODEL = "gemini-3-flash-preview"


class GeminiAdapter(WorkerAdapter):
    default_cli = "gemini"
    default_model = DEFAULT_GEMINI_MODEL

    @property
    def kind(self) -> str:
        return "gemini-cli"

    def build(self, request: WorkerRequest) -> ExecPlan:
        ensure_prompt(request.prompt)
        resolve_mode(self.kind, request.mode)
        json_output = tool_flag(request, "json_output", True)
        auto_accept = tool_flag(request, "auto_accept", True)
        auto_accept = tool_flag(request, "yolo", auto_accept)

        args = ["--model", first_non_empty(request.model, self.model, self.default_model)]
        if request.temperature is not None:
            args.extend(["--temperature", f"{request.temperature:.2f}"])
        if request.max_tokens is not None:
            args.extend(["--max-output-tokens", str(request.max_tokens)])
        if json_output:
            args.extend(["--output-format", "json"])
        if auto_accept:
            args.append("--yolo")
        args.extend(self.flags)
        args.extend(request.flags)

        plan = self._plan(request, args)
        if request.use_stdin:
            plan.args.extend(["-p", "-"])
            plan.stdin = request.prompt
        else:
            plan.args.extend(["-p", request.prompt])
        return plan
