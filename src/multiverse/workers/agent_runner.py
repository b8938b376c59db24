from __future__ import annotations

from typing import Any

import yaml

from multiverse.config import DEFAULT_RUNNER_MAX_LOOPS, DEFAULT_WORKER_KIND
from multiverse.state.models import NodeDesign, TaskState
from multiverse.workers.base import (
    Capability,
    ExecPlan,
    WorkerAdapter,
    WorkerRequest,
    ensure_prompt,
    resolve_mode,
)


def task_title(task: TaskState, node: NodeDesign | None) -> str:
    if node is not None and node.name:
        return node.name
    return task.task_id


def build_task_prompt(title: str, node: NodeDesign | None) -> str:
    parts = [f"Execute task: {title}"]
    if node is None:
        return parts[0]
    if node.summary:
        parts.append(f"Description:\n{node.summary}")
    if node.acceptance_criteria:
        parts.append(
            "Acceptance Criteria:" + "".join(f"\n- {item}" for item in node.acceptance_criteria)
        )
    impl = node.suggested_impl
    if not impl.is_empty():
        section = "Suggested Implementation:"
        if impl.language:
            section += f"\nLanguage: {impl.language}"
        if impl.file_paths:
            section += "\nTarget Files:" + "".join(f"\n- {path}" for path in impl.file_paths)
        if impl.constraints:
            section += "\nConstraints:" + "".join(f"\n- {item}" for item in impl.constraints)
        parts.append(section)
    return "\n\n".join(parts)


def runner_settings(task: TaskState) -> tuple[int, str]:
    max_loops = task.inputs.get("runner_max_loops")
    worker_kind = task.inputs.get("runner_worker_kind")
    try:
        loops = int(max_loops) if max_loops is not None else 0
    except (TypeError, ValueError):
        loops = 0
    return (
        loops if loops > 0 else DEFAULT_RUNNER_MAX_LOOPS,
        worker_kind if isinstance(worker_kind, str) and worker_kind else DEFAULT_WORKER_KIND,
    )


def build_task_document(task: TaskState, node: NodeDesign | None) -> dict[str, Any]:
    title = task_title(task, node)
    max_loops, worker_kind = runner_settings(task)
    body: dict[str, Any] = {
        "id": task.task_id,
        "title": title,
        "repo": ".",
        "description": node.summary if node else "",
        "wbs_level": node.wbs_level if node else 0,
        "phase_name": node.phase_name if node else "",
        "dependencies": list(node.dependencies) if node else [],
    }
    if node is not None and not node.suggested_impl.is_empty():
        body["suggested_impl"] = {
            "language": node.suggested_impl.language,
            "file_paths": list(node.suggested_impl.file_paths),
            "constraints": list(node.suggested_impl.constraints),
        }
    body["prd"] = {"text": build_task_prompt(title, node)}
    return {
        "version": "1",
        "task": body,
        "runner": {"max_loops": max_loops, "worker": {"kind": worker_kind}},
    }


def render_task_yaml(document: dict[str, Any]) -> str:
    return yaml.safe_dump(document, sort_keys=False, allow_unicode=True)


class AgentRunnerAdapter(WorkerAdapter):
    """Runs the agent-runner binary with a YAML task document on stdin."""

    default_cli = "agent-runner"

    @property
    def kind(self) -> str:
        return "agent-runner"

    def capabilities(self) -> Capability:
        return Capability(
            kind=self.kind,
            supports_stdin=True,
            notes="Reads the task document from stdin and drives the configured worker.",
        )

    def request_for_task(
        self,
        task: TaskState,
        node: NodeDesign | None,
        *,
        workdir: str = "",
        timeout: float | None = None,
    ) -> WorkerRequest:
        return WorkerRequest(
            prompt=render_task_yaml(build_task_document(task, node)),
            workdir=workdir,
            timeout=timeout,
            use_stdin=True,
        )

    def build(self, request: WorkerRequest) -> ExecPlan:
        ensure_prompt(request.prompt)
        resolve_mode(self.kind, request.mode)
        plan = self._plan(request, [*self.flags, *request.flags])
        plan.stdin = request.prompt
        return plan
