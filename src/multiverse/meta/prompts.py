from __future__ import annotations

from collections import deque

from multiverse.meta.protocol import (
    ConversationMessage,
    DecomposeRequest,
    ExistingTaskSummary,
    PlanPatchRequest,
)
from multiverse.state.models import NodeIndexEntry

MAX_PROMPT_TASKS = 200
MAX_PROMPT_WBS_NODES = 200
MAX_HISTORY_MESSAGES = 10
MAX_HISTORY_CHARS = 300

DECOMPOSE_SYSTEM_PROMPT = """\
You are a Meta-agent that decomposes user requests into structured development tasks.

Your goal is to:
1. Understand the user's intent from their message
2. Break the request into phases: Conceptual Design, Implementation Design, Implementation
3. Create detailed tasks with clear acceptance criteria
4. Identify dependencies between tasks
5. Flag potential file conflicts

Output MUST be a single JSON object with this structure:
{
  "type": "decompose",
  "version": 1,
  "payload": {
    "understanding": "What you understood from the request",
    "phases": [
      {
        "name": "Conceptual Design",
        "milestone": "M1-Feature-Design",
        "tasks": [
          {
            "id": "temp-001",
            "title": "Analyse requirements and write the design document",
            "description": "Analyse the request and record the design",
            "acceptance_criteria": ["The design document exists"],
            "dependencies": [],
            "wbs_level": 1,
            "estimated_effort": "small"
          }
        ]
      },
      {
        "name": "Implementation",
        "milestone": "M2-Feature-Impl",
        "tasks": [
          {
            "id": "temp-002",
            "title": "Implement the feature",
            "description": "Implement the feature following the design",
            "acceptance_criteria": ["The feature works", "Tests pass"],
            "dependencies": ["temp-001"],
            "wbs_level": 3,
            "estimated_effort": "large",
            "suggested_impl": {
              "language": "python",
              "file_paths": ["src/feature.py"],
              "constraints": ["Keep backward compatibility"]
            }
          }
        ]
      }
    ],
    "potential_conflicts": [
      {"file": "src/feature.py", "tasks": ["temp-002"], "warning": "May modify an existing file"}
    ]
  }
}

Guidelines:
- WBS levels: 1=conceptual design, 2=implementation design, 3=implementation
- Estimated effort: small (< 1 hour), medium (1-4 hours), large (> 4 hours)
- Task IDs must start with "temp-"; they are replaced with permanent IDs
- Dependencies may reference other temp IDs from the same batch
- Acceptance criteria must be verifiable
- Consider existing tasks to avoid duplication
- Never use ellipsis or placeholders; output complete, valid JSON
- Always provide suggested_impl for implementation tasks
"""

PLAN_PATCH_SYSTEM_PROMPT = """\
You are a Meta-agent that maintains the work breakdown of a software project.

Given the user's message and the current plan, reply with the smallest set of
operations that brings the plan in line with the request.

Output MUST be a single JSON object with this structure:
{
  "type": "plan_patch",
  "version": 1,
  "payload": {
    "understanding": "What you understood from the request",
    "operations": [
      {
        "op": "create",
        "temp_id": "temp-001",
        "title": "Add the export endpoint",
        "description": "Expose the report as CSV",
        "acceptance_criteria": ["GET /export returns CSV"],
        "dependencies": ["task-12"],
        "wbs_level": 3,
        "phase_name": "Implementation",
        "milestone": "M2",
        "suggested_impl": {"language": "python", "file_paths": ["src/export.py"], "constraints": []},
        "parent_id": "node-root",
        "position": {"after": "task-12"}
      },
      {"op": "update", "task_id": "task-7", "title": "New title"},
      {"op": "move", "task_id": "task-9", "parent_id": "task-3", "position": {"index": 0}},
      {"op": "delete", "task_id": "task-4", "cascade": false}
    ],
    "potential_conflicts": []
  }
}

Rules:
- "create" needs temp_id and title; temp IDs start with "temp-"
- "update", "move" and "delete" need an existing task_id
- Omitted fields are left unchanged on update
- dependencies may name existing task IDs or temp IDs created in the same patch
- position accepts exactly one of "before", "after" or "index"
- Never delete a RUNNING task and never introduce dependency cycles
- Return an empty operations list when nothing needs to change
"""


def status_priority(status: str) -> int:
    if status == "RUNNING":
        return 0
    if status == "BLOCKED":
        return 1
    if status in {"PENDING", "READY"}:
        return 2
    return 3


def truncate(content: str, limit: int = MAX_HISTORY_CHARS) -> str:
    return content if len(content) <= limit else content[:limit] + "..."


def trim_wbs_bfs(
    nodes: list[NodeIndexEntry],
    root_node_id: str,
    max_nodes: int = MAX_PROMPT_WBS_NODES,
) -> list[NodeIndexEntry]:
    """Keep at most ``max_nodes`` entries, breadth-first from the root."""
    if len(nodes) <= max_nodes:
        return list(nodes)
    by_id = {node.node_id: node for node in nodes}
    result: list[NodeIndexEntry] = []
    seen: set[str] = set()
    pending = deque([root_node_id])
    while pending and len(result) < max_nodes:
        node_id = pending.popleft()
        if node_id in seen:
            continue
        seen.add(node_id)
        node = by_id.get(node_id)
        if node is None:
            continue
        result.append(node)
        pending.extend(child for child in node.children if child not in seen)
    return result


def build_decompose_user_prompt(request: DecomposeRequest) -> str:
    parts = [f"## User Request\n{request.user_input}\n"]
    parts.append(f"## Context\nWorkspace: {request.context.workspace_path}\n")
    if request.context.existing_tasks:
        lines = ["### Existing Tasks"]
        for task in request.context.existing_tasks:
            deps = f" (depends: {', '.join(task.dependencies)})" if task.dependencies else ""
            lines.append(f"- [{task.status}] {task.id}: {task.title}{deps}")
        parts.append("\n".join(lines) + "\n")
    if request.context.conversation_history:
        lines = ["### Conversation History"]
        lines.extend(
            f"{message.role}: {message.content}"
            for message in request.context.conversation_history
        )
        parts.append("\n".join(lines) + "\n")
    parts.append("Please decompose this request into structured tasks.")
    return "\n".join(parts)


def _task_lines(tasks: list[ExistingTaskSummary]) -> list[str]:
    lines = ["Existing Tasks:"]
    shown = tasks
    if len(tasks) > MAX_PROMPT_TASKS:
        shown = sorted(tasks, key=lambda task: (status_priority(task.status), task.id))
        shown = shown[:MAX_PROMPT_TASKS]
        lines.append(
            f"(showing first {MAX_PROMPT_TASKS} of {len(tasks)} tasks, prioritized by status)"
        )
    for task in shown:
        deps = ",".join(task.dependencies) if task.dependencies else "none"
        lines.append(
            f"- {task.id}: {task.title} ({task.status}) "
            f"[phase={task.phase_name}, milestone={task.milestone}, level={task.wbs_level}, "
            f"deps={deps}, parent={task.parent_id or 'root'}]"
        )
    return lines


def _history_lines(history: list[ConversationMessage]) -> list[str]:
    lines = ["", "Conversation History:"]
    for message in history[-MAX_HISTORY_MESSAGES:]:
        lines.append(f"- [{message.role}] {truncate(message.content)}")
    return lines


def build_plan_patch_user_prompt(request: PlanPatchRequest) -> str:
    context = request.context
    lines = ["User Input:", request.user_input, "", "Context:"]
    if context.existing_tasks:
        lines.extend(_task_lines(context.existing_tasks))
    wbs = context.existing_wbs
    if wbs is not None:
        nodes = wbs.node_index
        if len(nodes) > MAX_PROMPT_WBS_NODES:
            nodes = trim_wbs_bfs(nodes, wbs.root_node_id)
            lines.extend(
                [
                    "",
                    f"WBS Structure (Root: {wbs.root_node_id}, "
                    f"showing {len(nodes)} of {len(wbs.node_index)} nodes):",
                ]
            )
        else:
            lines.extend(["", f"WBS Structure (Root: {wbs.root_node_id}):"])
        for node in nodes:
            children = ",".join(node.children) if node.children else "none"
            lines.append(
                f"  - {node.node_id}: parent={node.parent_id or 'root'}, children=[{children}]"
            )
    if context.conversation_history:
        lines.extend(_history_lines(context.conversation_history))
    return "\n".join(lines) + "\n"
