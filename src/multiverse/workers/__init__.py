from multiverse.workers.agent_runner import (
    AgentRunnerAdapter,
    build_task_document,
    build_task_prompt,
    render_task_yaml,
)
from multiverse.workers.base import (
    AdapterConfig,
    Capability,
    ExecPlan,
    WorkerAdapter,
    WorkerRequest,
    ensure_prompt,
    merge_env,
)
from multiverse.workers.claude import ClaudeCodeAdapter
from multiverse.workers.codex import CodexAdapter, normalize_reasoning_effort
from multiverse.workers.gemini import GeminiAdapter
from multiverse.workers.registry import build, create, register, registered_kinds

__all__ = [
    "AdapterConfig",
    "AgentRunnerAdapter",
    "Capability",
    "ClaudeCodeAdapter",
    "CodexAdapter",
    "ExecPlan",
    "GeminiAdapter",
    "WorkerAdapter",
    "WorkerRequest",
    "build",
    "build_task_document",
    "build_task_prompt",
    "create",
    "ensure_prompt",
    "merge_env",
    "normalize_reasoning_effort",
    "register",
    "registered_kinds",
    "render_task_yaml",
]
