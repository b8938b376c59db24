from __future__ import annotations

import threading
from collections.abc import Callable

from multiverse.errors import InvariantViolation, UnsupportedKindError
from multiverse.workers.agent_runner import AgentRunnerAdapter
from multiverse.workers.base import AdapterConfig, ExecPlan, WorkerAdapter, WorkerRequest
from multiverse.workers.claude import ClaudeCodeAdapter
from multiverse.workers.codex import CodexAdapter
from multiverse.workers.gemini import GeminiAdapter

AdapterFactory = Callable[[AdapterConfig], WorkerAdapter]

_lock = threading.Lock()
_factories: dict[str, AdapterFactory] = {}


def register(kind: str, factory: AdapterFactory) -> None:
    with _lock:
        if kind in _factories:
            raise InvariantViolation(f"worker adapter already registered: {kind}")
        _factories[kind] = factory


def registered_kinds() -> list[str]:
    with _lock:
        return sorted(_factories)


def create(kind: str, config: AdapterConfig | None = None) -> WorkerAdapter:
    with _lock:
        factory = _factories.get(kind)
    if factory is None:
        raise UnsupportedKindError(f"worker adapter not registered: {kind}")
    return factory(config or AdapterConfig(kind=kind))


def build(kind: str, config: AdapterConfig | None, request: WorkerRequest) -> ExecPlan:
    return create(kind, config).build(request)


register("codex-cli", CodexAdapter)
register("claude-code", lambda config: ClaudeCodeAdapter(config, kind="claude-code"))
register("claude-code-cli", lambda config: ClaudeCodeAdapter(config, kind="claude-code-cli"))
register("gemini-cli", GeminiAdapter)
register("agent-runner", AgentRunnerAdapter)
