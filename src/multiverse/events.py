from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from typing import Any, Protocol

from multiverse.state.models import utcnow_iso

log = logging.getLogger(__name__)

TASK_STATE_CHANGE = "task:stateChange"
EXECUTION_STATE_CHANGE = "execution:stateChange"
TASK_LOG = "task:log"
TASK_CREATED = "task:created"
PROCESS_META_UPDATE = "process:meta:update"
PROCESS_CONTAINER_UPDATE = "process:container:update"
PROCESS_WORKER_UPDATE = "process:worker:update"
BACKLOG_ADDED = "backlog:added"
CHAT_PROGRESS = "chat:progress"

EventHandler = Callable[[str, dict[str, Any]], None]


class EventEmitter(Protocol):
    def emit(self, name: str, payload: dict[str, Any]) -> None: ...


class NullEmitter:
    def emit(self, name: str, payload: dict[str, Any]) -> None:
        _ = name, payload


class EventBus:
    """In-process fan-out of named events to subscribers.

    Handlers subscribed with ``"*"`` receive every event. A handler that
    raises is logged and skipped so one bad subscriber cannot stall the loop.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, name: str, handler: EventHandler) -> Callable[[], None]:
        self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers[name].remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        for handler in [*self._handlers.get(name, []), *self._handlers.get("*", [])]:
            try:
                handler(name, payload)
            except Exception:
                log.exception("event handler failed for %s", name)


class RecordingEmitter:
    """Keeps every emitted event in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        self.events.append((name, payload))

    def named(self, name: str) -> list[dict[str, Any]]:
        return [payload for event_name, payload in self.events if event_name == name]


def task_state_change(task_id: str, old_status: str, new_status: str) -> dict[str, Any]:
    return {
        "task_id": task_id,
        "old_status": old_status,
        "new_status": new_status,
        "timestamp": utcnow_iso(),
    }


def execution_state_change(old_state: str, new_state: str) -> dict[str, Any]:
    return {"old_state": old_state, "new_state": new_state, "timestamp": utcnow_iso()}


def task_log(task_id: str, stream: str, line: str) -> dict[str, Any]:
    return {"task_id": task_id, "stream": stream, "line": line, "timestamp": utcnow_iso()}


def meta_update(
    task_id: str,
    state: str,
    detail: str,
    *,
    task_title: str = "",
    timestamp: str | None = None,
) -> dict[str, Any]:
    payload = {
        "task_id": task_id,
        "state": state,
        "detail": detail,
        "timestamp": timestamp or utcnow_iso(),
    }
    if task_title:
        payload["task_title"] = task_title
    return payload


def container_update(
    task_id: str,
    status: str,
    *,
    image: str | None = None,
    container_id: str | None = None,
    timestamp: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "task_id": task_id,
        "status": status,
        "timestamp": timestamp or utcnow_iso(),
    }
    if image is not None:
        payload["image"] = image
    if container_id is not None:
        payload["container_id"] = container_id
    return payload


def worker_update(
    task_id: str,
    status: str,
    *,
    worker_id: str = "worker-1",
    command: str | None = None,
    exit_code: int | None = None,
    artifacts: list[str] | None = None,
    timestamp: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "task_id": task_id,
        "worker_id": worker_id,
        "status": status,
        "timestamp": timestamp or utcnow_iso(),
    }
    if command is not None:
        payload["command"] = command
    if exit_code is not None:
        payload["exit_code"] = exit_code
    if artifacts:
        payload["artifacts"] = list(artifacts)
    return payload


def chat_progress(session_id: str, step: str, message: str) -> dict[str, Any]:
    return {
        "session_id": session_id,
        "step": step,
        "message": message,
        "timestamp": utcnow_iso(),
    }
