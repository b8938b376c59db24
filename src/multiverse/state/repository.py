from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from multiverse.errors import NotFoundError, PersistenceIOError
from multiverse.state.models import (
    WBS,
    Action,
    AgentsState,
    NodeDesign,
    NodesRuntime,
    TasksState,
    parse_iso,
    utcnow,
    utcnow_iso,
)

log = logging.getLogger(__name__)


def workspace_id(project_root: Path | str) -> str:
    """Deterministic 12-hex fingerprint of the absolute project path."""
    absolute = str(Path(project_root).expanduser().resolve())
    return hashlib.sha1(absolute.encode("utf-8")).hexdigest()[:12]


def write_json_atomic(path: Path, payload: Any, *, stage: str | None = None) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        data = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
        with tmp_path.open("w", encoding="utf-8") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise PersistenceIOError(
            f"Failed to write {path}: {exc}", stage=stage, path=str(path)
        ) from exc


def read_json(path: Path) -> Any | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        # Renamed away between the exists check and the read.
        return None
    except json.JSONDecodeError as exc:
        raise PersistenceIOError(f"Corrupt JSON in {path}: {exc}", path=str(path)) from exc


class DesignStore:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.wbs_path = root / "wbs.json"
        self.nodes_dir = root / "nodes"

    def load_wbs(self) -> WBS:
        raw = read_json(self.wbs_path)
        if not isinstance(raw, dict):
            raise NotFoundError("WBS not found.", kind="wbs", key=str(self.wbs_path))
        return WBS.from_dict(raw)

    def save_wbs(self, wbs: WBS) -> None:
        write_json_atomic(self.wbs_path, wbs.to_dict(), stage="save_wbs")

    def node_path(self, node_id: str) -> Path:
        return self.nodes_dir / f"{node_id}.json"

    def get_node(self, node_id: str) -> NodeDesign:
        raw = read_json(self.node_path(node_id))
        if not isinstance(raw, dict):
            raise NotFoundError(f"Node design not found: {node_id}", kind="node", key=node_id)
        return NodeDesign.from_dict(raw)

    def find_node(self, node_id: str) -> NodeDesign | None:
        try:
            return self.get_node(node_id)
        except NotFoundError:
            return None

    def save_node(self, node: NodeDesign) -> None:
        write_json_atomic(self.node_path(node.node_id), node.to_dict(), stage="save_node")

    def list_node_ids(self) -> list[str]:
        if not self.nodes_dir.exists():
            return []
        return sorted(path.stem for path in self.nodes_dir.glob("*.json"))


class StateStore:
    def __init__(self, root: Path) -> None:
        self.root = root
        self.nodes_runtime_path = root / "nodes-runtime.json"
        self.tasks_path = root / "tasks.json"
        self.agents_path = root / "agents.json"

    def load_nodes_runtime(self) -> NodesRuntime:
        raw = read_json(self.nodes_runtime_path)
        return NodesRuntime.from_dict(raw) if isinstance(raw, dict) else NodesRuntime()

    def save_nodes_runtime(self, runtime: NodesRuntime) -> None:
        write_json_atomic(self.nodes_runtime_path, runtime.to_dict(), stage="save_nodes_runtime")

    def load_tasks(self) -> TasksState:
        raw = read_json(self.tasks_path)
        return TasksState.from_dict(raw) if isinstance(raw, dict) else TasksState()

    def save_tasks(self, tasks: TasksState) -> None:
        write_json_atomic(self.tasks_path, tasks.to_dict(), stage="save_tasks_state")

    def load_agents(self) -> AgentsState:
        raw = read_json(self.agents_path)
        return AgentsState.from_dict(raw) if isinstance(raw, dict) else AgentsState()

    def save_agents(self, agents: AgentsState) -> None:
        write_json_atomic(self.agents_path, agents.to_dict(), stage="save_agents_state")


class HistoryStore:
    def __init__(self, root: Path, workspace_id: str = "") -> None:
        self.root = root
        self.workspace_id = workspace_id
        self._lock = threading.Lock()
        self._last_at: datetime | None = None

    def _file_for(self, at: datetime) -> Path:
        return self.root / f"actions-{at.strftime('%Y%m%d')}.jsonl"

    def new_action(self, kind: str, payload: dict[str, Any]) -> Action:
        return Action(
            id=str(uuid.uuid4()),
            at="",
            kind=kind,
            workspace_id=self.workspace_id,
            payload=payload,
        )

    def append_action(self, action: Action) -> Action:
        with self._lock:
            at = parse_iso(action.at) or utcnow()
            # Wall clock may step backwards; keep `at` monotone for this appender.
            if self._last_at is not None and at < self._last_at:
                at = self._last_at
            self._last_at = at
            if not action.at or parse_iso(action.at) != at:
                action.at = at.isoformat()
            if not action.id:
                action.id = str(uuid.uuid4())
            if not action.workspace_id:
                action.workspace_id = self.workspace_id
            line = json.dumps(action.to_dict(), ensure_ascii=False) + "\n"
            path = self._file_for(at)
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
                    handle.flush()
                    os.fsync(handle.fileno())
            except OSError as exc:
                raise PersistenceIOError(
                    f"Failed to append history action: {exc}",
                    stage="append_action",
                    path=str(path),
                ) from exc
        log.debug("history action %s appended (%s)", action.kind, action.id)
        return action

    def record(self, kind: str, payload: dict[str, Any]) -> Action:
        return self.append_action(self.new_action(kind, payload))

    def list_actions(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Action]:
        if not self.root.exists():
            return []
        actions: list[Action] = []
        for path in sorted(self.root.glob("actions-*.jsonl")):
            day = path.stem.removeprefix("actions-")
            if start is not None and day < start.strftime("%Y%m%d"):
                continue
            if end is not None and day > end.strftime("%Y%m%d"):
                continue
            for raw_line in path.read_text(encoding="utf-8").splitlines():
                if not raw_line.strip():
                    continue
                try:
                    data = json.loads(raw_line)
                except json.JSONDecodeError:
                    log.warning("skipping malformed history line in %s", path.name)
                    continue
                if not isinstance(data, dict):
                    continue
                action = Action.from_dict(data)
                at = parse_iso(action.at)
                if at is None:
                    continue
                if start is not None and at < start:
                    continue
                if end is not None and at > end:
                    continue
                actions.append(action)
        actions.sort(key=lambda item: parse_iso(item.at) or utcnow())
        return actions


class WorkspaceRepository:
    """File-backed design/state/history for one workspace directory."""

    def __init__(self, root: Path, *, project_root: Path | None = None) -> None:
        self.root = root.expanduser().resolve()
        self.project_root = (project_root or self.root).expanduser().resolve()
        self.workspace_id = workspace_id(self.project_root)
        self.design = DesignStore(self.root / "design")
        self.state = StateStore(self.root / "state")
        self.history = HistoryStore(self.root / "history", workspace_id=self.workspace_id)

    @property
    def snapshots_dir(self) -> Path:
        return self.root / "snapshots"

    @property
    def chat_dir(self) -> Path:
        return self.root / "chat"

    @property
    def backlog_dir(self) -> Path:
        return self.root / "backlog"

    @property
    def queue_dir(self) -> Path:
        return self.root / "queue"

    def init(self) -> None:
        for directory in [
            self.design.root,
            self.design.nodes_dir,
            self.state.root,
            self.history.root,
            self.snapshots_dir,
            self.chat_dir,
            self.backlog_dir,
            self.queue_dir,
        ]:
            directory.mkdir(parents=True, exist_ok=True)

    def load_wbs_or_none(self) -> WBS | None:
        try:
            return self.design.load_wbs()
        except NotFoundError:
            return None

    @staticmethod
    def now_iso() -> str:
        return utcnow_iso()
