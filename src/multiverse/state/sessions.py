from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from multiverse.errors import NotFoundError, PersistenceIOError, ValidationFailure
from multiverse.state.models import parse_iso, utcnow, utcnow_iso
from multiverse.state.repository import read_json, write_json_atomic

log = logging.getLogger(__name__)


@dataclass(slots=True)
class ChatSession:
    id: str
    workspace_id: str = ""
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatSession:
        return cls(
            id=str(data.get("id", "")),
            workspace_id=str(data.get("workspace_id", "")),
            created_at=str(data.get("created_at", "")),
            updated_at=str(data.get("updated_at", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(slots=True)
class ChatMessage:
    session_id: str
    role: str
    content: str
    id: str = ""
    timestamp: str = ""
    generated_tasks: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatMessage:
        generated = data.get("generated_tasks")
        return cls(
            id=str(data.get("id", "")),
            session_id=str(data.get("session_id", "")),
            role=str(data.get("role", "")),
            content=str(data.get("content", "")),
            timestamp=str(data.get("timestamp", "")),
            generated_tasks=[str(item) for item in generated] if isinstance(generated, list) else [],
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.generated_tasks:
            payload["generated_tasks"] = list(self.generated_tasks)
        return payload


def ensure_safe_session_id(session_id: str) -> None:
    if not session_id:
        raise ValidationFailure("session id is required")
    if Path(session_id).is_absolute():
        raise ValidationFailure(f"invalid session id: {session_id}")
    if ".." in session_id or "/" in session_id or "\\" in session_id:
        raise ValidationFailure(f"invalid session id: {session_id}")


class ChatSessionStore:
    """Append-only JSONL transcript per session plus a ``.meta.json`` sidecar."""

    def __init__(self, chat_dir: Path) -> None:
        self.chat_dir = chat_dir
        self._lock = threading.Lock()

    def _messages_path(self, session_id: str) -> Path:
        ensure_safe_session_id(session_id)
        return self.chat_dir / f"{session_id}.jsonl"

    def _meta_path(self, session_id: str) -> Path:
        ensure_safe_session_id(session_id)
        return self.chat_dir / f"{session_id}.meta.json"

    def create_session(self, session_id: str | None = None, workspace_id: str = "") -> ChatSession:
        session_id = session_id or str(uuid.uuid4())
        meta_path = self._meta_path(session_id)
        now = utcnow_iso()
        session = ChatSession(
            id=session_id,
            workspace_id=workspace_id,
            created_at=now,
            updated_at=now,
        )
        self.chat_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(meta_path, session.to_dict(), stage="save_session_meta")
        messages_path = self._messages_path(session_id)
        if not messages_path.exists():
            messages_path.touch()
        return session

    def load_session(self, session_id: str) -> ChatSession:
        raw = read_json(self._meta_path(session_id))
        if not isinstance(raw, dict):
            raise NotFoundError(
                f"Chat session not found: {session_id}", kind="session", key=session_id
            )
        return ChatSession.from_dict(raw)

    def append_message(self, message: ChatMessage) -> ChatMessage:
        if not message.id:
            message.id = str(uuid.uuid4())
        if not message.timestamp:
            message.timestamp = utcnow_iso()
        path = self._messages_path(message.session_id)
        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
            except OSError as exc:
                raise PersistenceIOError(
                    f"Failed to append chat message: {exc}",
                    stage="append_message",
                    path=str(path),
                ) from exc
            try:
                session = self.load_session(message.session_id)
            except NotFoundError:
                session = ChatSession(id=message.session_id, created_at=message.timestamp)
            session.updated_at = utcnow_iso()
            write_json_atomic(
                self._meta_path(message.session_id), session.to_dict(), stage="save_session_meta"
            )
        return message

    def load_messages(self, session_id: str) -> list[ChatMessage]:
        path = self._messages_path(session_id)
        if not path.exists():
            return []
        messages: list[ChatMessage] = []
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            if not raw_line.strip():
                continue
            try:
                data = json.loads(raw_line)
            except json.JSONDecodeError:
                log.warning("skipping corrupt chat line in %s", path.name)
                continue
            if isinstance(data, dict):
                messages.append(ChatMessage.from_dict(data))
        return messages

    def list_sessions(self) -> list[ChatSession]:
        if not self.chat_dir.exists():
            return []
        sessions: list[ChatSession] = []
        for meta_path in self.chat_dir.glob("*.meta.json"):
            raw = read_json(meta_path)
            if isinstance(raw, dict):
                sessions.append(ChatSession.from_dict(raw))
        sessions.sort(key=lambda item: parse_iso(item.updated_at) or utcnow(), reverse=True)
        return sessions

    def recent_messages(self, session_id: str, limit: int) -> list[ChatMessage]:
        messages = self.load_messages(session_id)
        if limit <= 0 or len(messages) <= limit:
            return messages
        return messages[-limit:]
