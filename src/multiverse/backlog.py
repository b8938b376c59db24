from __future__ import annotations

import logging
import uuid
from enum import StrEnum
from pathlib import Path

from multiverse.errors import NotFoundError, ValidationFailure
from multiverse.state.models import BacklogItem, utcnow_iso
from multiverse.state.repository import read_json, write_json_atomic

log = logging.getLogger(__name__)

FAILURE_PRIORITY = 4


class BacklogType(StrEnum):
    FAILURE = "FAILURE"
    QUESTION = "QUESTION"
    BLOCKER = "BLOCKER"


def create_failure_item(
    task_id: str,
    task_title: str,
    error: str,
    attempt_count: int,
) -> BacklogItem:
    title = task_title or task_id
    return BacklogItem(
        id="",
        task_id=task_id,
        type=BacklogType.FAILURE,
        title=f"Task failed: {title}",
        description=f"Task '{title}' failed after {attempt_count} attempt(s).",
        priority=FAILURE_PRIORITY,
        metadata={"error": error, "attempt_count": attempt_count},
    )


class BacklogStore:
    def __init__(self, root: Path) -> None:
        self.root = root

    def _item_path(self, item_id: str) -> Path:
        if not item_id or "/" in item_id or "\\" in item_id or ".." in item_id:
            raise ValidationFailure(f"invalid backlog item id: {item_id!r}")
        return self.root / f"{item_id}.json"

    def add(self, item: BacklogItem) -> BacklogItem:
        if not item.id:
            item.id = str(uuid.uuid4())
        if not item.created_at:
            item.created_at = utcnow_iso()
        if item.type not in {member.value for member in BacklogType}:
            raise ValidationFailure(f"unknown backlog type: {item.type}")
        if not 1 <= item.priority <= 5:
            raise ValidationFailure(f"backlog priority out of range 1..5: {item.priority}")
        write_json_atomic(self._item_path(item.id), item.to_dict(), stage="save_backlog_item")
        log.info("backlog item %s added for task %s (%s)", item.id, item.task_id, item.type)
        return item

    def get(self, item_id: str) -> BacklogItem:
        raw = read_json(self._item_path(item_id))
        if not isinstance(raw, dict):
            raise NotFoundError(f"backlog item not found: {item_id}", kind="backlog", key=item_id)
        return BacklogItem.from_dict(raw)

    def list_items(self) -> list[BacklogItem]:
        if not self.root.exists():
            return []
        items: list[BacklogItem] = []
        for path in self.root.glob("*.json"):
            raw = read_json(path)
            if isinstance(raw, dict):
                items.append(BacklogItem.from_dict(raw))
        items.sort(key=lambda item: (-item.priority, item.created_at, item.id))
        return items

    def list_unresolved(self) -> list[BacklogItem]:
        return [item for item in self.list_items() if item.resolved_at is None]

    def resolve(self, item_id: str, resolution: str) -> BacklogItem:
        item = self.get(item_id)
        item.resolved_at = utcnow_iso()
        item.resolution = resolution
        write_json_atomic(self._item_path(item.id), item.to_dict(), stage="save_backlog_item")
        log.info("backlog item %s resolved", item_id)
        return item

    def delete(self, item_id: str) -> None:
        try:
            self._item_path(item_id).unlink()
        except FileNotFoundError:
            pass
