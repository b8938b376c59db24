from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from multiverse.state.models import (
    Attempt,
    NodeDesign,
    NodeRuntime,
    TaskState,
    utcnow_iso,
)
from multiverse.state.repository import WorkspaceRepository, read_json
from multiverse.wbs import ensure_root, new_wbs, place_node

log = logging.getLogger(__name__)

LEGACY_TASKS_DIR = "tasks"
LEGACY_ATTEMPTS_DIR = "attempts"
MIGRATED_SUFFIX = ".migrated"


def _last_json_line(path: Path) -> dict[str, Any] | None:
    last: dict[str, Any] | None = None
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        if not raw_line.strip():
            continue
        try:
            data = json.loads(raw_line)
        except json.JSONDecodeError:
            log.warning("skipping corrupt legacy task line in %s", path.name)
            continue
        if isinstance(data, dict):
            last = data
    return last


def load_legacy_tasks(workspace_dir: Path) -> list[dict[str, Any]]:
    """Latest record of every ``tasks/<id>.jsonl`` file (last line wins)."""
    tasks_dir = workspace_dir / LEGACY_TASKS_DIR
    if not tasks_dir.is_dir():
        return []
    records: list[dict[str, Any]] = []
    for path in sorted(tasks_dir.glob("*.jsonl")):
        record = _last_json_line(path)
        if record is not None and record.get("id"):
            records.append(record)
    return records


def _load_legacy_attempts(workspace_dir: Path) -> dict[str, list[Attempt]]:
    attempts_dir = workspace_dir / LEGACY_ATTEMPTS_DIR
    grouped: dict[str, list[Attempt]] = {}
    if not attempts_dir.is_dir():
        return grouped
    for path in sorted(attempts_dir.glob("*.json")):
        raw = read_json(path)
        if not isinstance(raw, dict):
            continue
        task_id = str(raw.get("taskId", ""))
        if not task_id:
            continue
        grouped.setdefault(task_id, []).append(
            Attempt(
                attempt_id=str(raw.get("id", path.stem)),
                task_id=task_id,
                status=str(raw.get("status", "FAILED")),
                started_at=str(raw.get("startedAt", "")),
                finished_at=raw.get("finishedAt"),
                error_summary=raw.get("errorSummary"),
            )
        )
    for attempts in grouped.values():
        attempts.sort(key=lambda item: item.started_at)
    return grouped


def migrate_legacy_tasks(repo: WorkspaceRepository) -> list[str]:
    """Fold the per-task JSONL store into ``tasks.json`` once.

    Tasks already present in ``tasks.json`` are left alone. The legacy
    directory is renamed afterwards so the migration never runs twice.
    """
    records = load_legacy_tasks(repo.root)
    if not records:
        return []

    attempts_by_task = _load_legacy_attempts(repo.root)
    tasks = repo.state.load_tasks()
    runtime = repo.state.load_nodes_runtime()
    wbs = repo.load_wbs_or_none() or new_wbs(str(repo.project_root))
    ensure_root(wbs)
    now = utcnow_iso()
    migrated: list[str] = []

    for record in records:
        task_id = str(record["id"])
        if tasks.get(task_id) is not None:
            continue
        task = TaskState(
            task_id=task_id,
            node_id=task_id,
            status=str(record.get("status", "PENDING")).upper(),
            pool_id=str(record.get("poolId") or "default"),
            created_at=str(record.get("createdAt") or now),
            updated_at=str(record.get("updatedAt") or now),
            scheduled_by="legacy-migration",
            attempt_count=int(record.get("attemptCount") or 0),
            next_retry_at=record.get("nextRetryAt") or None,
            attempts=attempts_by_task.get(task_id, []),
        )
        tasks.tasks.append(task)

        if repo.design.find_node(task_id) is None:
            repo.design.save_node(
                NodeDesign(
                    node_id=task_id,
                    wbs_id=wbs.wbs_id,
                    name=str(record.get("title", "")),
                    summary=str(record.get("description", "")),
                    phase_name=str(record.get("phaseName", "")),
                    milestone=str(record.get("milestone", "")),
                    wbs_level=int(record.get("wbsLevel") or 0),
                    dependencies=[str(dep) for dep in record.get("dependencies") or []],
                    acceptance_criteria=[
                        str(item) for item in record.get("acceptanceCriteria") or []
                    ],
                    created_at=task.created_at,
                    updated_at=now,
                    created_by="legacy-migration",
                )
            )
        if wbs.entry(task_id) is None:
            place_node(wbs, task_id, wbs.root_node_id, None)
        if runtime.get(task_id) is None:
            entry = NodeRuntime(node_id=task_id)
            entry.add_note("legacy-migration", "migrated from legacy task store", at=now)
            runtime.nodes.append(entry)
        migrated.append(task_id)

    # Parents can only be resolved once every legacy node is in the index.
    for record in records:
        parent_id = record.get("parentId")
        task_id = str(record["id"])
        if task_id in migrated and parent_id and wbs.entry(str(parent_id)) is not None:
            place_node(wbs, task_id, str(parent_id), None)

    if migrated:
        wbs.updated_at = now
        repo.history.record(
            "legacy_migration",
            {"migrated_task_ids": migrated, "count": len(migrated)},
        )
        repo.design.save_wbs(wbs)
        repo.state.save_nodes_runtime(runtime)
        repo.state.save_tasks(tasks)
        log.info("migrated %d legacy tasks into tasks.json", len(migrated))

    legacy_dir = repo.root / LEGACY_TASKS_DIR
    legacy_dir.rename(legacy_dir.with_name(LEGACY_TASKS_DIR + MIGRATED_SUFFIX))
    return migrated
