from __future__ import annotations

import logging
import shutil
import uuid
from pathlib import Path

from multiverse.errors import NotFoundError, PersistenceIOError
from multiverse.state.models import Snapshot, parse_iso, utcnow, utcnow_iso
from multiverse.state.repository import WorkspaceRepository, read_json, write_json_atomic

log = logging.getLogger(__name__)


class SnapshotStore:
    def __init__(self, repo: WorkspaceRepository) -> None:
        self.repo = repo
        self.root = repo.snapshots_dir

    @staticmethod
    def _new_snapshot_id() -> str:
        return f"{utcnow().strftime('%Y%m%d-%H%M%S')}-{uuid.uuid4().hex[:8]}"

    def _copy_state(self, destination: Path) -> None:
        source = self.repo.state.root
        try:
            if source.exists():
                shutil.copytree(source, destination)
            else:
                destination.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceIOError(
                f"Failed to copy state to {destination}: {exc}",
                stage="snapshot_copy",
                path=str(destination),
            ) from exc

    def create_snapshot(self, description: str) -> Snapshot:
        snapshot = Snapshot(
            id=self._new_snapshot_id(),
            description=description,
            created_at=utcnow_iso(),
        )
        snapshot_dir = self.root / snapshot.id
        self._copy_state(snapshot_dir / "state")
        write_json_atomic(snapshot_dir / "snapshot.json", snapshot.to_dict(), stage="snapshot_meta")
        log.info("snapshot %s created", snapshot.id)
        return snapshot

    def get_snapshot(self, snapshot_id: str) -> Snapshot:
        if not snapshot_id or "/" in snapshot_id or "\\" in snapshot_id or ".." in snapshot_id:
            raise NotFoundError(f"Snapshot not found: {snapshot_id}", kind="snapshot")
        raw = read_json(self.root / snapshot_id / "snapshot.json")
        if not isinstance(raw, dict):
            raise NotFoundError(
                f"Snapshot not found: {snapshot_id}", kind="snapshot", key=snapshot_id
            )
        return Snapshot.from_dict(raw)

    def restore_snapshot(self, snapshot_id: str) -> Path:
        """Replace ``state/`` with a snapshot copy; returns the pre-restore backup dir."""
        self.get_snapshot(snapshot_id)
        snapshot_state = self.root / snapshot_id / "state"
        if not snapshot_state.exists():
            raise NotFoundError(
                f"Snapshot has no state directory: {snapshot_id}",
                kind="snapshot",
                key=snapshot_id,
            )

        backup_dir = self.root / f"backup-pre-restore-{utcnow().strftime('%Y%m%d-%H%M%S-%f')}"
        self._copy_state(backup_dir / "state")

        state_dir = self.repo.state.root
        staging = state_dir.with_name("state.restore.tmp")
        retired = state_dir.with_name("state.retired.tmp")
        try:
            if staging.exists():
                shutil.rmtree(staging)
            shutil.copytree(snapshot_state, staging)
            if state_dir.exists():
                state_dir.rename(retired)
            staging.rename(state_dir)
            if retired.exists():
                shutil.rmtree(retired)
        except OSError as exc:
            if retired.exists() and not state_dir.exists():
                retired.rename(state_dir)
            raise PersistenceIOError(
                f"Failed to restore snapshot {snapshot_id}: {exc}",
                stage="snapshot_restore",
                path=str(state_dir),
            ) from exc
        log.info("snapshot %s restored (backup at %s)", snapshot_id, backup_dir.name)
        return backup_dir

    def list_snapshots(self) -> list[Snapshot]:
        if not self.root.exists():
            return []
        snapshots: list[Snapshot] = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry.name.startswith("backup"):
                continue
            raw = read_json(entry / "snapshot.json")
            if isinstance(raw, dict):
                snapshots.append(Snapshot.from_dict(raw))
        snapshots.sort(
            key=lambda item: (parse_iso(item.created_at) or utcnow(), item.id),
            reverse=True,
        )
        return snapshots
