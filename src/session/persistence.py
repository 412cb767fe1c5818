"""
Session snapshot persistence.

Enables save/resume so users can interrupt and continue sessions, and so a
crashed client can recover. Adapters raise PersistenceError; the controller
turns failures into PersistenceWarning events and keeps running in memory.

Concurrent resume uses version tokens: every save carries a revision that
must be greater than the stored one, otherwise SnapshotConflictError.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Protocol

from loguru import logger

from src.core.errors import PersistenceError, SnapshotConflictError
from src.session.snapshot import SessionSnapshot


class SnapshotStore(Protocol):
    """Persistence adapter contract."""

    def save(self, snapshot: SessionSnapshot) -> None:
        """Persist a snapshot. Raises PersistenceError on failure."""
        ...

    def load(self, session_id: str) -> SessionSnapshot | None:
        """Return the stored snapshot, or None if there is none."""
        ...


class InMemorySnapshotStore:
    """Dictionary-backed store, stores JSON text so round-trips are real."""

    def __init__(self):
        self._data: dict[str, str] = {}
        self.save_count = 0

    def save(self, snapshot: SessionSnapshot) -> None:
        _check_revision(self.load(snapshot.session_id), snapshot)
        self._data[snapshot.session_id] = snapshot.to_json(indent=None)
        self.save_count += 1

    def load(self, session_id: str) -> SessionSnapshot | None:
        raw = self._data.get(session_id)
        if raw is None:
            return None
        return SessionSnapshot.from_json(raw)

    def delete(self, session_id: str) -> bool:
        return self._data.pop(session_id, None) is not None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._data


def _check_revision(stored: SessionSnapshot | None, incoming: SessionSnapshot) -> None:
    if stored is not None and incoming.revision <= stored.revision:
        raise SnapshotConflictError(incoming.session_id, stored.revision, incoming.revision)


class JsonFileSnapshotStore:
    """
    Manages snapshot files.

    Snapshots are stored as JSON files with naming: {session_id}.json
    Only the most recent session is typically used for resume.
    """

    def __init__(self, session_dir: Path, expiry_hours: int = 24):
        self.session_dir = Path(session_dir)
        self.expiry_hours = expiry_hours
        self.session_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        if not session_id or any(sep in session_id for sep in ("/", "\\", "..")):
            raise PersistenceError(f"Invalid session id: {session_id!r}")
        return self.session_dir / f"{session_id}.json"

    def save(self, snapshot: SessionSnapshot) -> None:
        """Save snapshot to disk (write to temp file, then replace)."""
        filepath = self._path(snapshot.session_id)
        _check_revision(self.load(snapshot.session_id), snapshot)

        tmp_path = filepath.with_suffix(".json.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(snapshot.to_json())
            tmp_path.replace(filepath)
        except OSError as e:
            raise PersistenceError(f"Could not write {filepath.name}: {e}") from e

    def load(self, session_id: str) -> SessionSnapshot | None:
        """Load a specific session by ID."""
        filepath = self._path(session_id)
        if not filepath.exists():
            return None

        try:
            with open(filepath, "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise PersistenceError(f"Could not read {filepath.name}: {e}") from e
        return SessionSnapshot.from_json(raw)

    def is_expired(self, snapshot: SessionSnapshot) -> bool:
        """Check if a snapshot is too old to offer for resume."""
        saved_at = snapshot.saved_at
        if saved_at.tzinfo is None:
            saved_at = saved_at.replace(tzinfo=UTC)
        return datetime.now(UTC) - saved_at > timedelta(hours=self.expiry_hours)

    def _iter_snapshots(self):
        for filepath in self.session_dir.glob("*.json"):
            try:
                with open(filepath, "r", encoding="utf-8") as f:
                    yield filepath, SessionSnapshot.from_json(f.read())
            except (OSError, PersistenceError) as e:
                logger.warning(f"Skipping unreadable snapshot {filepath.name}: {e}")
                yield filepath, None

    def list_sessions(self) -> list[SessionSnapshot]:
        """List all non-expired snapshots, most recently saved first."""
        sessions = [
            snapshot
            for _, snapshot in self._iter_snapshots()
            if snapshot is not None and not self.is_expired(snapshot)
        ]
        return sorted(sessions, key=lambda s: s.saved_at, reverse=True)

    def get_latest(self) -> SessionSnapshot | None:
        """Get the most recent resumable session."""
        for snapshot in self.list_sessions():
            if snapshot.status.is_resumable:
                return snapshot
        return None

    def delete(self, session_id: str) -> bool:
        """Delete a session file."""
        filepath = self._path(session_id)
        if filepath.exists():
            filepath.unlink()
            return True
        return False

    def cleanup_expired(self) -> int:
        """Remove all expired and corrupted snapshot files."""
        removed = 0
        for filepath, snapshot in list(self._iter_snapshots()):
            if snapshot is None or self.is_expired(snapshot):
                filepath.unlink(missing_ok=True)
                removed += 1
        if removed:
            logger.info(f"Removed {removed} stale snapshot(s) from {self.session_dir}")
        return removed
