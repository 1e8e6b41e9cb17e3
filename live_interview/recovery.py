"""
Recovery Snapshot Store.

Persists the ended interview (transcript, turns, recipient, role) so the
final evaluation can be retried or resumed after a crash or restart.

Storage is a small JSON key-value file; the snapshot lives under the fixed
key ``interviewPendingReport``. Writes go through a temp file and an atomic
rename, so a crash mid-write leaves the previous contents intact.

Thread Safety:
    Single writer per process. Concurrent processes sharing one store file
    need external locking.

Last Grunted: 10/16/2026
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import ValidationError

from .models import SessionSnapshot


__all__ = [
    "PENDING_REPORT_KEY",
    "SessionStore",
    "SnapshotReadError",
    "SnapshotWriteError",
]


logger = logging.getLogger(__name__)


PENDING_REPORT_KEY = "interviewPendingReport"


class SnapshotWriteError(Exception):
    """Raised when writing the snapshot store fails."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write to {path}: {cause}")


class SnapshotReadError(Exception):
    """Raised when the snapshot store exists but cannot be read."""

    def __init__(self, path: Path, cause: Exception) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to read from {path}: {cause}")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """
    Saves, loads and clears the pending-report snapshot.

    Snapshots older than ``retention_hours`` are deleted unread on load.

    Example:
        >>> store = SessionStore(Path("./state/session_store.json"))
        >>> store.save(SessionSnapshot(transcript="...", role="vp-sales"))
        >>> snapshot = store.load()
        >>> store.clear()
        True
    """

    def __init__(
        self,
        path: Path,
        retention_hours: float = 24.0,
        clock: Callable[[], datetime] = _utc_now,
        key: str = PENDING_REPORT_KEY,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: JSON file backing the store. Parent directories are created.
            retention_hours: Maximum snapshot age offered for resume.
            clock: Returns the current UTC time; injectable for tests.
            key: Record key inside the store file.
        """
        self.path = Path(path)
        self.retention_hours = retention_hours
        self.clock = clock
        self.key = key
        self._ensure_parent_dir()

    def _ensure_parent_dir(self) -> None:
        """
        Create the store's parent directory if missing.

        Raises:
            SnapshotWriteError: If directory creation fails.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SnapshotWriteError(self.path.parent, e) from e

    def _read_store(self) -> dict[str, Any]:
        """
        Read the whole key-value file.

        Raises:
            SnapshotReadError: If the file is unreadable or not a JSON object.
        """
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise SnapshotReadError(self.path, e) from e
        except OSError as e:
            raise SnapshotReadError(self.path, e) from e
        if not isinstance(data, dict):
            raise SnapshotReadError(self.path, ValueError("store root is not a JSON object"))
        return data

    def _write_store(self, data: dict[str, Any]) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise SnapshotWriteError(self.path, e) from e

    def save(self, snapshot: SessionSnapshot) -> Path:
        """
        Persist ``snapshot``, replacing any previous one.

        An unreadable store file is replaced rather than blocking the save.

        Raises:
            SnapshotWriteError: If the write fails.
        """
        try:
            data = self._read_store()
        except SnapshotReadError as e:
            logger.warning("Replacing unreadable snapshot store: %s", e)
            data = {}

        data[self.key] = snapshot.model_dump(mode="json")
        self._write_store(data)
        logger.info(
            "Saved recovery snapshot (%d chars, %d turns, role=%s)",
            len(snapshot.transcript),
            len(snapshot.turns),
            snapshot.role,
        )
        return self.path

    def load(self) -> Optional[SessionSnapshot]:
        """
        Return the pending snapshot if present and fresh.

        Expired, malformed or empty-transcript records are removed and None is
        returned. An unreadable store file is treated the same way.
        """
        try:
            data = self._read_store()
        except SnapshotReadError as e:
            logger.warning("Discarding unreadable snapshot store: %s", e)
            self._remove_file()
            return None

        raw = data.get(self.key)
        if raw is None:
            return None

        try:
            snapshot = SessionSnapshot.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding malformed recovery snapshot: %s", e)
            self.clear()
            return None

        if not snapshot.transcript.strip():
            logger.warning("Discarding recovery snapshot with empty transcript")
            self.clear()
            return None

        age = snapshot.age_hours(self.clock())
        if age > self.retention_hours:
            logger.info(
                "Discarding expired recovery snapshot (age %.1fh > %.1fh)",
                age,
                self.retention_hours,
            )
            self.clear()
            return None

        return snapshot

    def clear(self) -> bool:
        """
        Remove the snapshot record.

        Returns:
            True if a record was removed, False if none existed.

        Raises:
            SnapshotWriteError: If the store cannot be rewritten.
        """
        try:
            data = self._read_store()
        except SnapshotReadError:
            return self._remove_file()

        if self.key not in data:
            return False
        del data[self.key]
        if data:
            self._write_store(data)
        else:
            self._remove_file()
        logger.info("Cleared recovery snapshot")
        return True

    def _remove_file(self) -> bool:
        if not self.path.exists():
            return False
        try:
            self.path.unlink()
            return True
        except OSError as e:
            raise SnapshotWriteError(self.path, e) from e
