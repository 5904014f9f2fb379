"""Local state management for the upload agent.

This module provides:
- UploadState / UploadStatus: Upload outcome of a tracked file
- FileRecord: A tracked file with its fingerprint and status
- StateStore: Per-root JSON state files with atomic, durable writes

Architecture:
    Each watched root owns one state file `<state_dir>/<root_id>.json`.
    Every mutation rewrites the whole file: the new content is written to a
    temporary file in the same directory, fsynced, then atomically renamed
    over the old file. Readers therefore only ever see a complete file.

    Records are never deleted implicitly. The orchestrator calls remove()
    once a deletion has been confirmed.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from docsync.core.errors import CorruptState, IoFailure
from docsync.core.fingerprint import Fingerprint

if TYPE_CHECKING:
    from docsync.core.config import WatchedRoot

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1

Snapshot = dict[str, "FileRecord"]


class UploadState(str, Enum):
    """Upload state of a tracked file."""

    PENDING = "pending"  # Known, waiting to be delivered
    UPLOADING = "uploading"  # A job is in flight
    UPLOADED = "uploaded"  # Delivered, remote id known
    FAILED = "failed"  # Last job failed, see reason


@dataclass(frozen=True)
class UploadStatus:
    """Upload outcome of a file.

    Attributes:
        state: Current upload state.
        attempt_count: Upload attempts made for the current content.
        remote_id: Identifier assigned by the server (UPLOADED only).
        uploaded_at: Unix timestamp of the successful upload (UPLOADED only).
        reason: Failure description (FAILED only).
        next_retry_at: When the retry sweep may try again (FAILED only,
            None means never).
    """

    state: UploadState
    attempt_count: int = 0
    remote_id: str | None = None
    uploaded_at: float | None = None
    reason: str | None = None
    next_retry_at: float | None = None

    @classmethod
    def pending(cls, attempt_count: int = 0) -> UploadStatus:
        return cls(UploadState.PENDING, attempt_count=attempt_count)

    @classmethod
    def uploading(cls, attempt_count: int) -> UploadStatus:
        return cls(UploadState.UPLOADING, attempt_count=attempt_count)

    @classmethod
    def uploaded(cls, remote_id: str, timestamp: float, attempt_count: int = 0) -> UploadStatus:
        return cls(
            UploadState.UPLOADED,
            attempt_count=attempt_count,
            remote_id=remote_id,
            uploaded_at=timestamp,
        )

    @classmethod
    def failed(
        cls,
        reason: str,
        attempt_count: int,
        next_retry_at: float | None = None,
    ) -> UploadStatus:
        return cls(
            UploadState.FAILED,
            attempt_count=attempt_count,
            reason=reason,
            next_retry_at=next_retry_at,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize, omitting fields that do not apply to the state."""
        data: dict[str, Any] = {
            "state": self.state.value,
            "attempt_count": self.attempt_count,
        }
        if self.state == UploadState.UPLOADED:
            data["remote_id"] = self.remote_id
            data["uploaded_at"] = self.uploaded_at
        elif self.state == UploadState.FAILED:
            data["reason"] = self.reason
            data["next_retry_at"] = self.next_retry_at
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadStatus:
        """Create from a persisted dictionary."""
        state = UploadState(data["state"])
        status = cls(state, attempt_count=int(data.get("attempt_count", 0)))
        if state == UploadState.UPLOADED:
            if not data.get("remote_id"):
                raise ValueError("uploaded status without remote_id")
            status = replace(
                status,
                remote_id=str(data["remote_id"]),
                uploaded_at=float(data["uploaded_at"]),
            )
        elif state == UploadState.FAILED:
            next_retry = data.get("next_retry_at")
            status = replace(
                status,
                reason=str(data.get("reason") or "unknown"),
                next_retry_at=float(next_retry) if next_retry is not None else None,
            )
        return status


@dataclass(frozen=True)
class FileRecord:
    """A tracked file.

    Attributes:
        path: Path relative to the watched root, forward slashes.
        fingerprint: Content digest at the time it was last hashed.
        size: File size in bytes when last observed.
        mtime: File modification time when last observed.
        status: Upload outcome.
    """

    path: str
    fingerprint: Fingerprint
    size: int
    mtime: float
    status: UploadStatus

    @property
    def state(self) -> UploadState:
        return self.status.state

    def with_status(self, status: UploadStatus) -> FileRecord:
        """Return a copy with a new status."""
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint.hex(),
            "size": self.size,
            "mtime": self.mtime,
            "status": self.status.to_dict(),
        }

    @classmethod
    def from_dict(cls, path: str, data: dict[str, Any]) -> FileRecord:
        """Create from a persisted dictionary (keyed by path)."""
        return cls(
            path=path,
            fingerprint=Fingerprint.from_hex(data["fingerprint"]),
            size=int(data["size"]),
            mtime=float(data["mtime"]),
            status=UploadStatus.from_dict(data["status"]),
        )


class StateStore:
    """Durable per-root store of FileRecords.

    Snapshots are loaded lazily on first access to a root and kept in
    memory; every mutation is written through to disk before returning.
    """

    def __init__(self, state_dir: Path) -> None:
        """Initialize the store.

        Args:
            state_dir: Directory holding the per-root state files.
        """
        self._state_dir = Path(state_dir)
        self._state_dir.mkdir(parents=True, exist_ok=True)

        # Lock for thread-safe access from worker threads
        self._lock = threading.RLock()

        # root_id -> snapshot
        self._snapshots: dict[str, Snapshot] = {}

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def state_file(self, root: WatchedRoot) -> Path:
        """Path of the state file for a root."""
        return self._state_dir / f"{root.root_id}.json"

    # === Loading ===

    def load(self, root: WatchedRoot) -> Snapshot:
        """Read persisted state for a root.

        Records persisted as UPLOADING belong to a job interrupted by a crash
        and are returned as PENDING, keeping their attempt count.

        Returns:
            Copy of the snapshot (empty if nothing was persisted).

        Raises:
            CorruptState: If the state file cannot be parsed.
            IoFailure: If the state file exists but cannot be read.
        """
        with self._lock:
            snapshot = self._read_file(root)
            for path, record in list(snapshot.items()):
                if record.state == UploadState.UPLOADING:
                    logger.info("Upload of %s was interrupted, marking pending", path)
                    snapshot[path] = record.with_status(
                        UploadStatus.pending(record.status.attempt_count)
                    )
            self._snapshots[root.root_id] = snapshot
            return dict(snapshot)

    def peek(self, root: WatchedRoot) -> Snapshot:
        """Read the state file as persisted, without caching or crash recovery.

        Used by readers that run alongside the agent holding the lock.
        """
        return self._read_file(root)

    def _read_file(self, root: WatchedRoot) -> Snapshot:
        state_file = self.state_file(root)
        try:
            raw = state_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise IoFailure(state_file, f"cannot read state: {e}") from e

        try:
            data = json.loads(raw)
            if not isinstance(data, dict) or not isinstance(data.get("files"), dict):
                raise ValueError("missing 'files' mapping")
            version = data.get("version")
            if version != STATE_FORMAT_VERSION:
                raise ValueError(f"unsupported format version {version!r}")
            return {
                path: FileRecord.from_dict(path, entry)
                for path, entry in data["files"].items()
            }
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise CorruptState(state_file, str(e)) from e

    def _snapshot(self, root: WatchedRoot) -> Snapshot:
        snapshot = self._snapshots.get(root.root_id)
        if snapshot is None:
            self.load(root)
            snapshot = self._snapshots[root.root_id]
        return snapshot

    # === Queries ===

    def lookup(self, root: WatchedRoot, path: str) -> FileRecord | None:
        """Get the record for a path, or None if the path is not tracked."""
        with self._lock:
            return self._snapshot(root).get(path)

    def records(self, root: WatchedRoot) -> list[FileRecord]:
        """List all records of a root, ordered by path."""
        with self._lock:
            snapshot = self._snapshot(root)
            return [snapshot[path] for path in sorted(snapshot)]

    def failed_records(self, root: WatchedRoot) -> list[FileRecord]:
        """List records whose last upload failed."""
        return [r for r in self.records(root) if r.state == UploadState.FAILED]

    def find_by_fingerprint(
        self,
        root: WatchedRoot,
        fingerprint: Fingerprint,
        state: UploadState | None = UploadState.UPLOADED,
    ) -> list[FileRecord]:
        """Find records of a root with the given content."""
        return [
            r for r in self.records(root)
            if r.fingerprint == fingerprint and (state is None or r.state == state)
        ]

    # === Mutations ===

    def upsert(self, root: WatchedRoot, record: FileRecord) -> None:
        """Insert or replace the record for `record.path`, durably.

        Raises:
            IoFailure: If the state file cannot be written. The in-memory
                snapshot is left unchanged in that case.
        """
        with self._lock:
            snapshot = self._snapshot(root)
            updated = dict(snapshot)
            updated[record.path] = record
            self._write(root, updated)
            self._snapshots[root.root_id] = updated

    def remove(self, root: WatchedRoot, path: str) -> bool:
        """Remove a record after its file deletion has been confirmed.

        Returns:
            True if a record was removed.
        """
        with self._lock:
            snapshot = self._snapshot(root)
            if path not in snapshot:
                return False
            updated = dict(snapshot)
            del updated[path]
            self._write(root, updated)
            self._snapshots[root.root_id] = updated
            return True

    def _require(self, root: WatchedRoot, path: str) -> FileRecord:
        record = self.lookup(root, path)
        if record is None:
            raise KeyError(f"No record for {path!r} in {root.path}")
        return record

    def mark_pending(self, root: WatchedRoot, path: str) -> FileRecord:
        """Move a record back to PENDING, keeping its attempt count."""
        with self._lock:
            record = self._require(root, path)
            record = record.with_status(UploadStatus.pending(record.status.attempt_count))
            self.upsert(root, record)
            return record

    def mark_uploading(self, root: WatchedRoot, path: str) -> FileRecord:
        """Mark a record as having an upload in flight (counts one attempt)."""
        with self._lock:
            record = self._require(root, path)
            record = record.with_status(
                UploadStatus.uploading(record.status.attempt_count + 1)
            )
            self.upsert(root, record)
            return record

    def mark_uploaded(
        self,
        root: WatchedRoot,
        path: str,
        remote_id: str,
        timestamp: float,
    ) -> FileRecord:
        """Record a successful upload."""
        with self._lock:
            record = self._require(root, path)
            record = record.with_status(
                UploadStatus.uploaded(remote_id, timestamp, record.status.attempt_count)
            )
            self.upsert(root, record)
            return record

    def mark_failed(
        self,
        root: WatchedRoot,
        path: str,
        reason: str,
        next_retry_at: float | None = None,
    ) -> FileRecord:
        """Record a failed upload."""
        with self._lock:
            record = self._require(root, path)
            record = record.with_status(
                UploadStatus.failed(reason, record.status.attempt_count, next_retry_at)
            )
            self.upsert(root, record)
            return record

    # === Persistence ===

    def _write(self, root: WatchedRoot, snapshot: Snapshot) -> None:
        """Atomically replace the state file of a root."""
        state_file = self.state_file(root)
        payload = {
            "version": STATE_FORMAT_VERSION,
            "root": str(root.path),
            "files": {path: snapshot[path].to_dict() for path in sorted(snapshot)},
        }
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{state_file.name}.", suffix=".tmp", dir=self._state_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=1)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, state_file)
        except OSError as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            raise IoFailure(state_file, f"cannot write state: {e}") from e
        self._fsync_dir()

    def _fsync_dir(self) -> None:
        # Directory fsync makes the rename durable; not supported on Windows
        if os.name != "posix":
            return
        fd = os.open(self._state_dir, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
