"""Shared types and dataclasses for the sync pipeline.

This module provides:
- ChangeKind, ChangeEvent: Filesystem changes produced by the watch source
- WatchDegraded: Diagnostic emitted when a watch had to be re-subscribed
- UploadJob: A single delivery attempt handed to the upload client
- OrchestratorStats: Counters exposed for diagnostics
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from docsync.client.state import FileRecord
from docsync.core.config import WatchedRoot


class ChangeKind(str, Enum):
    """Kind of filesystem change."""

    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChangeEvent:
    """A (coalesced) change of one file below a watched root.

    Attributes:
        root: The watched root the file belongs to.
        path: Path relative to the root, forward slashes.
        kind: What happened to the file.
        timestamp: When the (last coalesced) change was observed.
    """

    root: WatchedRoot
    path: str
    kind: ChangeKind
    timestamp: float = field(default_factory=time.time, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        """Serialization key: one task at a time per (root, path)."""
        return (self.root.root_id, self.path)

    def __repr__(self) -> str:
        return f"ChangeEvent({self.kind.name}, path={self.path!r}, root={self.root.root_id})"


@dataclass(frozen=True)
class WatchDegraded:
    """The watch on a root failed and will be re-established.

    Not fatal: the orchestrator logs and counts it.
    """

    root: WatchedRoot
    reason: str
    retry_in: float
    timestamp: float = field(default_factory=time.time, compare=False)


WatchItem = ChangeEvent | WatchDegraded


@dataclass(frozen=True)
class UploadJob:
    """A single delivery attempt of a file.

    Attributes:
        root: Root the file belongs to.
        record: Record of the file being delivered (status UPLOADING).
        local_path: Absolute path to read the content from.
    """

    root: WatchedRoot
    record: FileRecord
    local_path: Path

    @property
    def path(self) -> str:
        return self.record.path


@dataclass
class OrchestratorStats:
    """Statistics for the orchestrator."""

    events_processed: int = 0
    uploads_completed: int = 0
    uploads_failed: int = 0
    unchanged_skipped: int = 0
    duplicates_skipped: int = 0
    records_removed: int = 0
    retries_scheduled: int = 0
    watch_degraded: int = 0
    errors: int = 0
