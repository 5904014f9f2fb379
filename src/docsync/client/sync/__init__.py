"""Watch-and-upload pipeline.

Architecture:
    WatchSource → SyncOrchestrator → WorkerPool → UploadClient

Components:
- **WatchSource**: Watches roots with watchdog, coalesces bursts into ChangeEvents
- **PathFilter**: Include/exclude rules per root
- **SyncOrchestrator**: Fingerprints, deduplicates and commits upload outcomes
- **WorkerPool**: Bounded concurrency, one task at a time per path
- **retry_with_backoff**: Exponential backoff for transient upload failures
"""

from docsync.client.sync.ignore import DEFAULT_EXCLUDE_PATTERNS, PathFilter
from docsync.client.sync.orchestrator import SyncOrchestrator, UploaderProtocol
from docsync.client.sync.pool import PoolState, WorkerPool
from docsync.client.sync.retry import next_retry_at, retry_delay, retry_with_backoff
from docsync.client.sync.types import (
    ChangeEvent,
    ChangeKind,
    OrchestratorStats,
    UploadJob,
    WatchDegraded,
    WatchItem,
)
from docsync.client.sync.watcher import EventCoalescer, WatchSource, scan_root

__all__ = [
    # Filtering
    "DEFAULT_EXCLUDE_PATTERNS",
    "PathFilter",
    # Orchestration
    "SyncOrchestrator",
    "UploaderProtocol",
    "OrchestratorStats",
    # Workers
    "PoolState",
    "WorkerPool",
    # Retry
    "next_retry_at",
    "retry_delay",
    "retry_with_backoff",
    # Types
    "ChangeEvent",
    "ChangeKind",
    "UploadJob",
    "WatchDegraded",
    "WatchItem",
    # Watcher
    "EventCoalescer",
    "WatchSource",
    "scan_root",
]
