"""Sync orchestrator: turns watch events into committed uploads.

This module provides:
- SyncOrchestrator: Consumes change events, deduplicates by fingerprint,
  drives the upload client and commits outcomes to the state store
- UploaderProtocol: Interface expected from the upload client

Per-path state machine (persisted in the FileRecord status):

    | From      | Trigger                                  | To        |
    |-----------|------------------------------------------|-----------|
    | Unseen    | file seen, no record / new content       | Pending   |
    | Pending   | worker picks the path up                 | Uploading |
    | Uploading | client returned a remote id              | Uploaded  |
    | Uploading | permanent error or retries exhausted     | Failed    |
    | Failed    | retry sweep, attempt budget left         | Pending   |
    | any       | two consecutive absent observations      | Unseen    |

Every action on a path runs as one task on the worker pool, keyed by
(root, path), so a path is never processed by two workers at once.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Protocol

from docsync.client.state import FileRecord, StateStore, UploadState, UploadStatus
from docsync.client.sync.pool import WorkerPool
from docsync.client.sync.retry import next_retry_at
from docsync.client.sync.types import (
    ChangeEvent,
    OrchestratorStats,
    UploadJob,
    WatchDegraded,
    WatchItem,
)
from docsync.core.config import RetryPolicy, WatchedRoot
from docsync.core.errors import IoFailure, UploadError
from docsync.core.fingerprint import Fingerprint, fingerprint_file

logger = logging.getLogger(__name__)

ABSENT_CONFIRMATIONS = 2
DEFAULT_SWEEP_INTERVAL = 30.0  # seconds


class UploaderProtocol(Protocol):
    """Interface of the upload client used by the orchestrator."""

    def upload(self, job: UploadJob) -> str:
        """Deliver a file and return its remote identifier."""
        ...

    def check_exists(self, fingerprint: Fingerprint) -> str | None:
        """Return the remote id of identical content, if the server has it."""
        ...


class SyncOrchestrator:
    """Central orchestrator for delivering watched files.

    Usage:
        orchestrator = SyncOrchestrator(config.roots, store, client)
        orchestrator.start()
        orchestrator.run(WatchSource(config.roots))  # until stop()
    """

    def __init__(
        self,
        roots: list[WatchedRoot],
        store: StateStore,
        client: UploaderProtocol,
        max_workers: int = 4,
        retry_policy: RetryPolicy | None = None,
        delete_after_upload: bool = False,
        remote_dedup: bool = False,
        sweep_interval: float | None = DEFAULT_SWEEP_INTERVAL,
        hasher: Callable[[Path], Fingerprint] = fingerprint_file,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            roots: Watched roots.
            store: State store (the caller holds the instance lock).
            client: Upload client.
            max_workers: Maximum concurrent uploads.
            retry_policy: Budget and schedule for retry sweeps.
            delete_after_upload: Delete local files once their upload is committed.
            remote_dedup: Ask the server for existing content before uploading.
            sweep_interval: Seconds between retry sweeps; None disables the
                background sweeper (call retry_sweep() manually).
            hasher: Fingerprint function (injectable for tests).
            clock: Wall clock used for persisted timestamps.
        """
        self._roots = {root.root_id: root for root in roots}
        self._store = store
        self._client = client
        self._retry = retry_policy or RetryPolicy()
        self._delete_after_upload = delete_after_upload
        self._remote_dedup = remote_dedup
        self._sweep_interval = sweep_interval
        self._hasher = hasher
        self._clock = clock

        self._pool = WorkerPool(max_workers=max_workers, name="Uploader")
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._started = False
        self._sweeper: threading.Thread | None = None
        self._source: object | None = None

        # (root_id, path) -> consecutive absent observations
        self._absent: dict[tuple[str, str], int] = {}

        self._stats = OrchestratorStats()

    @property
    def stats(self) -> OrchestratorStats:
        """Get orchestrator statistics."""
        return self._stats

    @property
    def roots(self) -> list[WatchedRoot]:
        return list(self._roots.values())

    @property
    def is_running(self) -> bool:
        return self._started and not self._stop_event.is_set()

    # === Lifecycle ===

    def start(self) -> None:
        """Load persisted state and start the workers.

        Records left PENDING (including uploads interrupted by a crash) are
        queued again right away.

        Raises:
            CorruptState: If the state of any root cannot be parsed. Nothing
                is started in that case.
        """
        if self._started:
            logger.warning("Orchestrator already started")
            return

        snapshots = {root_id: self._store.load(root) for root_id, root in self._roots.items()}

        self._pool.start()
        self._started = True

        for root_id, snapshot in snapshots.items():
            root = self._roots[root_id]
            pending = [r for r in snapshot.values() if r.state == UploadState.PENDING]
            if pending:
                logger.info("Resuming %d pending uploads in %s", len(pending), root.path)
            for record in pending:
                self._submit(root, record.path)

        if self._sweep_interval is not None:
            self._sweeper = threading.Thread(
                target=self._sweep_loop, name="RetrySweeper", daemon=True
            )
            self._sweeper.start()

        logger.info("Orchestrator started for %d roots", len(self._roots))

    def stop(self, timeout: float = 30.0) -> None:
        """Stop accepting events and let in-flight uploads finish.

        Uploads that have not started are dropped; their records stay PENDING
        (or the file is rediscovered by the initial scan) on the next start.
        """
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        logger.info("Orchestrator stopping...")

        source_stop = getattr(self._source, "stop", None)
        if callable(source_stop):
            source_stop()

        self._pool.stop(timeout=timeout)
        if self._sweeper is not None:
            self._sweeper.join(timeout=5.0)
            self._sweeper = None
        logger.info("Orchestrator stopped")

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is queued or running."""
        return self._pool.wait_idle(timeout)

    def run(self, source: Iterable[WatchItem]) -> None:
        """Consume a watch source until it ends or stop() is called."""
        if not self._started:
            self.start()
        self._source = source
        for item in source:
            if self._stop_event.is_set():
                break
            self.handle_event(item)

    # === Event handling ===

    def handle_event(self, item: WatchItem) -> None:
        """Process one item from the watch source."""
        if self._stop_event.is_set():
            return

        if isinstance(item, WatchDegraded):
            self._count("watch_degraded", 1)
            logger.warning(
                "Watch degraded for %s: %s (retrying in %.0fs)",
                item.root.path,
                item.reason,
                item.retry_in,
            )
            return

        root = self._roots.get(item.root.root_id)
        if root is None:
            logger.warning("Ignoring event for unknown root: %s", item)
            return

        self._count("events_processed", 1)
        logger.debug("Event: %r", item)
        self._submit(root, item.path)

    def _submit(self, root: WatchedRoot, path: str) -> None:
        self._pool.submit((root.root_id, path), lambda: self._sync_path(root, path))

    def _count(self, counter: str, amount: int) -> None:
        with self._lock:
            setattr(self._stats, counter, getattr(self._stats, counter) + amount)

    # === Queries ===

    def failed_records(self) -> list[tuple[WatchedRoot, FileRecord]]:
        """List records whose last upload failed, with their root."""
        failed: list[tuple[WatchedRoot, FileRecord]] = []
        for root in self._roots.values():
            failed.extend((root, record) for record in self._store.failed_records(root))
        return failed

    # === Retry sweep ===

    def _sweep_loop(self) -> None:
        assert self._sweep_interval is not None
        while not self._stop_event.wait(self._sweep_interval):
            try:
                self.retry_sweep()
            except Exception:
                self._count("errors", 1)
                logger.exception("Retry sweep failed")

    def retry_sweep(self, now: float | None = None) -> int:
        """Requeue due failures and re-check files that went missing.

        Records are only selected here. Each one is re-read and moved back to
        PENDING by its own path task, so a commit made since the selection is
        never overwritten.

        Returns:
            Number of failed records submitted for retry.
        """
        if self._stop_event.is_set():
            return 0
        now = self._clock() if now is None else now
        requeued = 0

        for root in self._roots.values():
            for record in self._store.records(root):
                if not root.resolve(record.path).exists():
                    # Another absent observation, handled by the path task
                    self._submit(root, record.path)
                    continue
                if record.state != UploadState.FAILED:
                    continue
                status = record.status
                if status.next_retry_at is None or status.next_retry_at > now:
                    continue
                if status.attempt_count >= self._retry.max_total_attempts:
                    continue
                self._submit_retry(root, record.path, now)
                requeued += 1

        if requeued:
            logger.info("Retry sweep submitted %d failed uploads", requeued)
        return requeued

    def _submit_retry(self, root: WatchedRoot, path: str, now: float) -> None:
        self._pool.submit((root.root_id, path), lambda: self._retry_path(root, path, now))

    # === Per-path processing (runs on worker threads) ===

    def _retry_path(self, root: WatchedRoot, path: str, now: float) -> None:
        """Move a due failure back to PENDING, then sync the path."""
        record = self._store.lookup(root, path)
        if (
            record is not None
            and record.state == UploadState.FAILED
            and record.status.next_retry_at is not None
            and record.status.next_retry_at <= now
            and record.status.attempt_count < self._retry.max_total_attempts
            and root.resolve(path).is_file()
        ):
            self._store.mark_pending(root, path)
            self._count("retries_scheduled", 1)
        self._sync_path(root, path)

    def _observe_absent(self, root: WatchedRoot, path: str) -> None:
        key = (root.root_id, path)
        record = self._store.lookup(root, path)
        if record is None:
            with self._lock:
                self._absent.pop(key, None)
            return

        with self._lock:
            count = self._absent.get(key, 0) + 1
            self._absent[key] = count

        if count < ABSENT_CONFIRMATIONS:
            logger.debug("%s is missing (observation %d)", path, count)
            return

        if self._store.remove(root, path):
            self._count("records_removed", 1)
            logger.info("Deletion of %s confirmed, record removed", path)
        with self._lock:
            self._absent.pop(key, None)

    def _sync_path(self, root: WatchedRoot, path: str) -> None:
        """Bring the record of one path in line with the file on disk."""
        if self._stop_event.is_set():
            return
        local_path = root.resolve(path)
        try:
            stat = local_path.stat()
        except FileNotFoundError:
            self._observe_absent(root, path)
            return
        except OSError as e:
            self._count("errors", 1)
            logger.warning("Cannot stat %s: %s", local_path, e)
            return

        with self._lock:
            self._absent.pop((root.root_id, path), None)

        if not local_path.is_file():
            return

        record = self._store.lookup(root, path)

        # Unchanged since the last upload: no need to hash
        if (
            record is not None
            and record.state == UploadState.UPLOADED
            and record.size == stat.st_size
            and record.mtime == stat.st_mtime
        ):
            self._count("unchanged_skipped", 1)
            return

        try:
            fingerprint = self._hasher(local_path)
        except IoFailure as e:
            if not local_path.exists():
                self._observe_absent(root, path)
                return
            self._count("errors", 1)
            logger.warning("Cannot fingerprint %s: %s", local_path, e)
            return

        if record is not None and record.fingerprint == fingerprint:
            if record.state == UploadState.UPLOADED:
                # Touched but same content
                if (record.size, record.mtime) != (stat.st_size, stat.st_mtime):
                    self._store.upsert(
                        root, _refreshed(record, stat.st_size, stat.st_mtime)
                    )
                self._count("unchanged_skipped", 1)
                return
            if record.state == UploadState.FAILED:
                logger.debug("%s unchanged since failure, waiting for retry sweep", path)
                return
            # PENDING (queued, resumed or requeued), or UPLOADING after a task error
            record = _refreshed(record, stat.st_size, stat.st_mtime)
            self._store.upsert(root, record)
        else:
            if record is not None:
                logger.info("Content of %s changed, queueing upload", path)
            record = FileRecord(
                path=path,
                fingerprint=fingerprint,
                size=stat.st_size,
                mtime=stat.st_mtime,
                status=UploadStatus.pending(),
            )
            if self._deduplicate(root, record):
                return
            self._store.upsert(root, record)

        self._deliver(root, record, local_path)

    def _deduplicate(self, root: WatchedRoot, record: FileRecord) -> bool:
        """Record `record` as uploaded if identical content was already delivered."""
        for other in self._store.find_by_fingerprint(root, record.fingerprint):
            if other.path == record.path:
                continue
            if not root.resolve(other.path).is_file():
                continue
            assert other.status.remote_id is not None
            self._commit_duplicate(root, record, other.status.remote_id)
            logger.info("%s has the same content as %s, not uploading", record.path, other.path)
            return True

        if not self._remote_dedup:
            return False
        try:
            remote_id = self._client.check_exists(record.fingerprint)
        except UploadError as e:
            logger.warning("Duplicate check failed for %s: %s", record.path, e)
            return False
        if remote_id is None:
            return False
        self._commit_duplicate(root, record, remote_id)
        logger.info("%s already exists on the server as %s", record.path, remote_id)
        return True

    def _commit_duplicate(self, root: WatchedRoot, record: FileRecord, remote_id: str) -> None:
        self._store.upsert(
            root, record.with_status(UploadStatus.uploaded(remote_id, self._clock()))
        )
        self._count("duplicates_skipped", 1)
        self._after_commit(root, record.path)

    def _deliver(self, root: WatchedRoot, record: FileRecord, local_path: Path) -> None:
        """Upload a PENDING record and persist the outcome."""
        record = self._store.mark_uploading(root, record.path)
        job = UploadJob(root=root, record=record, local_path=local_path)
        attempt = record.status.attempt_count
        logger.info("Uploading %s (attempt %d)", record.path, attempt)

        try:
            remote_id = self._client.upload(job)
        except UploadError as e:
            retry_at = next_retry_at(self._retry, attempt, self._clock(), e)
            self._store.mark_failed(root, record.path, str(e), next_retry_at=retry_at)
            self._count("uploads_failed", 1)
            if retry_at is None:
                logger.error("Upload of %s failed permanently: %s", record.path, e)
            else:
                logger.warning("Upload of %s failed: %s", record.path, e)
            return
        except IoFailure as e:
            retry_at = next_retry_at(self._retry, attempt, self._clock())
            self._store.mark_failed(root, record.path, str(e), next_retry_at=retry_at)
            self._count("uploads_failed", 1)
            logger.warning("Could not read %s for upload: %s", record.path, e)
            return
        except Exception as e:
            self._store.mark_failed(
                root, record.path, f"Unexpected error: {e}", next_retry_at=None
            )
            self._count("uploads_failed", 1)
            logger.exception("Upload of %s failed unexpectedly", record.path)
            return

        # Durable before the job counts as done
        self._store.mark_uploaded(root, record.path, remote_id, self._clock())
        self._count("uploads_completed", 1)
        logger.info("Uploaded %s as %s", record.path, remote_id)
        self._after_commit(root, record.path)

    def _after_commit(self, root: WatchedRoot, path: str) -> None:
        if not self._delete_after_upload:
            return
        local_path = root.resolve(path)
        try:
            os.unlink(local_path)
            logger.info("Deleted %s after upload", local_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not delete %s after upload: %s", local_path, e)


def _refreshed(record: FileRecord, size: int, mtime: float) -> FileRecord:
    return FileRecord(
        path=record.path,
        fingerprint=record.fingerprint,
        size=size,
        mtime=mtime,
        status=record.status,
    )
