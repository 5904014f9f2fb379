"""File system watch source with debouncing.

This module provides:
- WatchSource: Lazy, restartable iterable of ChangeEvents for watched roots
- EventCoalescer: Collapses rapid events for the same path (500ms window)
- scan_root: Lists existing files of a root for the initial reconciliation

Watchdog delivers events on its own observer threads. They are pushed onto
an internal queue and pulled by the iterator, so consumers see a plain
sequence and tests can drive the coalescer without a live observer.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirCreatedEvent,
    DirMovedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from docsync.client.sync.ignore import PathFilter
from docsync.client.sync.types import ChangeEvent, ChangeKind, WatchDegraded, WatchItem
from docsync.core.config import WatchedRoot

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 500
RESTART_INITIAL_BACKOFF = 1.0  # seconds
RESTART_MAX_BACKOFF = 60.0  # seconds


def scan_root(root: WatchedRoot, path_filter: PathFilter | None = None) -> Iterator[str]:
    """Yield root-relative paths of existing files accepted by the filter."""
    path_filter = path_filter or PathFilter(root)
    if not root.path.is_dir():
        return
    for dirpath, dirnames, filenames in os.walk(root.path):
        if not root.recursive:
            dirnames.clear()
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_symlink() or not path.is_file():
                continue
            rel_path = root.relative(path)
            if path_filter.accepts(rel_path):
                yield rel_path


@dataclass
class _PendingChange:
    root: WatchedRoot
    path: str
    kind: ChangeKind
    count: int
    last_seen: float


class EventCoalescer:
    """Collapses rapid events per (root, path) into one.

    An entry is released once no new event arrived for it during the debounce
    window. A single event keeps its kind; several merged events are released
    as MODIFIED if the file exists at that time and REMOVED otherwise.
    """

    def __init__(
        self,
        debounce_s: float = DEFAULT_DEBOUNCE_MS / 1000,
        exists: Callable[[WatchedRoot, str], bool] | None = None,
    ) -> None:
        self._debounce_s = debounce_s
        self._exists = exists or (lambda root, path: root.resolve(path).is_file())
        self._pending: dict[tuple[str, str], _PendingChange] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, root: WatchedRoot, path: str, kind: ChangeKind, now: float) -> None:
        """Record a raw event observed at `now`."""
        key = (root.root_id, path)
        pending = self._pending.get(key)
        if pending is None:
            self._pending[key] = _PendingChange(root, path, kind, 1, now)
            return
        pending.kind = kind
        pending.count += 1
        pending.last_seen = now

    def pop_ready(self, now: float, flush_all: bool = False) -> list[ChangeEvent]:
        """Release entries whose debounce window has elapsed."""
        ready: list[ChangeEvent] = []
        for key, pending in list(self._pending.items()):
            if not flush_all and now - pending.last_seen < self._debounce_s:
                continue
            del self._pending[key]
            kind = pending.kind
            if pending.count > 1:
                if self._exists(pending.root, pending.path):
                    kind = ChangeKind.MODIFIED
                else:
                    kind = ChangeKind.REMOVED
            ready.append(ChangeEvent(pending.root, pending.path, kind, timestamp=pending.last_seen))
        return ready

    def next_deadline(self) -> float | None:
        """Earliest time at which an entry becomes ready."""
        if not self._pending:
            return None
        return min(p.last_seen for p in self._pending.values()) + self._debounce_s


class _RootEventHandler(FileSystemEventHandler):
    """Forwards filtered watchdog events of one root to the source queue."""

    def __init__(
        self,
        root: WatchedRoot,
        path_filter: PathFilter,
        sink: queue.Queue[tuple[WatchedRoot, str, ChangeKind]],
    ) -> None:
        super().__init__()
        self._root = root
        self._filter = path_filter
        self._sink = sink

    @staticmethod
    def _decode(path: str | bytes) -> Path:
        if isinstance(path, bytes):
            path = path.decode("utf-8", errors="replace")
        return Path(path)

    def _emit(self, path: Path, kind: ChangeKind) -> None:
        if not self._filter.accepts_path(path):
            return
        self._sink.put((self._root, self._root.relative(path), kind))

    def _emit_tree(self, directory: Path) -> None:
        # A directory moved or created below the root brings its files along
        for rel_path in scan_root(self._root, self._filter):
            if self._root.resolve(rel_path).is_relative_to(directory):
                self._sink.put((self._root, rel_path, ChangeKind.CREATED))

    def on_any_event(self, event: FileSystemEvent) -> None:
        src = self._decode(event.src_path)

        if isinstance(event, FileMovedEvent | DirMovedEvent):
            dest = self._decode(event.dest_path)
            if isinstance(event, DirMovedEvent):
                if self._root.recursive and dest.is_relative_to(self._root.path):
                    self._emit_tree(dest)
                return
            self._emit(src, ChangeKind.REMOVED)
            self._emit(dest, ChangeKind.CREATED)
        elif isinstance(event, DirCreatedEvent):
            if self._root.recursive:
                self._emit_tree(src)
        elif isinstance(event, FileCreatedEvent):
            self._emit(src, ChangeKind.CREATED)
        elif isinstance(event, FileModifiedEvent):
            self._emit(src, ChangeKind.MODIFIED)
        elif isinstance(event, FileDeletedEvent):
            self._emit(src, ChangeKind.REMOVED)


@dataclass
class _Subscription:
    root: WatchedRoot
    observer: BaseObserver | None = None
    failures: int = 0
    retry_at: float = 0.0


class WatchSource:
    """Lazy, restartable sequence of change events for the watched roots.

    Iterating yields ChangeEvents (and WatchDegraded diagnostics) until
    stop() is called. If a root cannot be watched, or its observer dies,
    the root is re-subscribed with exponential backoff.

    Usage:
        source = WatchSource(config.roots, debounce_ms=500)
        for item in source:
            orchestrator.handle_event(item)
    """

    def __init__(
        self,
        roots: list[WatchedRoot],
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        initial_scan: bool = True,
        poll_interval: float = 0.1,
        observer_factory: Callable[[], BaseObserver] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the watch source.

        Args:
            roots: Roots to watch.
            debounce_ms: Coalescing window in milliseconds.
            initial_scan: Emit CREATED for every existing file first.
            poll_interval: Maximum time the iterator blocks between checks.
            observer_factory: Creates watchdog observers (injectable for tests).
            clock: Monotonic clock (injectable for tests).
        """
        self._roots = list(roots)
        self._filters = {root.root_id: PathFilter(root) for root in self._roots}
        self._initial_scan = initial_scan
        self._poll_interval = poll_interval
        self._observer_factory = observer_factory
        self._clock = clock

        self._raw: queue.Queue[tuple[WatchedRoot, str, ChangeKind]] = queue.Queue()
        self._coalescer = EventCoalescer(debounce_s=debounce_ms / 1000)
        self._subscriptions = {root.root_id: _Subscription(root) for root in self._roots}
        self._stop_event = threading.Event()

    @property
    def roots(self) -> list[WatchedRoot]:
        return list(self._roots)

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """End the sequence; the iterator returns after its current wait."""
        self._stop_event.set()

    def __iter__(self) -> Iterator[WatchItem]:
        try:
            if self._initial_scan:
                for root in self._roots:
                    for rel_path in scan_root(root, self._filters[root.root_id]):
                        if self._stop_event.is_set():
                            return
                        yield ChangeEvent(root, rel_path, ChangeKind.CREATED)

            while not self._stop_event.is_set():
                yield from self._check_subscriptions()
                self._collect_raw()
                yield from self._coalescer.pop_ready(self._clock())
        finally:
            self._stop_observers()

    # === Subscription management ===

    def _check_subscriptions(self) -> Iterator[WatchDegraded]:
        now = self._clock()
        for sub in self._subscriptions.values():
            if sub.observer is not None:
                if sub.observer.is_alive():
                    continue
                self._discard_observer(sub)
                yield self._degraded(sub, "observer stopped unexpectedly", now)
                continue
            if now < sub.retry_at:
                continue
            try:
                self._subscribe(sub)
            except OSError as e:
                yield self._degraded(sub, str(e), now)

    def _subscribe(self, sub: _Subscription) -> None:
        root = sub.root
        if not root.path.is_dir():
            raise FileNotFoundError(f"Watched root is not a directory: {root.path}")
        handler = _RootEventHandler(root, self._filters[root.root_id], self._raw)
        observer = self._observer_factory()
        try:
            observer.schedule(handler, str(root.path), recursive=root.recursive)
            observer.start()
        except BaseException:
            self._stop_observer(observer)
            raise
        sub.observer = observer
        if sub.failures:
            logger.info("Watch on %s restored after %d failures", root.path, sub.failures)
        sub.failures = 0
        logger.debug("Watching %s (recursive=%s)", root.path, root.recursive)

    def _degraded(self, sub: _Subscription, reason: str, now: float) -> WatchDegraded:
        sub.failures += 1
        delay = min(
            RESTART_INITIAL_BACKOFF * (2 ** (sub.failures - 1)),
            RESTART_MAX_BACKOFF,
        )
        sub.retry_at = now + delay
        logger.warning("Watch on %s degraded: %s. Retrying in %.0fs", sub.root.path, reason, delay)
        return WatchDegraded(sub.root, reason, delay)

    def _discard_observer(self, sub: _Subscription) -> None:
        if sub.observer is not None:
            self._stop_observer(sub.observer)
            sub.observer = None

    @staticmethod
    def _stop_observer(observer: BaseObserver) -> None:
        try:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5.0)
        except (OSError, RuntimeError):
            logger.debug("Error while stopping observer", exc_info=True)

    def _stop_observers(self) -> None:
        for sub in self._subscriptions.values():
            self._discard_observer(sub)

    # === Event collection ===

    def _collect_raw(self) -> None:
        """Move raw events into the coalescer, blocking at most one poll interval."""
        timeout = self._poll_interval
        deadline = self._coalescer.next_deadline()
        if deadline is not None:
            timeout = min(timeout, max(deadline - self._clock(), 0.0))
        try:
            item = self._raw.get(timeout=timeout) if timeout > 0 else self._raw.get_nowait()
        except queue.Empty:
            return
        while True:
            root, rel_path, kind = item
            self._coalescer.add(root, rel_path, kind, self._clock())
            try:
                item = self._raw.get_nowait()
            except queue.Empty:
                return
