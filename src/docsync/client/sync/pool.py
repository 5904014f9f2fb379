"""Worker pool with per-key serialization.

This module provides:
- WorkerPool: Bounded thread pool that never runs two tasks of one key at once
- PoolState: Lifecycle of the pool

Tasks are keyed (by root and path for uploads). Distinct keys run in
parallel; a task submitted for a key that is queued or running replaces any
not-yet-started task of that key and runs after the current one finishes.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Hashable
from enum import Enum, auto

logger = logging.getLogger(__name__)

Task = Callable[[], None]


class PoolState(Enum):
    """State of the worker pool."""

    STOPPED = auto()
    RUNNING = auto()
    STOPPING = auto()


class WorkerPool:
    """Pool of worker threads draining a shared task queue.

    Usage:
        pool = WorkerPool(max_workers=4)
        pool.start()
        pool.submit(("root", "a.txt"), lambda: upload("a.txt"))
        pool.wait_idle(timeout=10)
        pool.stop()
    """

    def __init__(self, max_workers: int = 4, name: str = "WorkerPool") -> None:
        """Initialize the worker pool.

        Args:
            max_workers: Number of worker threads (concurrency limit).
            name: Thread name prefix.
        """
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._max_workers = max_workers
        self._name = name

        self._pool_state = PoolState.STOPPED
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

        # Queue of keys ready to run; the task itself lives in _tasks
        self._queue: queue.Queue[Hashable | None] = queue.Queue()
        self._tasks: dict[Hashable, Task] = {}  # key -> next task to run
        self._running: set[Hashable] = set()
        self._queued: set[Hashable] = set()

        self._workers: list[threading.Thread] = []

        # Statistics
        self._completed_count = 0
        self._error_count = 0
        self._max_active = 0

    @property
    def state(self) -> PoolState:
        return self._pool_state

    @property
    def max_workers(self) -> int:
        return self._max_workers

    @property
    def active_count(self) -> int:
        """Number of tasks currently running."""
        with self._lock:
            return len(self._running)

    @property
    def pending_count(self) -> int:
        """Number of tasks waiting to run."""
        with self._lock:
            return len(self._tasks)

    @property
    def completed_count(self) -> int:
        return self._completed_count

    @property
    def error_count(self) -> int:
        return self._error_count

    @property
    def max_active(self) -> int:
        """Highest number of simultaneously running tasks observed."""
        return self._max_active

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._pool_state != PoolState.STOPPED:
                logger.warning("Worker pool already running")
                return

            self._pool_state = PoolState.RUNNING
            for i in range(self._max_workers):
                thread = threading.Thread(
                    target=self._worker_loop,
                    name=f"{self._name}-{i}",
                    daemon=True,
                )
                thread.start()
                self._workers.append(thread)

        logger.info("Worker pool started with %d workers", self._max_workers)

    def stop(self, timeout: float = 30.0) -> None:
        """Stop the pool, letting running tasks finish.

        Tasks that have not started yet are dropped.

        Args:
            timeout: Maximum total time to wait for running tasks.
        """
        with self._lock:
            if self._pool_state == PoolState.STOPPED:
                return
            self._pool_state = PoolState.STOPPING
            dropped = len(self._tasks)
            self._tasks.clear()
            self._queued.clear()
            logger.info("Worker pool stopping (%d queued tasks dropped)", dropped)

            # Poison pills
            for _ in self._workers:
                self._queue.put(None)
            workers = list(self._workers)

        deadline = time.monotonic() + timeout
        for worker in workers:
            worker.join(timeout=max(deadline - time.monotonic(), 0.0))
            if worker.is_alive():
                logger.warning("Worker %s did not finish within timeout", worker.name)

        with self._lock:
            self._pool_state = PoolState.STOPPED
            self._workers.clear()
            self._idle.notify_all()
        logger.info("Worker pool stopped")

    def submit(self, key: Hashable, task: Task) -> bool:
        """Submit a task for a key.

        Returns:
            True if accepted, False if the pool is not running.
        """
        with self._lock:
            if self._pool_state != PoolState.RUNNING:
                logger.debug("Cannot submit task for %s: pool not running", key)
                return False

            self._tasks[key] = task
            if key in self._running or key in self._queued:
                # Runs once the current task of this key finishes
                return True
            self._queued.add(key)
            self._queue.put(key)
            return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no task is queued or running.

        Returns:
            True if the pool became idle, False on timeout.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._tasks or self._running:
                if self._pool_state == PoolState.STOPPED:
                    return not self._running
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True

    def _worker_loop(self) -> None:
        """Main loop for worker threads."""
        while True:
            key = self._queue.get()
            if key is None:
                break

            with self._lock:
                self._queued.discard(key)
                task = self._tasks.pop(key, None)
                if task is None:
                    # Dropped by stop()
                    continue
                self._running.add(key)
                self._max_active = max(self._max_active, len(self._running))

            failed = False
            try:
                task()
            except Exception:
                failed = True
                logger.exception("Task error: %s", key)
            finally:
                with self._lock:
                    if failed:
                        self._error_count += 1
                    else:
                        self._completed_count += 1
                    self._running.discard(key)
                    if key in self._tasks and self._pool_state == PoolState.RUNNING:
                        self._queued.add(key)
                        self._queue.put(key)
                    elif key in self._tasks:
                        del self._tasks[key]
                    self._idle.notify_all()
