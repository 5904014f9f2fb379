"""Exception hierarchy for docsync.

This module provides:
- DocSyncError: Base exception for all docsync errors
- IoFailure: Local read/write failure
- CorruptState: Persisted state cannot be parsed
- AlreadyRunning: Another agent holds the instance lock
- ConfigError: Invalid configuration
- UploadError / UploadErrorKind: Classified remote delivery failures
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path


class DocSyncError(Exception):
    """Base exception for docsync errors."""


class IoFailure(DocSyncError):
    """A local file could not be read or written."""

    def __init__(self, path: Path | str, message: str) -> None:
        self.path = Path(path)
        super().__init__(f"{path}: {message}")


class CorruptState(DocSyncError):
    """A persisted state file exists but cannot be parsed.

    The agent refuses to operate on the affected root until an operator
    repairs or removes the file.
    """

    def __init__(self, path: Path | str, message: str) -> None:
        self.path = Path(path)
        super().__init__(f"Corrupt state file {path}: {message}")


class AlreadyRunning(DocSyncError):
    """Another live process holds the instance lock."""

    def __init__(self, lock_path: Path | str, owner_pid: int | None = None) -> None:
        self.lock_path = Path(lock_path)
        self.owner_pid = owner_pid
        owner = f" (pid {owner_pid})" if owner_pid else ""
        super().__init__(f"Another docsync agent is running{owner}: {lock_path}")


class ConfigError(DocSyncError):
    """Configuration is missing or invalid."""


class UploadErrorKind(str, Enum):
    """Classification of an upload failure."""

    TRANSIENT = "transient"  # Timeout, connection reset, 5xx
    PERMANENT = "permanent"  # 4xx other than 429, malformed response
    RATE_LIMITED = "rate_limited"  # 429


class UploadError(DocSyncError):
    """Failed to deliver a file to the remote service.

    Attributes:
        kind: Failure classification (decides retry behavior).
        status_code: HTTP status code, if a response was received.
        retry_after: Server-supplied retry hint in seconds, if any.
    """

    def __init__(
        self,
        kind: UploadErrorKind,
        message: str,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_retryable(self) -> bool:
        """Check if the failure may succeed on a later attempt."""
        return self.kind != UploadErrorKind.PERMANENT

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.kind.value} (HTTP {self.status_code}): {self.args[0]}"
        return f"{self.kind.value}: {self.args[0]}"
