"""Configuration classes for docsync.

This module defines the configuration consumed by the agent:
- ServerConfig: Remote service connection and authentication
- UploadMeta: Optional metadata sent with every upload
- RetryPolicy: Backoff schedule and attempt budgets
- WatchedRoot: A watched directory with its filters
- AgentConfig: Everything needed to start the agent
"""

from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from docsync.core.errors import ConfigError

DEFAULT_UPLOAD_PATH = "/api/v1/upload"
DEFAULT_CHECK_PATH = "/api/v1/checkfile"

DIRECTIONS = ("incoming", "outgoing")


def _split_pair(value: str, what: str) -> tuple[str, str]:
    """Split a `name:value` pair, raising ConfigError if malformed."""
    name, sep, rest = value.partition(":")
    if not sep or not name:
        raise ConfigError(f"{what} must be a 'name:value' pair, got {value!r}")
    return name, rest


@dataclass
class ServerConfig:
    """Configuration for connecting to the remote document service.

    Attributes:
        server_url: Base URL of the server (e.g., "https://docs.example.com").
        token: Bearer token. Ignored when basic_auth or auth_header is set.
        timeout: Request/connection timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
        upload_path: Path of the ingestion endpoint.
        check_path: Path prefix of the duplicate check endpoint.
        basic_auth: Optional "user:password" for HTTP basic auth.
        auth_header: Optional "Header:Value" sent instead of a bearer token.
        collective: Optional collective (tenant) the uploads belong to.
        source_id: Optional upload source identifier on the server.
    """

    server_url: str
    token: str = ""
    timeout: float = 30.0
    verify_ssl: bool = True
    upload_path: str = DEFAULT_UPLOAD_PATH
    check_path: str = DEFAULT_CHECK_PATH
    basic_auth: str | None = None
    auth_header: str | None = None
    collective: str | None = None
    source_id: str | None = None

    def __post_init__(self) -> None:
        """Normalize server URL and validate credentials."""
        self.server_url = self.server_url.rstrip("/")
        if not self.server_url.startswith(("http://", "https://")):
            raise ConfigError(f"server_url must be an http(s) URL: {self.server_url!r}")
        if self.basic_auth is not None:
            _split_pair(self.basic_auth, "basic_auth")
        if self.auth_header is not None:
            _split_pair(self.auth_header, "auth_header")
        if not (self.token or self.basic_auth or self.auth_header):
            raise ConfigError("No credentials configured (token, basic_auth or auth_header)")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS."""
        return self.server_url.startswith("https://")

    def auth_headers(self) -> dict[str, str]:
        """Headers carrying the configured credential (basic auth excluded)."""
        if self.auth_header is not None:
            name, value = _split_pair(self.auth_header, "auth_header")
            return {name: value}
        if self.basic_auth is None:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def basic_credentials(self) -> tuple[str, str] | None:
        """Return (user, password) if basic auth is configured."""
        if self.basic_auth is None:
            return None
        return _split_pair(self.basic_auth, "basic_auth")

    def endpoint_fields(self) -> dict[str, str]:
        """Form fields identifying the collective and source, if configured."""
        fields: dict[str, str] = {}
        if self.collective:
            fields["collective"] = self.collective
        if self.source_id:
            fields["source"] = self.source_id
        return fields


@dataclass(frozen=True)
class UploadMeta:
    """Optional item metadata sent as extra form fields.

    Duplicates are skipped by the server unless `skip_duplicates` is turned
    off. This is independent of the client-side `remote_dedup` check.
    """

    folder: str | None = None
    direction: str | None = None
    language: str | None = None
    file_filter: str | None = None
    tags: tuple[str, ...] = ()
    skip_duplicates: bool = True

    def __post_init__(self) -> None:
        if self.direction is not None and self.direction not in DIRECTIONS:
            raise ConfigError(
                f"direction must be one of {', '.join(DIRECTIONS)}, got {self.direction!r}"
            )

    def form_fields(self) -> dict[str, str | list[str]]:
        """Return the non-empty metadata as multipart form fields."""
        fields: dict[str, str | list[str]] = {}
        if self.folder:
            fields["folder"] = self.folder
        if self.direction:
            fields["direction"] = self.direction
        if self.language:
            fields["language"] = self.language
        if self.file_filter:
            fields["file_filter"] = self.file_filter
        if self.tags:
            fields["tag"] = list(self.tags)
        if self.skip_duplicates:
            fields["skip_duplicates"] = "true"
        return fields


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for uploads.

    Attributes:
        max_attempts: Attempts per upload job (in-process retries).
        max_total_attempts: Attempts per file content across retry sweeps
            and restarts, tracked in the persisted record.
        base_delay: First backoff delay in seconds.
        max_delay: Cap for a single backoff delay.
        multiplier: Growth factor between consecutive delays.
    """

    max_attempts: int = 5
    max_total_attempts: int = 10
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1 or self.max_total_attempts < 1:
            raise ConfigError("Attempt counts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ConfigError("Backoff delays must satisfy 0 <= base_delay <= max_delay")
        if self.multiplier < 1:
            raise ConfigError("Backoff multiplier must be >= 1")

    def delay(self, retry_number: int) -> float:
        """Backoff before retry number `retry_number` (1-based)."""
        exponent = max(retry_number - 1, 0)
        return min(self.base_delay * (self.multiplier ** exponent), self.max_delay)


def _root_id_for(path: Path) -> str:
    digest = hashlib.sha256(str(path).encode("utf-8")).hexdigest()[:12]
    name = "".join(c if c.isalnum() or c in "-_" else "_" for c in path.name) or "root"
    return f"{name}-{digest}"


@dataclass(frozen=True)
class WatchedRoot:
    """A directory watched for new documents.

    Attributes:
        path: Absolute, resolved directory path.
        recursive: Whether subdirectories are watched too.
        include: Glob patterns a file must match (empty means all files).
        exclude: Glob patterns that exclude a file.
    """

    path: Path
    recursive: bool = True
    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "path", Path(self.path).expanduser().resolve())
        object.__setattr__(self, "include", tuple(self.include))
        object.__setattr__(self, "exclude", tuple(self.exclude))

    @property
    def root_id(self) -> str:
        """Stable identifier derived from the root path."""
        return _root_id_for(self.path)

    def relative(self, path: Path) -> str:
        """Return `path` relative to this root, with forward slashes.

        Raises:
            ValueError: If path is not inside the root.
        """
        return path.relative_to(self.path).as_posix()

    def resolve(self, rel_path: str) -> Path:
        """Return the absolute path of a root-relative path."""
        return self.path / rel_path


@dataclass
class AgentConfig:
    """Complete agent configuration.

    Attributes:
        roots: Directories to watch.
        server: Remote service configuration.
        state_dir: Directory holding per-root state files and the lock file.
        max_workers: Concurrent upload limit.
        debounce_ms: Event coalescing window.
        retry: Upload retry policy.
        meta: Metadata attached to every upload.
        delete_after_upload: Delete local files once their upload is committed.
        remote_dedup: Ask the server whether content already exists first.
    """

    roots: list[WatchedRoot]
    server: ServerConfig
    state_dir: Path
    max_workers: int = 4
    debounce_ms: int = 500
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    meta: UploadMeta = field(default_factory=UploadMeta)
    delete_after_upload: bool = False
    remote_dedup: bool = False

    def __post_init__(self) -> None:
        if not self.roots:
            raise ConfigError("At least one watched root is required")
        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")
        if self.debounce_ms < 0:
            raise ConfigError("debounce_ms must not be negative")
        ids = [root.root_id for root in self.roots]
        if len(set(ids)) != len(ids):
            raise ConfigError("Watched roots must be distinct")
        self.state_dir = Path(self.state_dir).expanduser()

    @property
    def lock_path(self) -> Path:
        """Path of the instance lock file."""
        return self.state_dir / "docsync.lock"

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_state_dir: Path) -> AgentConfig:
        """Build a config from parsed JSON.

        The `DOCSYNC_TOKEN` environment variable overrides the token.

        Raises:
            ConfigError: If required keys are missing or values are invalid.
        """
        try:
            server_data = dict(data["server"])
            token = os.environ.get("DOCSYNC_TOKEN")
            if token:
                server_data["token"] = token
            server = ServerConfig(**server_data)

            roots = []
            for entry in data["roots"]:
                if isinstance(entry, str):
                    entry = {"path": entry}
                roots.append(
                    WatchedRoot(
                        path=Path(entry["path"]),
                        recursive=bool(entry.get("recursive", True)),
                        include=tuple(entry.get("include", ())),
                        exclude=tuple(entry.get("exclude", ())),
                    )
                )

            meta_data = dict(data.get("meta", {}))
            if "tags" in meta_data:
                meta_data["tags"] = tuple(meta_data["tags"])

            return cls(
                roots=roots,
                server=server,
                state_dir=Path(data.get("state_dir", default_state_dir)),
                max_workers=int(data.get("max_workers", 4)),
                debounce_ms=int(data.get("debounce_ms", 500)),
                retry=RetryPolicy(**data.get("retry", {})),
                meta=UploadMeta(**meta_data),
                delete_after_upload=bool(data.get("delete_after_upload", False)),
                remote_dedup=bool(data.get("remote_dedup", False)),
            )
        except KeyError as e:
            raise ConfigError(f"Missing configuration key: {e.args[0]}") from e
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
