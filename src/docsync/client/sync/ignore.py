"""Include/exclude filtering for watched files.

This module provides:
- PathFilter: Decides whether a root-relative path is delivered
- DEFAULT_EXCLUDE_PATTERNS: Editor, OS and temporary files never uploaded
"""

from __future__ import annotations

import fnmatch
from pathlib import Path

from docsync.core.config import WatchedRoot

# Temporary and system files (atomic-write temp files included)
DEFAULT_EXCLUDE_PATTERNS = [
    ".git/**",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.tmp",
    "*.temp",
    "*.part",
    "*.crdownload",
    "~*",
    ".~lock.*",
    "*.swp",
    "*.swo",
]


def _matches(rel_str: str, pattern: str) -> bool:
    name = rel_str.rsplit("/", 1)[-1]
    # Directory patterns (ending with /) match any path below that directory
    if pattern.endswith("/"):
        prefix = pattern[:-1]
        parts = rel_str.split("/")[:-1]
        return any(fnmatch.fnmatch(part, prefix) for part in parts)
    # Patterns with a slash match the whole relative path, others the file name
    if "/" in pattern:
        return fnmatch.fnmatch(rel_str, pattern)
    return fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_str, pattern)


class PathFilter:
    """Applies a root's recursive flag and glob patterns to paths."""

    def __init__(
        self,
        root: WatchedRoot,
        use_default_excludes: bool = True,
    ) -> None:
        """Initialize the filter.

        Args:
            root: Watched root carrying include/exclude patterns.
            use_default_excludes: Also exclude DEFAULT_EXCLUDE_PATTERNS.
        """
        self._root = root
        self._include = list(root.include)
        self._exclude = list(root.exclude)
        if use_default_excludes:
            self._exclude.extend(DEFAULT_EXCLUDE_PATTERNS)

    @property
    def root(self) -> WatchedRoot:
        return self._root

    def accepts(self, rel_path: str) -> bool:
        """Check if a root-relative file path should be delivered."""
        if not rel_path or rel_path.startswith("../"):
            return False
        if not self._root.recursive and "/" in rel_path:
            return False
        if any(_matches(rel_path, pattern) for pattern in self._exclude):
            return False
        if self._include:
            return any(_matches(rel_path, pattern) for pattern in self._include)
        return True

    def accepts_path(self, path: Path) -> bool:
        """Check an absolute path. Symlinks and paths outside the root are rejected."""
        if path.is_symlink():
            return False
        try:
            rel_path = self._root.relative(path)
        except ValueError:
            return False
        return self.accepts(rel_path)
