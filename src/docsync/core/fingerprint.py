"""Content fingerprints used as deduplication keys.

Files are hashed with SHA-256, streamed in bounded-size blocks so that
arbitrarily large files never have to be loaded into memory.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from docsync.core.errors import IoFailure

DIGEST_SIZE = 32  # SHA-256
READ_BLOCK_SIZE = 64 * 1024  # 64 KiB


@dataclass(frozen=True)
class Fingerprint:
    """SHA-256 digest of a file's full content."""

    digest: bytes

    def __post_init__(self) -> None:
        if len(self.digest) != DIGEST_SIZE:
            raise ValueError(
                f"Fingerprint must be {DIGEST_SIZE} bytes, got {len(self.digest)}"
            )

    def hex(self) -> str:
        """Return the lowercase hex encoding (64 characters)."""
        return self.digest.hex()

    @classmethod
    def from_hex(cls, value: str) -> Fingerprint:
        """Parse a hex-encoded fingerprint.

        Raises:
            ValueError: If the value is not a valid 64-character hex string.
        """
        return cls(bytes.fromhex(value))

    def __str__(self) -> str:
        return self.hex()


def compute_fingerprint(
    stream: BinaryIO,
    block_size: int = READ_BLOCK_SIZE,
    name: str = "<stream>",
) -> Fingerprint:
    """Compute the fingerprint of a readable byte stream.

    Args:
        stream: Binary stream positioned at the start of the content.
        block_size: Maximum number of bytes read per call.
        name: Name used in error messages.

    Returns:
        Fingerprint of everything read until end of stream.

    Raises:
        IoFailure: If the stream cannot be read to completion.
    """
    hasher = hashlib.sha256()
    try:
        for block in iter(lambda: stream.read(block_size), b""):
            hasher.update(block)
    except OSError as e:
        raise IoFailure(name, f"read failed: {e}") from e
    return Fingerprint(hasher.digest())


def fingerprint_file(path: Path, block_size: int = READ_BLOCK_SIZE) -> Fingerprint:
    """Compute the fingerprint of a file on disk.

    Raises:
        IoFailure: If the file cannot be opened or read.
    """
    try:
        with open(path, "rb") as f:
            return compute_fingerprint(f, block_size=block_size, name=str(path))
    except OSError as e:
        raise IoFailure(path, f"cannot open: {e}") from e
