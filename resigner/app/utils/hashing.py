"""
Cryptographic hashing utilities.

Provides the digest recorded for every signed artifact so callers can
check what they downloaded against what the pipeline produced.
"""

import hashlib
from pathlib import Path
from typing import Union

_CHUNK_SIZE = 1024 * 1024


def compute_artifact_hash(data: Union[bytes, bytearray]) -> str:
    """
    Compute a human-readable SHA-256 digest of artifact bytes.

    Returns:
        A hash string with an explicit algorithm prefix.
        Example: ``SHA-256:3b7c0e4c...``
    """
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(
            "compute_artifact_hash expects bytes, "
            f"got {type(data).__name__}"
        )

    return f"SHA-256:{hashlib.sha256(data).hexdigest()}"


def compute_file_hash(path: Path) -> str:
    """Streamed variant of compute_artifact_hash for files on disk."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return f"SHA-256:{hasher.hexdigest()}"
