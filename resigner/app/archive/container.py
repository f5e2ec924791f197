"""
Zip container access for APK archives.

The rest of the package never touches zipfile directly. An archive is
handled as an ordered list of (ZipInfo, payload) pairs, where a payload
of None marks an entry that exists in the central directory but cannot
be read back (encrypted, corrupt, or using an unsupported compression
method).

Decompression is always bounded. Members are inflated in fixed-size
chunks and a read stops as soon as it passes its byte budget, whatever
the central directory declares.

Error handling policy:
    Only the exceptions zipfile and zlib raise for malformed input are
    caught. Anything else indicates a logic error and propagates.
"""

from __future__ import annotations

import io
import logging
import os
import tempfile
import zipfile
import zlib
from pathlib import Path
from typing import AbstractSet, Dict, List, Optional, Tuple

from resigner.app.core.errors import ArchiveLimitError
from resigner.app.schemas.archive import DEFAULT_MAX_INFLATED_BYTES

logger = logging.getLogger("resigner.archive")

ArchiveEntry = Tuple[zipfile.ZipInfo, Optional[bytes]]

# Exceptions raised by zipfile for malformed containers or members.
_MALFORMED = (
    zipfile.BadZipFile,
    zlib.error,
    EOFError,
    NotImplementedError,
    OSError,
    ValueError,
)

_ENCRYPTED_FLAG = 0x1

_CHUNK_SIZE = 64 * 1024

# Bytes of a member kept by sample_member; enough for any header check.
SAMPLE_HEAD_SIZE = 16


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def open_archive(data: bytes) -> Optional[zipfile.ZipFile]:
    """Open archive bytes, or return None if the container is unparseable."""
    try:
        return zipfile.ZipFile(io.BytesIO(data))
    except _MALFORMED as exc:
        logger.info(
            "archive_unparseable",
            extra={
                "size": len(data),
                "error_type": type(exc).__name__,
            },
        )
        return None


def _inflate(
    zf: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    limit: int,
    keep: Optional[int] = None,
) -> Tuple[int, bytes]:
    """
    Stream one member, returning (inflated size, retained bytes).

    At most ``keep`` bytes are retained (all of them when None).

    Raises:
        ArchiveLimitError: the member inflates past ``limit`` bytes.
    """
    size = 0
    retained: List[bytes] = []
    kept = 0

    with zf.open(info) as stream:
        while True:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                break

            size += len(chunk)
            if size > limit:
                raise ArchiveLimitError(
                    f"Entry '{info.filename}' inflates beyond {limit} bytes."
                )

            if keep is None:
                retained.append(chunk)
            elif kept < keep:
                part = chunk[: keep - kept]
                retained.append(part)
                kept += len(part)

    return size, b"".join(retained)


def _unreadable(info: zipfile.ZipInfo, exc: BaseException) -> None:
    logger.warning(
        "archive_member_unreadable",
        extra={
            "entry": info.filename,
            "error_type": type(exc).__name__,
        },
    )


def sample_member(
    zf: zipfile.ZipFile,
    info: zipfile.ZipInfo,
    limit: int,
) -> Optional[bytes]:
    """
    Check that a member reads back cleanly within ``limit`` bytes.

    Returns the first SAMPLE_HEAD_SIZE bytes (empty for an empty member),
    or None if the member is encrypted, corrupt or oversized. Memory use
    is bounded by the chunk size whatever the member declares.
    """
    if info.flag_bits & _ENCRYPTED_FLAG:
        return None

    if info.file_size > limit:
        logger.warning(
            "archive_member_oversized",
            extra={"entry": info.filename, "declared_size": info.file_size},
        )
        return None

    try:
        _, head = _inflate(zf, info, limit, keep=SAMPLE_HEAD_SIZE)
    except (ArchiveLimitError, *_MALFORMED) as exc:
        _unreadable(info, exc)
        return None
    return head


def latest_members(zf: zipfile.ZipFile) -> Dict[str, zipfile.ZipInfo]:
    """Map names to members; duplicate names resolve to the last occurrence."""
    return {info.filename: info for info in zf.infolist()}


def read_entries(
    data: bytes,
    *,
    skip: AbstractSet[str] = frozenset(),
    max_inflated_bytes: int = DEFAULT_MAX_INFLATED_BYTES,
) -> Optional[List[ArchiveEntry]]:
    """
    Parse archive bytes into ordered entries, duplicates included.

    Returns None if the container itself cannot be opened (total loss).
    Members named in ``skip`` are listed with a None payload and never
    inflated.

    Raises:
        ArchiveLimitError: the declared or actual inflated size of the
            remaining members exceeds ``max_inflated_bytes``.
    """
    zf = open_archive(data)
    if zf is None:
        return None

    with zf:
        members = zf.infolist()
        wanted = [info for info in members if info.filename not in skip]

        declared = sum(info.file_size for info in wanted)
        if declared > max_inflated_bytes:
            raise ArchiveLimitError(
                f"Archive declares {declared} inflated bytes; "
                f"the limit is {max_inflated_bytes}."
            )

        budget = max_inflated_bytes
        entries: List[ArchiveEntry] = []

        for info in members:
            if info.filename in skip or info.flag_bits & _ENCRYPTED_FLAG:
                entries.append((info, None))
                continue

            try:
                size, payload = _inflate(zf, info, budget)
            except _MALFORMED as exc:
                _unreadable(info, exc)
                entries.append((info, None))
                continue

            budget -= size
            entries.append((info, payload))

    return entries


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def _clone_info(info: zipfile.ZipInfo) -> zipfile.ZipInfo:
    """
    Copy the metadata that defines an entry, dropping offsets, flags and
    extra fields tied to its position in the source container.
    """
    clone = zipfile.ZipInfo(info.filename, date_time=info.date_time)
    clone.compress_type = info.compress_type
    clone.external_attr = info.external_attr
    clone.create_system = info.create_system
    clone.comment = info.comment
    return clone


def new_entry_info(name: str, *, stored: bool = False) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(name, date_time=(1980, 1, 1, 0, 0, 0))
    info.compress_type = zipfile.ZIP_STORED if stored else zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    return info


def serialize_entries(entries: List[Tuple[zipfile.ZipInfo, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as zf:
        for info, payload in entries:
            zf.writestr(_clone_info(info), payload)
    return buffer.getvalue()


def write_entries(
    entries: List[Tuple[zipfile.ZipInfo, bytes]],
    path: Path,
) -> Path:
    """
    Write entries to ``path`` atomically.

    The archive is assembled in a sibling temporary file and moved into
    place, so a crash never leaves a half-written archive at ``path``.
    """
    payload = serialize_entries(entries)

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=path.parent,
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    return path
