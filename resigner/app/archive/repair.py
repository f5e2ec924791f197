"""
Repair synthesis for structurally broken APK archives.

This module produces minimal, structurally valid replacements for the
mandatory entries reported missing or empty by the validator and merges
them into the archive at its working path.

Design guarantees:
- Entries not flagged for replacement are preserved byte-for-byte,
  in their original order.
- Synthesized content is deterministic (fixed timestamps, fixed bytes).
- An unparseable archive is rebuilt from scratch with only the three
  mandatory entries.
- The working path is replaced atomically.

Non-goal:
    The result is not a semantically meaningful application. It is
    only well-formed enough for the alignment and signing tools to
    accept.
"""

from __future__ import annotations

import logging
import struct
import zipfile
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from resigner.app.archive.container import new_entry_info, read_entries, write_entries
from resigner.app.core.config import PACKAGE_IDENTIFIER_RE
from resigner.app.core.errors import RepairError
from resigner.app.schemas.archive import (
    CODE_BLOB,
    DEFAULT_MAX_INFLATED_BYTES,
    DESCRIPTOR,
    MANDATORY_ENTRIES,
    RESOURCE_TABLE,
)

logger = logging.getLogger("resigner.repair")


TEMPLATE_ROOT = (Path(__file__).parent / "templates").resolve()

if not TEMPLATE_ROOT.is_dir():
    raise RuntimeError(f"TEMPLATE_ROOT does not exist: {TEMPLATE_ROOT}")

DEFAULT_PACKAGE_IDENTIFIER = "com.auto.rebuilt"
DEFAULT_APPLICATION_LABEL = "Rebuilt"

# dex magic "dex\n" followed by version "035\0"
DEX_MAGIC_AND_VERSION = b"dex\n035\x00"

# Size of a dex file header; the synthesized code unit is exactly one header.
DEX_HEADER_SIZE = 0x70

# ResTable_header: ResChunk_header(type=RES_TABLE_TYPE, headerSize=12,
# size=12) followed by packageCount=0.
_RES_TABLE_TYPE = 0x0002
_RES_TABLE_HEADER_SIZE = 12

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_ROOT),
    undefined=StrictUndefined,
    autoescape=True,
    keep_trailing_newline=True,
)


# ---------------------------------------------------------------------------
# Entry synthesis
# ---------------------------------------------------------------------------

def synthesize_descriptor(package_identifier: Optional[str] = None) -> bytes:
    """
    Render a minimal AndroidManifest.xml carrying ``package_identifier``.

    Raises:
        RepairError: if the identifier is not a valid package name.
    """
    identifier = package_identifier or DEFAULT_PACKAGE_IDENTIFIER

    if not PACKAGE_IDENTIFIER_RE.match(identifier):
        raise RepairError(
            f"Cannot synthesize descriptor: '{identifier}' is not a valid "
            "package identifier."
        )

    template = _env.get_template(f"{DESCRIPTOR}.j2")
    rendered = template.render(
        package_identifier=identifier,
        label=DEFAULT_APPLICATION_LABEL,
    )
    return rendered.encode("utf-8")


def synthesize_code_blob() -> bytes:
    return DEX_MAGIC_AND_VERSION.ljust(DEX_HEADER_SIZE, b"\x00")


def synthesize_resource_table() -> bytes:
    return struct.pack(
        "<HHII",
        _RES_TABLE_TYPE,
        _RES_TABLE_HEADER_SIZE,
        _RES_TABLE_HEADER_SIZE,
        0,
    )


def synthesize_entry(name: str, package_identifier: Optional[str] = None) -> bytes:
    if name == DESCRIPTOR:
        return synthesize_descriptor(package_identifier)
    if name == CODE_BLOB:
        return synthesize_code_blob()
    if name == RESOURCE_TABLE:
        return synthesize_resource_table()
    raise RepairError(f"No synthesis rule for entry '{name}'.")


def _synthesized_info(name: str) -> zipfile.ZipInfo:
    # resources.arsc must be stored uncompressed to be mmap-able.
    return new_entry_info(name, stored=name == RESOURCE_TABLE)


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge_entries(
    data: bytes,
    missing_or_empty: Iterable[str],
    package_identifier: Optional[str] = None,
    *,
    max_inflated_bytes: int = DEFAULT_MAX_INFLATED_BYTES,
) -> List[Tuple[zipfile.ZipInfo, bytes]]:
    """
    Compute the repaired entry list for archive ``data``.

    Flagged entries that exist keep their slot; absent ones are appended
    in mandatory order. Flagged entries are never inflated.

    Raises:
        RepairError: unknown flagged names, duplicate entry names, or an
            entry that must be preserved but cannot be read.
        ArchiveLimitError: the preserved entries would inflate beyond
            ``max_inflated_bytes``.
    """
    flagged = set(missing_or_empty)

    unknown = flagged - set(MANDATORY_ENTRIES)
    if unknown:
        raise RepairError(
            "No synthesis rule for entries: " + ", ".join(sorted(unknown))
        )

    entries = read_entries(
        data,
        skip=flagged,
        max_inflated_bytes=max_inflated_bytes,
    )
    if entries is None:
        logger.info("archive_total_loss_rebuild")
        return [
            (
                _synthesized_info(name),
                synthesize_entry(name, package_identifier),
            )
            for name in MANDATORY_ENTRIES
        ]

    names = [info.filename for info, _ in entries]
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise RepairError(
            "Unsupported container: duplicate entries "
            + ", ".join(duplicates)
            + " cannot be preserved unambiguously."
        )

    merged: List[Tuple[zipfile.ZipInfo, bytes]] = []
    seen = set()

    for info, payload in entries:
        name = info.filename
        seen.add(name)

        if name in flagged:
            merged.append(
                (_synthesized_info(name), synthesize_entry(name, package_identifier))
            )
            continue

        if payload is None:
            raise RepairError(
                f"Unsupported container: entry '{name}' cannot be read "
                "and therefore cannot be preserved."
            )

        merged.append((info, payload))

    for name in MANDATORY_ENTRIES:
        if name in flagged and name not in seen:
            merged.append(
                (_synthesized_info(name), synthesize_entry(name, package_identifier))
            )

    return merged


def repair_archive(
    path: Path,
    missing_or_empty: Iterable[str],
    package_identifier: Optional[str] = None,
    *,
    max_inflated_bytes: int = DEFAULT_MAX_INFLATED_BYTES,
) -> Path:
    """
    Repair the archive at ``path`` in place.

    Repairing with an empty ``missing_or_empty`` still rewrites the
    container, normalizing central directory and local headers.

    Raises:
        RepairError: if a usable archive cannot be produced.
    """
    try:
        data = path.read_bytes()
    except OSError as exc:
        raise RepairError(f"Cannot read archive for repair: {exc}") from exc

    flagged = frozenset(missing_or_empty)
    merged = merge_entries(
        data,
        flagged,
        package_identifier,
        max_inflated_bytes=max_inflated_bytes,
    )

    try:
        write_entries(merged, path)
    except OSError as exc:
        raise RepairError(f"Cannot write repaired archive: {exc}") from exc

    logger.info(
        "archive_repaired",
        extra={
            "path": str(path),
            "replaced": sorted(flagged),
            "entry_count": len(merged),
        },
    )
    return path
