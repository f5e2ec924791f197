"""
Archive structure validation.

Determines whether an uploaded APK is structurally sound enough to hand
to the external align/sign/verify tools.

Policy (single rule for all archives):
    Each required entry (AndroidManifest.xml, classes.dex,
    resources.arsc) must be present, readable, and non-empty, and must
    not inflate beyond the policy's max_entry_bytes.
    Optionally, classes.dex must also start with the dex magic and a
    three-digit version token.

    An archive whose container cannot be opened at all is a total loss:
    every required entry is reported missing.

    Only the required entries are ever decompressed, each with a bounded
    streaming read; other members are not touched.

Validation is a pure function. It never raises for malformed input;
a broken container is a data result, not an error.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Set

from resigner.app.archive.container import (
    latest_members,
    open_archive,
    sample_member,
)
from resigner.app.core.errors import ValidationError
from resigner.app.schemas.archive import (
    CODE_BLOB,
    ValidationPolicy,
    ValidationResult,
)

# "dex\n" + three ASCII digits + NUL
_DEX_HEADER_RE = re.compile(rb"\Adex\n[0-9]{3}\x00")

DEFAULT_POLICY = ValidationPolicy()


def has_dex_header(payload: bytes) -> bool:
    return _DEX_HEADER_RE.match(payload) is not None


def validate_archive(
    data: bytes,
    policy: Optional[ValidationPolicy] = None,
) -> ValidationResult:
    """Inspect archive bytes and report structural soundness."""
    policy = policy or DEFAULT_POLICY

    zf = open_archive(data)
    if zf is None:
        return ValidationResult(
            sound=False,
            parseable=False,
            missing_or_empty=frozenset(policy.required_entries),
        )

    missing: Set[str] = set()

    with zf:
        members = latest_members(zf)

        for name in sorted(policy.required_entries):
            info = members.get(name)
            head = (
                sample_member(zf, info, policy.max_entry_bytes)
                if info is not None and info.file_size > 0
                else None
            )

            if not head:
                missing.add(name)
                continue

            if (
                name == CODE_BLOB
                and policy.check_code_header
                and not has_dex_header(head)
            ):
                missing.add(name)

    return ValidationResult(
        sound=not missing,
        parseable=True,
        missing_or_empty=frozenset(missing),
    )


def validate_path(
    path: Path,
    policy: Optional[ValidationPolicy] = None,
) -> ValidationResult:
    return validate_archive(path.read_bytes(), policy)


def ensure_sound(result: ValidationResult) -> None:
    """Raise ValidationError unless the result is sound."""
    if not result.sound:
        raise ValidationError(result.missing_or_empty)
