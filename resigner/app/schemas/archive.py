"""
Archive structure schemas.

Names the three mandatory APK entries and the immutable result of a
structural validation pass.
"""

from typing import FrozenSet

from pydantic import BaseModel, ConfigDict, Field


DESCRIPTOR = "AndroidManifest.xml"
CODE_BLOB = "classes.dex"
RESOURCE_TABLE = "resources.arsc"

# Order is significant: synthesized entries are appended in this order.
MANDATORY_ENTRIES = (DESCRIPTOR, CODE_BLOB, RESOURCE_TABLE)

# Upper bound on inflated bytes read from one archive. An entry or archive
# declaring more than this is never decompressed.
DEFAULT_MAX_INFLATED_BYTES = 256 * 1024 * 1024


class ValidationPolicy(BaseModel):
    """
    Corruption-detection policy.

    One rule for every archive: each required entry must be present,
    readable, non-empty and no larger than max_entry_bytes once inflated.
    The code-blob header check is opt-in.
    """

    required_entries: FrozenSet[str] = Field(
        default=frozenset(MANDATORY_ENTRIES),
    )

    check_code_header: bool = Field(
        False,
        description="Also require the dex magic and version token",
    )

    max_entry_bytes: int = Field(
        DEFAULT_MAX_INFLATED_BYTES,
        gt=0,
        description="Entries inflating beyond this are treated as unusable",
    )

    model_config = ConfigDict(frozen=True)


class ValidationResult(BaseModel):
    """Structural verdict for a single archive. Discarded after one step."""

    sound: bool

    parseable: bool = Field(
        True,
        description="False when the container could not be opened at all",
    )

    missing_or_empty: FrozenSet[str] = Field(default_factory=frozenset)

    model_config = ConfigDict(frozen=True)

    @property
    def total_loss(self) -> bool:
        return not self.parseable
