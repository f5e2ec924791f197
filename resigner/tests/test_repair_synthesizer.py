"""
Repair synthesizer tests.

Every repaired archive must validate as sound, keep every entry it was
not asked to replace byte-for-byte and in order, and be rewritten
atomically at its working path.
"""

import itertools
import struct
import xml.etree.ElementTree as ET

import pytest

from resigner.app.archive.repair import (
    DEX_HEADER_SIZE,
    repair_archive,
    synthesize_code_blob,
    synthesize_descriptor,
    synthesize_resource_table,
)
from resigner.app.archive.validator import has_dex_header, validate_archive
from resigner.app.core.errors import ArchiveLimitError, RepairError
from resigner.app.schemas.archive import (
    CODE_BLOB,
    DESCRIPTOR,
    MANDATORY_ENTRIES,
    RESOURCE_TABLE,
)
from resigner.tests.fixtures.apk_factory import (
    apk_with_corrupt_entry,
    apk_with_duplicate,
    apk_with_empty,
    apk_with_padding,
    apk_without,
    default_entries,
    entry_names,
    mark_encrypted,
    not_an_archive,
    read_entries,
    valid_apk,
)

ANDROID_NS = "{http://schemas.android.com/apk/res/android}"


def _repair_bytes(tmp_path, data, missing, package_identifier=None):
    path = tmp_path / "input.apk"
    path.write_bytes(data)
    repair_archive(path, missing, package_identifier)
    return path.read_bytes()


# ---------------------------------------------------------------------------
# Synthesized entries
# ---------------------------------------------------------------------------

def test_code_blob_is_a_bare_dex_header():
    blob = synthesize_code_blob()

    assert len(blob) == DEX_HEADER_SIZE
    assert blob.startswith(b"dex\n035\x00")
    assert has_dex_header(blob)


def test_resource_table_is_an_empty_table_chunk():
    table = synthesize_resource_table()

    chunk_type, header_size, size, package_count = struct.unpack("<HHII", table)
    assert (chunk_type, header_size, size, package_count) == (0x0002, 12, 12, 0)
    assert len(table) == 12


def test_descriptor_defaults_to_placeholder_package():
    root = ET.fromstring(synthesize_descriptor())

    assert root.tag == "manifest"
    assert root.attrib["package"] == "com.auto.rebuilt"
    application = root.find("application")
    assert application is not None
    assert application.attrib[f"{ANDROID_NS}label"] == "Rebuilt"


def test_descriptor_carries_custom_package():
    root = ET.fromstring(synthesize_descriptor("org.example.demo"))

    assert root.attrib["package"] == "org.example.demo"


@pytest.mark.parametrize(
    "identifier",
    ["nodots", "1com.example", 'com.example"><evil', "com..example"],
)
def test_descriptor_rejects_invalid_package(identifier):
    with pytest.raises(RepairError):
        synthesize_descriptor(identifier)


def test_synthesis_is_deterministic(tmp_path):
    first = _repair_bytes(tmp_path, not_an_archive(), MANDATORY_ENTRIES)
    second = _repair_bytes(tmp_path, not_an_archive(), MANDATORY_ENTRIES)

    assert first == second


# ---------------------------------------------------------------------------
# Merge behaviour
# ---------------------------------------------------------------------------

def test_zero_byte_descriptor_is_replaced_and_rest_preserved(tmp_path):
    original = apk_with_empty(DESCRIPTOR)

    repaired = _repair_bytes(tmp_path, original, {DESCRIPTOR})

    before = read_entries(original)
    after = read_entries(repaired)

    assert validate_archive(repaired).sound is True
    assert b'package="com.auto.rebuilt"' in after[DESCRIPTOR]
    for name, payload in before.items():
        if name != DESCRIPTOR:
            assert after[name] == payload
    assert entry_names(repaired) == entry_names(original)


_SUBSETS = [
    frozenset(combo)
    for size in range(1, len(MANDATORY_ENTRIES) + 1)
    for combo in itertools.combinations(MANDATORY_ENTRIES, size)
]


@pytest.mark.parametrize("flagged", _SUBSETS, ids=lambda s: "+".join(sorted(s)))
@pytest.mark.parametrize("defect", ["absent", "empty"])
def test_any_flagged_subset_repairs_to_sound(tmp_path, flagged, defect):
    if defect == "absent":
        original = apk_without(*flagged)
    else:
        original = apk_with_empty(*flagged)

    repaired = _repair_bytes(tmp_path, original, flagged)

    assert validate_archive(repaired).sound is True

    after = read_entries(repaired)
    for name, payload in default_entries().items():
        if name not in flagged:
            assert after[name] == payload


def test_absent_entries_are_appended_in_mandatory_order(tmp_path):
    original = apk_without(DESCRIPTOR, RESOURCE_TABLE)

    repaired = _repair_bytes(tmp_path, original, {RESOURCE_TABLE, DESCRIPTOR})

    names = entry_names(repaired)
    assert names[: len(entry_names(original))] == entry_names(original)
    assert names[-2:] == [DESCRIPTOR, RESOURCE_TABLE]


def test_total_loss_rebuilds_only_mandatory_entries(tmp_path):
    repaired = _repair_bytes(tmp_path, not_an_archive(), MANDATORY_ENTRIES)

    assert entry_names(repaired) == list(MANDATORY_ENTRIES)
    assert validate_archive(repaired).sound is True


def test_repair_is_idempotent(tmp_path):
    once = _repair_bytes(tmp_path, apk_with_empty(CODE_BLOB), {CODE_BLOB})

    path = tmp_path / "input.apk"
    repair_archive(path, validate_archive(once).missing_or_empty)
    twice = path.read_bytes()

    assert validate_archive(twice).sound is True
    assert read_entries(twice) == read_entries(once)


def test_corrupt_flagged_entry_is_replaced(tmp_path):
    original = apk_with_corrupt_entry(CODE_BLOB)

    repaired = _repair_bytes(tmp_path, original, {CODE_BLOB})

    assert read_entries(repaired)[CODE_BLOB] == synthesize_code_blob()


def test_unreadable_unflagged_entry_is_unsupported(tmp_path):
    original = apk_with_corrupt_entry("assets/blob.bin", drop=[DESCRIPTOR])
    path = tmp_path / "input.apk"
    path.write_bytes(original)

    with pytest.raises(RepairError, match="Unsupported container"):
        repair_archive(path, {DESCRIPTOR})

    assert path.read_bytes() == original


def test_encrypted_unflagged_entry_is_unsupported(tmp_path):
    original = mark_encrypted(apk_with_empty(DESCRIPTOR), "res/layout/main.xml")
    path = tmp_path / "input.apk"
    path.write_bytes(original)

    with pytest.raises(RepairError):
        repair_archive(path, {DESCRIPTOR})


MIB = 1024 * 1024


def test_entries_inflating_past_the_limit_are_rejected(tmp_path):
    original = apk_with_padding(4 * MIB)
    path = tmp_path / "input.apk"
    path.write_bytes(original)

    with pytest.raises(ArchiveLimitError) as exc_info:
        repair_archive(path, set(), max_inflated_bytes=MIB)

    assert isinstance(exc_info.value, RepairError)
    assert path.read_bytes() == original


def test_oversized_flagged_entry_is_replaced_without_inflating_it(tmp_path):
    path = tmp_path / "input.apk"
    path.write_bytes(apk_with_padding(4 * MIB, name=CODE_BLOB))

    repair_archive(path, {CODE_BLOB}, max_inflated_bytes=MIB)

    repaired = path.read_bytes()
    assert read_entries(repaired)[CODE_BLOB] == synthesize_code_blob()
    assert validate_archive(repaired).sound is True


def test_duplicate_entry_names_are_unsupported(tmp_path):
    original = apk_with_duplicate("res/layout/main.xml")
    path = tmp_path / "input.apk"
    path.write_bytes(original)

    with pytest.raises(RepairError, match="duplicate entries res/layout/main.xml"):
        repair_archive(path, set())

    assert path.read_bytes() == original


def test_unknown_flagged_entry_is_rejected(tmp_path):
    path = tmp_path / "input.apk"
    path.write_bytes(valid_apk())

    with pytest.raises(RepairError, match="No synthesis rule"):
        repair_archive(path, {"lib/arm64-v8a/libfoo.so"})


def test_missing_input_raises_repair_error(tmp_path):
    with pytest.raises(RepairError):
        repair_archive(tmp_path / "absent.apk", {DESCRIPTOR})


def test_resource_table_is_stored_uncompressed(tmp_path):
    import io
    import zipfile

    repaired = _repair_bytes(tmp_path, apk_without(RESOURCE_TABLE), {RESOURCE_TABLE})

    with zipfile.ZipFile(io.BytesIO(repaired)) as zf:
        assert zf.getinfo(RESOURCE_TABLE).compress_type == zipfile.ZIP_STORED


def test_repair_leaves_no_temporary_files(tmp_path):
    _repair_bytes(tmp_path, apk_with_empty(DESCRIPTOR), {DESCRIPTOR})

    assert sorted(p.name for p in tmp_path.iterdir()) == ["input.apk"]


def test_custom_package_identifier_flows_into_descriptor(tmp_path):
    repaired = _repair_bytes(
        tmp_path,
        apk_without(DESCRIPTOR),
        {DESCRIPTOR},
        package_identifier="org.example.rebuilt",
    )

    root = ET.fromstring(read_entries(repaired)[DESCRIPTOR])
    assert root.attrib["package"] == "org.example.rebuilt"
