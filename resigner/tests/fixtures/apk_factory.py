"""
Deterministic APK byte factories for archive, pipeline and API tests.

None of these produce installable applications. They only reproduce the
container-level shapes the validator and repair synthesizer care about.
"""

import io
import struct
import warnings
import zipfile
from typing import Dict, Iterable, Optional


# ------------------------------------------------------------------
# Entry payloads
# ------------------------------------------------------------------

# Binary XML chunk header (RES_XML_TYPE) followed by filler; the
# validator only checks presence and size.
MANIFEST_BYTES = struct.pack("<HHI", 0x0003, 0x0008, 0x40) + b"\x01" * 0x38

# dex header (magic + version) followed by a recognizable body
DEX_BYTES = b"dex\n035\x00" + bytes(range(104)) + b"original-code"

ARSC_BYTES = struct.pack("<HHII", 0x0002, 0x000C, 0x20, 1) + b"\x02" * 20

LAYOUT_BYTES = b"<LinearLayout/>"

CERT_MANIFEST_BYTES = b"Manifest-Version: 1.0\r\nCreated-By: test\r\n\r\n"

CORRUPTIBLE_PAYLOAD = b"CORRUPT-ME-" * 8


def default_entries() -> Dict[str, bytes]:
    return {
        "AndroidManifest.xml": MANIFEST_BYTES,
        "classes.dex": DEX_BYTES,
        "res/layout/main.xml": LAYOUT_BYTES,
        "resources.arsc": ARSC_BYTES,
        "META-INF/MANIFEST.MF": CERT_MANIFEST_BYTES,
    }


# ------------------------------------------------------------------
# Archive builders
# ------------------------------------------------------------------

def build_apk(entries: Dict[str, bytes], *, stored: Iterable[str] = ()) -> bytes:
    stored = set(stored)
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as zf:
        for name, payload in entries.items():
            info = zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0))
            info.compress_type = (
                zipfile.ZIP_STORED if name in stored else zipfile.ZIP_DEFLATED
            )
            zf.writestr(info, payload)
    return buffer.getvalue()


def valid_apk(extra: Optional[Dict[str, bytes]] = None) -> bytes:
    entries = default_entries()
    entries.update(extra or {})
    return build_apk(entries)


def apk_without(*names: str) -> bytes:
    entries = {
        name: payload
        for name, payload in default_entries().items()
        if name not in names
    }
    return build_apk(entries)


def apk_with_empty(*names: str) -> bytes:
    entries = default_entries()
    for name in names:
        entries[name] = b""
    return build_apk(entries)


def apk_with_padding(
    size: int,
    *,
    name: str = "assets/pad.bin",
    drop: Iterable[str] = (),
) -> bytes:
    """
    Build an APK carrying ``size`` zero bytes at ``name``.

    The padding deflates to a tiny fraction of its size, so a small
    upload declares a very large inflated archive.
    """
    entries = {
        key: payload
        for key, payload in default_entries().items()
        if key != name and key not in set(drop)
    }
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w") as zf:
        for key, payload in entries.items():
            info = zipfile.ZipInfo(key, date_time=(2020, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, payload)

        info = zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0))
        info.compress_type = zipfile.ZIP_DEFLATED
        chunk = bytes(1024 * 1024)
        with zf.open(info, mode="w") as dest:
            remaining = size
            while remaining > 0:
                dest.write(chunk[: min(remaining, len(chunk))])
                remaining -= len(chunk)
    return buffer.getvalue()


def apk_with_duplicate(name: str, payload: bytes = b"shadowed") -> bytes:
    """Build an APK holding two central records named ``name``."""
    data = io.BytesIO(valid_apk())
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        with zipfile.ZipFile(data, mode="a") as zf:
            info = zipfile.ZipInfo(name, date_time=(2020, 1, 1, 0, 0, 0))
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, payload)
    return data.getvalue()


def not_an_archive() -> bytes:
    return b"This byte stream is not a zip container at all.\n" * 4


def apk_with_corrupt_entry(name: str, *, drop: Iterable[str] = ()) -> bytes:
    """
    Build an APK whose ``name`` entry fails its CRC check on read.

    The entry is stored uncompressed so its payload can be located and
    altered in place without touching the central directory.
    """
    entries = {
        key: payload
        for key, payload in default_entries().items()
        if key not in set(drop)
    }
    entries[name] = CORRUPTIBLE_PAYLOAD

    data = bytearray(build_apk(entries, stored=[name]))
    offset = bytes(data).index(CORRUPTIBLE_PAYLOAD)
    data[offset] ^= 0xFF
    return bytes(data)


def mark_encrypted(data: bytes, name: str) -> bytes:
    """Set the 'encrypted' general-purpose flag on ``name``'s central record."""
    out = bytearray(data)
    encoded = name.encode("utf-8")
    position = out.find(b"PK\x01\x02")

    while position != -1:
        name_length = struct.unpack_from("<H", out, position + 28)[0]
        record_name = bytes(out[position + 46:position + 46 + name_length])
        if record_name == encoded:
            flags = struct.unpack_from("<H", out, position + 8)[0]
            struct.pack_into("<H", out, position + 8, flags | 0x1)
            return bytes(out)
        position = out.find(b"PK\x01\x02", position + 4)

    raise ValueError(f"entry {name!r} not found in central directory")


# ------------------------------------------------------------------
# Inspection helpers
# ------------------------------------------------------------------

def read_entries(data: bytes) -> Dict[str, bytes]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


def entry_names(data: bytes) -> list:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return [info.filename for info in zf.infolist()]
