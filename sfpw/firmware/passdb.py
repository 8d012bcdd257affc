"""Extraction of the module unlock-password database from firmware images.

The database is an array of fixed-size records in the DROM segment with no
symbol or fixed address. It is located by pointer chasing from the part
number of its first entry:

1. find the anchor string in DROM and compute its virtual address
2. find a little-endian pointer to that address (the first record's
   part-number field)
3. step back over the preceding ``read_only`` word to reach the array start

Record layout (stride 16, or 20 in firmware 1.0.10 and 1.1.0)::

    +0   u32  read_only
    +4   u32  part_number pointer (NULL terminates the array)
    +8   u8   locked
    +9   4B   password
    +13  3B   flags
    +16  i32  cable_length (stride 20 only)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from sfpw.core.errors import (
    AmbiguousStride,
    AnchorNotFound,
    EmptyDatabase,
    PointerNotFound,
    SegmentNotFound,
)
from sfpw.firmware.esp32 import FirmwareImage, Segment, parse_image_file

FIRST_ENTRY_MARKER = "AOC-SFP10-5M"
STRIDES = (16, 20)
MAX_RECORDS = 512
NO_PASSWORD = b"\xff\xff\xff\xff"

LOGGER = logging.getLogger(__name__)

_PAGE_BITS = (
    (0x01, "A0h/lower"),
    (0x02, "A2h/upper1"),
    (0x04, "upper2"),
    (0x08, "upper3/thresholds"),
)


@dataclass(frozen=True)
class PasswordEntry:
    read_only: bool
    part_number: str
    locked: bool
    password: bytes
    flags: bytes
    cable_length: int | None = None

    @property
    def is_default(self) -> bool:
        return self.part_number == "" and not self.read_only

    def format_password(self) -> str:
        return " ".join(f"{b:02x}" for b in self.password)

    def password_ascii(self) -> str:
        if all(0x20 <= b <= 0x7E for b in self.password):
            return self.password.decode("ascii")
        return ""

    def format_flags(self) -> str:
        if not any(self.flags):
            return ""
        return self.flags.hex()

    def interpret_flags(self) -> str:
        """Describe which EEPROM pages flags[0] allows writing after unlock."""
        page_bits = self.flags[0] if self.flags else 0
        if page_bits == 0:
            return "none"
        pages = [name for bit, name in _PAGE_BITS if page_bits & bit]
        if not pages:
            return f"0x{page_bits:02x}"
        return "+".join(pages)

    def to_dict(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "part_number": self.part_number,
            "password": self.password.hex(),
            "password_ascii": self.password_ascii(),
            "read_only": self.read_only,
            "locked": self.locked,
            "flags": self.flags.hex(),
            "writable_pages": self.interpret_flags(),
        }
        if self.cable_length is not None:
            doc["cable_length"] = self.cable_length
        return doc


@dataclass(frozen=True)
class PasswordDatabase:
    entries: tuple[PasswordEntry, ...]
    default_entry: PasswordEntry | None
    stride: int
    start_offset: int

    @property
    def generation(self) -> str:
        if self.stride == 20:
            return "1.0.10-1.1.0 (20-byte entries with cable_length)"
        return "1.0.5 or 1.1.1+ (16-byte entries)"

    def find_by_part_number(self, part_number: str) -> list[PasswordEntry]:
        # Exact comparison, as the firmware uses strcmp.
        return [entry for entry in self.entries if entry.part_number == part_number]

    def passwords_to_try(self, part_number: str) -> list[PasswordEntry]:
        """Return the entries the firmware would try for a module, in order.

        Matches are taken in table order, read-only entries skipped, and
        entries deduplicated by password value keeping the first seen.
        """
        seen: set[bytes] = set()
        result: list[PasswordEntry] = []
        for entry in self.find_by_part_number(part_number):
            if entry.read_only or entry.password in seen:
                continue
            seen.add(entry.password)
            result.append(entry)
        return result

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.generation,
            "entry_size": self.stride,
            "count": len(self.entries),
            "entries": [entry.to_dict() for entry in self.entries],
        }

    def unique_passwords(self) -> list[bytes]:
        seen: set[bytes] = set()
        result: list[bytes] = []
        for entry in self.entries:
            if entry.read_only or entry.password == NO_PASSWORD or entry.password in seen:
                continue
            seen.add(entry.password)
            result.append(entry.password)
        return result


def locate_database(segment: Segment, marker: str = FIRST_ENTRY_MARKER) -> int:
    """Return the segment offset of the first database record."""
    anchor_offsets = segment.find_bytes(marker.encode("ascii") + b"\x00")
    if not anchor_offsets:
        raise AnchorNotFound(f"marker string {marker!r} not found in DROM")
    anchor_vaddr = segment.load_addr + anchor_offsets[0]

    pointer_offsets = segment.find_bytes(anchor_vaddr.to_bytes(4, "little"))
    if not pointer_offsets:
        raise PointerNotFound(f"no pointer to marker string at 0x{anchor_vaddr:08x}")
    # The pointer is the record's second word; read_only precedes it.
    for pointer_offset in pointer_offsets:
        if pointer_offset >= 4:
            return pointer_offset - 4
    raise PointerNotFound(f"pointer to 0x{anchor_vaddr:08x} leaves no room for the read_only field")


def count_valid_records(segment: Segment, start: int, stride: int) -> int:
    """Count consecutive records whose part-number pointer lands inside the segment."""
    count = 0
    offset = start
    while count < MAX_RECORDS:
        pointer = segment.read_u32_at(offset + 4)
        if not pointer or not segment.contains(pointer):
            break
        count += 1
        offset += stride
    return count


def detect_stride(segment: Segment, start: int) -> int:
    runs = {stride: count_valid_records(segment, start, stride) for stride in STRIDES}
    LOGGER.debug("Valid record runs by stride: %s", runs)
    if runs[16] == 0 and runs[20] == 0:
        raise AmbiguousStride(f"no valid records at 0x{start:x} for any stride")
    if runs[20] > runs[16]:
        return 20
    if runs[16] == runs[20]:
        # Unverified heuristic carried over from observed images.
        LOGGER.warning("Stride runs tie at %d records; assuming 16-byte entries", runs[16])
    return 16


def _parse_record(segment: Segment, offset: int, stride: int) -> PasswordEntry | None:
    read_only = segment.read_u32_at(offset)
    pointer = segment.read_u32_at(offset + 4)
    if read_only is None or pointer is None:
        return None

    locked = segment.read_byte_at(offset + 8)
    password = segment.read_bytes_at(offset + 9, 4)
    flags = segment.read_bytes_at(offset + 13, 3)
    if locked is None or password is None or flags is None:
        return None

    cable_length: int | None = None
    if stride == 20:
        cable_length = segment.read_i32_at(offset + 16)
        if cable_length is None:
            return None

    if pointer == 0:
        part_number = ""
    else:
        string_offset = segment.vaddr_to_offset(pointer)
        if string_offset is None:
            LOGGER.debug("Part number pointer 0x%08x at 0x%x is out of range", pointer, offset)
            return None
        text = segment.read_string_at(string_offset)
        if text is None:
            return None
        part_number = text

    return PasswordEntry(
        read_only=read_only != 0,
        part_number=part_number,
        locked=locked != 0,
        password=password,
        flags=flags,
        cable_length=cable_length,
    )


def parse_records(segment: Segment, start: int, stride: int) -> tuple[list[PasswordEntry], PasswordEntry | None]:
    entries: list[PasswordEntry] = []
    default_entry: PasswordEntry | None = None
    offset = start
    while True:
        entry = _parse_record(segment, offset, stride)
        if entry is None:
            break
        if entry.part_number == "":
            if not entry.read_only:
                default_entry = entry
            break
        entries.append(entry)
        offset += stride
    return entries, default_entry


def extract_password_database(image: FirmwareImage, marker: str = FIRST_ENTRY_MARKER) -> PasswordDatabase:
    drom = image.drom_segment()
    if drom is None:
        raise SegmentNotFound("DROM segment not found")

    start = locate_database(drom, marker)
    stride = detect_stride(drom, start)
    entries, default_entry = parse_records(drom, start, stride)
    if not entries:
        raise EmptyDatabase(f"no entries found at DROM offset 0x{start:x}")

    LOGGER.debug("Parsed %d entries at stride %d from DROM offset 0x%x", len(entries), stride, start)
    return PasswordDatabase(
        entries=tuple(entries),
        default_entry=default_entry,
        stride=stride,
        start_offset=start,
    )


def load_password_database(path: str | Path) -> PasswordDatabase:
    return extract_password_database(parse_image_file(path))
