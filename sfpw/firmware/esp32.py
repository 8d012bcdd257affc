"""ESP32 application image parsing.

An app image is a fixed 24-byte little-endian header followed by
``segment_count`` records of ``<u32 load_addr><u32 data_len><data>``. Each
segment keeps its file offset so virtual addresses found in the data can be
translated back to positions in the file.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path

from sfpw.core.errors import BadMagic, TruncatedHeader, TruncatedSegment

ESP_IMAGE_MAGIC = 0xE9

IMAGE_HEADER = struct.Struct("<BBBBIB3sHBHH4sB")
SEGMENT_HEADER = struct.Struct("<II")

# ESP32-S3 memory map
DROM_HIGH_BYTE = 0x3C
IROM_HIGH_BYTE = 0x42


@dataclass(frozen=True)
class ImageHeader:
    magic: int
    segment_count: int
    spi_mode: int
    spi_speed_size: int
    entry_addr: int
    wp_pin: int
    spi_pin_drv: bytes
    chip_id: int
    min_chip_rev: int
    min_rev_full: int
    max_rev_full: int
    reserved: bytes
    hash_appended: int


@dataclass(frozen=True)
class Segment:
    load_addr: int
    data: bytes
    file_offset: int

    @property
    def data_len(self) -> int:
        return len(self.data)

    @property
    def end_addr(self) -> int:
        return self.load_addr + len(self.data)

    @property
    def high_byte(self) -> int:
        return (self.load_addr >> 24) & 0xFF

    def contains(self, vaddr: int) -> bool:
        return self.load_addr <= vaddr < self.end_addr

    def vaddr_to_offset(self, vaddr: int) -> int | None:
        if not self.contains(vaddr):
            return None
        return vaddr - self.load_addr

    def offset_to_vaddr(self, offset: int) -> int | None:
        if not 0 <= offset < len(self.data):
            return None
        return self.load_addr + offset

    def file_offset_to_vaddr(self, file_offset: int) -> int | None:
        return self.offset_to_vaddr(file_offset - self.file_offset)

    def find_bytes(self, pattern: bytes) -> list[int]:
        """Return every offset of ``pattern`` in the data, overlaps included."""
        if not pattern:
            return []
        results: list[int] = []
        idx = self.data.find(pattern)
        while idx != -1:
            results.append(idx)
            idx = self.data.find(pattern, idx + 1)
        return results

    def read_string_at(self, offset: int, *, max_len: int | None = None) -> str | None:
        """Read a NUL-terminated string; None if out of bounds or unterminated."""
        if not 0 <= offset < len(self.data):
            return None
        end = self.data.find(b"\x00", offset)
        if end == -1:
            return None
        if max_len is not None and end - offset > max_len:
            return None
        return self.data[offset:end].decode("utf-8", errors="replace")

    def read_u32_at(self, offset: int) -> int | None:
        if offset < 0 or offset + 4 > len(self.data):
            return None
        return int.from_bytes(self.data[offset : offset + 4], "little")

    def read_i32_at(self, offset: int) -> int | None:
        if offset < 0 or offset + 4 > len(self.data):
            return None
        return int.from_bytes(self.data[offset : offset + 4], "little", signed=True)

    def read_byte_at(self, offset: int) -> int | None:
        if not 0 <= offset < len(self.data):
            return None
        return self.data[offset]

    def read_bytes_at(self, offset: int, size: int) -> bytes | None:
        if offset < 0 or size < 0 or offset + size > len(self.data):
            return None
        return self.data[offset : offset + size]


@dataclass(frozen=True)
class FirmwareImage:
    header: ImageHeader
    segments: tuple[Segment, ...]

    def segment_by_high_byte(self, high_byte: int) -> Segment | None:
        for segment in self.segments:
            if segment.high_byte == high_byte:
                return segment
        return None

    def drom_segment(self) -> Segment | None:
        return self.segment_by_high_byte(DROM_HIGH_BYTE)

    def irom_segment(self) -> Segment | None:
        return self.segment_by_high_byte(IROM_HIGH_BYTE)


def parse_image(data: bytes) -> FirmwareImage:
    if len(data) < IMAGE_HEADER.size:
        raise TruncatedHeader(f"image is {len(data)} bytes; header needs {IMAGE_HEADER.size}")
    header = ImageHeader(*IMAGE_HEADER.unpack_from(data, 0))
    if header.magic != ESP_IMAGE_MAGIC:
        raise BadMagic(f"invalid ESP32 image magic: 0x{header.magic:02x} (expected 0x{ESP_IMAGE_MAGIC:02x})")

    segments: list[Segment] = []
    pos = IMAGE_HEADER.size
    for index in range(header.segment_count):
        if pos + SEGMENT_HEADER.size > len(data):
            raise TruncatedSegment(f"segment {index} header runs past end of image at offset {pos}")
        load_addr, data_len = SEGMENT_HEADER.unpack_from(data, pos)
        pos += SEGMENT_HEADER.size
        if pos + data_len > len(data):
            raise TruncatedSegment(
                f"segment {index} declares {data_len} bytes at offset {pos}; "
                f"only {len(data) - pos} remain"
            )
        segments.append(Segment(load_addr=load_addr, data=bytes(data[pos : pos + data_len]), file_offset=pos))
        pos += data_len

    return FirmwareImage(header=header, segments=tuple(segments))


def parse_image_file(path: str | Path) -> FirmwareImage:
    return parse_image(Path(path).read_bytes())
