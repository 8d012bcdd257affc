"""Codec for the device's modified binme envelope.

The SFP Wizard speaks a variant of the binme format that differs from the
upstream library in its header section:

- the header section type byte is 0x03 instead of 0x01
- the header section prefix is 9 bytes with a single-byte length at byte 8
- responses often set the compressed flag while carrying raw bytes

Wire layout::

    transport prefix (4B)  u16 total length (BE), u16 sequence (BE)
    header section (9B+)   u8 marker 0x03, u8 format, u8 compressed,
                           u8 request flag, 4B reserved, u8 length, data
    body section (8B+)     u8 marker 0x02, u8 format, u8 compressed,
                           u8 reserved, u32 length (BE), data
"""

from __future__ import annotations

import logging
import struct
import zlib
from dataclasses import dataclass
from enum import IntEnum

from sfpw.core.errors import (
    BadMarkerByte,
    BodyLengthMismatch,
    DecompressionFailed,
    FrameLengthMismatch,
    FrameTooLarge,
    FrameTooShort,
    HeaderLengthMismatch,
    HeaderTooLarge,
)

HEADER_MARKER = 0x03
BODY_MARKER = 0x02

TRANSPORT_PREFIX = struct.Struct(">HH")
HEADER_PREFIX_SIZE = 9
BODY_PREFIX = struct.Struct(">BBBBI")

MAX_HEADER_LENGTH = 0xFF
MAX_FRAME_LENGTH = 0xFFFF

ZLIB_MAGIC = frozenset({b"\x78\x01", b"\x78\x5e", b"\x78\x9c", b"\x78\xda"})

LOGGER = logging.getLogger(__name__)


class SectionFormat(IntEnum):
    JSON = 0x01
    STRING = 0x02
    BINARY = 0x03


@dataclass(frozen=True)
class DecodedFrame:
    header: bytes
    body: bytes | None
    sequence: int
    declared_length: int
    header_format: int
    body_format: int | None


def looks_compressed(data: bytes) -> bool:
    return data[:2] in ZLIB_MAGIC


def _inflate(data: bytes, section: str) -> bytes:
    try:
        return zlib.decompress(data)
    except zlib.error as exc:
        raise DecompressionFailed(f"failed to decompress {section}: {exc}") from exc


def _maybe_inflate(data: bytes, compressed_flag: int, section: str) -> bytes:
    # The flag alone is not trusted: responses set it on raw payloads.
    if compressed_flag == 0x01 and looks_compressed(data):
        return _inflate(data, section)
    return data


def _header_section(header_json: bytes) -> bytes:
    compressed = zlib.compress(header_json)
    if len(compressed) > MAX_HEADER_LENGTH:
        raise HeaderTooLarge(
            f"compressed header is {len(compressed)} bytes; the device limit is {MAX_HEADER_LENGTH}"
        )
    prefix = bytes([HEADER_MARKER, SectionFormat.JSON, 0x01, 0x01, 0, 0, 0, 0, len(compressed)])
    return prefix + compressed


def _body_section(data: bytes, fmt: SectionFormat, compressed: bool) -> bytes:
    return BODY_PREFIX.pack(BODY_MARKER, fmt, 0x01 if compressed else 0x00, 0, len(data)) + data


def _frame(header_section: bytes, body_section: bytes, sequence: int) -> bytes:
    total = TRANSPORT_PREFIX.size + len(header_section) + len(body_section)
    if total > MAX_FRAME_LENGTH:
        raise FrameTooLarge(f"frame is {total} bytes; the length field holds at most {MAX_FRAME_LENGTH}")
    return TRANSPORT_PREFIX.pack(total, sequence & 0xFFFF) + header_section + body_section


def encode(
    header_json: bytes,
    body: bytes | None,
    sequence: int,
    *,
    body_format: SectionFormat = SectionFormat.JSON,
) -> bytes:
    """Build a request frame with a zlib-compressed header and body.

    An absent body is sent as a compressed empty section, matching what the
    vendor app puts on the wire.
    """
    header_section = _header_section(header_json)
    body_section = _body_section(zlib.compress(body or b""), body_format, compressed=True)
    return _frame(header_section, body_section, sequence)


def encode_raw_body(header_json: bytes, body: bytes, sequence: int) -> bytes:
    """Build a request frame whose body is sent uncompressed and tagged binary.

    Used for firmware chunks and EEPROM/snapshot writes.
    """
    header_section = _header_section(header_json)
    body_section = _body_section(body, SectionFormat.BINARY, compressed=False)
    return _frame(header_section, body_section, sequence)


def declared_length(data: bytes) -> int | None:
    if len(data) < 2:
        return None
    return int.from_bytes(data[:2], "big")


def decode(data: bytes) -> DecodedFrame:
    """Decode one complete frame.

    Raises a :class:`~sfpw.core.errors.MalformedFrameError` subclass for
    structural problems and :class:`~sfpw.core.errors.DecompressionFailed`
    when a section sniffs as zlib but does not inflate.
    """
    if len(data) < TRANSPORT_PREFIX.size + HEADER_PREFIX_SIZE:
        raise FrameTooShort(f"frame too short: {len(data)} bytes")

    total, sequence = TRANSPORT_PREFIX.unpack_from(data, 0)
    if total < TRANSPORT_PREFIX.size + HEADER_PREFIX_SIZE:
        raise FrameLengthMismatch(f"declared frame length {total} is smaller than the fixed prefixes")
    if len(data) < total:
        raise FrameLengthMismatch(f"frame declares {total} bytes but only {len(data)} are present")
    if len(data) > total:
        LOGGER.debug("Ignoring %d bytes past the declared frame length", len(data) - total)
    frame = data[:total]

    pos = TRANSPORT_PREFIX.size
    marker, header_format, header_compressed = frame[pos], frame[pos + 1], frame[pos + 2]
    if marker != HEADER_MARKER:
        raise BadMarkerByte("header", HEADER_MARKER, marker)
    header_len = frame[pos + 8]
    pos += HEADER_PREFIX_SIZE
    if len(frame) < pos + header_len:
        raise HeaderLengthMismatch(
            f"header declares {header_len} bytes but only {len(frame) - pos} remain"
        )
    header = _maybe_inflate(frame[pos : pos + header_len], header_compressed, "header")
    pos += header_len

    if len(frame) < pos + BODY_PREFIX.size:
        return DecodedFrame(
            header=header,
            body=None,
            sequence=sequence,
            declared_length=total,
            header_format=header_format,
            body_format=None,
        )

    marker, body_format, body_compressed, _, body_len = BODY_PREFIX.unpack_from(frame, pos)
    if marker != BODY_MARKER:
        raise BadMarkerByte("body", BODY_MARKER, marker)
    pos += BODY_PREFIX.size
    if len(frame) < pos + body_len:
        raise BodyLengthMismatch(f"body declares {body_len} bytes but only {len(frame) - pos} remain")
    body = _maybe_inflate(frame[pos : pos + body_len], body_compressed, "body")

    return DecodedFrame(
        header=header,
        body=body,
        sequence=sequence,
        declared_length=total,
        header_format=header_format,
        body_format=body_format,
    )
