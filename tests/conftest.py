from __future__ import annotations

import io
import json
import struct
import tarfile
from collections.abc import Callable
from dataclasses import replace

import pytest

from sfpw.core import envelope
from sfpw.core.config import Config, load_config
from sfpw.core.model import RequestEnvelope, parse_envelope
from sfpw.firmware.esp32 import IMAGE_HEADER

DROM_BASE = 0x3C000000
IROM_BASE = 0x42000000

Handler = Callable[[RequestEnvelope, bytes], "tuple[int, bytes | None] | None"]


def response_header(request_id: str, status_code: int = 200) -> bytes:
    doc = {
        "type": "httpResponse",
        "id": request_id,
        "timestamp": 0,
        "statusCode": status_code,
        "headers": {},
    }
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


class FakeDevice:
    """In-memory byte pipe that decodes request frames and answers them."""

    def __init__(self, handler: Handler, *, fragment_size: int | None = None) -> None:
        self.handler = handler
        self.fragment_size = fragment_size
        self.writes: list[bytes] = []
        self.requests: list[tuple[RequestEnvelope, bytes]] = []
        self.closed = False
        self.emitted: list[bytes] = []
        self._handlers: list[Callable[[bytes], None]] = []
        self._buffer = bytearray()

    def subscribe(self, handler: Callable[[bytes], None]) -> None:
        self._handlers.append(handler)

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        self._buffer += data
        expected = envelope.declared_length(self._buffer)
        if expected is None or len(self._buffer) < expected:
            return
        frame = bytes(self._buffer[:expected])
        del self._buffer[:expected]

        decoded = envelope.decode(frame)
        request = parse_envelope(decoded.header)
        assert isinstance(request, RequestEnvelope)
        body = decoded.body or b""
        self.requests.append((request, body))
        reply = self.handler(request, body)
        if reply is None:
            return
        status_code, reply_body = reply
        self.emit(envelope.encode(response_header(request.id, status_code), reply_body, decoded.sequence))

    def emit(self, frame: bytes) -> None:
        self.emitted.append(frame)
        size = self.fragment_size or len(frame)
        for offset in range(0, len(frame), size):
            for handler in self._handlers:
                handler(frame[offset : offset + size])

    def close(self) -> None:
        self.closed = True

    @property
    def paths(self) -> list[str]:
        return [request.path for request, _ in self.requests]


def json_reply(doc: object, status_code: int = 200) -> tuple[int, bytes]:
    return status_code, json.dumps(doc).encode("utf-8")


def build_archive(members: list[tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, data in members:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def build_image(segments: list[tuple[int, bytes]], *, magic: int = 0xE9) -> bytes:
    header = IMAGE_HEADER.pack(
        magic,
        len(segments),
        2,
        0x2F,
        0x40375000,
        0xEE,
        b"\x00\x00\x00",
        9,
        0,
        0,
        99,
        b"\x00" * 4,
        1,
    )
    body = b"".join(struct.pack("<II", addr, len(data)) + data for addr, data in segments)
    return header + body


def build_drom(
    records: list[tuple[bool, str, bool, bytes, bytes]],
    *,
    stride: int = 16,
    default_password: bytes | None = b"\x00\x00\x00\x00",
    cable_length: int = 0,
) -> bytes:
    """Lay out part-number strings followed by a record array.

    Records are ``(read_only, part_number, locked, password, flags)``. A
    non-read-only terminator with ``default_password`` closes the array, or a
    read-only one when ``default_password`` is None.
    """
    strings = bytearray(b"build-info\x00\x00")
    addresses: dict[str, int] = {}
    for _, part_number, *_ in records:
        if part_number not in addresses:
            addresses[part_number] = DROM_BASE + len(strings)
            strings += part_number.encode("ascii") + b"\x00"
    while len(strings) % 4:
        strings += b"\x00"

    def record(read_only: bool, pointer: int, locked: bool, password: bytes, flags: bytes) -> bytes:
        raw = struct.pack("<IIB4s3s", int(read_only), pointer, int(locked), password, flags)
        if stride == 20:
            raw += struct.pack("<i", cable_length)
        return raw

    array = b"".join(
        record(read_only, addresses[part], locked, password, flags)
        for read_only, part, locked, password, flags in records
    )
    if default_password is None:
        array += record(True, 0, False, b"\x00" * 4, b"\x00" * 3)
    else:
        array += record(False, 0, False, default_password, b"\x0f\x00\x00")
    return bytes(strings) + array + b"\x00" * 32


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.delenv("SFPW_CONFIG", raising=False)
    monkeypatch.delenv("SFPW_ADDRESS", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


@pytest.fixture
def fast_config() -> Config:
    config = load_config().config
    return replace(
        config,
        transport=replace(config.transport, timeout_s=0.2, bulk_timeout_s=0.2, chunk_delay_s=0.0),
        transfer=replace(config.transfer, chunk_delay_s=0.0, abort_settle_s=0.0),
    )
