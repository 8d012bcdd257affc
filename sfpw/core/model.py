"""Core data models used across codec, session, transfer engine, and CLI."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from sfpw.core.errors import InvalidEnvelope, UnexpectedStatusCode

REQUEST_TYPE = "httpRequest"
RESPONSE_TYPE = "httpResponse"


@dataclass(frozen=True)
class RequestEnvelope:
    id: str
    timestamp: int
    method: str
    path: str
    headers: dict[str, Any] = field(default_factory=dict)
    type: str = REQUEST_TYPE

    def to_json(self) -> bytes:
        # Key order follows what the device firmware emits and expects.
        doc = {
            "type": self.type,
            "id": self.id,
            "timestamp": self.timestamp,
            "method": self.method,
            "path": self.path,
            "headers": self.headers,
        }
        return json.dumps(doc, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class ResponseEnvelope:
    id: str
    timestamp: int
    status_code: int
    headers: dict[str, Any] = field(default_factory=dict)
    type: str = RESPONSE_TYPE


Envelope = RequestEnvelope | ResponseEnvelope


def parse_envelope(header_json: bytes) -> Envelope:
    """Parse decoded header JSON into the variant named by its ``type`` field."""
    try:
        doc = json.loads(header_json)
    except (UnicodeDecodeError, ValueError) as exc:
        raise InvalidEnvelope(f"header is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise InvalidEnvelope("header JSON must be an object")

    kind = doc.get("type")
    headers = doc.get("headers") if isinstance(doc.get("headers"), dict) else {}
    try:
        if kind == RESPONSE_TYPE:
            return ResponseEnvelope(
                id=str(doc.get("id", "")),
                timestamp=int(doc.get("timestamp", 0)),
                status_code=int(doc["statusCode"]),
                headers=headers,
            )
        if kind == REQUEST_TYPE:
            return RequestEnvelope(
                id=str(doc.get("id", "")),
                timestamp=int(doc.get("timestamp", 0)),
                method=str(doc["method"]),
                path=str(doc["path"]),
                headers=headers,
            )
    except (KeyError, TypeError, ValueError) as exc:
        raise InvalidEnvelope(f"{kind} envelope is missing or has invalid field: {exc}") from exc
    raise InvalidEnvelope(f"unknown envelope type {kind!r}")


@dataclass(frozen=True)
class Response:
    envelope: ResponseEnvelope
    body: bytes
    path: str = ""

    @property
    def status_code(self) -> int:
        return self.envelope.status_code

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None

    def raise_for_status(self) -> Response:
        if not self.ok:
            raise UnexpectedStatusCode(self.status_code, self.body, path=self.path)
        return self


@dataclass(frozen=True)
class TransferProgress:
    current: int
    total: int
    phase: str

    @property
    def fraction(self) -> float:
        if self.total <= 0:
            return 0.0
        return min(1.0, self.current / self.total)


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    fw_version: str
    api_version: str
    hw_version: int | None = None

    @property
    def mac(self) -> str:
        return self.id.lower().replace(":", "")


@dataclass(frozen=True)
class Stats:
    battery: int
    battery_v: float
    is_low_battery: bool
    uptime: int
    signal_dbm: int


@dataclass(frozen=True)
class FirmwareStatus:
    hw_version: int
    fw_version: str
    is_updating: bool
    status: str
    progress_percent: int
    remaining_time: int


@dataclass(frozen=True)
class ModuleDetails:
    part_number: str = ""
    vendor: str = ""
    sn: str = ""
    rev: str = ""
    compliance: str = ""

    @property
    def present(self) -> bool:
        return bool(self.part_number or self.vendor)


@dataclass(frozen=True)
class SnapshotInfo:
    size: int
    chunk: int
    part_number: str = ""
    vendor: str = ""
    sn: str = ""

    @property
    def has_data(self) -> bool:
        return self.size > 0


@dataclass(frozen=True)
class SIFStatus:
    status: str
    offset: int = 0
    chunk: int = 0
    size: int = 0
