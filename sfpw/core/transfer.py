"""Chunked bulk transfers built on the start/data/abort endpoint pattern.

The device exposes every bulk operation (firmware upload, support dump,
module EEPROM read, snapshot buffer read/write) as a ``start`` call that
reports ``size``/``chunk``, a ``data`` call repeated per chunk, and for some
operations an ``abort`` call that clears device-side state.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sfpw.core.errors import InvalidEnvelope, SfpwError
from sfpw.core.model import Response, TransferProgress
from sfpw.core.session import BULK_TIMEOUT_S, DEFAULT_TIMEOUT_S, TransportSession

DEFAULT_CHUNK = 512
DEFAULT_CHUNK_DELAY_S = 0.02
DEFAULT_ABORT_SETTLE_S = 0.5

SIF_ACTIVE_STATES = frozenset({"inprogress", "ready", "continue"})

ProgressCallback = Callable[[TransferProgress], None]

LOGGER = logging.getLogger(__name__)


def _sif_active(status: Mapping[str, Any]) -> bool:
    return status.get("status") in SIF_ACTIVE_STATES


def _firmware_active(status: Mapping[str, Any]) -> bool:
    # "isUPdating" is the device's spelling.
    return bool(status.get("isUPdating"))


@dataclass(frozen=True)
class TransferEndpoints:
    name: str
    start: str
    data: str
    start_method: str = "GET"
    data_method: str = "GET"
    abort: str | None = None
    status: str | None = None
    is_active: Callable[[Mapping[str, Any]], bool] | None = None
    exclusive: bool = False
    default_size: int | None = None
    data_fields: Mapping[str, Any] = field(default_factory=dict)


FIRMWARE = TransferEndpoints(
    name="firmware",
    start="/fw/start",
    data="/fw/data",
    start_method="POST",
    data_method="POST",
    abort="/fw/abort",
    status="/fw",
    is_active=_firmware_active,
)
SIF = TransferEndpoints(
    name="sif",
    start="/sif/start",
    data="/sif/data/",
    start_method="POST",
    abort="/sif/abort",
    status="/sif/info/",
    is_active=_sif_active,
    exclusive=True,
    data_fields={"status": "continue"},
)
MODULE = TransferEndpoints(
    name="module",
    start="/xsfp/module/start",
    data="/xsfp/module/data",
    default_size=512,
)
SNAPSHOT = TransferEndpoints(
    name="snapshot",
    start="/xsfp/sync/start",
    data="/xsfp/sync/data",
    default_size=512,
)


def _json_object(response: Response) -> dict[str, Any]:
    try:
        doc = response.json()
    except ValueError:
        LOGGER.debug("Could not parse %s response body: %s", response.path, response.text)
        return {}
    return doc if isinstance(doc, dict) else {}


def _start_info(endpoints: TransferEndpoints, response: Response) -> dict[str, Any]:
    """Parse a read start reply; only endpoints with a default size tolerate a bad one."""
    try:
        doc = response.json()
    except ValueError:
        doc = None
    if isinstance(doc, dict):
        return doc
    if endpoints.default_size is not None:
        LOGGER.debug("%s start reply is not a JSON object; using defaults", endpoints.name)
        return {}
    raise InvalidEnvelope(f"failed to parse {endpoints.name} start response: {response.text!r}")


def _int_field(endpoints: TransferEndpoints, info: Mapping[str, Any], key: str) -> int:
    value = info.get(key)
    if value is None:
        return 0
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidEnvelope(f"{endpoints.name} start response has invalid {key}: {value!r}") from exc


def _json_body(doc: Mapping[str, Any]) -> bytes:
    return json.dumps(dict(doc), separators=(",", ":")).encode("utf-8")


class ChunkedTransferEngine:
    """Drives start/data/abort loops over one session, strictly sequentially."""

    def __init__(
        self,
        session: TransportSession,
        *,
        path_for: Callable[[str], str] = lambda endpoint: endpoint,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        bulk_timeout_s: float = BULK_TIMEOUT_S,
        default_chunk: int = DEFAULT_CHUNK,
        chunk_delay_s: float = DEFAULT_CHUNK_DELAY_S,
        abort_settle_s: float = DEFAULT_ABORT_SETTLE_S,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session = session
        self.path_for = path_for
        self.timeout_s = timeout_s
        self.bulk_timeout_s = bulk_timeout_s
        self.default_chunk = default_chunk
        self.chunk_delay_s = chunk_delay_s
        self.abort_settle_s = abort_settle_s
        self._sleep = sleep

    def request(
        self,
        method: str,
        endpoint: str,
        body: bytes | None = None,
        *,
        raw_body: bool = False,
        bulk: bool = False,
    ) -> Response:
        """Send one call and raise UnexpectedStatusCode on a non-2xx answer."""
        response = self.session.send(
            method,
            self.path_for(endpoint),
            body,
            raw_body=raw_body,
            timeout_s=self.bulk_timeout_s if bulk else self.timeout_s,
        )
        return response.raise_for_status()

    def status(self, endpoints: TransferEndpoints) -> dict[str, Any]:
        if endpoints.status is None:
            raise ValueError(f"{endpoints.name} transfers have no status endpoint")
        return _json_object(self.request("GET", endpoints.status))

    def abort(self, endpoints: TransferEndpoints) -> None:
        if endpoints.abort is None:
            raise ValueError(f"{endpoints.name} transfers have no abort endpoint")
        self.request("POST", endpoints.abort)

    def abort_if_active(self, endpoints: TransferEndpoints) -> bool:
        """Abort an operation a previous session left running; True if one was aborted."""
        if endpoints.status is None or endpoints.is_active is None:
            return False
        status = self.status(endpoints)
        if not endpoints.is_active(status):
            return False
        LOGGER.info("Aborting %s operation left active by a previous session", endpoints.name)
        self.abort(endpoints)
        self._sleep(self.abort_settle_s)
        return True

    def read(self, endpoints: TransferEndpoints, *, progress: ProgressCallback | None = None) -> bytes:
        """Run the read loop and return the concatenated data.

        The offset advances by the bytes actually returned. The loop stops
        at the declared size or at the first empty response.
        """
        if endpoints.exclusive:
            self.abort_if_active(endpoints)

        response = self.request(endpoints.start_method, endpoints.start)
        data = bytearray()
        offset = 0
        try:
            info = _start_info(endpoints, response)
            size = _int_field(endpoints, info, "size") or endpoints.default_size or 0
            chunk = _int_field(endpoints, info, "chunk") or self.default_chunk
            LOGGER.debug("%s read started: size=%d chunk=%d", endpoints.name, size, chunk)

            while offset < size:
                want = min(chunk, size - offset)
                body = _json_body({**endpoints.data_fields, "offset": offset, "chunk": want})
                response = self.request(endpoints.data_method, endpoints.data, body, bulk=True)
                if not response.body:
                    LOGGER.debug("%s read ended early at %d/%d bytes", endpoints.name, offset, size)
                    break
                data += response.body
                offset += len(response.body)
                if progress is not None:
                    progress(TransferProgress(current=offset, total=size, phase="downloading"))
        except SfpwError:
            self._abort_quietly(endpoints)
            raise
        return bytes(data)

    def write(
        self,
        endpoints: TransferEndpoints,
        payload: bytes,
        *,
        chunked: bool = False,
        progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Run the write loop and return the parsed start response.

        ``chunked`` sends one data call per device-reported chunk with a
        status check after each; otherwise the payload goes in one call.
        """
        info = _json_object(self.request("POST", endpoints.start, _json_body({"size": len(payload)})))
        total = len(payload)
        try:
            if not chunked:
                self.request("POST", endpoints.data, payload, raw_body=True, bulk=True)
                if progress is not None:
                    progress(TransferProgress(current=total, total=total, phase="uploading"))
                return info

            chunk = _int_field(endpoints, info, "chunk") or self.default_chunk
            LOGGER.debug("%s upload: %d bytes in %d-byte chunks", endpoints.name, total, chunk)
            for offset in range(0, total, chunk):
                piece = payload[offset : offset + chunk]
                self.request("POST", endpoints.data, piece, raw_body=True, bulk=True)
                LOGGER.debug("Chunk at offset %d sent", offset)
                if progress is not None:
                    progress(TransferProgress(current=offset + len(piece), total=total, phase="uploading"))
                self._sleep(self.chunk_delay_s)
        except SfpwError:
            self._abort_quietly(endpoints)
            raise
        return info

    def _abort_quietly(self, endpoints: TransferEndpoints) -> None:
        if endpoints.abort is None:
            return
        LOGGER.warning("Aborting %s transfer after failure", endpoints.name)
        try:
            self.abort(endpoints)
        except SfpwError as exc:
            LOGGER.warning("Abort of %s transfer failed: %s", endpoints.name, exc)
