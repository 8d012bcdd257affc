"""Request/response session over a BLE byte pipe.

A session turns one logical API call into exactly one encoded write and one
reassembled, decoded response. Notifications are handed to :meth:`feed` from
whatever thread the pipe delivers them on; they land in a bounded queue that
the calling thread drains with a blocking receive until the response is
complete or the deadline passes.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from sfpw.core import envelope
from sfpw.core.errors import ResponseTimeout, SequenceMismatch, SessionBusy, TransportSendError
from sfpw.core.model import RequestEnvelope, Response, ResponseEnvelope, parse_envelope
from sfpw.core.text import describe_body, hexdump
from sfpw.transports.base import BytePipe

DEFAULT_TIMEOUT_S = 10.0
BULK_TIMEOUT_S = 30.0
DEFAULT_MTU = 244
DEFAULT_CHUNK_DELAY_S = 0.01
DEFAULT_INBOX_SIZE = 1024

REQUEST_ID_TEMPLATE = "00000000-0000-0000-0000-{:012x}"

LOGGER = logging.getLogger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    SENDING = "sending"
    AWAITING_FRAGMENTS = "awaiting_fragments"
    COMPLETE = "complete"
    TIMED_OUT = "timed_out"


@dataclass
class PendingRequest:
    request_id: str
    sequence: int
    deadline: float
    buffer: bytearray = field(default_factory=bytearray)
    expected: int | None = None

    def append(self, fragment: bytes) -> None:
        self.buffer += fragment
        if self.expected is None:
            self.expected = envelope.declared_length(self.buffer)

    def take_frame(self) -> bytes | None:
        """Split off one declared-length frame and keep any trailing bytes.

        Returns None while the buffer is still short of a whole frame.
        """
        if self.expected is None or len(self.buffer) < self.expected:
            return None
        frame = bytes(self.buffer[: self.expected])
        del self.buffer[: self.expected]
        self.expected = envelope.declared_length(self.buffer)
        return frame


class TransportSession:
    """Synchronous API session; callers must serialize traffic on one device."""

    def __init__(
        self,
        pipe: BytePipe,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        mtu: int = DEFAULT_MTU,
        chunk_delay_s: float = DEFAULT_CHUNK_DELAY_S,
        inbox_size: int = DEFAULT_INBOX_SIZE,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if mtu <= 0:
            raise ValueError("mtu must be positive")
        self.pipe = pipe
        self.timeout_s = timeout_s
        self.mtu = mtu
        self.chunk_delay_s = chunk_delay_s
        self.state = SessionState.IDLE
        self._clock = clock
        self._sleep = sleep
        self._inbox: queue.Queue[bytes] = queue.Queue(maxsize=inbox_size)
        self._counter = 0
        self._lock = threading.Lock()
        self._pending: PendingRequest | None = None
        pipe.subscribe(self.feed)

    def next_request_id(self) -> tuple[str, int]:
        self._counter += 1
        return REQUEST_ID_TEMPLATE.format(self._counter), self._counter & 0xFFFF

    def feed(self, fragment: bytes) -> None:
        """Notification handler; safe to call from any thread."""
        try:
            self._inbox.put_nowait(bytes(fragment))
        except queue.Full:
            LOGGER.warning("Notification queue full; dropping %d-byte fragment", len(fragment))

    def send(
        self,
        method: str,
        path: str,
        body: bytes | None = None,
        *,
        raw_body: bool = False,
        timeout_s: float | None = None,
    ) -> Response:
        """Send one request and block until its response is reassembled.

        ``raw_body`` sends the body uncompressed and tagged binary, which the
        device requires for firmware and EEPROM data.
        """
        if not self._lock.acquire(blocking=False):
            raise SessionBusy("another request is already in flight on this session")
        try:
            return self._send_locked(method, path, body, raw_body, timeout_s or self.timeout_s)
        finally:
            self._pending = None
            self._lock.release()

    def _send_locked(
        self,
        method: str,
        path: str,
        body: bytes | None,
        raw_body: bool,
        timeout_s: float,
    ) -> Response:
        self._reset()
        request_id, sequence = self.next_request_id()
        request = RequestEnvelope(
            id=request_id,
            timestamp=int(time.time() * 1000),
            method=method,
            path=path,
        )
        header_json = request.to_json()
        LOGGER.debug("JSON request: %s", header_json.decode("utf-8"))
        if raw_body:
            LOGGER.debug("Body: %d bytes of binary data", len(body or b""))
            frame = envelope.encode_raw_body(header_json, body or b"", sequence)
        else:
            frame = envelope.encode(header_json, body, sequence)

        self.state = SessionState.SENDING
        self._write_frame(frame)

        self._pending = PendingRequest(
            request_id=request_id,
            sequence=sequence,
            deadline=self._clock() + timeout_s,
        )
        self.state = SessionState.AWAITING_FRAGMENTS
        parsed, response_body = self._await_response(self._pending)
        self.state = SessionState.COMPLETE
        return Response(envelope=parsed, body=response_body, path=path)

    def _reset(self) -> None:
        self._pending = None
        drained = 0
        while True:
            try:
                self._inbox.get_nowait()
            except queue.Empty:
                break
            drained += 1
        if drained:
            LOGGER.debug("Discarded %d stale fragment(s) from a previous call", drained)
        self.state = SessionState.IDLE

    def _write_frame(self, frame: bytes) -> None:
        LOGGER.debug("Writing %d bytes", len(frame))
        if LOGGER.isEnabledFor(logging.DEBUG):
            LOGGER.debug("Frame:\n%s", hexdump(frame))
        for offset in range(0, len(frame), self.mtu):
            chunk = frame[offset : offset + self.mtu]
            try:
                self.pipe.write(chunk)
            except TransportSendError:
                self.state = SessionState.IDLE
                raise
            except OSError as exc:
                self.state = SessionState.IDLE
                raise TransportSendError(f"failed to write chunk at offset {offset}: {exc}") from exc
            if offset + self.mtu < len(frame):
                self._sleep(self.chunk_delay_s)

    def _await_response(self, pending: PendingRequest) -> tuple[ResponseEnvelope, bytes]:
        while True:
            frame = pending.take_frame()
            while frame is not None:
                try:
                    return self._match(pending, frame)
                except SequenceMismatch as exc:
                    LOGGER.debug("Dropping response: %s", exc)
                frame = pending.take_frame()

            remaining = pending.deadline - self._clock()
            if remaining <= 0:
                self.state = SessionState.TIMED_OUT
                raise ResponseTimeout(len(pending.buffer), pending.expected, pending.request_id)
            try:
                fragment = self._inbox.get(timeout=remaining)
            except queue.Empty:
                continue
            pending.append(fragment)
            LOGGER.debug(
                "Notification received: %d bytes (total so far: %d/%s)",
                len(fragment),
                len(pending.buffer),
                pending.expected,
            )

    def _match(self, pending: PendingRequest, frame: bytes) -> tuple[ResponseEnvelope, bytes]:
        decoded = envelope.decode(frame)
        parsed = parse_envelope(decoded.header)
        LOGGER.debug("Decoded header JSON: %s", decoded.header.decode("utf-8", errors="replace"))
        if not isinstance(parsed, ResponseEnvelope):
            raise SequenceMismatch(pending.request_id, None)
        if parsed.id != pending.request_id:
            raise SequenceMismatch(pending.request_id, parsed.id)
        body = decoded.body or b""
        LOGGER.debug("Response status=%d body=%s", parsed.status_code, describe_body(body))
        return parsed, body
