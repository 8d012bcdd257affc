"""Domain-specific errors for sfpw."""

from __future__ import annotations


class SfpwError(Exception):
    """Base error for sfpw."""


class ConfigError(SfpwError):
    """Base configuration error."""


class ConfigLoadError(ConfigError):
    """Raised when a configuration file cannot be read."""


class ConfigValidationError(ConfigError):
    """Raised when configuration does not conform to schema or semantics."""


class ProtocolError(SfpwError):
    """Base error for the binary envelope codec."""


class EncodeError(ProtocolError):
    """Raised when a request cannot be packed into a frame."""


class HeaderTooLarge(EncodeError):
    """Raised when the compressed header does not fit the single-byte length field."""


class FrameTooLarge(EncodeError):
    """Raised when a frame does not fit the 16-bit outer length field."""


class MalformedFrameError(ProtocolError):
    """Base error for frames that cannot be decoded."""


class FrameTooShort(MalformedFrameError):
    """Raised when a buffer is too short to hold the fixed frame prefixes."""


class BadMarkerByte(MalformedFrameError):
    """Raised when a section type byte is not the expected marker."""

    def __init__(self, section: str, expected: int, got: int) -> None:
        super().__init__(f"expected {section} marker 0x{expected:02x}, got 0x{got:02x}")
        self.section = section
        self.expected = expected
        self.got = got


class FrameLengthMismatch(MalformedFrameError):
    """Raised when fewer bytes are present than the outer length field declares."""


class HeaderLengthMismatch(MalformedFrameError):
    """Raised when the header section is truncated."""


class BodyLengthMismatch(MalformedFrameError):
    """Raised when the body section is truncated."""


class InvalidEnvelope(MalformedFrameError):
    """Raised when header JSON is not a recognizable request or response envelope."""


class DecompressionFailed(ProtocolError):
    """Raised when data that sniffs as zlib fails to inflate."""


class TransportError(SfpwError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on BLE connect or characteristic lookup failures."""


class TransportSendError(TransportError):
    """Raised when writing to the byte pipe fails."""


class TransportTimeoutError(TransportError):
    """Raised when a BLE operation does not complete in time."""


class SessionBusy(TransportError):
    """Raised when a second call is started while one is in flight."""


class ResponseTimeout(TransportError):
    """Raised when a response is not fully reassembled before the deadline."""

    def __init__(self, got: int, expected: int | None, request_id: str = "") -> None:
        expected_text = "?" if expected is None else str(expected)
        suffix = f" for request {request_id}" if request_id else ""
        super().__init__(f"timeout waiting for response{suffix} (got {got}/{expected_text} bytes)")
        self.got = got
        self.expected = expected
        self.request_id = request_id


class SequenceMismatch(TransportError):
    """Raised when a reassembled response belongs to a different request."""

    def __init__(self, expected_id: str, got_id: str | None) -> None:
        super().__init__(f"response id mismatch: got {got_id!r}, want {expected_id!r}")
        self.expected_id = expected_id
        self.got_id = got_id


class UnexpectedStatusCode(SfpwError):
    """Raised when the device answers with a non-2xx status."""

    def __init__(self, status_code: int, body: bytes | None = None, path: str = "") -> None:
        detail = body.decode("utf-8", errors="replace") if body else ""
        where = f" from {path}" if path else ""
        message = f"status {status_code}{where}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.body = body or b""
        self.path = path


class OperationInProgress(SfpwError):
    """Raised when the device reports a conflicting operation already running."""


class FirmwareImageError(SfpwError):
    """Base error for malformed firmware images."""


class BadMagic(FirmwareImageError):
    """Raised when the image does not start with the ESP32 magic byte."""


class TruncatedHeader(FirmwareImageError):
    """Raised when the image is shorter than the fixed image header."""


class TruncatedSegment(FirmwareImageError):
    """Raised when a segment header or its data runs past the end of the image."""


class PasswordDatabaseError(SfpwError):
    """Base error for password database extraction."""


class SegmentNotFound(PasswordDatabaseError):
    """Raised when the image has no segment in the required memory region."""


class AnchorNotFound(PasswordDatabaseError):
    """Raised when the first-entry part number string is not in the data segment."""


class PointerNotFound(PasswordDatabaseError):
    """Raised when no pointer to the anchor string exists in the data segment."""


class AmbiguousStride(PasswordDatabaseError):
    """Raised when neither record stride yields a valid run of entries."""


class EmptyDatabase(PasswordDatabaseError):
    """Raised when the record array parses to zero entries."""


class ArchiveError(SfpwError):
    """Raised when a support archive is not a readable tar file."""
