"""Stable public API for building tooling on top of sfpw.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from sfpw.core.archive import ArchiveMember, list_members
from sfpw.core.config import Config
from sfpw.core.errors import (
    AmbiguousStride,
    AnchorNotFound,
    ArchiveError,
    BadMagic,
    DecompressionFailed,
    EmptyDatabase,
    MalformedFrameError,
    OperationInProgress,
    PasswordDatabaseError,
    PointerNotFound,
    ProtocolError,
    ResponseTimeout,
    SfpwError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TruncatedSegment,
    UnexpectedStatusCode,
)
from sfpw.core.model import (
    DeviceInfo,
    FirmwareStatus,
    ModuleDetails,
    Response,
    SIFStatus,
    SnapshotInfo,
    Stats,
    TransferProgress,
)
from sfpw.core.service import DeviceService, connect
from sfpw.core.transfer import ProgressCallback
from sfpw.firmware.passdb import PasswordDatabase, PasswordEntry, load_password_database
from sfpw.transports.base import BytePipe

__all__ = [
    "SfpwError",
    "ProtocolError",
    "MalformedFrameError",
    "DecompressionFailed",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "ResponseTimeout",
    "UnexpectedStatusCode",
    "OperationInProgress",
    "BadMagic",
    "TruncatedSegment",
    "PasswordDatabaseError",
    "AnchorNotFound",
    "PointerNotFound",
    "AmbiguousStride",
    "EmptyDatabase",
    "ArchiveError",
    "ArchiveMember",
    "list_members",
    "DeviceInfo",
    "FirmwareStatus",
    "ModuleDetails",
    "Response",
    "SIFStatus",
    "SnapshotInfo",
    "Stats",
    "TransferProgress",
    "PasswordDatabase",
    "PasswordEntry",
    "BytePipe",
    "Client",
    "read_password_database",
]


def read_password_database(path: str | Path) -> PasswordDatabase:
    """Extract the unlock-password table from a firmware image file."""
    return load_password_database(path)


class Client:
    """Public client for one SFP Wizard device.

    A `Client` wraps the BLE session, the chunked transfer engine, and typed
    endpoint helpers behind a stable API. Build one with :meth:`connect` for a
    real device, or pass any :class:`BytePipe` and the device MAC directly.
    """

    def __init__(
        self,
        pipe: BytePipe,
        mac: str,
        *,
        config: Config | None = None,
        service: DeviceService | None = None,
    ) -> None:
        self._service = service or DeviceService(pipe, mac, config=config)

    @classmethod
    def connect(cls, address: str, *, config: Config | None = None) -> Client:
        service = connect(address, config=config)
        return cls(service.pipe, service.mac, service=service)

    def close(self) -> None:
        self._service.close()

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def mac(self) -> str:
        return self._service.mac

    def send(self, method: str, endpoint: str, body: bytes | None = None, *, raw_body: bool = False) -> Response:
        return self._service.send(method, endpoint, body, raw_body=raw_body)

    def get_json(self, endpoint: str) -> Any:
        return self._service.get_json(endpoint)

    def post_json(self, endpoint: str, payload: Any = None) -> Any:
        return self._service.post_json(endpoint, payload)

    def device_info(self) -> DeviceInfo:
        return self._service.device_info()

    def stats(self) -> Stats:
        return self._service.stats()

    def settings(self) -> Any:
        return self._service.settings()

    def bluetooth(self) -> Any:
        return self._service.bluetooth()

    def reboot(self) -> None:
        self._service.reboot()

    def module_details(self) -> ModuleDetails:
        return self._service.module_details()

    def read_module(self, *, progress: ProgressCallback | None = None) -> bytes:
        return self._service.read_module(progress)

    def snapshot_info(self) -> SnapshotInfo:
        return self._service.snapshot_info()

    def read_snapshot(self, *, progress: ProgressCallback | None = None) -> bytes:
        return self._service.read_snapshot(progress)

    def write_snapshot(self, data: bytes, *, progress: ProgressCallback | None = None) -> None:
        self._service.write_snapshot(data, progress)

    def sif_status(self) -> SIFStatus:
        return self._service.sif_status()

    def read_sif(self, *, progress: ProgressCallback | None = None) -> bytes:
        return self._service.read_sif(progress)

    def read_syslog(self, *, progress: ProgressCallback | None = None) -> bytes | None:
        return self._service.read_syslog(progress)

    def firmware_status(self) -> FirmwareStatus:
        return self._service.firmware_status()

    def abort_firmware_update(self) -> None:
        self._service.abort_firmware_update()

    def update_firmware(
        self,
        image: bytes,
        *,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> FirmwareStatus | None:
        self._service.update_firmware(image, force=force, progress=progress)
        return self._service.wait_for_install(progress=progress)
