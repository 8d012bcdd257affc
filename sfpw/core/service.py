"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

from sfpw.core.archive import extract_syslog
from sfpw.core.config import Config, load_config
from sfpw.core.errors import InvalidEnvelope, OperationInProgress, TransportError
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
from sfpw.core.session import TransportSession
from sfpw.core.transfer import FIRMWARE, MODULE, SIF, SNAPSHOT, ChunkedTransferEngine, ProgressCallback
from sfpw.transports.base import BytePipe
from sfpw.transports.ble_gatt import BLEGATTPipe

FIRMWARE_ABORT_SETTLE_S = 1.0
INSTALL_POLL_INTERVAL_S = 2.0
INSTALL_MAX_WAIT_S = 300.0

LOGGER = logging.getLogger(__name__)


def parse_device_info(doc: dict[str, Any]) -> DeviceInfo:
    hwv = doc.get("hwv")
    return DeviceInfo(
        id=str(doc.get("id", "")),
        fw_version=str(doc.get("fwv", "")),
        api_version=str(doc.get("apiVersion", "")),
        hw_version=int(hwv) if hwv is not None else None,
    )


def _firmware_status(doc: dict[str, Any]) -> FirmwareStatus:
    return FirmwareStatus(
        hw_version=int(doc.get("hwv", 0)),
        fw_version=str(doc.get("fwv", "")),
        is_updating=bool(doc.get("isUPdating", False)),
        status=str(doc.get("status", "")),
        progress_percent=int(doc.get("progressPercent", 0)),
        remaining_time=int(doc.get("remainingTime", 0)),
    )


def _object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise InvalidEnvelope(f"{what} response is not a JSON object")
    return value


class DeviceService:
    def __init__(
        self,
        pipe: BytePipe,
        mac: str,
        *,
        config: Config | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or load_config().config
        self.pipe = pipe
        self.mac = mac.lower().replace(":", "")
        self._sleep = sleep
        transport = self.config.transport
        transfer = self.config.transfer
        self.session = TransportSession(
            pipe,
            timeout_s=transport.timeout_s,
            mtu=transport.mtu,
            chunk_delay_s=transport.chunk_delay_s,
            inbox_size=transport.inbox_size,
            sleep=sleep,
        )
        self.transfers = ChunkedTransferEngine(
            self.session,
            path_for=self.api_path,
            timeout_s=transport.timeout_s,
            bulk_timeout_s=transport.bulk_timeout_s,
            default_chunk=transfer.default_chunk,
            chunk_delay_s=transfer.chunk_delay_s,
            abort_settle_s=transfer.abort_settle_s,
            sleep=sleep,
        )

    def close(self) -> None:
        close = getattr(self.pipe, "close", None)
        if close is not None:
            close()

    def api_path(self, endpoint: str) -> str:
        return f"{self.config.api.prefix}/{self.mac}{endpoint}"

    def send(
        self,
        method: str,
        endpoint: str,
        body: bytes | None = None,
        *,
        raw_body: bool = False,
        bulk: bool = False,
    ) -> Response:
        timeout = self.config.transport.bulk_timeout_s if bulk else self.config.transport.timeout_s
        return self.session.send(method, self.api_path(endpoint), body, raw_body=raw_body, timeout_s=timeout)

    def get_json(self, endpoint: str) -> Any:
        return self.transfers.request("GET", endpoint).json()

    def post_json(self, endpoint: str, payload: Any = None) -> Any:
        body = json.dumps(payload, separators=(",", ":")).encode("utf-8") if payload is not None else None
        return self.transfers.request("POST", endpoint, body).json()

    def device_info(self) -> DeviceInfo:
        return parse_device_info(_object(self.get_json(""), "device info"))

    def stats(self) -> Stats:
        doc = _object(self.get_json("/stats"), "stats")
        return Stats(
            battery=int(doc.get("battery", 0)),
            battery_v=float(doc.get("batteryV", 0.0)),
            is_low_battery=bool(doc.get("isLowBattery", False)),
            uptime=int(doc.get("uptime", 0)),
            signal_dbm=int(doc.get("signalDbm", 0)),
        )

    def settings(self) -> Any:
        return self.get_json("/settings")

    def bluetooth(self) -> Any:
        return self.get_json("/bt")

    def reboot(self) -> None:
        """Reboot the device; losing the connection mid-call counts as success."""
        try:
            response = self.send("POST", "/reboot")
        except TransportError as exc:
            LOGGER.info("Connection lost during reboot (expected): %s", exc)
            return
        response.raise_for_status()

    def module_details(self) -> ModuleDetails:
        doc = _object(self.get_json("/xsfp/module/details"), "module details")
        return ModuleDetails(
            part_number=str(doc.get("partNumber", "")),
            vendor=str(doc.get("vendor", "")),
            sn=str(doc.get("sn", "")),
            rev=str(doc.get("rev", "")),
            compliance=str(doc.get("compliance", "")),
        )

    def read_module(self, progress: ProgressCallback | None = None) -> bytes:
        return self.transfers.read(MODULE, progress=progress)

    def snapshot_info(self) -> SnapshotInfo:
        doc = _object(self.get_json(SNAPSHOT.start), "snapshot info")
        return SnapshotInfo(
            size=int(doc.get("size", 0)),
            chunk=int(doc.get("chunk", 0)),
            part_number=str(doc.get("partNumber", "")),
            vendor=str(doc.get("vendor", "")),
            sn=str(doc.get("sn", "")),
        )

    def read_snapshot(self, progress: ProgressCallback | None = None) -> bytes:
        return self.transfers.read(SNAPSHOT, progress=progress)

    def write_snapshot(self, data: bytes, progress: ProgressCallback | None = None) -> None:
        self.transfers.write(SNAPSHOT, data, progress=progress)

    def sif_status(self) -> SIFStatus:
        doc = self.transfers.status(SIF)
        return SIFStatus(
            status=str(doc.get("status", "")),
            offset=int(doc.get("offset", 0)),
            chunk=int(doc.get("chunk", 0)),
            size=int(doc.get("size", 0)),
        )

    def abort_sif(self) -> None:
        self.transfers.abort(SIF)

    def abort_sif_if_running(self) -> bool:
        return self.transfers.abort_if_active(SIF)

    def read_sif(self, progress: ProgressCallback | None = None) -> bytes:
        """Download the support dump (a tar archive of syslog and module data)."""
        return self.transfers.read(SIF, progress=progress)

    def read_syslog(self, progress: ProgressCallback | None = None) -> bytes | None:
        """Download the support dump and return its syslog, or None if it has none."""
        return extract_syslog(self.read_sif(progress))

    def firmware_status(self) -> FirmwareStatus:
        return _firmware_status(self.transfers.status(FIRMWARE))

    def abort_firmware_update(self) -> None:
        self.transfers.abort(FIRMWARE)

    def update_firmware(
        self,
        image: bytes,
        *,
        force: bool = False,
        progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Upload a firmware image chunk by chunk.

        An update already running on the device is only aborted when
        ``force`` is set; otherwise OperationInProgress is raised.
        """
        status = self.firmware_status()
        if status.is_updating:
            if not force:
                raise OperationInProgress(
                    f"A firmware update is already in progress (status: {status.status})"
                )
            LOGGER.info("Aborting existing firmware update")
            self.abort_firmware_update()
            self._sleep(FIRMWARE_ABORT_SETTLE_S)
        return self.transfers.write(FIRMWARE, image, chunked=True, progress=progress)

    def wait_for_install(
        self,
        *,
        poll_interval_s: float = INSTALL_POLL_INTERVAL_S,
        max_wait_s: float = INSTALL_MAX_WAIT_S,
        progress: ProgressCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> FirmwareStatus | None:
        """Poll firmware status until installation finishes.

        Returns None when the connection drops, which is what a device
        rebooting into new firmware looks like.
        """
        deadline = clock() + max_wait_s
        status: FirmwareStatus | None = None
        while clock() < deadline:
            self._sleep(poll_interval_s)
            try:
                status = self.firmware_status()
            except TransportError as exc:
                LOGGER.info("Status check failed, device may be rebooting: %s", exc)
                return None
            if progress is not None:
                progress(TransferProgress(current=status.progress_percent, total=100, phase="installing"))
            if not status.is_updating:
                return status
        return status


def connect(address: str, *, config: Config | None = None) -> DeviceService:
    """Connect over BLE and build a service addressed by the device's MAC."""
    resolved = config or load_config().config
    pipe = BLEGATTPipe(address, resolved.ble)
    pipe.connect()
    try:
        raw_info = pipe.read_info()
        try:
            info = parse_device_info(_object(json.loads(raw_info), "device info characteristic"))
        except ValueError as exc:
            raise InvalidEnvelope(f"device info characteristic is not JSON: {exc}") from exc
        mac = info.mac or address
        LOGGER.debug("Device MAC: %s (firmware %s)", mac, info.fw_version)
        return DeviceService(pipe, mac, config=resolved)
    except Exception:
        pipe.close()
        raise
