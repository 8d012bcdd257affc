from __future__ import annotations

import json

import pytest

from sfpw.core import service as service_module
from sfpw.core.errors import InvalidEnvelope, OperationInProgress, TransportError, UnexpectedStatusCode
from sfpw.core.model import FirmwareStatus
from sfpw.core.service import DeviceService, parse_device_info

from conftest import FakeDevice, build_archive, json_reply

MAC = "deadbeef0001"
PREFIX = f"/api/1.0/{MAC}"


def _service(device: FakeDevice, config) -> DeviceService:
    return DeviceService(device, "DE:AD:BE:EF:00:01", config=config, sleep=lambda _: None)


def test_paths_are_prefixed_with_mac(fast_config) -> None:
    device = FakeDevice(lambda request, body: json_reply({"id": "DE:AD:BE:EF:00:01", "fwv": "1.1.3", "apiVersion": "1.0"}))
    info = _service(device, fast_config).device_info()

    assert device.paths == [PREFIX]
    assert info.fw_version == "1.1.3"
    assert info.mac == MAC


def test_stats(fast_config) -> None:
    device = FakeDevice(
        lambda request, body: json_reply(
            {"battery": 72, "batteryV": 3.91, "isLowBattery": False, "uptime": 1234, "signalDbm": -61}
        )
    )
    stats = _service(device, fast_config).stats()

    assert device.paths == [f"{PREFIX}/stats"]
    assert stats.battery == 72
    assert stats.signal_dbm == -61


def test_error_status_raises(fast_config) -> None:
    device = FakeDevice(lambda request, body: (404, b"not found"))
    with pytest.raises(UnexpectedStatusCode) as exc:
        _service(device, fast_config).settings()
    assert exc.value.status_code == 404
    assert exc.value.path == f"{PREFIX}/settings"


def test_non_object_response_is_rejected(fast_config) -> None:
    device = FakeDevice(lambda request, body: json_reply([1, 2, 3]))
    with pytest.raises(InvalidEnvelope):
        _service(device, fast_config).stats()


def test_reboot_tolerates_lost_connection(fast_config) -> None:
    device = FakeDevice(lambda request, body: None)
    _service(device, fast_config).reboot()
    assert device.paths == [f"{PREFIX}/reboot"]


def test_reboot_reports_refusal(fast_config) -> None:
    device = FakeDevice(lambda request, body: (403, b"locked"))
    with pytest.raises(UnexpectedStatusCode):
        _service(device, fast_config).reboot()


def test_post_json_encodes_payload(fast_config) -> None:
    seen: list[bytes] = []

    def handler(request, body):
        seen.append(body)
        return json_reply({"ok": True})

    assert _service(FakeDevice(handler), fast_config).post_json("/settings", {"name": "lab"}) == {"ok": True}
    assert seen == [b'{"name":"lab"}']


def test_module_details(fast_config) -> None:
    device = FakeDevice(
        lambda request, body: json_reply({"partNumber": "SFP-10G-LR", "vendor": "UBNT", "sn": "X1", "rev": "A"})
    )
    details = _service(device, fast_config).module_details()
    assert details.present
    assert details.vendor == "UBNT"


def _firmware_handler(states: list[dict], uploaded: list[bytes]):
    def handler(request, body):
        endpoint = request.path[len(PREFIX) :]
        if endpoint == "/fw":
            return json_reply(states.pop(0) if len(states) > 1 else states[0])
        if endpoint == "/fw/start":
            assert json.loads(body) == {"size": 300}
            return json_reply({"status": "ready", "chunk": 128})
        if endpoint == "/fw/data":
            uploaded.append(body)
            return json_reply({"status": "continue"})
        if endpoint == "/fw/abort":
            return 200, None
        return 404, None

    return handler


def test_update_firmware_uploads_in_chunks(fast_config) -> None:
    uploaded: list[bytes] = []
    device = FakeDevice(_firmware_handler([{"isUPdating": False, "status": "idle"}], uploaded))

    _service(device, fast_config).update_firmware(bytes(300))

    assert [len(chunk) for chunk in uploaded] == [128, 128, 44]
    assert f"{PREFIX}/fw/abort" not in device.paths


def test_update_firmware_refuses_when_busy(fast_config) -> None:
    uploaded: list[bytes] = []
    device = FakeDevice(_firmware_handler([{"isUPdating": True, "status": "inprogress"}], uploaded))

    with pytest.raises(OperationInProgress):
        _service(device, fast_config).update_firmware(bytes(300))
    assert uploaded == []


def test_update_firmware_force_aborts_first(fast_config) -> None:
    uploaded: list[bytes] = []
    device = FakeDevice(_firmware_handler([{"isUPdating": True, "status": "inprogress"}], uploaded))

    _service(device, fast_config).update_firmware(bytes(300), force=True)

    endpoints = [path[len(PREFIX) :] for path in device.paths]
    assert endpoints[:3] == ["/fw", "/fw/abort", "/fw/start"]
    assert len(uploaded) == 3


def test_wait_for_install_polls_until_done(fast_config) -> None:
    states = [
        {"isUPdating": True, "status": "installing", "progressPercent": 40, "fwv": "1.1.2"},
        {"isUPdating": True, "status": "installing", "progressPercent": 90, "fwv": "1.1.2"},
        {"isUPdating": False, "status": "finished", "progressPercent": 100, "fwv": "1.1.3"},
    ]
    seen = []
    device = FakeDevice(_firmware_handler(states, []))

    status = _service(device, fast_config).wait_for_install(progress=seen.append)

    assert isinstance(status, FirmwareStatus)
    assert status.fw_version == "1.1.3"
    assert [p.current for p in seen] == [40, 90, 100]


def test_wait_for_install_treats_disconnect_as_reboot(fast_config) -> None:
    device = FakeDevice(lambda request, body: None)
    assert _service(device, fast_config).wait_for_install() is None


def test_parse_device_info_handles_missing_fields() -> None:
    info = parse_device_info({"id": "AA:BB:CC:DD:EE:FF"})
    assert info.fw_version == ""
    assert info.hw_version is None
    assert info.mac == "aabbccddeeff"


class FakePipe(FakeDevice):
    def __init__(self, info: bytes) -> None:
        super().__init__(lambda request, body: None)
        self.info = info
        self.connected = False

    def connect(self) -> None:
        self.connected = True

    def read_info(self) -> bytes:
        return self.info


def test_connect_uses_mac_from_info_characteristic(monkeypatch: pytest.MonkeyPatch, fast_config) -> None:
    pipe = FakePipe(b'{"id":"DE:AD:BE:EF:00:01","fwv":"1.1.3","apiVersion":"1.0"}')
    monkeypatch.setattr(service_module, "BLEGATTPipe", lambda address, config: pipe)

    svc = service_module.connect("DE:AD:BE:EF:00:01", config=fast_config)

    assert pipe.connected
    assert svc.mac == MAC
    assert svc.api_path("/stats") == f"{PREFIX}/stats"


def test_connect_closes_pipe_on_bad_info(monkeypatch: pytest.MonkeyPatch, fast_config) -> None:
    pipe = FakePipe(b"not json")
    monkeypatch.setattr(service_module, "BLEGATTPipe", lambda address, config: pipe)

    with pytest.raises(InvalidEnvelope):
        service_module.connect("DE:AD:BE:EF:00:01", config=fast_config)
    assert pipe.closed


def test_transport_errors_share_base(fast_config) -> None:
    device = FakeDevice(lambda request, body: None)
    with pytest.raises(TransportError):
        _service(device, fast_config).stats()


def test_read_syslog_from_support_archive(fast_config) -> None:
    archive = build_archive([("syslog", b"boot ok\n"), ("module.bin", b"\xff" * 16)])

    def handler(request, body):
        endpoint = request.path[len(PREFIX) :]
        if endpoint == "/sif/info/":
            return json_reply({"status": "idle"})
        if endpoint == "/sif/start":
            return json_reply({"status": "ready", "size": len(archive), "chunk": 512})
        if endpoint == "/sif/data/":
            want = json.loads(body)
            return 200, archive[want["offset"] : want["offset"] + want["chunk"]]
        return 404, None

    assert _service(FakeDevice(handler), fast_config).read_syslog() == b"boot ok\n"
