from __future__ import annotations

from dataclasses import replace

import pytest

from sfpw.core.config import load_config
from sfpw.core.errors import TransportConnectError
from sfpw.transports.ble_gatt import BLEGATTPipe

bleak = pytest.importorskip("bleak")

ADDRESS = "DE:AD:BE:EF:00:01"


class FakeServices:
    def __init__(self, uuids: set[str]) -> None:
        self.uuids = uuids

    def get_service(self, uuid: str) -> object | None:
        return object() if uuid in self.uuids else None


class FakeBleakClient:
    instances: list[FakeBleakClient] = []
    service_uuids: set[str] = set()

    def __init__(self, address: str, timeout: float = 10.0) -> None:
        self.address = address
        self.is_connected = False
        self.services = FakeServices(self.service_uuids)
        self.notify: dict[str, object] = {}
        self.writes: list[tuple[str, bytes, bool]] = []
        self.disconnected = False
        FakeBleakClient.instances.append(self)

    async def connect(self) -> None:
        self.is_connected = True

    async def disconnect(self) -> None:
        self.is_connected = False
        self.disconnected = True

    async def start_notify(self, uuid: str, callback) -> None:
        self.notify[uuid] = callback

    async def write_gatt_char(self, uuid: str, data: bytes, response: bool = True) -> None:
        self.writes.append((uuid, bytes(data), response))

    async def read_gatt_char(self, uuid: str) -> bytearray:
        return bytearray(b'{"id":"DE:AD:BE:EF:00:01"}')


@pytest.fixture
def ble_config():
    config = load_config().config.ble
    return replace(config, connect_timeout_s=1.0, subscribe_settle_s=0.0)


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> type[FakeBleakClient]:
    FakeBleakClient.instances = []
    FakeBleakClient.service_uuids = set()
    monkeypatch.setattr(bleak, "BleakClient", FakeBleakClient)
    return FakeBleakClient


def test_missing_api_service_fails_connect(ble_config, fake_client) -> None:
    pipe = BLEGATTPipe(ADDRESS, ble_config)

    with pytest.raises(TransportConnectError, match="not found"):
        pipe.connect()

    client = fake_client.instances[0]
    assert client.disconnected
    assert client.notify == {}
    with pytest.raises(TransportConnectError, match="not connected"):
        pipe.write(b"\x00")


def test_connected_pipe_writes_and_fans_out_notifications(ble_config, fake_client) -> None:
    fake_client.service_uuids = {ble_config.service_uuid}
    received: list[bytes] = []

    with BLEGATTPipe(ADDRESS, ble_config) as pipe:
        pipe.subscribe(received.append)
        client = fake_client.instances[0]

        pipe.write(b"\x00\x10frame")
        client.notify[ble_config.notify_char_uuid](None, bytearray(b"reply"))
        info = pipe.read_info()

    assert client.writes == [(ble_config.write_char_uuid, b"\x00\x10frame", False)]
    assert received == [b"reply"]
    assert info == b'{"id":"DE:AD:BE:EF:00:01"}'
    assert client.disconnected


def test_write_before_connect_is_rejected(ble_config) -> None:
    with pytest.raises(TransportConnectError):
        BLEGATTPipe(ADDRESS, ble_config).write(b"\x00")
