"""BLE GATT byte pipe implementation."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Coroutine
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from sfpw.core.config import BLEConfig
from sfpw.core.errors import (
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
)
from sfpw.transports.base import NotificationHandler

T = TypeVar("T")
LOGGER = logging.getLogger(__name__)


class BLEGATTPipe:
    """Byte pipe over the device's API write/notify characteristics.

    bleak is asyncio-only, so the pipe runs a private event loop on a daemon
    thread. Calls from the session thread are submitted to that loop and
    waited on; notifications are delivered to subscribers on the loop thread.
    """

    def __init__(self, address: str, config: BLEConfig) -> None:
        self.address = address
        self.config = config
        self._handlers: list[NotificationHandler] = []
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def subscribe(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    def connect(self) -> None:
        try:
            from bleak import BleakClient  # type: ignore
        except Exception as exc:  # pragma: no cover - import failure path
            raise TransportConnectError(
                "BLE transport requires 'bleak'. Install dependency and retry."
            ) from exc

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name="sfpw-ble", daemon=True)
        self._thread.start()

        async def _connect() -> Any:
            client = BleakClient(self.address, timeout=self.config.connect_timeout_s)
            await client.connect()
            if not client.is_connected:
                raise TransportConnectError(f"BLE connect failed for {self.address}")
            if client.services.get_service(self.config.service_uuid) is None:
                await client.disconnect()
                raise TransportConnectError(
                    f"API service {self.config.service_uuid} not found on {self.address}"
                )
            await client.start_notify(self.config.notify_char_uuid, self._on_notify)
            await asyncio.sleep(self.config.subscribe_settle_s)
            return client

        try:
            self._client = self._run(_connect(), timeout=self.config.connect_timeout_s * 2)
        except TransportError:
            self._stop_loop()
            raise
        except Exception as exc:
            self._stop_loop()
            raise TransportConnectError(f"BLE connect failed for {self.address}: {exc}") from exc
        LOGGER.debug("Connected to %s; notifications enabled on %s", self.address, self.config.notify_char_uuid)

    def read_info(self) -> bytes:
        """Read the device-info characteristic (JSON with the device id)."""
        client = self._require_client()
        try:
            data = self._run(client.read_gatt_char(self.config.info_char_uuid))
        except TransportError:
            raise
        except Exception as exc:
            raise TransportConnectError(f"Reading device info failed: {exc}") from exc
        return bytes(data)

    def write(self, data: bytes) -> None:
        client = self._require_client()
        try:
            self._run(client.write_gatt_char(self.config.write_char_uuid, data, response=False))
        except Exception as exc:
            raise TransportSendError(f"BLE write failed: {exc}") from exc

    def close(self) -> None:
        client = self._client
        self._client = None
        if client is not None and self._loop is not None:
            try:
                self._run(client.disconnect())
            except Exception as exc:
                LOGGER.debug("Disconnect from %s failed: %s", self.address, exc)
        self._stop_loop()

    def __enter__(self) -> BLEGATTPipe:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _on_notify(self, _: Any, data: bytearray) -> None:
        payload = bytes(data)
        for handler in self._handlers:
            handler(payload)

    def _require_client(self) -> Any:
        if self._client is None or self._loop is None:
            raise TransportConnectError("BLE pipe is not connected")
        return self._client

    def _run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        loop = self._loop
        if loop is None:
            coro.close()
            raise TransportConnectError("BLE pipe is not connected")
        future = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return future.result(timeout=timeout or self.config.connect_timeout_s)
        except FutureTimeoutError as exc:
            future.cancel()
            raise TransportTimeoutError(f"BLE operation on {self.address} timed out") from exc

    def _stop_loop(self) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        if not self._loop.is_running():
            self._loop.close()
        self._loop = None
        self._thread = None
