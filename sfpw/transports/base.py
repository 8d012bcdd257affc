"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

NotificationHandler = Callable[[bytes], None]


class BytePipe(Protocol):
    def write(self, data: bytes) -> None:
        """Write one chunk to the device. Raises TransportSendError on failure."""

    def subscribe(self, handler: NotificationHandler) -> None:
        """Register a handler called with each inbound notification payload."""
