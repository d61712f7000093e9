"""
EV3 HID Transport Layer

Handles low-level USB HID communication with LEGO EV3 bricks through
hidapi.

This module provides:
- Device enumeration and open/close lifecycle
- Outbound report writes (report id prefix + padding to report size)
- Blocking inbound report reads with a timeout

hidapi queues inbound reports from the moment the device is opened, so a
reply that arrives before read is called is never lost.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

try:
    import hid
except ImportError:
    hid = None

from ..errors import (
    HidTransportError,
    NotConnected,
    TransportCloseError,
    TransportOpenError,
    TransportReadError,
    TransportWriteError,
)
from .frames import hex_preview

logger = logging.getLogger(__name__)

DEFAULT_REPORT_SIZE = 1024


class ReportTransport(ABC):
    """
    Report channel used by the correlator.

    Implementations own the device lifetime and move whole reports; they
    know nothing about frames.
    """

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def open(self) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...

    @abstractmethod
    def send_report(self, report_id: int, data: bytes) -> None:
        ...

    @abstractmethod
    def receive_report(self, timeout: Optional[float] = None) -> Optional[bytes]:
        ...


class HidTransport(ReportTransport):
    """
    Low-level HID transport for EV3 bricks.

    Handles:
    - Device open by path or VID/PID
    - Report writes with report id prefix
    - Timed report reads

    Example:
        transport = HidTransport(vendor_id=0x0694, product_id=0x0006)
        transport.open()
        transport.send_report(0x00, frame)
        reply = transport.receive_report(timeout=5.0)
        transport.close()
    """

    def __init__(
        self,
        vendor_id: Optional[int] = None,
        product_id: Optional[int] = None,
        path: Optional[bytes] = None,
        report_size: int = DEFAULT_REPORT_SIZE,
        read_size: int = DEFAULT_REPORT_SIZE,
    ):
        """
        Initialize transport layer.

        Args:
            vendor_id: USB vendor id (used when no path is given)
            product_id: USB product id (used when no path is given)
            path: hidapi device path (takes precedence over VID/PID)
            report_size: Outbound report size; frames are zero-padded to it (0 = no padding)
            read_size: Maximum inbound report length to request
        """
        if hid is None:
            raise HidTransportError("hidapi not installed: pip install hidapi")
        if path is None and (vendor_id is None or product_id is None):
            raise ValueError("Either path or vendor_id/product_id is required")

        self.vendor_id = vendor_id
        self.product_id = product_id
        self.path = path
        self.report_size = report_size
        self.read_size = read_size
        self.dev: Optional["hid.device"] = None

    @property
    def name(self) -> str:
        if self.path is not None:
            return self.path.decode("utf-8", errors="replace") if isinstance(self.path, bytes) else str(self.path)
        return f"{self.vendor_id:04X}:{self.product_id:04X}"

    @property
    def is_open(self) -> bool:
        return self.dev is not None

    def open(self) -> None:
        """
        Open the HID device in blocking mode.

        Raises:
            TransportOpenError: If the device cannot be opened
        """
        dev = hid.device()
        try:
            if self.path is not None:
                dev.open_path(self.path)
            else:
                dev.open(self.vendor_id, self.product_id)
            dev.set_nonblocking(0)
        except (OSError, IOError, ValueError) as e:
            raise TransportOpenError(f"Cannot open HID device {self.name}: {e}") from e

        self.dev = dev
        logger.debug(f"Opened HID device {self.name}")

    def close(self) -> None:
        """
        Close the HID device.

        Raises:
            TransportCloseError: If hidapi fails to release the device
        """
        if self.dev is None:
            return
        dev, self.dev = self.dev, None
        try:
            dev.close()
        except (OSError, IOError) as e:
            raise TransportCloseError(f"Error closing HID device {self.name}: {e}") from e
        logger.debug(f"Closed HID device {self.name}")

    def __enter__(self) -> "HidTransport":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def send_report(self, report_id: int, data: bytes) -> None:
        """
        Send one output report.

        Args:
            report_id: HID report id (prefixed to the data on the wire)
            data: Report data

        Raises:
            NotConnected: If the device is not open
            TransportWriteError: If the write fails or is short
        """
        if self.dev is None:
            raise NotConnected("HID device not open")

        if self.report_size and len(data) < self.report_size:
            data = data + bytes(self.report_size - len(data))
        report = bytes([report_id & 0xFF]) + data

        try:
            written = self.dev.write(report)
        except (OSError, IOError, ValueError) as e:
            raise TransportWriteError(f"Write error: {e}") from e

        if written < 0:
            raise TransportWriteError(f"Write error: {self._last_error()}")
        if written < len(report):
            raise TransportWriteError(
                f"Incomplete write: sent {written}/{len(report)} bytes"
            )
        logger.debug(f">>> {hex_preview(data)}")

    def receive_report(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Receive one input report.

        Args:
            timeout: Seconds to wait; None blocks indefinitely

        Returns:
            Report data, or None if the timeout expired

        Raises:
            NotConnected: If the device is not open
            TransportReadError: If the read fails (e.g. device unplugged)
        """
        if self.dev is None:
            raise NotConnected("HID device not open")

        timeout_ms = -1 if timeout is None else max(0, int(timeout * 1000))
        try:
            data = self.dev.read(self.read_size, timeout_ms)
        except (OSError, IOError, ValueError) as e:
            raise TransportReadError(f"Read error: {e}") from e

        if not data:
            return None

        data = bytes(data)
        logger.debug(f"<<< {hex_preview(data)}")
        return data

    def _last_error(self) -> str:
        try:
            return self.dev.error() or "unknown error"
        except (AttributeError, OSError, IOError):
            return "unknown error"


def enumerate_devices(vendor_id: int = 0, product_id: int = 0) -> List[Dict]:
    """
    List attached HID devices.

    Args:
        vendor_id: Filter by vendor id (0 = any)
        product_id: Filter by product id (0 = any)

    Returns:
        hidapi device info dicts (path, vendor_id, product_id, product_string, ...)
    """
    if hid is None:
        raise HidTransportError("hidapi not installed: pip install hidapi")
    return list(hid.enumerate(vendor_id, product_id))

