"""
EV3 Firmware Flasher - recovery-mode firmware updater for LEGO MINDSTORMS EV3

Erase, download, verify and restart over USB HID, with write gating and
progress reporting.
"""

__version__ = "0.1.0"

from ev3_firmware_flasher.config import FlasherConfig
from ev3_firmware_flasher.errors import FlasherError, StepError, ChecksumMismatch
from ev3_firmware_flasher.protocol import HidTransport, TransactionCorrelator
from ev3_firmware_flasher.upgrader import (
    FirmwareUpgrader,
    FirmwareTransfer,
    TransferSession,
    TransferState,
    VersionInfo,
)

__all__ = [
    "FlasherConfig",
    "FlasherError",
    "StepError",
    "ChecksumMismatch",
    "HidTransport",
    "TransactionCorrelator",
    "FirmwareUpgrader",
    "FirmwareTransfer",
    "TransferSession",
    "TransferState",
    "VersionInfo",
    "__version__",
]
