"""
Flasher configuration.

A single frozen dataclass carries every tunable of the protocol stack.
The CLI builds one from its options; library callers construct it directly.
"""

from dataclasses import dataclass, replace

from .protocol.frames import MAX_PAYLOAD_SIZE

# Report id used for every EV3 HID exchange
UPGRADE_REPORT_ID = 0x00
REPORT_SIZE = 1024

DEFAULT_REPLY_TIMEOUT = 5.0
# Erase + begin download gives no progress feedback and takes a while
DEFAULT_ERASE_TIMEOUT = 60.0


@dataclass(frozen=True)
class FlasherConfig:
    """
    Protocol and transfer settings.

    Attributes:
        report_id: HID report id for outbound reports
        report_size: Outbound report size in bytes (0 disables padding)
        read_size: Maximum inbound report length requested from the transport
        reply_timeout: Seconds to wait for an ordinary reply
        erase_timeout: Seconds to wait for the erase + begin-download reply
        chunk_size: Firmware bytes per RECOVERY_DOWNLOAD_DATA frame
        strict_checksum: Treat a checksum mismatch after download as fatal
    """
    report_id: int = UPGRADE_REPORT_ID
    report_size: int = REPORT_SIZE
    read_size: int = REPORT_SIZE
    reply_timeout: float = DEFAULT_REPLY_TIMEOUT
    erase_timeout: float = DEFAULT_ERASE_TIMEOUT
    chunk_size: int = MAX_PAYLOAD_SIZE
    strict_checksum: bool = True

    def __post_init__(self):
        if not 0 <= self.report_id <= 0xFF:
            raise ValueError(f"report_id must fit in uint8, got {self.report_id}")
        if self.report_size < 0:
            raise ValueError("report_size must be >= 0")
        if self.read_size < 1:
            raise ValueError("read_size must be >= 1")
        if self.reply_timeout <= 0 or self.erase_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if not 1 <= self.chunk_size <= MAX_PAYLOAD_SIZE:
            raise ValueError(f"chunk_size must be 1..{MAX_PAYLOAD_SIZE}, got {self.chunk_size}")

    def replace(self, **changes) -> "FlasherConfig":
        """Return a validated copy with ``changes`` applied."""
        return replace(self, **changes)
