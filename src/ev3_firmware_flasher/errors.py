"""
Exception hierarchy for EV3 Firmware Flasher.

Every error raised by the protocol, transport and transfer layers derives
from FlasherError so callers (CLI, actions) can catch one base class.
"""

from typing import Optional


class FlasherError(Exception):
    """Base exception for all flasher operations."""


class PayloadTooLarge(FlasherError, ValueError):
    """Command payload exceeds the frame payload ceiling. Never sent."""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload is too large: {size} bytes (max {limit})")


class FrameError(FlasherError):
    """Inbound report cannot be decoded as a reply frame."""


class HidTransportError(FlasherError):
    """Base exception for HID transport failures"""


class TransportOpenError(HidTransportError):
    """Device could not be opened"""


class TransportCloseError(HidTransportError):
    """Device could not be closed cleanly"""


class TransportWriteError(HidTransportError):
    """Outbound report was rejected by the device or host stack"""


class TransportReadError(HidTransportError):
    """Inbound report could not be read (device gone, I/O error)"""


class NotConnected(FlasherError):
    """Operation attempted while no device is open."""


class NoReplyReceived(FlasherError):
    """An expected reply never materialized."""


class ReplyTimeout(NoReplyReceived):
    """No matching reply arrived within the bounded wait."""

    def __init__(self, command: int, sequence_number: int, timeout: float):
        self.command = command
        self.sequence_number = sequence_number
        self.timeout = timeout
        super().__init__(
            f"No reply to command 0x{command:02X} (seq {sequence_number}) "
            f"within {timeout:g}s"
        )


class CommandMismatch(FlasherError):
    """Reply command byte differs from the command that was sent."""

    def __init__(self, sent: int, received: int):
        self.sent = sent
        self.received = received
        super().__init__(f"command mismatch: 0x{received:02X} != 0x{sent:02X}")


class DeviceReportedError(FlasherError):
    """
    Device answered with SYSTEM_REPLY_ERROR.

    Attributes:
        command: Command byte the error refers to
        status: Raw status byte from the reply
        status_name: ReplyStatusCode name when the byte is a known code
    """

    def __init__(self, command: int, status: Optional[int], status_name: str = ""):
        self.command = command
        self.status = status
        self.status_name = status_name
        if status is None:
            detail = "no status byte"
        elif status_name:
            detail = f"status 0x{status:02X} ({status_name})"
        else:
            detail = f"status 0x{status:02X}"
        super().__init__(f"Device reported error for command 0x{command:02X}: {detail}")


class ChecksumMismatch(FlasherError):
    """On-device CRC-32 of the written range differs from the image CRC-32."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch: expected 0x{expected:08X}, device reported 0x{actual:08X}"
        )


class StepError(FlasherError):
    """
    A protocol step (single command or transfer stage) failed.

    The message embeds the step name; the underlying error is kept in
    ``cause`` and chained as ``__cause__``.
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Error communicating with device: {step}, {cause}")
