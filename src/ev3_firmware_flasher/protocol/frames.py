"""
EV3 System Command Frame Codec

Builds outbound command frames and parses inbound reply frames exchanged
with the EV3 brick over HID report id 0x00.

Frame format (all integers little-endian):
    offset 0: u16 length          = 4 + payload length (bytes after this field)
    offset 2: u16 sequence number
    offset 4: u8  message type
    offset 5: u8  command
    offset 6: payload (0..1018 bytes)

Reply frames share the header; for SYSTEM_REPLY / SYSTEM_REPLY_ERROR the
byte at offset 6 is the status code and the command-specific reply body
follows it.

This module is pure serialization: no I/O, no validation of message type.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple

from ..errors import FrameError, PayloadTooLarge

# Header: length, sequence number, message type, command
HEADER_FORMAT = "<HHBB"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 6
LENGTH_FIELD_SIZE = 2
MAX_PAYLOAD_SIZE = 1018
SEQUENCE_MODULUS = 0x10000


class MessageType(IntEnum):
    """Message type byte at offset 4."""
    SYSTEM_COMMAND_REPLY = 0x01
    SYSTEM_COMMAND_NO_REPLY = 0x81
    SYSTEM_REPLY = 0x03
    SYSTEM_REPLY_ERROR = 0x05


class ReplyStatusCode(IntEnum):
    """Status byte at offset 6 of SYSTEM_REPLY / SYSTEM_REPLY_ERROR frames."""
    SUCCESS = 0x00
    UNKNOWN_HANDLE = 0x01
    HANDLE_NOT_READY = 0x02
    CORRUPT_FILE = 0x03
    NO_HANDLES_AVAILABLE = 0x04
    NO_PERMISSION = 0x05
    ILLEGAL_PATH = 0x06
    FILE_EXISTS = 0x07
    END_OF_FILE = 0x08
    SIZE_ERROR = 0x09
    UNKNOWN_ERROR = 0x0A
    ILLEGAL_FILENAME = 0x0B
    ILLEGAL_CONNECTION = 0x0C


class Command(IntEnum):
    """System command codes used by the flasher."""
    ENTER_FW_UPDATE = 0xA0

    RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE = 0xF0
    RECOVERY_BEGIN_DOWNLOAD = 0xF1
    RECOVERY_DOWNLOAD_DATA = 0xF2
    RECOVERY_CHIP_ERASE = 0xF3
    RECOVERY_START_APP = 0xF4
    RECOVERY_GET_CHECKSUM = 0xF5
    RECOVERY_GET_VERSION = 0xF6


def status_name(status: Optional[int]) -> str:
    """Return the ReplyStatusCode name for a status byte, or '' if unknown."""
    if status is None:
        return ""
    try:
        return ReplyStatusCode(status).name
    except ValueError:
        return ""


def command_name(command: int) -> str:
    """Return a printable command name (``Command.X`` or hex)."""
    try:
        return f"Command.{Command(command).name}"
    except ValueError:
        return f"0x{command:02X}"


@dataclass(frozen=True)
class ReplyFrame:
    """
    Decoded inbound frame.

    Attributes:
        length: Value of the length field
        sequence_number: Sequence number echoed by the device
        message_type: Raw message type byte (see MessageType)
        command: Command byte echoed by the device
        body: Bytes from offset 6 up to the end announced by ``length``
        raw: The frame bytes as decoded (header + body)
    """
    length: int
    sequence_number: int
    message_type: int
    command: int
    body: bytes
    raw: bytes = b""

    @property
    def status(self) -> Optional[int]:
        """Status byte (offset 6), None when the frame carries no body."""
        return self.body[0] if self.body else None

    @property
    def is_error(self) -> bool:
        return self.message_type == MessageType.SYSTEM_REPLY_ERROR

    def u16_be(self, offset: int) -> int:
        """Read a big-endian u16 at an absolute frame offset."""
        return struct.unpack_from(">H", self._field(offset, 2))[0]

    def u32_le(self, offset: int) -> int:
        """Read a little-endian u32 at an absolute frame offset."""
        return struct.unpack_from("<I", self._field(offset, 4))[0]

    def _field(self, offset: int, size: int) -> bytes:
        start = offset - HEADER_SIZE
        if start < 0 or start + size > len(self.body):
            raise FrameError(
                f"Reply too short for {size}-byte field at offset {offset} "
                f"(frame is {HEADER_SIZE + len(self.body)} bytes)"
            )
        return self.body[start:start + size]


def check_payload_size(payload: Optional[bytes]) -> None:
    """Raise PayloadTooLarge if payload exceeds the frame ceiling."""
    if payload and len(payload) > MAX_PAYLOAD_SIZE:
        raise PayloadTooLarge(len(payload), MAX_PAYLOAD_SIZE)


def encode_command(
    command: int,
    payload: Optional[bytes] = None,
    sequence_number: int = 0,
    message_type: int = MessageType.SYSTEM_COMMAND_REPLY,
) -> bytes:
    """
    Build an outbound command frame.

    Args:
        command: Command byte (see Command)
        payload: Optional command payload (0..1018 bytes)
        sequence_number: Message counter value, stored modulo 65536
        message_type: Message type byte (default SYSTEM_COMMAND_REPLY)

    Returns:
        Complete frame bytes (6-byte header + payload)

    Raises:
        PayloadTooLarge: If payload exceeds MAX_PAYLOAD_SIZE
    """
    check_payload_size(payload)
    payload = bytes(payload or b"")
    header = struct.pack(
        HEADER_FORMAT,
        4 + len(payload),
        sequence_number % SEQUENCE_MODULUS,
        message_type,
        command,
    )
    return header + payload


def decode_reply(data: bytes) -> ReplyFrame:
    """
    Parse an inbound frame header and body.

    Trailing report padding beyond ``length + 2`` is ignored.

    Raises:
        FrameError: If the data is shorter than the header or than the
            length field announces
    """
    data = bytes(data)
    if len(data) < HEADER_SIZE:
        raise FrameError(
            f"Invalid reply frame ({len(data)} bytes): {data.hex() if data else 'empty'}"
        )

    length, sequence_number, message_type, command = struct.unpack_from(HEADER_FORMAT, data)
    end = LENGTH_FIELD_SIZE + length
    if length < 4:
        raise FrameError(f"Invalid reply length field {length}: {data[:HEADER_SIZE].hex()}")
    if end > len(data):
        raise FrameError(
            f"Truncated reply frame: length field says {end} bytes, got {len(data)}"
        )

    return ReplyFrame(
        length=length,
        sequence_number=sequence_number,
        message_type=message_type,
        command=command,
        body=data[HEADER_SIZE:end],
        raw=data[:end],
    )


def encode_range(address: int, size: int) -> bytes:
    """Pack an (address, size) pair as two little-endian u32 fields."""
    return struct.pack("<II", address, size)


def chunk_image(image: bytes, chunk_size: int = MAX_PAYLOAD_SIZE) -> List[Tuple[int, bytes]]:
    """
    Split an image into (offset, chunk) pairs for RECOVERY_DOWNLOAD_DATA.

    Chunks are in order, non-overlapping and cover the image exactly once;
    only the final chunk may be shorter than chunk_size.
    """
    if not 1 <= chunk_size <= MAX_PAYLOAD_SIZE:
        raise ValueError(f"chunk_size must be 1..{MAX_PAYLOAD_SIZE}, got {chunk_size}")
    return [
        (offset, image[offset:offset + chunk_size])
        for offset in range(0, len(image), chunk_size)
    ]


def hex_preview(data: bytes, limit: int = 32) -> str:
    """Hex dump for debug logs, truncated to ``limit`` bytes."""
    return data[:limit].hex(" ").upper() + (" ..." if len(data) > limit else "")
