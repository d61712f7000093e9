"""EV3 recovery protocol layer - framing, checksums, HID transport, correlation."""

from .crc32 import crc32, CRC32_POLY
from .frames import (
    MessageType,
    ReplyStatusCode,
    Command,
    ReplyFrame,
    encode_command,
    decode_reply,
    encode_range,
    chunk_image,
    check_payload_size,
    command_name,
    status_name,
    hex_preview,
    HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
    SEQUENCE_MODULUS,
)
from .hid_transport import (
    ReportTransport,
    HidTransport,
    enumerate_devices,
)
from .correlator import TransactionCorrelator

__all__ = [
    # Checksum
    "crc32",
    "CRC32_POLY",
    # Frames
    "MessageType",
    "ReplyStatusCode",
    "Command",
    "ReplyFrame",
    "encode_command",
    "decode_reply",
    "encode_range",
    "chunk_image",
    "check_payload_size",
    "command_name",
    "status_name",
    "hex_preview",
    "HEADER_SIZE",
    "MAX_PAYLOAD_SIZE",
    "SEQUENCE_MODULUS",
    # Transport
    "ReportTransport",
    "HidTransport",
    "enumerate_devices",
    # Correlation
    "TransactionCorrelator",
]
