"""Shared fixtures: an in-memory HID device that speaks the EV3 recovery protocol."""

import struct
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, List, Optional, Tuple

import pytest

from ev3_firmware_flasher.config import FlasherConfig
from ev3_firmware_flasher.errors import NotConnected, TransportOpenError
from ev3_firmware_flasher.protocol.crc32 import crc32
from ev3_firmware_flasher.protocol.frames import Command, MessageType, ReplyStatusCode
from ev3_firmware_flasher.protocol.hid_transport import ReportTransport
from ev3_firmware_flasher.upgrader import FirmwareUpgrader


@dataclass
class SentCommand:
    """One outbound frame as seen by the fake device."""
    length: int
    sequence_number: int
    message_type: int
    command: int
    payload: bytes


def parse_sent(frame: bytes) -> SentCommand:
    length, seq, message_type, command = struct.unpack_from("<HHBB", frame)
    return SentCommand(length, seq, message_type, command, frame[6:2 + length])


def reply_frame(
    sequence_number: int,
    command: int,
    payload: bytes = b"\x00",
    message_type: int = MessageType.SYSTEM_REPLY,
    padding: int = 0,
) -> bytes:
    """Build a reply; ``payload`` starts at frame offset 6 (status byte first)."""
    header = struct.pack("<HHBB", 4 + len(payload), sequence_number, message_type, command)
    return header + payload + bytes(padding)


def error_reply(sequence_number: int, command: int, status: int = ReplyStatusCode.UNKNOWN_ERROR) -> bytes:
    return reply_frame(
        sequence_number, command, bytes([status]), message_type=MessageType.SYSTEM_REPLY_ERROR
    )


Responder = Callable[[SentCommand], List[bytes]]


def ack_responder(sent: SentCommand) -> List[bytes]:
    """Answer every command with a plain SUCCESS reply."""
    return [reply_frame(sent.sequence_number, sent.command)]


def silent_responder(sent: SentCommand) -> List[bytes]:
    return []


class FakeHidDevice(ReportTransport):
    """
    Scripted report transport.

    Records every outbound report and queues whatever the responder returns
    as inbound reports. Reads on an empty queue time out immediately.
    """

    def __init__(self, responder: Optional[Responder] = None, is_open: bool = True):
        self.responder = responder or ack_responder
        self.sent: List[Tuple[int, bytes]] = []
        self.inbound: Deque[bytes] = deque()
        self.fail_open = False
        self.open_calls = 0
        self._open = is_open

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def commands(self) -> List[SentCommand]:
        return [parse_sent(frame) for _, frame in self.sent]

    def open(self) -> None:
        self.open_calls += 1
        if self.fail_open:
            raise TransportOpenError("Cannot open HID device fake: no such device")
        self._open = True

    def close(self) -> None:
        self._open = False

    def send_report(self, report_id: int, data: bytes) -> None:
        if not self._open:
            raise NotConnected("HID device not open")
        self.sent.append((report_id, bytes(data)))
        self.inbound.extend(self.responder(parse_sent(bytes(data))))

    def receive_report(self, timeout: Optional[float] = None) -> Optional[bytes]:
        if not self._open:
            raise NotConnected("HID device not open")
        if not self.inbound:
            return None
        return self.inbound.popleft()


class RecoveryBrick:
    """
    Behavioural model of an EV3 in recovery mode.

    Keeps the downloaded bytes and answers RECOVERY_GET_CHECKSUM with their
    CRC-32. Failure knobs:
        fail_chunk: 1-based index of the data chunk answered with an error
        silent: commands that never get a reply
        checksum_override: value reported instead of the real CRC-32
        block_on: command whose reply waits for ``release`` to be set
    """

    def __init__(self, hardware_id: int = 0x0006, firmware_id: int = 0x0102):
        self.hardware_id = hardware_id
        self.firmware_id = firmware_id
        self.flash = bytearray()
        self.erase_range: Optional[Tuple[int, int]] = None
        self.chip_erased = False
        self.started = False
        self.entered_update_mode = False
        self.chunks_received = 0
        self.fail_chunk: Optional[int] = None
        self.silent = set()
        self.checksum_override: Optional[int] = None
        self.block_on: Optional[int] = None
        self.release = threading.Event()

    def __call__(self, sent: SentCommand) -> List[bytes]:
        seq, cmd = sent.sequence_number, sent.command

        if cmd == self.block_on:
            self.release.wait(5)
        if cmd in self.silent:
            return []

        if cmd == Command.ENTER_FW_UPDATE:
            self.entered_update_mode = True
        elif cmd == Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE:
            self.erase_range = struct.unpack("<II", sent.payload)
            self.flash = bytearray()
        elif cmd == Command.RECOVERY_DOWNLOAD_DATA:
            self.chunks_received += 1
            if self.chunks_received == self.fail_chunk:
                return [error_reply(seq, cmd)]
            self.flash += sent.payload
        elif cmd == Command.RECOVERY_CHIP_ERASE:
            self.chip_erased = True
        elif cmd == Command.RECOVERY_GET_CHECKSUM:
            value = self.checksum_override
            if value is None:
                value = crc32(bytes(self.flash))
            return [reply_frame(seq, cmd, b"\x00" + struct.pack("<I", value), padding=16)]
        elif cmd == Command.RECOVERY_GET_VERSION:
            # hardware id BE at offset 6, firmware id BE at offset 8
            return [reply_frame(seq, cmd, struct.pack(">HH", self.hardware_id, self.firmware_id))]
        elif cmd == Command.RECOVERY_START_APP:
            self.started = True

        return [reply_frame(seq, cmd)]


@pytest.fixture
def brick() -> RecoveryBrick:
    return RecoveryBrick()


@pytest.fixture
def device(brick) -> FakeHidDevice:
    return FakeHidDevice(brick)


@pytest.fixture
def config() -> FlasherConfig:
    return FlasherConfig(reply_timeout=0.5, erase_timeout=0.5)


@pytest.fixture
def upgrader(device, config) -> FirmwareUpgrader:
    return FirmwareUpgrader(device, config)


@pytest.fixture
def firmware() -> bytes:
    """Two full chunks plus one byte."""
    return bytes((i * 7) & 0xFF for i in range(2037))
