"""Tests for the firmware transfer state machine and the upgrader session."""

import logging

import pytest

from conftest import FakeHidDevice, RecoveryBrick, reply_frame
from ev3_firmware_flasher.config import FlasherConfig
from ev3_firmware_flasher.errors import (
    ChecksumMismatch,
    CommandMismatch,
    DeviceReportedError,
    FlasherError,
    FrameError,
    NotConnected,
    ReplyTimeout,
    StepError,
    TransportOpenError,
    TransportReadError,
    TransportWriteError,
)
from ev3_firmware_flasher.events import transfer_events
from ev3_firmware_flasher.protocol.crc32 import crc32
from ev3_firmware_flasher.protocol.frames import Command, encode_range
from ev3_firmware_flasher.upgrader import (
    FirmwareTransfer,
    FirmwareUpgrader,
    TransferState,
    VersionInfo,
)


def record_transfer_events():
    events = transfer_events()
    log = []
    events.on("start", lambda: log.append(("start",)))
    events.on("progress", lambda stage, *args: log.append((stage,) + args))
    events.on("end", lambda: log.append(("end",)))
    events.on("error", lambda error: log.append(("error", error)))
    return events, log


class TestSuccessfulTransfer:
    """Erase, download, verify, restart against a well-behaved brick."""

    def test_command_sequence(self, upgrader, device, brick, firmware):
        session = upgrader.flash(firmware)

        commands = device.commands
        assert [c.command for c in commands] == [
            Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE,
            Command.RECOVERY_DOWNLOAD_DATA,
            Command.RECOVERY_DOWNLOAD_DATA,
            Command.RECOVERY_DOWNLOAD_DATA,
            Command.RECOVERY_GET_CHECKSUM,
            Command.RECOVERY_START_APP,
        ]
        assert [c.sequence_number for c in commands] == list(range(6))
        assert commands[0].payload == encode_range(0, len(firmware))
        assert commands[4].payload == encode_range(0, len(firmware))
        assert [len(c.payload) for c in commands[1:4]] == [1018, 1018, 1]

        assert bytes(brick.flash) == firmware
        assert brick.erase_range == (0, 2037)
        assert brick.started
        assert session.state == TransferState.COMPLETE
        assert session.bytes_sent == 2037
        assert session.chunks_sent == 3
        assert session.device_checksum == crc32(firmware)
        assert session.checksum_ok

    def test_exact_multiple_of_chunk_size(self, upgrader, device, brick):
        image = bytes(2036)
        session = upgrader.flash(image)
        assert session.bytes_sent == 2036
        data = [c for c in device.commands if c.command == Command.RECOVERY_DOWNLOAD_DATA]
        assert [len(c.payload) for c in data] == [1018, 1018]

    def test_progress_stages_in_order(self, upgrader, firmware):
        events, log = record_transfer_events()
        upgrader.flash(firmware, events=events)

        assert log == [
            ("start",),
            ("download_with_erase/start",),
            ("download_with_erase/end",),
            ("write/start",),
            ("write/process", 0, 2037),
            ("write/process", 1018, 2037),
            ("write/process", 1018, 2037),
            ("write/process", 2036, 2037),
            ("write/process", 2036, 2037),
            ("write/process", 2037, 2037),
            ("write/end", 2037),
            ("verify/start",),
            ("verify/end",),
            ("restart/start",),
            ("restart/end",),
            ("end",),
        ]

    def test_enter_update_mode_first(self, upgrader, device, brick, firmware):
        events, log = record_transfer_events()
        upgrader.flash(firmware, events=events, enter_update_mode=True)

        assert device.commands[0].command == Command.ENTER_FW_UPDATE
        assert device.commands[1].command == Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE
        assert brick.entered_update_mode
        assert log[1:3] == [("enter_fw_update/start",), ("enter_fw_update/end",)]

    def test_checksum_reply_offset(self, upgrader, brick, firmware):
        """The device checksum is read after the status byte."""
        brick.checksum_override = crc32(firmware)
        session = upgrader.flash(firmware)
        assert session.device_checksum == crc32(firmware)


class TestFailedTransfer:
    """Every step failure aborts the whole transfer."""

    def test_chunk_error_aborts_before_verify(self, upgrader, device, brick, firmware):
        brick.fail_chunk = 2
        events, log = record_transfer_events()

        with pytest.raises(StepError) as exc_info:
            upgrader.flash(firmware, events=events)

        error = exc_info.value
        assert "Command.RECOVERY_DOWNLOAD_DATA" in str(error)
        assert isinstance(error.cause, DeviceReportedError)
        assert error.__cause__ is error.cause

        sent = [c.command for c in device.commands]
        assert Command.RECOVERY_GET_CHECKSUM not in sent
        assert Command.RECOVERY_START_APP not in sent
        assert sent.count(Command.RECOVERY_DOWNLOAD_DATA) == 2

        errors = [entry for entry in log if entry[0] == "error"]
        assert len(errors) == 1
        assert errors[0][1] is error
        assert ("end",) not in log

    def test_command_mismatch_stops_transfer(self, firmware):
        def responder(sent):
            command = sent.command
            if command == Command.RECOVERY_DOWNLOAD_DATA:
                command = Command.RECOVERY_START_APP
            return [reply_frame(sent.sequence_number, command)]

        device = FakeHidDevice(responder)
        transfer = FirmwareTransfer(FirmwareUpgrader(device).correlator, firmware)

        with pytest.raises(StepError) as exc_info:
            transfer.run()

        assert isinstance(exc_info.value.cause, CommandMismatch)
        assert transfer.session.state == TransferState.FAILED
        assert [c.command for c in device.commands] == [
            Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE,
            Command.RECOVERY_DOWNLOAD_DATA,
        ]

    @pytest.mark.parametrize("error_type", [TransportReadError, TransportWriteError])
    def test_unplugged_mid_transfer_fails_current_step(self, firmware, error_type):
        brick = RecoveryBrick()

        def responder(sent):
            if sent.command == Command.RECOVERY_DOWNLOAD_DATA and brick.chunks_received == 1:
                raise error_type("Device disconnected")
            return brick(sent)

        device = FakeHidDevice(responder)
        events, log = record_transfer_events()
        transfer = FirmwareTransfer(FirmwareUpgrader(device).correlator, firmware, events=events)

        with pytest.raises(StepError) as exc_info:
            transfer.run()

        assert isinstance(exc_info.value.cause, error_type)
        assert exc_info.value.step == "Command.RECOVERY_DOWNLOAD_DATA"
        assert transfer.session.state == TransferState.FAILED
        assert transfer.session.bytes_sent == 1018
        assert [entry for entry in log if entry[0] == "error"] == [("error", exc_info.value)]
        assert [c.command for c in device.commands] == [
            Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE,
            Command.RECOVERY_DOWNLOAD_DATA,
            Command.RECOVERY_DOWNLOAD_DATA,
        ]

    def test_erase_timeout(self, device, brick, firmware):
        brick.silent.add(Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE)
        upgrader = FirmwareUpgrader(device, FlasherConfig(reply_timeout=0.5, erase_timeout=0.05))

        with pytest.raises(StepError) as exc_info:
            upgrader.flash(firmware)

        assert isinstance(exc_info.value.cause, ReplyTimeout)
        assert exc_info.value.cause.timeout == 0.05
        assert "RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE" in str(exc_info.value)
        assert len(device.sent) == 1

    def test_checksum_mismatch_is_fatal(self, upgrader, device, brick, firmware):
        brick.checksum_override = 0xDEADBEEF
        with pytest.raises(ChecksumMismatch) as exc_info:
            upgrader.flash(firmware)

        assert exc_info.value.expected == crc32(firmware)
        assert exc_info.value.actual == 0xDEADBEEF
        assert not brick.started
        assert device.commands[-1].command == Command.RECOVERY_GET_CHECKSUM

    def test_checksum_mismatch_tolerated_when_not_strict(self, device, brick, firmware, caplog):
        brick.checksum_override = 0xDEADBEEF
        upgrader = FirmwareUpgrader(
            device, FlasherConfig(reply_timeout=0.5, strict_checksum=False)
        )

        with caplog.at_level(logging.WARNING):
            session = upgrader.flash(firmware)

        assert session.state == TransferState.COMPLETE
        assert not session.checksum_ok
        assert brick.started
        assert "Checksum mismatch ignored" in caplog.text

    def test_not_connected(self, device, firmware):
        device.close()
        upgrader = FirmwareUpgrader(device)
        events, log = record_transfer_events()

        with pytest.raises(NotConnected):
            upgrader.flash(firmware, events=events)

        assert device.sent == []
        assert [entry[0] for entry in log] == ["start", "error"]

    def test_session_records_failure(self, upgrader, brick, firmware):
        brick.fail_chunk = 1
        transfer = FirmwareTransfer(upgrader.correlator, firmware)
        with pytest.raises(StepError):
            transfer.run()
        assert transfer.session.state == TransferState.FAILED
        assert isinstance(transfer.session.failure, StepError)
        assert transfer.session.bytes_sent == 0


class TestFirmwareTransfer:
    """Construction rules."""

    def test_empty_image_rejected(self, upgrader):
        with pytest.raises(ValueError):
            FirmwareTransfer(upgrader.correlator, b"")

    def test_not_reusable(self, upgrader, firmware):
        transfer = FirmwareTransfer(upgrader.correlator, firmware)
        transfer.run()
        with pytest.raises(FlasherError):
            transfer.run()

    def test_checksum_computed_before_io(self, device, firmware):
        device.close()
        transfer = FirmwareTransfer(FirmwareUpgrader(device).correlator, firmware)
        with pytest.raises(NotConnected):
            transfer.run()
        assert transfer.session.expected_checksum == crc32(firmware)
        assert transfer.session.expected_size == len(firmware)


class TestBackgroundWrite:
    """write() runs the transfer on a worker thread."""

    def test_future_resolves_to_session(self, upgrader, brick, firmware):
        future = upgrader.write(firmware)
        session = future.result(timeout=5)
        assert session.state == TransferState.COMPLETE
        assert brick.started
        upgrader.close()

    def test_future_carries_step_error(self, upgrader, brick, firmware):
        brick.checksum_override = 0
        future = upgrader.write(firmware)
        assert isinstance(future.exception(timeout=5), ChecksumMismatch)
        upgrader.close()

    def test_second_write_rejected_while_running(self, upgrader, brick, firmware):
        brick.block_on = Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE
        try:
            future = upgrader.write(firmware)
            with pytest.raises(FlasherError, match="already in progress"):
                upgrader.write(firmware)
        finally:
            brick.release.set()
        assert future.result(timeout=5).state == TransferState.COMPLETE
        upgrader.close()

    def test_flash_rejected_while_write_running(self, upgrader, device, brick, firmware):
        brick.block_on = Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE
        try:
            future = upgrader.write(firmware)
            with pytest.raises(FlasherError, match="already in progress"):
                upgrader.flash(firmware)
        finally:
            brick.release.set()
        assert future.result(timeout=5).state == TransferState.COMPLETE
        erases = [c for c in device.commands if c.command == Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE]
        restarts = [c for c in device.commands if c.command == Command.RECOVERY_START_APP]
        assert len(erases) == 1
        assert len(restarts) == 1
        assert bytes(brick.flash) == firmware
        upgrader.close()

    def test_transfer_slot_freed_after_failure(self, upgrader, brick, firmware):
        brick.checksum_override = 0
        with pytest.raises(ChecksumMismatch):
            upgrader.flash(firmware)
        brick.checksum_override = None
        assert upgrader.flash(firmware).state == TransferState.COMPLETE


class TestSingleCommands:
    """Version, erase and checksum queries."""

    def test_get_version(self, upgrader, device):
        version = upgrader.get_version()
        assert version == VersionInfo(hardware_id=0x0006, firmware_id=0x0102)
        assert device.commands[0].command == Command.RECOVERY_GET_VERSION
        assert device.commands[0].payload == b""

    def test_get_version_short_reply(self):
        def responder(sent):
            return [reply_frame(sent.sequence_number, sent.command, b"\x00")]

        upgrader = FirmwareUpgrader(FakeHidDevice(responder))
        with pytest.raises(StepError) as exc_info:
            upgrader.get_version()
        assert isinstance(exc_info.value.cause, FrameError)
        assert "Command.RECOVERY_GET_VERSION" in str(exc_info.value)

    def test_erase_chip(self, upgrader, device, brick):
        upgrader.erase_chip()
        assert brick.chip_erased
        assert device.commands[0].command == Command.RECOVERY_CHIP_ERASE

    def test_enter_firmware_update_mode(self, upgrader, brick):
        upgrader.enter_firmware_update_mode()
        assert brick.entered_update_mode

    def test_enter_firmware_update_mode_error(self, device, brick):
        brick.silent.add(Command.ENTER_FW_UPDATE)
        upgrader = FirmwareUpgrader(device, FlasherConfig(reply_timeout=0.05))
        with pytest.raises(StepError, match="Command.ENTER_FW_UPDATE"):
            upgrader.enter_firmware_update_mode()

    def test_get_checksum(self, upgrader, device, brick):
        brick.checksum_override = 0x11223344
        assert upgrader.get_checksum(0, 100) == 0x11223344
        assert device.commands[0].payload == encode_range(0, 100)

    def test_get_checksum_from_raw_report(self):
        # len=9, seq=0, SYSTEM_REPLY, GET_CHECKSUM, status SUCCESS, CRC LE, padding
        raw = bytes.fromhex("0900" "0000" "03" "F5" "00" "2639F4CB") + bytes(1013)
        device = FakeHidDevice(lambda sent: [raw])
        assert FirmwareUpgrader(device).get_checksum(0, 9) == 0xCBF43926

    def test_get_checksum_ignores_status_byte(self):
        # END_OF_FILE status must not leak into the checksum value
        raw = bytes.fromhex("0900" "0000" "03" "F5" "08" "78563412")
        device = FakeHidDevice(lambda sent: [raw])
        assert FirmwareUpgrader(device).get_checksum(0, 4) == 0x12345678


class TestSessionEvents:
    """Lifecycle notifications of the upgrader."""

    def test_connect_and_close(self, brick):
        device = FakeHidDevice(brick, is_open=False)
        upgrader = FirmwareUpgrader(device)
        seen = []
        upgrader.events.on("init", lambda: seen.append("init"))
        upgrader.events.on("connect", lambda: seen.append("connect"))
        upgrader.events.on("disconnect", lambda error=None: seen.append(("disconnect", error)))

        with upgrader:
            assert upgrader.is_connected
        assert not upgrader.is_connected
        assert seen == ["init", "connect", ("disconnect", None)]

    def test_failed_open_emits_disconnect_with_error(self, brick):
        device = FakeHidDevice(brick, is_open=False)
        device.fail_open = True
        upgrader = FirmwareUpgrader(device)
        errors = []
        upgrader.events.on("disconnect", lambda error=None: errors.append(error))

        with pytest.raises(TransportOpenError):
            upgrader.connect()
        assert len(errors) == 1
        assert isinstance(errors[0], TransportOpenError)

    def test_message_counter_events(self, upgrader):
        counts = []
        upgrader.events.on("message", lambda count, in_flight: counts.append((count, in_flight)))
        upgrader.get_version()
        upgrader.get_version()
        assert counts == [(1, True), (1, False), (2, True), (2, False)]
