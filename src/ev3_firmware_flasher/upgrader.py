"""
EV3 Recovery-Mode Firmware Upgrader

Session object for one connected brick plus the firmware transfer state
machine that runs on top of it.

Transfer sequence:
1. [optional] ENTER_FW_UPDATE                      (firmware-mode brick)
2. RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE (addr=0, size) → erase + arm download
3. RECOVERY_DOWNLOAD_DATA in chunks of <= 1018 bytes
4. RECOVERY_GET_CHECKSUM (addr=0, size)            → compare with host CRC-32
5. RECOVERY_START_APP                              → boot the new firmware

Every step waits for its reply before the next one is issued. Any step
failure aborts the whole transfer (no retry, no resume).
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .config import FlasherConfig
from .errors import (
    ChecksumMismatch,
    FlasherError,
    HidTransportError,
    NotConnected,
    StepError,
)
from .events import (
    STAGE_ENTER_FW_UPDATE_END,
    STAGE_ENTER_FW_UPDATE_START,
    STAGE_ERASE_END,
    STAGE_ERASE_START,
    STAGE_RESTART_END,
    STAGE_RESTART_START,
    STAGE_VERIFY_END,
    STAGE_VERIFY_START,
    STAGE_WRITE_END,
    STAGE_WRITE_PROCESS,
    STAGE_WRITE_START,
    EventEmitter,
    session_events,
    transfer_events,
)
from .protocol.correlator import TransactionCorrelator
from .protocol.crc32 import crc32
from .protocol.frames import (
    Command,
    ReplyFrame,
    chunk_image,
    command_name,
    encode_range,
)
from .protocol.hid_transport import ReportTransport

logger = logging.getLogger(__name__)

FLASH_BASE_ADDRESS = 0x00000000
MAX_IMAGE_SIZE = 0xFFFFFFFF

# Reply offsets (absolute, from start of frame). Byte 6 of every
# SYSTEM_REPLY is the status code, so the checksum body starts at 7.
VERSION_HW_OFFSET = 6   # u16 big-endian
VERSION_FW_OFFSET = 8   # u16 big-endian
CHECKSUM_OFFSET = 7     # u32 little-endian, after the status byte


class TransferState(Enum):
    """Firmware transfer states."""
    IDLE = "idle"
    ENTERING_UPDATE_MODE = "entering_update_mode"
    ERASING_AND_BEGINNING_DOWNLOAD = "erasing_and_beginning_download"
    TRANSFERRING_CHUNKS = "transferring_chunks"
    VERIFYING_CHECKSUM = "verifying_checksum"
    RESTARTING = "restarting"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATES = (TransferState.COMPLETE, TransferState.FAILED)


@dataclass
class TransferSession:
    """
    Bookkeeping for one firmware write.

    Attributes:
        expected_size: Image size in bytes
        expected_checksum: CRC-32 of the full image, computed before any I/O
        bytes_sent: Bytes acknowledged by the device so far
        chunks_sent: RECOVERY_DOWNLOAD_DATA frames acknowledged so far
        device_checksum: CRC-32 reported by the device, once verified
        state: Current TransferState
        failure: Error that moved the session to FAILED
    """
    expected_size: int
    expected_checksum: int
    bytes_sent: int = 0
    chunks_sent: int = 0
    device_checksum: Optional[int] = None
    state: TransferState = TransferState.IDLE
    failure: Optional[BaseException] = None

    @property
    def checksum_ok(self) -> bool:
        return self.device_checksum == self.expected_checksum

    def advance(self, state: TransferState) -> None:
        if self.state in TERMINAL_STATES:
            raise FlasherError(f"Transfer already finished ({self.state.value})")
        logger.debug(f"Transfer state {self.state.value} -> {state.value}")
        self.state = state

    def fail(self, error: BaseException) -> None:
        logger.debug(f"Transfer failed in state {self.state.value}: {error}")
        self.failure = error
        self.state = TransferState.FAILED


@dataclass(frozen=True)
class VersionInfo:
    """Recovery bootloader version ids."""
    hardware_id: int
    firmware_id: int


@contextmanager
def _step(command: int):
    """Wrap protocol failures of one command into a StepError naming it."""
    try:
        yield
    except (StepError, ChecksumMismatch):
        raise
    except FlasherError as e:
        raise StepError(command_name(command), e) from e


class FirmwareTransfer:
    """
    State machine for a single firmware write.

    An instance runs once; a new write needs a new instance.
    """

    def __init__(
        self,
        correlator: TransactionCorrelator,
        image: bytes,
        config: Optional[FlasherConfig] = None,
        events: Optional[EventEmitter] = None,
        enter_update_mode: bool = False,
    ):
        if not image:
            raise ValueError("Firmware image is empty")
        if len(image) > MAX_IMAGE_SIZE:
            raise ValueError(f"Firmware image too large: {len(image)} bytes")

        self.correlator = correlator
        self.image = bytes(image)
        self.config = config or FlasherConfig()
        self.events = events or transfer_events()
        self.enter_update_mode = enter_update_mode
        self.session: Optional[TransferSession] = None

    def _progress(self, stage: str, *args) -> None:
        self.events.emit("progress", stage, *args)

    def run(self) -> TransferSession:
        """
        Execute the full transfer.

        Returns:
            The COMPLETE session

        Raises:
            NotConnected: No device is open
            StepError: A protocol step failed (step name in the message)
            ChecksumMismatch: Device checksum differs (strict mode)
        """
        if self.session is not None:
            raise FlasherError("FirmwareTransfer instances cannot be reused")

        # Checksum and size are fixed before any device traffic
        session = TransferSession(
            expected_size=len(self.image),
            expected_checksum=crc32(self.image),
        )
        self.session = session
        logger.info(
            f"Firmware: {session.expected_size} bytes "
            f"(0x{session.expected_size:X}), CRC-32 0x{session.expected_checksum:08X}"
        )

        self.events.emit("start")
        try:
            if not self.correlator.transport.is_open:
                raise NotConnected("No device connected")
            if self.enter_update_mode:
                self._enter_update_mode(session)
            self._erase_and_begin_download(session)
            self._download(session)
            self._verify(session)
            self._restart(session)
        except Exception as e:
            session.fail(e)
            self.events.emit("error", e)
            raise

        session.advance(TransferState.COMPLETE)
        logger.info("Firmware update complete")
        self.events.emit("end")
        return session

    def _enter_update_mode(self, session: TransferSession) -> None:
        session.advance(TransferState.ENTERING_UPDATE_MODE)
        self._progress(STAGE_ENTER_FW_UPDATE_START)
        logger.info("Entering firmware update mode...")
        with _step(Command.ENTER_FW_UPDATE):
            self.correlator.execute(Command.ENTER_FW_UPDATE)
        self._progress(STAGE_ENTER_FW_UPDATE_END)

    def _erase_and_begin_download(self, session: TransferSession) -> None:
        session.advance(TransferState.ERASING_AND_BEGINNING_DOWNLOAD)
        self._progress(STAGE_ERASE_START)
        logger.info(f"Erasing flash and starting download of {session.expected_size} bytes...")
        with _step(Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE):
            self.correlator.execute(
                Command.RECOVERY_BEGIN_DOWNLOAD_WITH_ERASE,
                encode_range(FLASH_BASE_ADDRESS, session.expected_size),
                timeout=self.config.erase_timeout,
            )
        self._progress(STAGE_ERASE_END)

    def _download(self, session: TransferSession) -> None:
        session.advance(TransferState.TRANSFERRING_CHUNKS)
        self._progress(STAGE_WRITE_START)

        chunks = chunk_image(self.image, self.config.chunk_size)
        logger.info(f"Sending {len(chunks)} chunks of up to {self.config.chunk_size} bytes...")

        for offset, chunk in chunks:
            self._progress(STAGE_WRITE_PROCESS, session.bytes_sent, session.expected_size)
            with _step(Command.RECOVERY_DOWNLOAD_DATA):
                self.correlator.execute(Command.RECOVERY_DOWNLOAD_DATA, chunk)
            session.bytes_sent += len(chunk)
            session.chunks_sent += 1
            self._progress(STAGE_WRITE_PROCESS, session.bytes_sent, session.expected_size)
            logger.debug(
                f"Chunk offset=0x{offset:06X} acknowledged "
                f"({session.bytes_sent}/{session.expected_size} bytes)"
            )

        self._progress(STAGE_WRITE_END, session.bytes_sent)

    def _verify(self, session: TransferSession) -> None:
        session.advance(TransferState.VERIFYING_CHECKSUM)
        self._progress(STAGE_VERIFY_START)
        logger.info("Verifying checksum...")

        with _step(Command.RECOVERY_GET_CHECKSUM):
            reply = self.correlator.execute(
                Command.RECOVERY_GET_CHECKSUM,
                encode_range(FLASH_BASE_ADDRESS, session.expected_size),
            )
            session.device_checksum = reply.u32_le(CHECKSUM_OFFSET)

        if not session.checksum_ok:
            if self.config.strict_checksum:
                raise ChecksumMismatch(session.expected_checksum, session.device_checksum)
            logger.warning(
                f"Checksum mismatch ignored: expected 0x{session.expected_checksum:08X}, "
                f"device reported 0x{session.device_checksum:08X}"
            )
        else:
            logger.info(f"Checksum OK: 0x{session.device_checksum:08X}")

        self._progress(STAGE_VERIFY_END)

    def _restart(self, session: TransferSession) -> None:
        session.advance(TransferState.RESTARTING)
        self._progress(STAGE_RESTART_START)
        logger.info("Restarting device...")
        with _step(Command.RECOVERY_START_APP):
            self.correlator.execute(Command.RECOVERY_START_APP)
        self._progress(STAGE_RESTART_END)


class FirmwareUpgrader:
    """
    One connection to one EV3 brick.

    Owns the transport, the message counter (via the correlator) and the
    session event emitter. Construct one per connection and discard it
    after close().

    Example:
        transport = HidTransport(vendor_id=0x0694, product_id=0x0006)
        with FirmwareUpgrader(transport) as upgrader:
            print(upgrader.get_version())
            session = upgrader.write(image).result()
    """

    def __init__(self, transport: ReportTransport, config: Optional[FlasherConfig] = None):
        self.transport = transport
        self.config = config or FlasherConfig()
        self.events = session_events()
        self.correlator = TransactionCorrelator(
            transport,
            report_id=self.config.report_id,
            reply_timeout=self.config.reply_timeout,
            events=self.events,
        )
        self._executor: Optional[ThreadPoolExecutor] = None
        # Held for the whole of a transfer, foreground or background
        self._transfer_lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self.transport.is_open

    def init(self) -> None:
        self.events.emit("init")

    def connect(self) -> None:
        """
        Open the device.

        Raises:
            HidTransportError: If the transport cannot be opened
        """
        try:
            self.transport.open()
        except HidTransportError as e:
            self.events.emit("disconnect", e)
            raise
        logger.info("Device connected")
        self.events.emit("connect")

    def close(self) -> None:
        """Wait for any running write, then close the device."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self.transport.close()
        logger.info("Device disconnected")
        self.events.emit("disconnect", None)

    def __enter__(self) -> "FirmwareUpgrader":
        self.init()
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _command(self, command: int, payload: Optional[bytes] = None,
                 timeout: Optional[float] = None) -> ReplyFrame:
        with _step(command):
            return self.correlator.execute(command, payload, timeout=timeout)

    def get_version(self) -> VersionInfo:
        """
        Query the recovery bootloader version.

        Both ids are read big-endian from fixed reply offsets.
        """
        logger.info("Getting version...")
        with _step(Command.RECOVERY_GET_VERSION):
            reply = self.correlator.execute(Command.RECOVERY_GET_VERSION)
            version = VersionInfo(
                hardware_id=reply.u16_be(VERSION_HW_OFFSET),
                firmware_id=reply.u16_be(VERSION_FW_OFFSET),
            )
        logger.info(f"Version: HW {version.hardware_id}, FW {version.firmware_id}")
        return version

    def enter_firmware_update_mode(self) -> None:
        """Ask a firmware-mode brick to reboot into the recovery bootloader."""
        logger.info("Requesting firmware update mode...")
        self._command(Command.ENTER_FW_UPDATE)

    def erase_chip(self) -> None:
        """Erase the whole flash (no download armed)."""
        logger.info("Erasing chip...")
        self._command(Command.RECOVERY_CHIP_ERASE, timeout=self.config.erase_timeout)

    def get_checksum(self, address: int, size: int) -> int:
        """Return the device-side CRC-32 of a flash range."""
        with _step(Command.RECOVERY_GET_CHECKSUM):
            reply = self.correlator.execute(
                Command.RECOVERY_GET_CHECKSUM, encode_range(address, size)
            )
            return reply.u32_le(CHECKSUM_OFFSET)

    def _reserve_transfer(self) -> None:
        if not self._transfer_lock.acquire(blocking=False):
            raise FlasherError("A firmware write is already in progress on this device")

    def _run_reserved(
        self,
        image: bytes,
        events: Optional[EventEmitter],
        enter_update_mode: bool,
    ) -> TransferSession:
        try:
            transfer = FirmwareTransfer(
                self.correlator,
                image,
                config=self.config,
                events=events,
                enter_update_mode=enter_update_mode,
            )
            return transfer.run()
        finally:
            self._transfer_lock.release()

    def flash(
        self,
        image: bytes,
        events: Optional[EventEmitter] = None,
        enter_update_mode: bool = False,
    ) -> TransferSession:
        """
        Run a complete firmware transfer on the calling thread.

        Raises:
            FlasherError: If another transfer is still running on this connection
        """
        self._reserve_transfer()
        return self._run_reserved(image, events, enter_update_mode)

    def write(
        self,
        image: bytes,
        events: Optional[EventEmitter] = None,
        enter_update_mode: bool = False,
    ) -> "Future[TransferSession]":
        """
        Start a firmware transfer on the background worker.

        Register listeners on ``events`` (see events.transfer_events) before
        calling to follow progress. The transfer slot is taken before this
        returns, so a flash() or write() issued afterwards is rejected until
        the future completes.

        Returns:
            Future resolving to the COMPLETE TransferSession, or raising the
            step error that aborted the transfer

        Raises:
            FlasherError: If another transfer is still running on this connection
        """
        self._reserve_transfer()
        try:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="ev3-flash")
            return self._executor.submit(
                self._run_reserved, image, events, enter_update_mode
            )
        except BaseException:
            self._transfer_lock.release()
            raise
