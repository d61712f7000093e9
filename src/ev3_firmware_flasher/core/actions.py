"""
Core workflow actions for EV3 Firmware Flasher.

This module exposes pure-ish functions that front ends call. Each returns
an OperationResult carrying the log lines emitted while it ran. All write
operations go through the safety context for gating.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional

from ..errors import ChecksumMismatch, FlasherError, StepError
from ..events import ProgressEvent, transfer_events
from ..protocol.crc32 import crc32
from ..protocol.frames import MAX_PAYLOAD_SIZE, chunk_image
from ..upgrader import FirmwareUpgrader
from .results import OperationResult
from .safety import SafetyContext, require_write_permission

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "ev3_firmware_flasher"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def read_version(upgrader: FirmwareUpgrader, model: str = "") -> OperationResult:
    """
    Query the recovery bootloader version.

    Returns:
        OperationResult with:
            - metadata["hardware_id"], metadata["firmware_id"]
    """
    with _capture_logs() as logs:
        try:
            version = upgrader.get_version()
        except FlasherError as e:
            logger.error(f"read_version failed: {e}")
            return OperationResult.failure("read_version", str(e), model=model, logs=logs)

        result = OperationResult.success("read_version", model=model, logs=logs)
        result.metadata["hardware_id"] = version.hardware_id
        result.metadata["firmware_id"] = version.firmware_id
        return result


def enter_update_mode(upgrader: FirmwareUpgrader, model: str = "") -> OperationResult:
    """Send ENTER_FW_UPDATE to a brick running normal firmware."""
    with _capture_logs() as logs:
        try:
            upgrader.enter_firmware_update_mode()
        except FlasherError as e:
            logger.error(f"enter_update_mode failed: {e}")
            return OperationResult.failure("enter_update_mode", str(e), model=model, logs=logs)

        result = OperationResult.success("enter_update_mode", model=model, logs=logs)
        result.add_warning("The brick re-enumerates in recovery mode; reconnect before flashing")
        return result


def erase_chip(
    upgrader: FirmwareUpgrader,
    safety_ctx: Optional[SafetyContext] = None,
) -> OperationResult:
    """
    Erase the whole flash of a recovery-mode brick.

    Args:
        upgrader: Connected upgrader
        safety_ctx: When given, write permission is enforced first

    Raises:
        WritePermissionError: If safety_ctx denies the erase
    """
    model = safety_ctx.model_detected if safety_ctx else ""

    with _capture_logs() as logs:
        if safety_ctx is not None:
            require_write_permission(safety_ctx)
            if safety_ctx.simulate:
                result = OperationResult.success("erase_chip", model=model, logs=logs)
                result.metadata["simulated"] = True
                result.add_warning("Simulation mode - no erase performed")
                return result

        try:
            upgrader.erase_chip()
        except FlasherError as e:
            logger.error(f"erase_chip failed: {e}")
            return OperationResult.failure("erase_chip", str(e), model=model, logs=logs)

        return OperationResult.success("erase_chip", model=model, logs=logs)


def flash_firmware(
    upgrader: FirmwareUpgrader,
    image: bytes,
    safety_ctx: SafetyContext,
    enter_update_mode: bool = False,
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
) -> OperationResult:
    """
    Write a firmware image: erase, download, verify, restart.

    Args:
        upgrader: Connected upgrader
        image: Raw firmware image bytes
        safety_ctx: Safety context for gating
        enter_update_mode: Send ENTER_FW_UPDATE before erasing
        on_progress: Optional callback receiving each ProgressEvent

    Returns:
        OperationResult with:
            - checksums["image"], checksums["device"] (once verified)
            - metadata["chunks_sent"], metadata["bytes_sent"], metadata["state"]

    Raises:
        WritePermissionError: If write is not permitted
    """
    model = safety_ctx.model_detected

    if not image:
        return OperationResult.failure("flash_firmware", "Firmware image is empty", model=model)

    with _capture_logs() as logs:
        require_write_permission(safety_ctx, image_size=len(image))

        if safety_ctx.simulate:
            result = dry_run_plan(image, upgrader.config.chunk_size)
            result.operation = "flash_firmware"
            result.model = model
            result.metadata["simulated"] = True
            result.add_warning("Simulation mode - no actual write performed")
            result.logs = logs
            return result

        events = transfer_events()
        if on_progress is not None:
            events.on("progress", lambda stage, *args: on_progress(ProgressEvent(stage, *args)))

        try:
            session = upgrader.flash(image, events=events, enter_update_mode=enter_update_mode)
        except ChecksumMismatch as e:
            logger.error(f"flash_firmware failed: {e}")
            result = OperationResult.failure(
                "flash_firmware", str(e), model=model, bytes_len=len(image), logs=logs
            )
            result.set_checksum("image", e.expected)
            result.set_checksum("device", e.actual)
            return result
        except FlasherError as e:
            logger.error(f"flash_firmware failed: {e}")
            result = OperationResult.failure(
                "flash_firmware", str(e), model=model, bytes_len=len(image), logs=logs
            )
            result.set_checksum("image", crc32(image))
            if isinstance(e, StepError):
                result.metadata["failed_step"] = e.step
            return result

        result = OperationResult.success(
            "flash_firmware", model=model, bytes_len=session.expected_size, logs=logs
        )
        result.set_checksum("image", session.expected_checksum)
        if session.device_checksum is not None:
            result.set_checksum("device", session.device_checksum)
        if not session.checksum_ok:
            result.add_warning("Device checksum differs from image checksum")
        result.metadata["chunks_sent"] = session.chunks_sent
        result.metadata["bytes_sent"] = session.bytes_sent
        result.metadata["state"] = session.state.value
        return result


def checksum_file(path: str) -> OperationResult:
    """
    Compute the CRC-32 the brick will report for an image file.

    Offline; no device needed.
    """
    file_path = Path(path)
    if not file_path.is_file():
        return OperationResult.failure("checksum_file", f"Firmware file not found: {path}")

    data = file_path.read_bytes()
    result = OperationResult.success("checksum_file", bytes_len=len(data))
    result.set_checksum("image", crc32(data))
    result.metadata["path"] = str(file_path)
    if not data:
        result.add_warning("File is empty")
    return result


def dry_run_plan(image: bytes, chunk_size: int = MAX_PAYLOAD_SIZE) -> OperationResult:
    """
    Describe the transfer an image would need, without touching a device.

    Returns:
        OperationResult with:
            - metadata["chunk_count"], metadata["chunk_size"],
              metadata["final_chunk_size"], metadata["erase_range"]
            - checksums["image"]
    """
    if not image:
        return OperationResult.failure("dry_run_plan", "Firmware image is empty")

    chunks = chunk_image(image, chunk_size)
    result = OperationResult.success("dry_run_plan", bytes_len=len(image))
    result.set_checksum("image", crc32(image))
    result.metadata["chunk_count"] = len(chunks)
    result.metadata["chunk_size"] = chunk_size
    result.metadata["final_chunk_size"] = len(chunks[-1][1])
    result.metadata["erase_range"] = (0, len(image))
    return result
