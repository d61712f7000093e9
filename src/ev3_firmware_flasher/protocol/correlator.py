"""
Transaction correlator: one request, at most one matching reply.

Owns the report channel and the per-connection message counter. Each
``execute`` call encodes a frame with the next sequence number, sends it,
and (optionally) waits for the reply that carries the same sequence number
and command. Only one transaction is in flight at a time.
"""

import logging
import threading
import time
from typing import Optional

from ..errors import (
    CommandMismatch,
    DeviceReportedError,
    FrameError,
    NotConnected,
    ReplyTimeout,
)
from ..events import EventEmitter
from .frames import (
    MessageType,
    ReplyFrame,
    ReplyStatusCode,
    SEQUENCE_MODULUS,
    check_payload_size,
    command_name,
    decode_reply,
    encode_command,
    hex_preview,
    status_name,
)
from .hid_transport import ReportTransport

logger = logging.getLogger(__name__)


class TransactionCorrelator:
    """
    Serializes command/reply transactions over a report transport.

    Example:
        correlator = TransactionCorrelator(transport, reply_timeout=5.0)
        reply = correlator.execute(Command.RECOVERY_GET_VERSION)
    """

    def __init__(
        self,
        transport: ReportTransport,
        report_id: int = 0x00,
        reply_timeout: float = 5.0,
        events: Optional[EventEmitter] = None,
    ):
        """
        Args:
            transport: Open (or later opened) report channel
            report_id: HID report id for outbound reports
            reply_timeout: Default seconds to wait for a reply
            events: Optional session emitter receiving ``message`` events
        """
        self.transport = transport
        self.report_id = report_id
        self.reply_timeout = reply_timeout
        self.events = events
        self._sequence = 0
        self._message_count = 0
        self._lock = threading.Lock()

    @property
    def message_count(self) -> int:
        """Number of frames sent through this correlator."""
        return self._message_count

    @property
    def next_sequence_number(self) -> int:
        return self._sequence

    def _allocate_sequence(self) -> int:
        sequence = self._sequence
        self._sequence = (self._sequence + 1) % SEQUENCE_MODULUS
        self._message_count += 1
        return sequence

    def _emit_message(self, in_flight: bool) -> None:
        if self.events is not None:
            self.events.emit("message", self._message_count, in_flight)

    def execute(
        self,
        command: int,
        payload: Optional[bytes] = None,
        expect_reply: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[ReplyFrame]:
        """
        Send one command and optionally wait for its reply.

        Args:
            command: Command byte
            payload: Optional payload (0..1018 bytes)
            expect_reply: Wait for and return the matching reply
            timeout: Reply wait override in seconds (default: reply_timeout)

        Returns:
            The decoded reply, or None when expect_reply is False

        Raises:
            PayloadTooLarge: Payload exceeds 1018 bytes (nothing is sent)
            NotConnected: Transport is not open
            TransportWriteError: The outbound report was rejected
            TransportReadError: The inbound report could not be read
            ReplyTimeout: No matching reply within the timeout
            CommandMismatch: Reply echoes a different command
            DeviceReportedError: Reply is SYSTEM_REPLY_ERROR
        """
        check_payload_size(payload)

        with self._lock:
            if not self.transport.is_open:
                raise NotConnected("No device connected")

            sequence = self._allocate_sequence()
            frame = encode_command(command, payload, sequence)
            logger.debug(
                f"Sending {command_name(command)} length={len(frame) - 2} seq={sequence}"
            )

            self._emit_message(True)
            try:
                self.transport.send_report(self.report_id, frame)
                if not expect_reply:
                    return None
                wait = self.reply_timeout if timeout is None else timeout
                return self._await_reply(command, sequence, wait)
            finally:
                self._emit_message(False)

    def _await_reply(self, command: int, sequence: int, timeout: float) -> ReplyFrame:
        deadline = time.monotonic() + timeout

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReplyTimeout(command, sequence, timeout)

            data = self.transport.receive_report(remaining)
            if data is None:
                raise ReplyTimeout(command, sequence, timeout)

            try:
                reply = decode_reply(data)
            except FrameError as e:
                logger.warning(f"Discarding undecodable report while waiting for seq={sequence}: {e}")
                continue
            if reply.sequence_number != sequence:
                logger.warning(
                    f"Discarding reply seq={reply.sequence_number} "
                    f"({command_name(reply.command)}) while waiting for seq={sequence}"
                )
                continue

            logger.debug(
                f"Received status<{status_name(reply.status) or reply.status}> for "
                f"{command_name(reply.command)} length={reply.length} seq={reply.sequence_number}: "
                f"{hex_preview(reply.raw)}"
            )

            if reply.command != command:
                raise CommandMismatch(command, reply.command)

            if reply.is_error:
                raise DeviceReportedError(command, reply.status, status_name(reply.status))

            if (
                reply.message_type == MessageType.SYSTEM_REPLY
                and reply.status not in (None, ReplyStatusCode.SUCCESS)
            ):
                logger.warning(
                    f"{command_name(command)} replied with status "
                    f"{status_name(reply.status) or hex(reply.status)}"
                )

            return reply
