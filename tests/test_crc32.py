"""Tests for the CRC-32 checksum engine."""

import zlib

from ev3_firmware_flasher.protocol.crc32 import crc32


def test_empty_input_is_zero() -> None:
    assert crc32(b"") == 0


def test_standard_check_value() -> None:
    """The catalogue check value for CRC-32 (reflected 0xEDB88320)."""
    assert crc32(b"123456789") == 0xCBF43926


def test_matches_zlib_for_firmware_sized_buffer() -> None:
    data = bytes((i * 31 + 7) & 0xFF for i in range(64 * 1024))
    assert crc32(data) == zlib.crc32(data)


def test_result_is_unsigned_32_bit() -> None:
    value = crc32(b"\xFF" * 100)
    assert 0 <= value <= 0xFFFFFFFF


def test_single_bit_change_changes_checksum() -> None:
    data = bytearray(b"EV3 firmware image")
    before = crc32(bytes(data))
    data[3] ^= 0x01
    assert crc32(bytes(data)) != before


def test_repeated_calls_agree() -> None:
    data = bytearray(b"\x00\x10\x20" * 500)
    first = crc32(data)
    assert crc32(data) == first
    assert data == bytearray(b"\x00\x10\x20" * 500)
