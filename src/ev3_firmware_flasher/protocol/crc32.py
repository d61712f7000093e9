"""
CRC-32 (ISO HDLC / IEEE 802.3) checksum.

Reflected polynomial 0xEDB88320, init 0xFFFFFFFF, final XOR 0xFFFFFFFF.
The recovery bootloader computes the same checksum over a flash range,
so the host result can be compared with RECOVERY_GET_CHECKSUM directly.
"""

from typing import List

CRC32_POLY = 0xEDB88320


def _build_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ CRC32_POLY
            else:
                crc >>= 1
        table.append(crc)
    return table


_CRC32_TABLE = _build_table()


def crc32(data: bytes) -> int:
    """
    Compute the CRC-32 of a complete buffer.

    Args:
        data: Bytes to checksum (whole image, never a partial chunk)

    Returns:
        Unsigned 32-bit CRC value
    """
    crc = 0xFFFFFFFF
    for byte in data:
        crc = _CRC32_TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return crc ^ 0xFFFFFFFF
