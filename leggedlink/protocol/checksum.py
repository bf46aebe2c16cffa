"""
CRC-32 (reflected IEEE 802.3, polynomial 0xEDB88320) used as the envelope
integrity trailer.

Table-driven: init 0xFFFFFFFF, final XOR 0xFFFFFFFF. Produces the same
values as zlib.crc32 / java.util.zip.CRC32, e.g. CRC32(b"123456789") == 0xCBF43926.
"""

import numpy as np
from numba import njit  # type: ignore[import-untyped]

POLYNOMIAL = 0xEDB88320
INITIAL = 0xFFFFFFFF
FINAL_XOR = 0xFFFFFFFF
CHECK_VALUE = 0xCBF43926  # CRC32 of b"123456789"


def _build_table(poly: int = POLYNOMIAL) -> np.ndarray:
    table = np.zeros(256, dtype=np.uint32)
    for i in range(256):
        c = i
        for _ in range(8):
            c = (c >> 1) ^ poly if c & 1 else c >> 1
        table[i] = c
    return table


CRC_TABLE: np.ndarray = _build_table()


@njit(cache=True)
def _crc32_update(table: np.ndarray, data: np.ndarray, crc: int) -> int:
    """JIT-compiled table lookup loop. crc is carried in int64, always < 2**32."""
    for i in range(data.shape[0]):
        crc = table[(crc ^ data[i]) & 0xFF] ^ (crc >> 8)
    return crc


def crc32_update(crc: int, data: bytes | bytearray | memoryview) -> int:
    """
    Continue a running (pre-final-XOR) CRC register over data.

    Use with INITIAL as the starting register and XOR the result with
    FINAL_XOR when done. checksum() does both.
    """
    buf = np.frombuffer(data, dtype=np.uint8)
    if buf.shape[0] == 0:
        return crc
    return int(_crc32_update(CRC_TABLE, buf, crc)) & 0xFFFFFFFF


def checksum(data: bytes | bytearray | memoryview) -> int:
    """Return the unsigned 32-bit CRC of data."""
    return crc32_update(INITIAL, data) ^ FINAL_XOR
