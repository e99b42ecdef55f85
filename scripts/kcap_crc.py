"""table-driven crc32 (reflected, poly 0xedb88320) used for directory name tags"""

from typing import List

CRC_POLYNOMIAL = 0xEDB88320


def _make_table() -> List[int]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            if c & 1:
                c = CRC_POLYNOMIAL ^ (c >> 1)
            else:
                c >>= 1
        table.append(c)
    return table


# built once at import, never mutated
CRC_TABLE = tuple(_make_table())


def update_crc(crc: int, data: bytes) -> int:
    c = crc
    for b in data:
        c = CRC_TABLE[(c ^ b) & 0xFF] ^ (c >> 8)
    return c


def compute(data: bytes) -> int:
    """crc32 of data, 0 for empty input"""
    return update_crc(0xFFFFFFFF, data) ^ 0xFFFFFFFF
