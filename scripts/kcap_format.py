"""
KCAP pack container layout (little-endian):

  header (8):
    [0x00:4]  magic "KCAP"
    [0x04:4]  int32 entry count
  directory (count * 84):
    [0x00:64] name, cp932, null padded
    [0x40:4]  uint32 crc32 of the 64-byte name field (never checked on read)
    [0x44:4]  uint32 reserved, 0
    [0x48:4]  uint32 payload offset from start of file
    [0x4c:4]  uint32 payload size
    [0x50:4]  uint32 encrypted flag
  payloads, contiguous, in directory order
"""

import logging
import struct
from dataclasses import dataclass

import kcap_crc

log = logging.getLogger(__name__)

MAGIC_NUMBER = b"KCAP"
HEADER_SIZE = 8
NAME_FIELD_SIZE = 64
TABLE_ENTRY_SIZE = 84
MAX_U32 = 0xFFFFFFFF

# series-wide password used by the shipped game data
DEFAULT_PASSWORD = "PackPass"

# windows flavour of shift-jis, as used by the engine
LEGACY_ENCODING = "cp932"

_HEADER = struct.Struct("<4si")
_COUNT = struct.Struct("<i")
_RECORD = struct.Struct("<64sIIIII")


class KcapError(Exception):
    pass


class FormatError(KcapError, ValueError):
    """malformed or truncated pack data"""


class OutOfRangeError(KcapError, IndexError):
    pass


class EncodingError(KcapError, ValueError):
    """name cannot be stored in its fixed-width field"""


def encode_legacy(text: str) -> bytes:
    """encode to cp932, substituting '?' for unmappable characters"""
    try:
        return text.encode(LEGACY_ENCODING)
    except UnicodeEncodeError as e:
        log.warning(f"lossy {LEGACY_ENCODING} conversion of {text!r}: {e.reason}")
        return text.encode(LEGACY_ENCODING, errors="replace")


def decode_legacy(data: bytes) -> str:
    try:
        return data.decode(LEGACY_ENCODING)
    except UnicodeDecodeError as e:
        log.warning(f"lossy {LEGACY_ENCODING} conversion of {data!r}: {e.reason}")
        return data.decode(LEGACY_ENCODING, errors="replace")


def encode_name(name: str) -> bytes:
    """encode a logical name into its 64-byte null padded directory field"""
    raw = encode_legacy(name)
    if len(raw) > NAME_FIELD_SIZE:
        raise EncodingError(
            f"name {name!r} is {len(raw)} bytes encoded, limit is {NAME_FIELD_SIZE}"
        )
    return raw.ljust(NAME_FIELD_SIZE, b"\x00")


def decode_name(field: bytes) -> str:
    return decode_legacy(field).rstrip("\x00")


@dataclass(frozen=True)
class kcap_entry:
    name: str
    offset: int
    size: int
    encrypted: bool
    checksum: int = 0

    @property
    def end(self) -> int:
        return self.offset + self.size


def pack_header(count: int) -> bytes:
    return _HEADER.pack(MAGIC_NUMBER, count)


def check_magic(data: bytes) -> None:
    if data != MAGIC_NUMBER:
        raise FormatError(f"invalid magic number, got {data.hex()}")


def unpack_count(data: bytes) -> int:
    if len(data) != _COUNT.size:
        raise FormatError(f"truncated header ({len(data)} of {_COUNT.size} count bytes)")
    (count,) = _COUNT.unpack(data)
    if count < 0:
        raise FormatError(f"negative entry count {count}")
    return count


def pack_record(name: str, offset: int, size: int, encrypted: bool) -> bytes:
    if offset > MAX_U32 or size > MAX_U32:
        raise FormatError(
            f"entry {name!r} does not fit 32-bit fields (offset {offset}, size {size})"
        )
    name_field = encode_name(name)
    return _RECORD.pack(
        name_field,
        kcap_crc.compute(name_field),
        0,  # reserved
        offset,
        size,
        1 if encrypted else 0,
    )


def unpack_record(data: bytes) -> kcap_entry:
    name_field, checksum, _, offset, size, encrypted = _RECORD.unpack(data)
    return kcap_entry(decode_name(name_field), offset, size, encrypted != 0, checksum)
