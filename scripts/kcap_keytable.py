"""
password -> 64kb xor key table

the engine seeds an mt19937 variant with the crc32 of the password. its state
is held in signed 32-bit ints, so every right shift sign-extends and the
seeding multiply wraps. values are kept normalised to the signed 32-bit range
and python's >> (arithmetic on negative ints) does the rest.
"""

import logging
from functools import lru_cache
from typing import List

import kcap_crc
from kcap_format import encode_legacy

log = logging.getLogger(__name__)

KEY_TABLE_SIZE = 0x10000
MIN_PASSWORD_LENGTH = 8
FALLBACK_PASSWORD = "Selene.Default.Password"

STATE_LENGTH = 624
STATE_M = 397
MATRIX_A = -1727483681  # 0x9908b0df
TEMPERING_MASK_B = -1658038656  # 0x9d2c5680
TEMPERING_MASK_C = -272236544  # 0xefc60000
SEED_MULTIPLIER = 0x6C078965

MAG01 = (0, MATRIX_A)


def to_i32(value: int) -> int:
    """wrap to two's complement signed 32-bit"""
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


class key_stream_generator:
    def __init__(self, seed: int):
        self.state: List[int] = [0] * STATE_LENGTH
        self.pos = STATE_LENGTH
        self.seed(seed)

    def seed(self, seed: int) -> None:
        mt = self.state
        mt[0] = to_i32(seed)
        for i in range(1, STATE_LENGTH):
            last = mt[i - 1]
            mt[i] = to_i32(i + SEED_MULTIPLIER * (last ^ (last >> 30)))
        self.pos = STATE_LENGTH

    def _twist(self) -> None:
        mt = self.state
        for i in range(STATE_LENGTH - 1):
            mt0 = mt[i]
            x = mt0 ^ mt[i + 1]
            # high bit of mt[i], low 31 bits of mt[i + 1]
            y = mt0 ^ (x & 0x7FFFFFFF)
            mt[i] = mt[(i + STATE_M) % STATE_LENGTH] ^ MAG01[(mt0 ^ x) & 1] ^ (y >> 1)

        last = mt[STATE_LENGTH - 1]
        z = last ^ ((mt[0] ^ last) & 0x7FFFFFFF)
        mt[STATE_LENGTH - 1] = mt[STATE_M - 1] ^ (z >> 1) ^ MAG01[z & 1]
        self.pos = 0

    def next(self) -> int:
        if self.pos >= STATE_LENGTH:
            self._twist()

        y = self.state[self.pos]
        self.pos += 1

        y ^= y >> 11
        y ^= to_i32((y << 7) & TEMPERING_MASK_B)
        y ^= to_i32((y << 15) & TEMPERING_MASK_C)
        y ^= y >> 18
        return y


def passkey_hash(encoded_password: bytes) -> int:
    """crc32 of the encoded password, as the signed generator seed"""
    return to_i32(kcap_crc.compute(encoded_password))


def build_key_table(password: str) -> bytes:
    if len(password) < MIN_PASSWORD_LENGTH:
        password = FALLBACK_PASSWORD

    encoded = encode_legacy(password)
    rng = key_stream_generator(passkey_hash(encoded))
    pass_len = len(encoded)

    table = bytearray(KEY_TABLE_SIZE)
    for i in range(KEY_TABLE_SIZE):
        m = (rng.next() >> 16) & 0xFF
        table[i] = encoded[i % pass_len] ^ m
    return bytes(table)


@lru_cache(maxsize=16)
def create_key_table(password: str) -> bytes:
    """cached build_key_table, tables are read-only bytes"""
    log.debug(f"building key table for password of length {len(password)}")
    return build_key_table(password)


def xor_crypt(data: bytes, key_table: bytes) -> bytes:
    """
    xor data against the repeating key table, position 0 of data uses
    key_table[0]. the transform is its own inverse.
    """
    if not data:
        return b""
    klen = len(key_table)
    out = bytearray(len(data))
    # whole table-sized blocks at a time through int xor
    for start in range(0, len(data), klen):
        chunk = data[start:start + klen]
        n = len(chunk)
        mixed = int.from_bytes(chunk, "little") ^ int.from_bytes(key_table[:n], "little")
        out[start:start + n] = mixed.to_bytes(n, "little")
    return bytes(out)
