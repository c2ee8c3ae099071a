from __future__ import annotations

import pytest

from conftest import GENESIS_HASH, GENESIS_HEADER_HEX, GENESIS_NONCE
from solo_miner.mining.nonce_domain import (NONCE_SPACE, NonceCursor,
                                            leading_zero_bits, nonce_le32,
                                            pow_hash)


@pytest.mark.parametrize(
    "count,batch",
    [(0, 1024), (1, 1 << 20), (5, 0xFFFFFFF0), (7, 3_000_000_007), (4097, 1 << 20), (3, NONCE_SPACE)],
)
def test_cursor_advance_wraps(count, batch):
    cursor = NonceCursor()
    for _ in range(count):
        cursor.advance(batch)
    assert cursor.value == (count * batch) % NONCE_SPACE


def test_cursor_advance_returns_claimed_start():
    cursor = NonceCursor(0xFFFFFFFE)
    assert cursor.advance(4) == 0xFFFFFFFE
    assert cursor.advance(4) == 2
    assert cursor.value == 6


def test_nonce_is_little_endian():
    assert nonce_le32(0x7C2BAC1D) == bytes.fromhex("1dac2b7c")
    assert nonce_le32(NONCE_SPACE + 1) == bytes.fromhex("01000000")


def test_leading_zero_bits_counts_display_order():
    assert leading_zero_bits(bytes(32)) == 256
    # display order is the reversed digest: the last byte comes first
    assert leading_zero_bits(b"\xff" * 31 + b"\x01") == 7
    assert leading_zero_bits(b"\xff" * 30 + b"\x80\x00") == 8
    assert leading_zero_bits(b"\x00" * 31 + b"\xff") == 0


def test_genesis_pow_hash():
    digest = pow_hash(bytes.fromhex(GENESIS_HEADER_HEX), GENESIS_NONCE)
    assert digest[::-1].hex() == GENESIS_HASH
    assert leading_zero_bits(digest) == 43
