from __future__ import annotations

import hashlib
import struct

# ─────────────────────────────────────────────────────────────────────────────
# Constants
# ─────────────────────────────────────────────────────────────────────────────
NONCE_SPACE = 1 << 32
NONCE_MASK = NONCE_SPACE - 1
HEADER_TEMPLATE_SIZE = 76  # header without the trailing 4-byte nonce


def double_sha256(data: bytes) -> bytes:
    """sha256(sha256(data)) in natural digest byte order."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


# ─────────────────────────────────────────────────────────────────────────────
# Header+nonce preimage and proof-of-work quality
# ─────────────────────────────────────────────────────────────────────────────
def nonce_le32(nonce: int) -> bytes:
    return struct.pack("<I", nonce & NONCE_MASK)


def pow_hash(header: bytes, nonce: int) -> bytes:
    """
    Proof-of-work digest of a 76-byte header template with `nonce` appended
    as a little-endian u32.
    """
    return double_sha256(header + nonce_le32(nonce))


def leading_zero_bits(digest: bytes) -> int:
    """
    Count leading zero bits of a digest in display order.

    Block hashes are shown byte-reversed, so the "leading" zeros of a
    proof-of-work hash are the trailing bytes of the raw digest.
    """
    value = int.from_bytes(digest, "little")
    return len(digest) * 8 - value.bit_length()


# ─────────────────────────────────────────────────────────────────────────────
# Nonce cursor
# ─────────────────────────────────────────────────────────────────────────────
class NonceCursor:
    """
    Wrapping 32-bit nonce counter.

    Only the mining loop advances it, one batch at a time, so consecutive
    batches claim disjoint ranges until the space wraps.
    """

    __slots__ = ("_value",)

    def __init__(self, start: int = 0) -> None:
        self._value = start & NONCE_MASK

    @property
    def value(self) -> int:
        return self._value

    def advance(self, count: int) -> int:
        """Claim `count` nonces; return the start of the claimed range."""
        start = self._value
        self._value = (start + count) & NONCE_MASK
        return start

    def __repr__(self) -> str:
        return f"NonceCursor(0x{self._value:08x})"


__all__ = [
    "NONCE_SPACE",
    "NONCE_MASK",
    "HEADER_TEMPLATE_SIZE",
    "double_sha256",
    "nonce_le32",
    "pow_hash",
    "leading_zero_bits",
    "NonceCursor",
]
