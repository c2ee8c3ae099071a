"""
Block header template construction.

    coinbase = coinb1 || extranonce1 || extranonce2 || coinb2
    root     = fold(sha256d(coinbase), branches)      # acc = sha256d(acc || branch)
    header   = version_le || rev(prevhash) || rev(root) || ntime_le || rev(nbits)

The result is the 76-byte header without its nonce. Every field arrives as
big-endian (display) hex; 4-byte integers are written little-endian and the
32-byte hashes are byte-reversed. Any hex that does not decode, or a fixed
field of the wrong width, raises MalformedJob instead of producing a short or
misaligned buffer.
"""

from __future__ import annotations

import re
from typing import Iterable

from .job import Job
from .mining.errors import MalformedJob
from .mining.nonce_domain import HEADER_TEMPLATE_SIZE, double_sha256

_HEX_RE = re.compile(r"\A(?:[0-9a-fA-F]{2})*\Z")


def reverse_bytes(data: bytes) -> bytes:
    return bytes(reversed(data))


def _unhex(value: str, name: str, size: int | None = None) -> bytes:
    # bytes.fromhex tolerates whitespace; the wire format does not
    if not isinstance(value, str) or not _HEX_RE.match(value):
        raise MalformedJob(
            message=f"{name} is not valid hex", context={"field": name, "value": str(value)[:80]}
        )
    raw = bytes.fromhex(value)
    if size is not None and len(raw) != size:
        raise MalformedJob(
            message=f"{name} must be {size} bytes, got {len(raw)}",
            context={"field": name},
        )
    return raw


def merkle_root(coinbase: bytes, branches: Iterable[str]) -> bytes:
    """Fold the coinbase hash up through the branches; natural digest order."""
    acc = double_sha256(coinbase)
    for i, branch in enumerate(branches):
        acc = double_sha256(acc + _unhex(branch, f"merkle_branch[{i}]", 32))
    return acc


def build_coinbase(job: Job, extranonce1: str, extranonce2: str) -> bytes:
    return b"".join(
        (
            _unhex(job.coinbase1, "coinbase1"),
            _unhex(extranonce1, "extranonce1"),
            _unhex(extranonce2, "extranonce2"),
            _unhex(job.coinbase2, "coinbase2"),
        )
    )


def build_header(job: Job, extranonce1: str, extranonce2: str) -> bytes:
    """Encode `job` into the 76-byte header template (nonce excluded)."""
    coinbase = build_coinbase(job, extranonce1, extranonce2)
    root = merkle_root(coinbase, job.merkle_branches)

    header = b"".join(
        (
            reverse_bytes(_unhex(job.version, "version", 4)),
            reverse_bytes(_unhex(job.prev_block_hash, "prevhash", 32)),
            reverse_bytes(root),
            reverse_bytes(_unhex(job.ntime, "ntime", 4)),
            reverse_bytes(_unhex(job.nbits, "nbits", 4)),
        )
    )
    if len(header) != HEADER_TEMPLATE_SIZE:
        raise MalformedJob(
            message=f"header is {len(header)} bytes (expected {HEADER_TEMPLATE_SIZE})",
            context={"job_id": job.job_id},
        )
    return header


__all__ = ["reverse_bytes", "merkle_root", "build_coinbase", "build_header"]
