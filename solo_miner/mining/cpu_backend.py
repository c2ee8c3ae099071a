from __future__ import annotations

"""
solo_miner.mining.cpu_backend
=============================

CPU hash engine with a focus on correctness and portability. It exposes the
standard backend entrypoints:

- list_devices() -> list[DeviceInfo]
- create(**opts) -> CpuHashEngine

and implements the HashEngine interface expected by mining/device.py:
  - info()
  - search_batch(header, nonce_start, batch_size, difficulty_target)
  - close()

Performance notes
-----------------
- Hashing is double SHA-256 through hashlib; the 76-byte template is hashed
  once per call into a prefix state and copied per nonce.
- `threads>1` splits the range into contiguous chunks, one per worker
  thread; results are concatenated in chunk order, so ordering stays
  deterministic. hashlib only releases the GIL for large inputs, so this
  mostly helps on free-threaded builds.
"""

import hashlib
import os
import threading
from typing import Any, List

from .device import BatchResult, Candidate, DeviceInfo, DeviceType
from .errors import EngineError
from .nonce_domain import HEADER_TEMPLATE_SIZE, NONCE_MASK, leading_zero_bits, nonce_le32

DEFAULT_BATCH = 1 << 16
DEFAULT_MAX_FOUND = 100


class CpuHashEngine:
    """
    Reference CPU backend.

    Options:
      - index: int = 0
      - threads: int = 0 (0/1 -> single-thread; >1 splits the nonce range)
      - max_found: int = 100 (candidate slots per batch)
      - batch_size: int = preferred nonces per dispatch
    """

    def __init__(
        self,
        index: int = 0,
        threads: int = 0,
        max_found: int = DEFAULT_MAX_FOUND,
        batch_size: int = DEFAULT_BATCH,
        **_: Any,
    ) -> None:
        self._threads = max(0, int(threads))
        self._max_found = max(1, int(max_found))
        self._info = DeviceInfo(
            type=DeviceType.CPU,
            name="CPU",
            index=index,
            vendor="generic",
            driver="hashlib",
            compute_units=os.cpu_count() or 1,
            memory_bytes=None,
            max_batch=max(1, int(batch_size)),
            flags={"sha256d": True, "threads": self._threads > 1},
        )

    # ---- HashEngine interface ----

    def info(self) -> DeviceInfo:
        return self._info

    def search_batch(
        self,
        header: bytes,
        nonce_start: int,
        batch_size: int,
        difficulty_target: int,
    ) -> BatchResult:
        if len(header) != HEADER_TEMPLATE_SIZE:
            raise EngineError(
                message=f"invalid header length {len(header)} (expected {HEADER_TEMPLATE_SIZE})"
            )
        batch_size = max(0, int(batch_size))

        if self._threads <= 1 or batch_size <= 1_000:
            found = _scan_range(header, nonce_start, batch_size, difficulty_target, self._max_found)
            return BatchResult(hashes_attempted=batch_size, candidates=tuple(found))

        # Parallel split across T threads; contiguous chunks, remainder spread
        T = min(self._threads, max(1, os.cpu_count() or 1))
        base = batch_size // T
        rem = batch_size % T

        results: List[List[Candidate]] = [[] for _ in range(T)]
        errors: List[BaseException] = []
        threads: List[threading.Thread] = []

        def worker(k: int, n0: int, iters: int) -> None:
            try:
                results[k] = _scan_range(header, n0, iters, difficulty_target, self._max_found)
            except Exception as exc:  # surfaced after join
                errors.append(exc)

        n = nonce_start
        for t in range(T):
            it = base + (1 if t < rem else 0)
            if it <= 0:
                continue
            th = threading.Thread(target=worker, args=(t, n, it), daemon=True)
            threads.append(th)
            th.start()
            n = (n + it) & NONCE_MASK

        for th in threads:
            th.join()

        if errors:
            raise EngineError(message=f"cpu worker failed: {errors[0]}")

        # Chunks are already in range order; keep the first max_found
        merged = [item for sub in results for item in sub][: self._max_found]
        return BatchResult(hashes_attempted=batch_size, candidates=tuple(merged))

    def close(self) -> None:
        return None


# ────────────────────────────────────────────────────────────────────────
# Inner loop (pure-Python; tiny hot function)
# ────────────────────────────────────────────────────────────────────────


def _scan_range(
    header: bytes,
    start_nonce: int,
    iterations: int,
    target_bits: int,
    max_found: int,
) -> List[Candidate]:
    found: List[Candidate] = []
    prefix = hashlib.sha256(header)
    # Local bindings for speed
    sha = hashlib.sha256
    pack = nonce_le32
    lzb = leading_zero_bits
    for i in range(iterations):
        if len(found) >= max_found:
            break
        nonce = (start_nonce + i) & NONCE_MASK
        h = prefix.copy()
        h.update(pack(nonce))
        digest = sha(h.digest()).digest()
        # Cheap reject: display-order leading byte is the last digest byte
        if target_bits >= 8 and digest[31]:
            continue
        zeros = lzb(digest)
        if zeros >= target_bits:
            found.append(Candidate(nonce=nonce, leading_zero_bits=zeros))
    return found


# ────────────────────────────────────────────────────────────────────────
# Backend entrypoints
# ────────────────────────────────────────────────────────────────────────


def list_devices() -> List[DeviceInfo]:
    """Enumerate a single logical CPU device."""
    return [CpuHashEngine().info()]


def create(**opts: Any) -> CpuHashEngine:
    """
    Create a CPU engine.

    Options:
      index: int = 0
      threads: int = 0
      max_found: int = 100
      batch_size: int = 65536
    """
    return CpuHashEngine(**opts)


# ────────────────────────────────────────────────────────────────────────
# Diagnostics
# ────────────────────────────────────────────────────────────────────────

if __name__ == "__main__":  # pragma: no cover
    dev = create(threads=0)
    info = dev.info()
    print(f"[cpu_backend] Device: {info.name} cu={info.compute_units} driver={info.driver}")
    res = dev.search_batch(b"\x00" * HEADER_TEMPLATE_SIZE, 0, 100_000, 12)
    print(f"  hashes={res.hashes_attempted}")
    for c in res.candidates:
        print(f"  nonce={c.nonce} zeros={c.leading_zero_bits}")


