from __future__ import annotations

"""
solo_miner.mining.gpu_opencl
============================

Optional OpenCL backend that computes SHA256d(header76 || nonce_le32) on the
GPU and applies the same acceptance test as the CPU backend:

    zeros = leading zero bits of the display-order (byte-reversed) digest
    accept iff zeros >= difficulty_target

Design notes
------------
- Guarded import: if PyOpenCL or a GPU platform is not available, this backend
  raises DeviceUnavailable at creation time (and the miner falls back to CPU).
- The 76-byte template is uploaded as 19 big-endian message words; each work
  item appends its byte-swapped nonce, runs the two-block first hash and the
  one-block second hash, and counts zero bits with clz().
- Results go to fixed slots behind an atomic counter, so a batch returns at
  most `max_found` candidates; the order is sorted by nonce distance from the
  batch start on the host for determinism.
- Device words are written little-endian, which matches every OpenCL GPU in
  practice.

This module depends on:
    pyopencl>=2022.3
and a GPU (or CPU OpenCL) driver.
"""

import logging
import struct
from typing import Any, List, Optional

try:
    import pyopencl as cl  # type: ignore
except ImportError:  # pragma: no cover
    cl = None  # type: ignore

from .device import BatchResult, Candidate, DeviceInfo, DeviceType
from .errors import DeviceUnavailable, EngineError
from .nonce_domain import HEADER_TEMPLATE_SIZE, NONCE_MASK

log = logging.getLogger("solo_miner.opencl")

DEFAULT_BATCH = 1024 * 1024 * 16
DEFAULT_MAX_FOUND = 100

# ────────────────────────────────────────────────────────────────────────
# OpenCL kernel (SHA-256d with leading-zero scoring)
# ────────────────────────────────────────────────────────────────────────

KERNEL_SOURCE = r"""
#define ROTR(x, n) rotate((uint)(x), (uint)(32 - (n)))

__constant uint K[64] = {
  0x428a2f98U, 0x71374491U, 0xb5c0fbcfU, 0xe9b5dba5U, 0x3956c25bU, 0x59f111f1U, 0x923f82a4U, 0xab1c5ed5U,
  0xd807aa98U, 0x12835b01U, 0x243185beU, 0x550c7dc3U, 0x72be5d74U, 0x80deb1feU, 0x9bdc06a7U, 0xc19bf174U,
  0xe49b69c1U, 0xefbe4786U, 0x0fc19dc6U, 0x240ca1ccU, 0x2de92c6fU, 0x4a7484aaU, 0x5cb0a9dcU, 0x76f988daU,
  0x983e5152U, 0xa831c66dU, 0xb00327c8U, 0xbf597fc7U, 0xc6e00bf3U, 0xd5a79147U, 0x06ca6351U, 0x14292967U,
  0x27b70a85U, 0x2e1b2138U, 0x4d2c6dfcU, 0x53380d13U, 0x650a7354U, 0x766a0abbU, 0x81c2c92eU, 0x92722c85U,
  0xa2bfe8a1U, 0xa81a664bU, 0xc24b8b70U, 0xc76c51a3U, 0xd192e819U, 0xd6990624U, 0xf40e3585U, 0x106aa070U,
  0x19a4c116U, 0x1e376c08U, 0x2748774cU, 0x34b0bcb5U, 0x391c0cb3U, 0x4ed8aa4aU, 0x5b9cca4fU, 0x682e6ff3U,
  0x748f82eeU, 0x78a5636fU, 0x84c87814U, 0x8cc70208U, 0x90befffaU, 0xa4506cebU, 0xbef9a3f7U, 0xc67178f2U
};

__constant uint IV[8] = {
  0x6a09e667U, 0xbb67ae85U, 0x3c6ef372U, 0xa54ff53aU,
  0x510e527fU, 0x9b05688cU, 0x1f83d9abU, 0x5be0cd19U
};

inline uint bswap32(uint x) {
  return ((x & 0x000000ffU) << 24) | ((x & 0x0000ff00U) << 8) |
         ((x & 0x00ff0000U) >> 8)  | ((x & 0xff000000U) >> 24);
}

inline void sha256_transform(uint *state, const uint *block) {
  uint w[64];
  for (int i = 0; i < 16; i++) w[i] = block[i];
  for (int i = 16; i < 64; i++) {
    uint s0 = ROTR(w[i - 15], 7) ^ ROTR(w[i - 15], 18) ^ (w[i - 15] >> 3);
    uint s1 = ROTR(w[i - 2], 17) ^ ROTR(w[i - 2], 19) ^ (w[i - 2] >> 10);
    w[i] = w[i - 16] + s0 + w[i - 7] + s1;
  }

  uint a = state[0], b = state[1], c = state[2], d = state[3];
  uint e = state[4], f = state[5], g = state[6], h = state[7];

  for (int i = 0; i < 64; i++) {
    uint t1 = h + (ROTR(e, 6) ^ ROTR(e, 11) ^ ROTR(e, 25)) + ((e & f) ^ (~e & g)) + K[i] + w[i];
    uint t2 = (ROTR(a, 2) ^ ROTR(a, 13) ^ ROTR(a, 22)) + ((a & b) ^ (a & c) ^ (b & c));
    h = g; g = f; f = e; e = d + t1;
    d = c; c = b; b = a; a = t1 + t2;
  }

  state[0] += a; state[1] += b; state[2] += c; state[3] += d;
  state[4] += e; state[5] += f; state[6] += g; state[7] += h;
}

__kernel void search_sha256d(
    __global const uint *header_words,  // 19 big-endian words of the 76-byte template
    const uint nonce_start,
    const uint target_bits,
    __global uint *out_nonces,
    __global uint *out_zeros,
    __global uint *counter,
    const uint max_found)
{
  uint nonce = nonce_start + (uint)get_global_id(0);  // wraps modulo 2^32

  uint block[16];
  uint state[8];
  for (int i = 0; i < 8; i++) state[i] = IV[i];

  // first hash, block 1: header bytes 0..63
  for (int i = 0; i < 16; i++) block[i] = header_words[i];
  sha256_transform(state, block);

  // first hash, block 2: header bytes 64..75 + nonce (LE on the wire) + padding
  block[0] = header_words[16];
  block[1] = header_words[17];
  block[2] = header_words[18];
  block[3] = bswap32(nonce);
  block[4] = 0x80000000U;
  for (int i = 5; i < 15; i++) block[i] = 0;
  block[15] = 640;
  sha256_transform(state, block);

  // second hash over the 32-byte digest
  uint state2[8];
  for (int i = 0; i < 8; i++) {
    block[i] = state[i];
    state2[i] = IV[i];
  }
  block[8] = 0x80000000U;
  for (int i = 9; i < 15; i++) block[i] = 0;
  block[15] = 256;
  sha256_transform(state2, block);

  // display order is the reversed digest: last word first, bytes swapped
  uint zeros = 0;
  for (int i = 7; i >= 0; i--) {
    uint word = bswap32(state2[i]);
    if (word == 0) {
      zeros += 32;
      continue;
    }
    zeros += clz(word);
    break;
  }

  if (zeros >= target_bits) {
    uint idx = atomic_inc(counter);
    if (idx < max_found) {
      out_nonces[idx] = nonce;
      out_zeros[idx] = zeros;
    }
  }
}
"""

# Largest global size per enqueue; bigger batches are split.
CHUNK = 1 << 26


# ────────────────────────────────────────────────────────────────────────
# Backend object
# ────────────────────────────────────────────────────────────────────────


class OpenCLHashEngine:
    def __init__(
        self,
        platform_index: Optional[int] = None,
        device_index: Optional[int] = None,
        max_found: int = DEFAULT_MAX_FOUND,
        batch_size: int = DEFAULT_BATCH,
        **_: Any,
    ) -> None:
        if cl is None:
            raise DeviceUnavailable(
                device=DeviceType.OPENCL,
                message="PyOpenCL not available; install pyopencl or use the CPU backend.",
            )
        try:
            platforms = cl.get_platforms()
            if not platforms:
                raise DeviceUnavailable(
                    device=DeviceType.OPENCL, message="No OpenCL platforms available."
                )
            plat = platforms[platform_index or 0]
            devices = plat.get_devices()
            if not devices:
                raise DeviceUnavailable(
                    device=DeviceType.OPENCL,
                    message=f"No OpenCL devices on platform '{plat.name}'.",
                )
            dev = devices[device_index or 0]
            self.ctx = cl.Context([dev])
            self.queue = cl.CommandQueue(self.ctx)
            self.prog = cl.Program(self.ctx, KERNEL_SOURCE).build()
            self._kernel = self.prog.search_sha256d
        except DeviceUnavailable:
            raise
        except Exception as e:  # pragma: no cover - driver specific
            raise DeviceUnavailable(
                device=DeviceType.OPENCL,
                message=f"Failed to initialize OpenCL backend: {e}",
            ) from e

        self._max_found = max(1, int(max_found))
        mf = cl.mem_flags
        self._header_buf = cl.Buffer(self.ctx, mf.READ_ONLY, size=HEADER_TEMPLATE_SIZE)
        self._out_nonces = cl.Buffer(self.ctx, mf.WRITE_ONLY, size=self._max_found * 4)
        self._out_zeros = cl.Buffer(self.ctx, mf.WRITE_ONLY, size=self._max_found * 4)
        self._counter = cl.Buffer(self.ctx, mf.READ_WRITE, size=4)

        self._info = DeviceInfo(
            type=DeviceType.OPENCL,
            name=getattr(dev, "name", "OpenCL Device"),
            index=device_index or 0,
            vendor=getattr(dev, "vendor", None),
            driver=getattr(dev, "driver_version", None),
            compute_units=getattr(dev, "max_compute_units", None),
            memory_bytes=getattr(dev, "global_mem_size", None),
            max_batch=max(1, int(batch_size)),
            flags={"opencl": True, "sha256d": True},
        )

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
        q = self.queue
        try:
            words = struct.unpack(">19I", header)
            cl.enqueue_copy(q, self._header_buf, struct.pack("<19I", *words))
            cl.enqueue_fill_buffer(q, self._counter, struct.pack("<I", 0), 0, 4)

            remaining = int(batch_size)
            nonce = nonce_start & NONCE_MASK
            attempted = 0
            while remaining > 0:
                n_this = min(remaining, CHUNK)
                self._kernel.set_args(
                    self._header_buf,
                    _u32(nonce),
                    _u32(difficulty_target),
                    self._out_nonces,
                    self._out_zeros,
                    self._counter,
                    _u32(self._max_found),
                )
                cl.enqueue_nd_range_kernel(q, self._kernel, (n_this,), None)
                q.finish()
                attempted += n_this
                remaining -= n_this
                nonce = (nonce + n_this) & NONCE_MASK

            found_total = min(_read_u32(q, self._counter), self._max_found)
            candidates: List[Candidate] = []
            if found_total > 0:
                host_nonces = bytearray(found_total * 4)
                host_zeros = bytearray(found_total * 4)
                cl.enqueue_copy(q, host_nonces, self._out_nonces).wait()
                cl.enqueue_copy(q, host_zeros, self._out_zeros).wait()
                for i in range(found_total):
                    (n,) = struct.unpack_from("<I", host_nonces, i * 4)
                    (z,) = struct.unpack_from("<I", host_zeros, i * 4)
                    candidates.append(Candidate(nonce=n, leading_zero_bits=z))
        except Exception as e:
            log.warning("OpenCL kernel execution failed: %s", e)
            raise EngineError(message=f"OpenCL batch failed: {e}") from e

        # Deterministic order: by position inside the batch
        candidates.sort(key=lambda c: (c.nonce - nonce_start) & NONCE_MASK)
        return BatchResult(hashes_attempted=attempted, candidates=tuple(candidates))

    def close(self) -> None:
        """Release device resources."""
        try:
            if self.queue:
                self.queue.finish()
        except Exception as e:  # pragma: no cover - driver specific
            log.debug("OpenCL queue finish failed on close: %s", e)


# ────────────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────────────


def _u32(x: int) -> bytes:
    return struct.pack("<I", x & 0xFFFFFFFF)


def _read_u32(queue, buf) -> int:
    tmp = bytearray(4)
    cl.enqueue_copy(queue, tmp, buf).wait()
    return struct.unpack_from("<I", tmp, 0)[0]


# ────────────────────────────────────────────────────────────────────────
# Public factory
# ────────────────────────────────────────────────────────────────────────


def list_devices() -> List[DeviceInfo]:
    """Enumerate OpenCL devices (best-effort)."""
    if cl is None:
        return []
    infos: List[DeviceInfo] = []
    try:
        for plat in cl.get_platforms():
            for di, dev in enumerate(plat.get_devices()):
                infos.append(
                    DeviceInfo(
                        type=DeviceType.OPENCL,
                        name=getattr(dev, "name", f"OpenCL Device {di}"),
                        index=di,
                        vendor=getattr(dev, "vendor", None),
                        driver=getattr(dev, "driver_version", None),
                        compute_units=getattr(dev, "max_compute_units", None),
                        memory_bytes=getattr(dev, "global_mem_size", None),
                        max_batch=DEFAULT_BATCH,
                        flags={"opencl": True, "sha256d": True},
                    )
                )
    except Exception as e:  # no ICD loader / no platforms
        log.debug("OpenCL enumeration failed: %s", e)
    return infos


def create(**opts: Any) -> OpenCLHashEngine:
    """
    Create an OpenCL engine.

    Options:
      platform_index: int = 0
      device_index: int = 0
      max_found: int = 100
      batch_size: int = 16777216
    """
    return OpenCLHashEngine(**opts)


# Diagnostics
if __name__ == "__main__":  # pragma: no cover
    try:
        eng = create()
        print("[gpu_opencl] Device:", eng.info())
        res = eng.search_batch(b"\x00" * HEADER_TEMPLATE_SIZE, 0, 1 << 22, 20)
        print("  hashes=", res.hashes_attempted)
        for c in res.candidates:
            print("  nonce=", c.nonce, "zeros=", c.leading_zero_bits)
    except DeviceUnavailable as e:
        print("[gpu_opencl] Not available:", e)
