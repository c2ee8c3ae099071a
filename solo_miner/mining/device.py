from __future__ import annotations

"""
solo_miner.mining.device
========================

Unified hash-engine abstraction. Supports:
  - cpu     : hashlib backend (always available)
  - opencl  : PyOpenCL SHA-256d kernel (optional)

This module *does not* implement the inner loops; it discovers and loads
backend adapters (see mining/cpu_backend.py and mining/gpu_opencl.py) and
exposes a consistent API to the coordinator.

Contract
--------
    search_batch(header, nonce_start, batch_size, difficulty_target) -> BatchResult

The engine scans `batch_size` consecutive nonces starting at `nonce_start`
(wrapping modulo 2^32), hashes `header || nonce_le32` with double SHA-256 and
returns every nonce whose display-order hash has at least
`difficulty_target` leading zero bits, together with the number of nonces it
actually attempted. The call is synchronous; the coordinator runs it on a
dedicated thread.

Public API
----------
- DeviceType                                 : identifiers for backends
- DeviceInfo(dataclass)                      : static info + feature flags
- Candidate / BatchResult                    : batch output
- HashEngine(Protocol)                       : runtime interface
- list_available() -> list[DeviceInfo]       : enumerate devices across backends
- create(device, **opts)                     : instantiate a HashEngine
- auto_detect() -> str                       : best available backend
"""

import importlib
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, NamedTuple, Protocol, Tuple

from .errors import DeviceUnavailable

log = logging.getLogger("solo_miner.device")

# ────────────────────────────────────────────────────────────────────────
# Types & Flags
# ────────────────────────────────────────────────────────────────────────


class DeviceType(str):
    CPU = "cpu"
    OPENCL = "opencl"

    @classmethod
    def normalize(cls, x: str) -> str:
        s = str(x).strip().lower()
        if s in {cls.CPU, "host"}:
            return cls.CPU
        if s in {cls.OPENCL, "ocl", "gpu"}:
            return cls.OPENCL
        raise ValueError(f"Unknown device type: {x!r}")


@dataclass(frozen=True)
class DeviceInfo:
    """Static description of a physical/logical device."""

    type: str
    name: str
    index: int = 0
    vendor: str | None = None
    driver: str | None = None
    compute_units: int | None = None
    memory_bytes: int | None = None
    max_batch: int | None = None  # preferred nonces per dispatch
    flags: Dict[str, bool] = field(default_factory=dict)


class Candidate(NamedTuple):
    nonce: int
    leading_zero_bits: int


@dataclass(frozen=True)
class BatchResult:
    """Output of one dispatched batch."""

    hashes_attempted: int
    candidates: Tuple[Candidate, ...] = ()

    @classmethod
    def empty(cls) -> "BatchResult":
        return cls(hashes_attempted=0, candidates=())


class HashEngine(Protocol):
    """Runtime interface provided by each backend instance."""

    def info(self) -> DeviceInfo: ...

    def search_batch(
        self,
        header: bytes,
        nonce_start: int,
        batch_size: int,
        difficulty_target: int,
    ) -> BatchResult:
        """
        Scan a contiguous (wrapping) nonce range and return the nonces whose
        hash meets `difficulty_target` leading zero bits. Raises EngineError
        on engine-internal failure.
        """
        ...

    def close(self) -> None:
        """Release device resources (contexts/queues)."""
        ...


# ────────────────────────────────────────────────────────────────────────
# Backend registry & lazy loaders
# ────────────────────────────────────────────────────────────────────────

_loader_lock = threading.Lock()
_registry: Dict[str, Dict[str, Any]] = (
    {}
)  # {backend_name: {"mod": module, "list": fn, "create": fn}}

_BACKEND_MODULES = {
    DeviceType.CPU: "solo_miner.mining.cpu_backend",
    DeviceType.OPENCL: "solo_miner.mining.gpu_opencl",
}


def _try_load(backend: str, module_name: str, list_fn: str, create_fn: str) -> None:
    """Best-effort import; record presence in _registry."""
    with _loader_lock:
        if backend in _registry:  # already attempted
            return
        try:
            mod = importlib.import_module(module_name)
            lfn = getattr(mod, list_fn)
            cfn = getattr(mod, create_fn)
            _registry[backend] = {"mod": mod, "list": lfn, "create": cfn}
        except (ImportError, AttributeError) as exc:
            log.debug("backend %s unavailable: %s", backend, exc)
            _registry[backend] = {}  # mark as unavailable


def _boot_registry() -> None:
    for backend, module_name in _BACKEND_MODULES.items():
        _try_load(backend, module_name, "list_devices", "create")


# ────────────────────────────────────────────────────────────────────────
# Discovery
# ────────────────────────────────────────────────────────────────────────


def list_available() -> List[DeviceInfo]:
    """
    Enumerate devices across all discovered backends.
    Honors environment filters:
      SOLO_MINER_DEVICE_ALLOW = "opencl,cpu" (only these)
      SOLO_MINER_DEVICE_DENY  = "opencl"     (exclude these)
    """
    _boot_registry()
    allow = _parse_csv_env("SOLO_MINER_DEVICE_ALLOW")
    deny = _parse_csv_env("SOLO_MINER_DEVICE_DENY")
    out: List[DeviceInfo] = []
    for backend, ent in _registry.items():
        if not ent:
            continue
        if allow and backend not in allow:
            continue
        if deny and backend in deny:
            continue
        try:
            out.extend(ent["list"]())
        except Exception as exc:  # a backend failing enumeration is skipped
            log.debug("enumeration failed for %s: %s", backend, exc)
            continue
    # Stable deterministic order: type→index→name
    out.sort(key=lambda d: (d.type, d.index, d.name))
    return out


# ────────────────────────────────────────────────────────────────────────
# Factory
# ────────────────────────────────────────────────────────────────────────


def create(device: str, **opts: Any) -> HashEngine:
    """
    Instantiate a HashEngine for the requested backend.

    Common options:
      max_found: int = 100       # candidate slots per batch
      threads: int = 0           # cpu: worker threads
      platform_index: int = 0    # opencl
      device_index: int = 0      # opencl
    """
    backend = DeviceType.normalize(device)
    _boot_registry()
    ent = _registry.get(backend) or {}
    if not ent:
        raise DeviceUnavailable(
            device=backend,
            message=f"Backend '{backend}' not available (module missing or failed to import).",
        )
    allow = _parse_csv_env("SOLO_MINER_DEVICE_ALLOW")
    if backend in _parse_csv_env("SOLO_MINER_DEVICE_DENY") or (allow and backend not in allow):
        raise DeviceUnavailable(device=backend, message=f"Backend '{backend}' disabled by environment.")
    try:
        dev = ent["create"](**opts)
        _ = dev.info()
        _validate_device_interface(dev)
        return dev
    except DeviceUnavailable:
        raise
    except Exception as e:
        raise DeviceUnavailable(
            device=backend, message=f"Failed to create device '{backend}': {e}"
        ) from e


def auto_detect() -> str:
    """
    Pick the best available backend: OpenCL when a platform exposes a
    device, otherwise the CPU backend.
    """
    available_types = {d.type for d in list_available()}
    for device_type in (DeviceType.OPENCL, DeviceType.CPU):
        if device_type in available_types:
            return device_type
    return DeviceType.CPU


# ────────────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────────────


def _parse_csv_env(key: str) -> List[str]:
    v = os.environ.get(key, "").strip()
    if not v:
        return []
    return [DeviceType.normalize(x) for x in re.split(r"[,\s]+", v) if x]


def _validate_device_interface(dev: HashEngine) -> None:
    for m in ("info", "search_batch", "close"):
        if not hasattr(dev, m):
            raise DeviceUnavailable(message=f"Device missing method: {m}")


__all__ = [
    "DeviceType",
    "DeviceInfo",
    "Candidate",
    "BatchResult",
    "HashEngine",
    "list_available",
    "create",
    "auto_detect",
]
