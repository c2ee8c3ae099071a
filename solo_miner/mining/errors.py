from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional


class MiningErrorCode(IntEnum):
    """Stable, machine-consumable error codes for miner flows."""

    MINER_ERROR = 1000
    MALFORMED_JOB = 1001
    PROTOCOL_PARSE = 1002
    CONNECTION = 1003
    PERSISTENCE = 1004
    ENGINE = 1005
    DEVICE_UNAVAILABLE = 1006


@dataclass
class MinerError(Exception):
    """
    Base class for miner-facing errors.

    Attributes
    ----------
    message : str
        Human-friendly explanation (safe to log).
    code : MiningErrorCode
        Programmatic code stable across releases.
    retryable : bool
        Whether retrying the same operation later has a reasonable chance
        to succeed.
    context : dict
        Small, JSON-serializable context (non-sensitive) for diagnostics.
    action : Optional[str]
        One-word hint for the coordinator (e.g., "skip", "reconnect").
    """

    message: str
    code: MiningErrorCode = MiningErrorCode.MINER_ERROR
    retryable: bool = False
    context: Dict[str, Any] = field(default_factory=dict)
    action: Optional[str] = None

    def __str__(self) -> str:  # pragma: no cover - trivial
        base = f"[{self.code}] {self.message}"
        if self.action:
            base += f" (action={self.action})"
        if self.context:
            base += f" ctx={self.context}"
        return base


@dataclass
class MalformedJob(MinerError):
    """
    A header cannot be built from the job (bad hex, wrong field width).
    The attempt is skipped; nothing is dispatched.
    """

    message: str = "job cannot be encoded into a 76-byte header"
    code: MiningErrorCode = MiningErrorCode.MALFORMED_JOB
    retryable: bool = False
    action: str = "skip"


@dataclass
class ProtocolParseError(MinerError):
    """An inbound frame is not a JSON object; the line is dropped."""

    message: str = "unparseable frame"
    code: MiningErrorCode = MiningErrorCode.PROTOCOL_PARSE
    retryable: bool = False
    action: str = "drop"


@dataclass
class PoolConnectionError(MinerError):
    """
    Socket-level failure talking to the pool. The session goes back to
    DISCONNECTED and the coordinator schedules a reconnect.
    """

    message: str = "pool connection failed"
    code: MiningErrorCode = MiningErrorCode.CONNECTION
    retryable: bool = True
    action: str = "reconnect"


@dataclass
class PersistenceError(MinerError):
    """Share counter file could not be read or written."""

    path: str = ""
    message: str = "share counter file unavailable"
    code: MiningErrorCode = MiningErrorCode.PERSISTENCE
    retryable: bool = True
    action: str = "ignore"

    def __post_init__(self) -> None:
        if self.path:
            self.context.setdefault("path", self.path)


@dataclass
class EngineError(MinerError):
    """A hash-search batch failed; scored as a zero-result batch."""

    message: str = "hash engine batch failed"
    code: MiningErrorCode = MiningErrorCode.ENGINE
    retryable: bool = True
    action: str = "skip"


@dataclass
class DeviceUnavailable(MinerError):
    """
    The selected engine backend is not available (driver/library missing,
    no platform, kernel build failure).
    """

    device: str = "cpu"
    message: str = "mining device unavailable"
    code: MiningErrorCode = MiningErrorCode.DEVICE_UNAVAILABLE
    retryable: bool = False
    action: str = "fallback"

    def __post_init__(self) -> None:
        self.context.setdefault("device", self.device)


# Helper: map arbitrary exceptions into MinerError (edge-safe)
def normalize_exc(exc: BaseException) -> MinerError:
    if isinstance(exc, MinerError):
        return exc
    return MinerError(
        message=str(exc),
        code=MiningErrorCode.MINER_ERROR,
        retryable=False,
        context={"type": type(exc).__name__},
    )


__all__ = [
    "MiningErrorCode",
    "MinerError",
    "MalformedJob",
    "ProtocolParseError",
    "PoolConnectionError",
    "PersistenceError",
    "EngineError",
    "DeviceUnavailable",
    "normalize_exc",
]
