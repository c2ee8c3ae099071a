from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class MinerStats:
    """Read-only copy of the coordinator's live counters."""

    uptime: float
    total_hashes: int
    session_shares: int
    lifetime_shares: int
    job_shares: int
    best_difficulty: int
    state: str
    job_id: Optional[str]
    nonce_cursor: int
    since_block: float
    since_last_share: Optional[float]
    disconnects: int
    reconnects: int
    engine_failures: int
    price_usd: Optional[float] = None
    block_height: Optional[int] = None

    @property
    def hashrate(self) -> float:
        return self.total_hashes / max(self.uptime, 1.0)


def format_hashrate(rate: float) -> str:
    if rate > 1_000_000_000:
        return f"{rate / 1_000_000_000:.2f} GH/s"
    if rate > 1_000_000:
        return f"{rate / 1_000_000:.2f} MH/s"
    if rate > 1000:
        return f"{rate / 1000:.1f} KH/s"
    return f"{rate:.0f} H/s"


def format_duration(seconds: float) -> str:
    total = int(max(seconds, 0))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours:d}:{minutes:02d}:{secs:02d}"


def format_status(stats: MinerStats) -> str:
    last = format_duration(stats.since_last_share) if stats.since_last_share is not None else "--"
    parts = [
        format_hashrate(stats.hashrate),
        f"hashes={stats.total_hashes:,}",
        f"shares={stats.session_shares}/{stats.lifetime_shares}",
        f"best={stats.best_difficulty}",
        f"last={last}",
        f"block={format_duration(stats.since_block)}",
        f"state={stats.state}",
    ]
    if stats.block_height is not None:
        parts.append(f"height={stats.block_height}")
    if stats.price_usd is not None:
        parts.append(f"btc=${stats.price_usd:,.2f}")
    return " ".join(parts)


def format_summary(stats: MinerStats) -> str:
    return (
        f"session complete: uptime={format_duration(stats.uptime)} "
        f"hashes={stats.total_hashes:,} avg={format_hashrate(stats.hashrate)} "
        f"session_shares={stats.session_shares} lifetime_shares={stats.lifetime_shares} "
        f"best={stats.best_difficulty} disconnects={stats.disconnects} "
        f"reconnects={stats.reconnects}"
    )


__all__ = ["MinerStats", "format_hashrate", "format_duration", "format_status", "format_summary"]
