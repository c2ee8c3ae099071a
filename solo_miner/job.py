from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple


@dataclass(frozen=True)
class Job:
    """
    Immutable snapshot of a `mining.notify` job.

    Attributes:
        job_id: Opaque identifier provided by the Stratum server.
        prev_block_hash: Previous block hash, display-order hex.
        coinbase1: Coinbase prefix hex (before extranonce1).
        coinbase2: Coinbase suffix hex (after extranonce2).
        merkle_branches: Sibling hashes folded onto the coinbase hash, in order.
        version: Block version, 4-byte big-endian hex.
        nbits: Compact difficulty target, 4-byte big-endian hex.
        ntime: Block timestamp, 4-byte big-endian hex.
        clean_jobs: Previous work must be abandoned when true.
    """

    job_id: str
    prev_block_hash: str
    coinbase1: str
    coinbase2: str
    merkle_branches: Tuple[str, ...]
    version: str
    nbits: str
    ntime: str
    clean_jobs: bool = False

    @classmethod
    def from_notify_params(cls, params: Any) -> Optional["Job"]:
        """
        Build a Job from the nine positional notify params:
        [jobId, prevhash, coinb1, coinb2, merkle_branch[], version, nbits, ntime, clean_jobs].
        Returns None when the params do not have that shape.
        """
        if not isinstance(params, (list, tuple)) or len(params) < 9:
            return None
        job_id, prevhash, coinb1, coinb2, branches, version, nbits, ntime, clean = params[:9]
        if not isinstance(job_id, (str, int)) or isinstance(job_id, bool):
            return None
        if not all(isinstance(v, str) for v in (prevhash, coinb1, coinb2, version, nbits, ntime)):
            return None
        if not isinstance(branches, list) or not all(isinstance(b, str) for b in branches):
            return None
        return cls(
            job_id=str(job_id),
            prev_block_hash=prevhash,
            coinbase1=coinb1,
            coinbase2=coinb2,
            merkle_branches=tuple(branches),
            version=version,
            nbits=nbits,
            ntime=ntime,
            clean_jobs=bool(clean),
        )

    def to_notify_params(self) -> Sequence[Any]:
        return [
            self.job_id,
            self.prev_block_hash,
            self.coinbase1,
            self.coinbase2,
            list(self.merkle_branches),
            self.version,
            self.nbits,
            self.ntime,
            self.clean_jobs,
        ]
