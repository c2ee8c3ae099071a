from __future__ import annotations

from typing import Any, List, Sequence, Tuple

import pytest

from solo_miner.config import MinerConfig
from solo_miner.job import Job
from solo_miner.ledger import ShareLedger
from solo_miner.mining.device import BatchResult, Candidate, DeviceInfo

# Bitcoin genesis coinbase, split around an 8-byte extranonce window inside
# the scriptSig text ("...bailout for banks").
GENESIS_COINBASE1 = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000ffffffff"
    "4d04ffff001d0104455468652054696d65732030332f4a616e2f32303039204368616e63656c6c6f72"
    "206f6e206272696e6b206f66207365636f6e64206261696c6f7574"
)
GENESIS_EXTRANONCE1 = "20666f72"
GENESIS_EXTRANONCE2 = "2062616e"
GENESIS_COINBASE2 = (
    "6b73ffffffff0100f2052a01000000434104678afdb0fe5548271967f1a67130b7105cd6a828e039"
    "09a67962e0ea1f61deb649f6bc3f4cef38c4f35504e51ec112de5c384df7ba0b8d578a4c702b6bf1"
    "1d5fac00000000"
)
GENESIS_TXID = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"

# Real genesis block header (internal byte order) and its winning nonce.
GENESIS_HEADER_HEX = (
    "0100000000000000000000000000000000000000000000000000000000000000000000003ba3edfd"
    "7a7b12b27ac72c3e67768f617fc81bc3888a51323a9fb8aa4b1e5e4a29ab5f49ffff001d"
)
GENESIS_NONCE = 2083236893
GENESIS_HASH = "000000000019d6689c085ae165831e934ff763ae46a2a6c172b3f1b60a8ce26f"


def make_job(job_id: str = "j1", **overrides: Any) -> Job:
    fields = dict(
        job_id=job_id,
        prev_block_hash="00" * 32,
        coinbase1=GENESIS_COINBASE1,
        coinbase2=GENESIS_COINBASE2,
        merkle_branches=(),
        version="00000001",
        nbits="1d00ffff",
        ntime="495fab29",
        clean_jobs=False,
    )
    fields.update(overrides)
    return Job(**fields)


class StubEngine:
    """Hash engine double: records each dispatch and returns canned results."""

    def __init__(
        self,
        candidates: Sequence[Tuple[int, int]] = (),
        *,
        batch: int = 1024,
        fail: bool = False,
        short: bool = False,
        trace: List[Any] | None = None,
    ) -> None:
        self.candidates = tuple(Candidate(nonce=n, leading_zero_bits=z) for n, z in candidates)
        self.batch = batch
        self.fail = fail
        self.short = short
        self.calls: List[Tuple[bytes, int, int, int]] = []
        self.trace = trace if trace is not None else []
        self.closed = False

    def info(self) -> DeviceInfo:
        return DeviceInfo(type="cpu", name="stub", max_batch=self.batch)

    def search_batch(self, header: bytes, nonce_start: int, batch_size: int, difficulty_target: int) -> BatchResult:
        self.calls.append((header, nonce_start, batch_size, difficulty_target))
        self.trace.append(("dispatch", header))
        if self.fail:
            raise RuntimeError("device lost")
        attempted = batch_size // 2 if self.short else batch_size
        return BatchResult(hashes_attempted=attempted, candidates=self.candidates)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def genesis_job() -> Job:
    return make_job()


@pytest.fixture
def shares_path(tmp_path):
    return tmp_path / "shares.json"


@pytest.fixture
def ledger(shares_path) -> ShareLedger:
    return ShareLedger(shares_path)


@pytest.fixture
def config(shares_path) -> MinerConfig:
    return MinerConfig(
        address="bc1qtestaddress",
        shares_file=str(shares_path),
        market_enabled=False,
        report_interval=0,
        reconnect_delay=0.05,
        read_timeout=0.1,
        idle_interval=0.01,
    )
