from __future__ import annotations

import asyncio
import json
import random

import pytest

from conftest import StubEngine, make_job
from solo_miner.header import build_header, reverse_bytes
from solo_miner.ledger import ShareLedger
from solo_miner.miner import MiningCoordinator, create_engine
from solo_miner.mining.device import DeviceType
from solo_miner.stratum_client import (Connected, Disconnected, JobReceived,
                                       SessionState)
from solo_miner.stratum_protocol import (encode_lines, push_notify,
                                         res_authorize, res_subscribe)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _coordinator(config, engine, ledger=None, clock=None):
    return MiningCoordinator(
        config,
        engine=engine,
        ledger=ledger if ledger is not None else ShareLedger(config.shares_file),
        rng=random.Random(1234),
        clock=clock or FakeClock(),
    )


def _ready(coordinator, job=None, ex2_size=4):
    coordinator.apply_event(Connected(extranonce1="f000000f", extranonce2_size=ex2_size))
    coordinator.apply_event(JobReceived(job=job or make_job(clean_jobs=True)))


def test_share_at_target_is_counted_and_persisted(config, shares_path):
    engine = StubEngine(candidates=[(0x1234, 40)])
    coordinator = _coordinator(config, engine)
    _ready(coordinator)

    assert coordinator.mine_once() is True

    stats = coordinator.snapshot()
    assert stats.session_shares == 1
    assert stats.lifetime_shares == 1
    assert stats.best_difficulty == 40
    assert stats.job_shares == 1
    assert stats.total_hashes == 1024
    assert coordinator.ledger.flush()
    assert json.loads(shares_path.read_text())["total"] == 1


def test_candidates_below_target_only_raise_best(config):
    engine = StubEngine(candidates=[(1, 20), (2, 31)])
    coordinator = _coordinator(config, engine)
    _ready(coordinator)
    coordinator.mine_once()

    stats = coordinator.snapshot()
    assert stats.best_difficulty == 31
    assert stats.session_shares == 0
    assert stats.since_last_share is None


def test_dispatch_uses_cursor_and_target(config):
    config.batch_size = 4096
    config.share_target = 30
    engine = StubEngine()
    coordinator = _coordinator(config, engine)
    _ready(coordinator)
    for _ in range(3):
        coordinator.mine_once()

    assert [(start, size, target) for _, start, size, target in engine.calls] == [
        (0, 4096, 30),
        (4096, 4096, 30),
        (8192, 4096, 30),
    ]
    assert coordinator.snapshot().nonce_cursor == 3 * 4096


def test_fresh_extranonce2_every_attempt(config):
    engine = StubEngine()
    coordinator = _coordinator(config, engine)
    _ready(coordinator)
    coordinator.mine_once()
    coordinator.mine_once()

    (h1, *_), (h2, *_) = engine.calls
    assert len(h1) == len(h2) == 76
    assert h1[36:68] != h2[36:68]  # merkle root differs
    assert h1[:36] == h2[:36] and h1[68:] == h2[68:]


def test_idle_without_job_or_session(config):
    engine = StubEngine()
    coordinator = _coordinator(config, engine)
    assert coordinator.mine_once() is False

    coordinator.apply_event(JobReceived(job=make_job()))
    assert coordinator.mine_once() is False  # not connected yet

    coordinator.apply_event(Connected(extranonce1="00", extranonce2_size=4))
    assert coordinator.mine_once() is True

    coordinator.apply_event(Disconnected(reason="eof"))
    assert coordinator.mine_once() is False
    assert len(engine.calls) == 1
    stats = coordinator.snapshot()
    assert stats.disconnects == 1
    assert stats.job_id is None


def test_clean_job_precedes_next_dispatch(config):
    trace = []
    engine = StubEngine(trace=trace)
    clock = FakeClock(1000.0)
    coordinator = _coordinator(config, engine, clock=clock)
    old = make_job("old", clean_jobs=True)
    new = make_job("new", prev_block_hash="ab" * 32, clean_jobs=True)

    _ready(coordinator, job=old)
    coordinator.mine_once()
    clock.now = 1500.0
    trace.append(("notify", "new"))
    coordinator.apply_event(JobReceived(job=new))
    coordinator.mine_once()

    kinds = [kind for kind, _ in trace]
    assert kinds == ["dispatch", "notify", "dispatch"]
    assert trace[0][1][4:36] == reverse_bytes(bytes.fromhex(old.prev_block_hash))
    assert trace[2][1][4:36] == reverse_bytes(bytes.fromhex(new.prev_block_hash))
    clock.now = 1510.0
    assert coordinator.snapshot().since_block == pytest.approx(10.0)


def test_clean_job_resets_job_shares(config):
    engine = StubEngine(candidates=[(7, 33)])
    coordinator = _coordinator(config, engine)
    _ready(coordinator)
    coordinator.mine_once()
    coordinator.mine_once()
    assert coordinator.snapshot().job_shares == 2

    coordinator.apply_event(JobReceived(job=make_job("same-block", clean_jobs=False)))
    assert coordinator.snapshot().job_shares == 2
    coordinator.apply_event(JobReceived(job=make_job("next-block", clean_jobs=True)))
    stats = coordinator.snapshot()
    assert stats.job_shares == 0
    assert stats.session_shares == 2


def test_malformed_job_is_skipped_without_dispatch(config):
    engine = StubEngine()
    coordinator = _coordinator(config, engine)
    _ready(coordinator, job=make_job("bad", nbits="zz00ffff"))

    assert coordinator.mine_once() is False
    assert coordinator.mine_once() is False
    assert engine.calls == []
    assert coordinator.snapshot().nonce_cursor == 0

    coordinator.apply_event(JobReceived(job=make_job("good")))
    assert coordinator.mine_once() is True


def test_engine_exception_is_an_empty_batch(config):
    engine = StubEngine(candidates=[(1, 50)], fail=True)
    coordinator = _coordinator(config, engine)
    _ready(coordinator)

    assert coordinator.mine_once() is True
    stats = coordinator.snapshot()
    assert stats.total_hashes == 0
    assert stats.session_shares == 0
    assert stats.engine_failures == 1
    assert stats.nonce_cursor == 1024


def test_short_batch_is_an_empty_batch(config):
    engine = StubEngine(candidates=[(1, 50)], short=True)
    coordinator = _coordinator(config, engine)
    _ready(coordinator)
    coordinator.mine_once()

    stats = coordinator.snapshot()
    assert stats.total_hashes == 0
    assert stats.best_difficulty == 0
    assert stats.engine_failures == 1


def test_zero_size_extranonce2(config):
    engine = StubEngine()
    coordinator = _coordinator(config, engine)
    job = make_job(clean_jobs=True)
    _ready(coordinator, job=job, ex2_size=0)
    coordinator.mine_once()
    assert engine.calls[0][0] == build_header(job, "f000000f", "")


def test_stop_is_visible_to_waiters(config):
    coordinator = _coordinator(config, StubEngine())
    assert coordinator.running
    assert coordinator.wait_stopped(0.01) is False
    coordinator.stop()
    assert not coordinator.running
    assert coordinator.wait_stopped(0.01) is True


def test_create_engine_cpu(config):
    config.device = "cpu"
    config.batch_size = 2048
    engine = create_engine(config)
    assert engine.info().type == DeviceType.CPU
    assert engine.info().max_batch == 2048


def test_run_mines_and_reconnects_against_local_pool(config):
    connections = []

    async def handler(reader, writer):
        connections.append(writer)
        await _pool_handshake(reader, writer)
        if len(connections) == 1:
            writer.close()
            return
        notify = push_notify(
            "live", "00" * 32, make_job().coinbase1, make_job().coinbase2, [],
            "00000001", "1d00ffff", "495fab29", True,
        )
        writer.write(encode_lines(notify))
        await writer.drain()
        await reader.read()
        writer.close()

    async def scenario():
        server = await asyncio.start_server(handler, "127.0.0.1", 0)
        config.host = "127.0.0.1"
        config.port = server.sockets[0].getsockname()[1]
        engine = StubEngine(candidates=[(99, 35)], batch=64)
        coordinator = MiningCoordinator(config, engine=engine, rng=random.Random(5))
        task = asyncio.create_task(coordinator.run())
        for _ in range(200):
            await asyncio.sleep(0.025)
            if coordinator.snapshot().total_hashes > 0:
                break
        state = coordinator.session.state
        coordinator.stop()
        await asyncio.wait_for(task, 10)
        server.close()
        await server.wait_closed()
        return coordinator, engine, state

    coordinator, engine, state = asyncio.run(scenario())

    stats = coordinator.snapshot()
    assert state == SessionState.READY
    assert stats.total_hashes > 0
    assert stats.session_shares >= 1
    assert stats.disconnects == 1
    assert stats.reconnects == 1
    assert engine.closed
    assert coordinator.session.state == SessionState.DISCONNECTED
    assert not coordinator.running


async def _pool_handshake(reader, writer):
    req = json.loads(await reader.readline())
    writer.write(encode_lines(res_subscribe(req["id"], "f000000f", 4)))
    await writer.drain()
    req = json.loads(await reader.readline())
    writer.write(encode_lines(res_authorize(req["id"], True)))
    await writer.drain()
