from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import signal
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

import requests

from .config import MinerConfig
from .header import build_header
from .job import Job
from .ledger import ShareLedger
from .market import MarketData, fetch_market
from .mining import device
from .mining.device import BatchResult, DeviceType, HashEngine
from .mining.errors import (DeviceUnavailable, EngineError, MalformedJob,
                            PoolConnectionError, normalize_exc)
from .mining.nonce_domain import NonceCursor
from .scanner import MiningThread
from .stats import MinerStats, format_status, format_summary
from .stratum_client import (Connected, Disconnected, JobReceived,
                             ProtocolSession, SendFailed, SessionEvent,
                             SubmitResult)

log = logging.getLogger("solo_miner.core")

DEFAULT_BATCH = 1 << 20


@dataclass(frozen=True)
class ShareFound:
    job_id: str
    extranonce2: str
    ntime: str
    nonce: int
    leading_zero_bits: int


class MiningCoordinator:
    """
    Owns the mining state and drives every activity around it.

    The current job, session parameters and counters sit behind one lock:
    the session's event consumer replaces the job, the mining thread reads a
    snapshot of it per batch, and the reporter reads `snapshot()`. The nonce
    cursor is only ever touched by the mining thread.
    """

    def __init__(
        self,
        config: MinerConfig,
        *,
        engine: HashEngine,
        ledger: Optional[ShareLedger] = None,
        session: Optional[ProtocolSession] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.engine = engine
        self.ledger = ledger if ledger is not None else ShareLedger(config.shares_file)
        self.session = session
        self.batch_size = int(config.batch_size or engine.info().max_batch or DEFAULT_BATCH)
        self.share_target = int(config.share_target)
        self._rng = rng or random.Random()
        self._clock = clock

        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._cursor = NonceCursor()

        # Guarded by _lock
        self._job: Optional[Job] = None
        self._extranonce1: Optional[str] = None
        self._extranonce2_size = 0
        self._ready = False
        self._total_hashes = 0
        self._best = 0
        self._job_shares = 0
        self._started = clock()
        self._block_time = self._started
        self._last_share: Optional[float] = None
        self._disconnects = 0
        self._reconnects = 0
        self._engine_failures = 0
        self._market = MarketData()
        self._last_bad_job: Optional[str] = None

        # Attached by run()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stop_async: Optional[asyncio.Event] = None
        self._disconnected: Optional[asyncio.Event] = None
        self._shares: Optional["asyncio.Queue[ShareFound]"] = None
        self._thread: Optional[MiningThread] = None

    # ------------------- lifecycle -------------------

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    def wait_stopped(self, timeout: float) -> bool:
        return self._stopped.wait(timeout)

    def stop(self) -> None:
        """Ask every loop to wind down. Safe to call from any thread."""
        self._stopped.set()
        loop, stop_async = self._loop, self._stop_async
        if loop is not None and stop_async is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_async.set)

    # ------------------- session events -------------------

    def apply_event(self, event: SessionEvent) -> None:
        now = self._clock()
        if isinstance(event, JobReceived):
            job = event.job
            with self._lock:
                self._job = job
                if job.clean_jobs:
                    self._block_time = now
                    self._job_shares = 0
            if job.clean_jobs:
                log.info("new block job=%s ntime=%s nbits=%s", job.job_id, job.ntime, job.nbits)
            else:
                log.debug("job update job=%s", job.job_id)
        elif isinstance(event, Connected):
            with self._lock:
                self._extranonce1 = event.extranonce1
                self._extranonce2_size = event.extranonce2_size
                self._ready = True
            log.info(
                "connected worker=%s ex1=%s ex2size=%d",
                self.config.worker,
                event.extranonce1,
                event.extranonce2_size,
            )
        elif isinstance(event, Disconnected):
            with self._lock:
                self._ready = False
                self._job = None
                self._disconnects += 1
            log.warning("disconnected: %s", event.reason)
            if self._disconnected is not None:
                self._disconnected.set()
        elif isinstance(event, SendFailed):
            log.warning("pool send %s failed: %s", event.method, event.reason)
        elif isinstance(event, SubmitResult):
            if event.accepted:
                log.info("share accepted job=%s nonce=%08x", event.job_id, event.nonce)
            else:
                log.warning("share rejected job=%s nonce=%08x: %s", event.job_id, event.nonce, event.reason)

    # ------------------- mining loop -------------------

    def mine_once(self) -> bool:
        """
        One iteration of the mining loop; only the mining thread calls this.

        Returns False when nothing was dispatched (no job, session not ready,
        or the job could not be turned into a header) so the caller can idle.
        """
        with self._lock:
            job = self._job
            ready = self._ready
            extranonce1 = self._extranonce1
            extranonce2_size = self._extranonce2_size
        if job is None or not ready or extranonce1 is None:
            return False

        extranonce2 = self._new_extranonce2(extranonce2_size)
        try:
            header = build_header(job, extranonce1, extranonce2)
        except MalformedJob as exc:
            self._skip_job(job, exc)
            return False

        nonce_start = self._cursor.value
        result = self._dispatch(header, nonce_start)
        self._cursor.advance(self.batch_size)
        self._score(job, extranonce2, result)
        return True

    def _new_extranonce2(self, size: int) -> str:
        if size <= 0:
            return ""
        return self._rng.getrandbits(size * 8).to_bytes(size, "big").hex()

    def _skip_job(self, job: Job, exc: MalformedJob) -> None:
        if job.job_id != self._last_bad_job:
            self._last_bad_job = job.job_id
            log.warning("skipping job %s: %s", job.job_id, exc.message)
        else:
            log.debug("skipping job %s: %s", job.job_id, exc.message)

    def _dispatch(self, header: bytes, nonce_start: int) -> BatchResult:
        try:
            result = self.engine.search_batch(header, nonce_start, self.batch_size, self.share_target)
        except Exception as exc:
            self._engine_failed(normalize_exc(exc))
            return BatchResult.empty()
        if result.hashes_attempted < self.batch_size:
            self._engine_failed(
                EngineError(
                    message="engine returned a short batch",
                    context={"attempted": result.hashes_attempted, "batch": self.batch_size},
                )
            )
            return BatchResult.empty()
        return result

    def _engine_failed(self, err: Exception) -> None:
        with self._lock:
            self._engine_failures += 1
            failures = self._engine_failures
        log.warning("batch failed (%d so far): %s", failures, err)

    def _score(self, job: Job, extranonce2: str, result: BatchResult) -> None:
        shares: List[ShareFound] = []
        with self._lock:
            self._total_hashes += result.hashes_attempted
            for cand in result.candidates:
                self._best = max(self._best, cand.leading_zero_bits)
                if cand.leading_zero_bits >= self.share_target:
                    shares.append(
                        ShareFound(
                            job_id=job.job_id,
                            extranonce2=extranonce2,
                            ntime=job.ntime,
                            nonce=cand.nonce,
                            leading_zero_bits=cand.leading_zero_bits,
                        )
                    )
            if shares:
                self._last_share = self._clock()
                if self._job is not None and self._job.job_id == job.job_id:
                    self._job_shares += len(shares)

        for share in shares:
            lifetime = self.ledger.record_share()
            log.info(
                "SHARE FOUND job=%s nonce=%08x zeros=%d lifetime=%d",
                share.job_id,
                share.nonce,
                share.leading_zero_bits,
                lifetime,
            )
            self._publish(share)

    def _publish(self, share: ShareFound) -> None:
        loop, queue = self._loop, self._shares
        if loop is None or queue is None:
            return
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(queue.put_nowait, share)

    # ------------------- reporting -------------------

    def snapshot(self) -> MinerStats:
        now = self._clock()
        session = self.session
        with self._lock:
            if session is not None:
                state = session.state.value
            else:
                state = "ready" if self._ready else "disconnected"
            return MinerStats(
                uptime=now - self._started,
                total_hashes=self._total_hashes,
                session_shares=self.ledger.session_shares,
                lifetime_shares=self.ledger.lifetime_shares,
                job_shares=self._job_shares,
                best_difficulty=self._best,
                state=state,
                job_id=self._job.job_id if self._job is not None else None,
                nonce_cursor=self._cursor.value,
                since_block=now - self._block_time,
                since_last_share=(now - self._last_share) if self._last_share is not None else None,
                disconnects=self._disconnects,
                reconnects=self._reconnects,
                engine_failures=self._engine_failures,
                price_usd=self._market.price_usd,
                block_height=self._market.block_height,
            )

    # ------------------- asyncio side -------------------

    async def run(self) -> None:
        """
        Start the mining thread and the network/reporting tasks; return
        once `stop()` has been called and everything has been released.
        """
        cfg = self.config
        self._loop = asyncio.get_running_loop()
        self._stop_async = asyncio.Event()
        self._disconnected = asyncio.Event()
        self._shares = asyncio.Queue()
        if self._stopped.is_set():
            self._stop_async.set()

        if self.session is None:
            self.session = ProtocolSession(
                cfg.host,
                cfg.port,
                worker=cfg.worker,
                password=cfg.password,
                agent=cfg.agent,
                connect_timeout=cfg.connect_timeout,
                read_timeout=cfg.read_timeout,
            )

        lifetime = self.ledger.load()
        log.info("lifetime shares %d (%s)", lifetime, self.ledger.path)

        self._thread = MiningThread(self, idle_interval=cfg.idle_interval)
        self._thread.start()

        tasks = [
            asyncio.create_task(self._connection_loop(), name="connection"),
            asyncio.create_task(self._event_loop(), name="events"),
            asyncio.create_task(self._report_loop(), name="report"),
            asyncio.create_task(self._market_loop(), name="market"),
            asyncio.create_task(self._share_loop(), name="shares"),
        ]
        try:
            await self._stop_async.wait()
        finally:
            self._stopped.set()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            await self.session.close()
            await asyncio.to_thread(self._thread.join, 30.0)
            await asyncio.to_thread(self.ledger.close)
            if self._thread.is_alive():
                log.warning("mining thread still busy with its last batch")

    async def _wait_stop(self, timeout: float) -> None:
        assert self._stop_async is not None
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_async.wait(), timeout=timeout)

    async def _connection_loop(self) -> None:
        assert self.session is not None and self._disconnected is not None
        attempt = 0
        while self.running:
            attempt += 1
            if attempt > 1:
                with self._lock:
                    self._reconnects += 1
                log.info("reconnecting to %s:%s (attempt %d)", self.config.host, self.config.port, attempt)
            self._disconnected.clear()
            try:
                await self.session.connect()
            except PoolConnectionError as exc:
                log.warning("%s", exc.message)
            else:
                await self._until_disconnected()
            if not self.running:
                break
            log.info("retrying in %.1f s", self.config.reconnect_delay)
            await self._wait_stop(self.config.reconnect_delay)

    async def _until_disconnected(self) -> None:
        assert self._disconnected is not None and self._stop_async is not None
        waiters = [
            asyncio.ensure_future(self._disconnected.wait()),
            asyncio.ensure_future(self._stop_async.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _event_loop(self) -> None:
        assert self.session is not None
        while True:
            event = await self.session.events.get()
            self.apply_event(event)

    async def _report_loop(self) -> None:
        interval = self.config.report_interval
        if interval <= 0:
            return
        while self.running:
            await self._wait_stop(interval)
            if self.running:
                log.info("%s", format_status(self.snapshot()))

    async def _market_loop(self) -> None:
        if not self.config.market_enabled:
            return
        with requests.Session() as http:
            http.headers["User-Agent"] = self.config.agent
            while self.running:
                market = await asyncio.to_thread(fetch_market, http, self._market)
                with self._lock:
                    self._market = market
                await self._wait_stop(self.config.market_interval)

    async def _share_loop(self) -> None:
        assert self._shares is not None
        while True:
            share = await self._shares.get()
            if not self.config.submit_shares:
                continue
            session = self.session
            if session is None or not session.ready:
                log.warning("share ready but pool session is down; dropping nonce=%08x", share.nonce)
                continue
            await session.submit(share.job_id, share.extranonce2, share.ntime, share.nonce)


def create_engine(config: MinerConfig) -> HashEngine:
    """Build the configured engine, falling back to the CPU backend."""
    opts: dict[str, Any] = dict(config.engine_options or {})
    if config.batch_size:
        opts["batch_size"] = config.batch_size
    kind = device.auto_detect() if config.device == "auto" else DeviceType.normalize(config.device)
    try:
        engine = device.create(kind, **opts)
    except DeviceUnavailable as exc:
        if kind == DeviceType.CPU:
            raise
        log.warning("%s; falling back to cpu", exc.message)
        engine = device.create(DeviceType.CPU, **opts)
    log.info("engine %s (%s)", engine.info().name, engine.info().type)
    return engine


# Convenience runner ---------------------------------------------------------

async def run_miner(config: MinerConfig) -> None:
    engine = await asyncio.to_thread(create_engine, config)
    coordinator = MiningCoordinator(config, engine=engine)
    loop = asyncio.get_running_loop()

    def _set_stop(*_: Any) -> None:
        coordinator.stop()

    for signame in ("SIGINT", "SIGTERM"):
        if hasattr(signal, signame):
            sig = getattr(signal, signame)
            try:
                loop.add_signal_handler(sig, coordinator.stop)
            except NotImplementedError:
                # Windows Proactor loops do not implement add_signal_handler; fall back to sync handler.
                with contextlib.suppress(ValueError, RuntimeError):
                    signal.signal(sig, _set_stop)
    log.info(
        "mining to %s via %s:%s share target=%d bits. Press Ctrl+C to stop.",
        config.address,
        config.host,
        config.port,
        coordinator.share_target,
    )
    try:
        await coordinator.run()
    finally:
        log.info("%s", format_summary(coordinator.snapshot()))


__all__ = ["ShareFound", "MiningCoordinator", "create_engine", "run_miner"]
