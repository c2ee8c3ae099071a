from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .miner import MiningCoordinator

log = logging.getLogger("solo_miner.scanner")


class MiningThread(threading.Thread):
    """
    Dedicated worker thread that keeps the hash engine busy.

    Each iteration is one `MiningCoordinator.mine_once()` call: snapshot the
    current job, build a header, dispatch a single batch and score it. The
    thread is the only writer of the nonce cursor, and only one batch is in
    flight at a time.
    """

    def __init__(self, coordinator: "MiningCoordinator", *, idle_interval: float = 0.1) -> None:
        super().__init__(name="miner-dispatch", daemon=True)
        self._coordinator = coordinator
        self._idle = max(0.01, float(idle_interval))
        self.batches = 0

    def run(self) -> None:  # pragma: no cover - threading
        c = self._coordinator
        info = c.engine.info()
        log.info("mining thread started engine=%s batch=%d", info.name, c.batch_size)
        try:
            while c.running:
                try:
                    worked = c.mine_once()
                except Exception as exc:  # one bad iteration must not end mining
                    log.error("mining iteration failed: %s", exc, exc_info=True)
                    worked = False
                if worked:
                    self.batches += 1
                else:
                    c.wait_stopped(self._idle)
        finally:
            try:
                c.engine.close()
            except Exception as exc:
                log.debug("engine close failed: %s", exc)
            log.info("mining thread stopped after %d batches", self.batches)


__all__ = ["MiningThread"]
