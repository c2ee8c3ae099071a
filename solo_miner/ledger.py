from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from .mining.errors import PersistenceError

log = logging.getLogger("solo_miner.ledger")

DEFAULT_SHARES_FILE = "~/.solo_miner_shares.json"


class ShareLedger:
    """
    Session and lifetime share counters.

    The lifetime total lives in a small JSON file
    (`{"total": <int>, "updated": <iso8601>}`) that is overwritten after
    every share by a background writer thread, so `record_share` never waits
    on the disk. Reading and writing it is best-effort: a missing or corrupt
    file counts as zero and a failed write is only logged.
    """

    def __init__(self, path: Union[str, Path] = DEFAULT_SHARES_FILE) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._session = 0
        self._lifetime = 0
        self._pending: Optional[int] = None  # latest total not yet on disk
        self._closed = False
        self._writer: Optional[threading.Thread] = None

    @property
    def session_shares(self) -> int:
        with self._lock:
            return self._session

    @property
    def lifetime_shares(self) -> int:
        with self._lock:
            return self._lifetime

    def load(self) -> int:
        """Read the persisted lifetime total; any failure yields 0."""
        total = 0
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
            value = data.get("total") if isinstance(data, dict) else None
            if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
                total = value
            else:
                raise PersistenceError(path=str(self.path), message="share file has no valid total")
        except FileNotFoundError:
            log.debug("no share file at %s; starting from zero", self.path)
        except (OSError, ValueError, PersistenceError) as exc:
            log.debug("share file %s unreadable (%s); starting from zero", self.path, exc)
        with self._lock:
            self._lifetime = total
        return total

    def record_share(self) -> int:
        """Count one share and queue the new lifetime total for writing. Returns it."""
        with self._cond:
            self._session += 1
            self._lifetime += 1
            total = self._lifetime
            if self._closed:
                # writer is stopped; write inline
                self._pending = None
            else:
                self._pending = total
                self._ensure_writer()
                self._cond.notify_all()
                return total
        self._persist(total)
        return total

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """Block until every queued total is written. False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending is None, timeout=timeout)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Write any queued total and stop the writer thread."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()
            writer = self._writer
        if writer is not None:
            writer.join(timeout)

    def _ensure_writer(self) -> None:
        # caller holds self._cond
        if self._writer is None or not self._writer.is_alive():
            self._writer = threading.Thread(target=self._write_loop, name="share-ledger", daemon=True)
            self._writer.start()

    def _write_loop(self) -> None:
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._pending is not None or self._closed)
                total = self._pending
                if total is None:
                    return
            self._persist(total)
            with self._cond:
                if self._pending == total:
                    self._pending = None
                self._cond.notify_all()

    def _persist(self, total: int) -> None:
        payload = {"total": total, "updated": datetime.now(timezone.utc).isoformat()}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".shares-", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                os.replace(tmp, self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
                raise
        except OSError as exc:
            err = PersistenceError(path=str(self.path), message=f"share file write failed: {exc}")
            log.warning("%s", err)


__all__ = ["DEFAULT_SHARES_FILE", "ShareLedger"]
