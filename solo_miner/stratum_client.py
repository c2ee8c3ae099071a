from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .job import Job
from .mining.errors import PoolConnectionError, ProtocolParseError
from .mining.version import user_agent
from .stratum_protocol import (JSON, Method, decode_lines, encode_lines,
                               is_notification, is_response,
                               parse_subscribe_result, req_authorize,
                               req_submit, req_subscribe)

log = logging.getLogger("solo_miner.stratum")


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    AUTHORIZING = "authorizing"
    READY = "ready"


# ------------- events (session -> coordinator) -------------


@dataclass(frozen=True)
class Connected:
    extranonce1: str
    extranonce2_size: int


@dataclass(frozen=True)
class JobReceived:
    job: Job

    @property
    def clean_jobs(self) -> bool:
        return self.job.clean_jobs


@dataclass(frozen=True)
class Disconnected:
    reason: str


@dataclass(frozen=True)
class SendFailed:
    method: str
    reason: str


@dataclass(frozen=True)
class SubmitResult:
    job_id: str
    nonce: int
    accepted: bool
    reason: Optional[str] = None


SessionEvent = Union[Connected, JobReceived, Disconnected, SendFailed, SubmitResult]


class ProtocolSession:
    """
    Asyncio Stratum v1 session for a single pool connection.

    The session owns the socket, performs the subscribe/authorize handshake,
    turns inbound frames into typed events on `events` and never retries on
    its own; reconnect policy belongs to the caller.

    Usage:
        session = ProtocolSession("solo.ckpool.org", 3333, worker="bc1q....rig")
        await session.connect()
        event = await session.events.get()
    """

    def __init__(
        self,
        host: str,
        port: int,
        worker: str,
        password: str = "x",
        agent: Optional[str] = None,
        events: Optional["asyncio.Queue[SessionEvent]"] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 1.0,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.worker = worker
        self.password = password
        self.agent = agent or user_agent()
        self.events: "asyncio.Queue[SessionEvent]" = events if events is not None else asyncio.Queue()
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._rx_task: Optional[asyncio.Task] = None
        self._closing = False
        self._buf = bytearray()
        self._id = 0
        self._pending: Dict[Any, Tuple[str, Any]] = {}

        # Session state
        self.state = SessionState.DISCONNECTED
        self.extranonce1: Optional[str] = None
        self.extranonce2_size: Optional[int] = None
        self.current_job: Optional[Job] = None
        self.pool_difficulty: Optional[float] = None

    # ------------- transport -------------

    async def connect(self) -> None:
        """
        Open the stream and send `mining.subscribe`. The rest of the
        handshake is driven by inbound responses. Raises PoolConnectionError
        and leaves the session DISCONNECTED on failure.
        """
        await self.close()
        self._closing = False
        self._buf.clear()
        self._pending.clear()
        self.extranonce1 = None
        self.extranonce2_size = None

        self.state = SessionState.CONNECTING
        log.info("connecting to %s:%s", self.host, self.port)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            self.state = SessionState.DISCONNECTED
            raise PoolConnectionError(
                message=f"connect to {self.host}:{self.port} failed: {str(exc) or type(exc).__name__}",
                context={"host": self.host, "port": self.port},
            ) from exc

        self.state = SessionState.SUBSCRIBING
        self._rx_task = asyncio.get_running_loop().create_task(self._rx_loop())
        if not self._request(req_subscribe(self.agent, id=self._next_id())) or not await self.flush():
            await self.close()
            raise PoolConnectionError(
                message="subscribe could not be written",
                context={"host": self.host, "port": self.port},
            )

    async def close(self) -> None:
        """Release the connection without raising a Disconnected event."""
        self._closing = True
        task, self._rx_task = self._rx_task, None
        if task and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        writer, self._writer = self._writer, None
        self._reader = None
        if writer is not None:
            writer.close()
            with contextlib.suppress(OSError, RuntimeError):
                await writer.wait_closed()
            log.info("closed connection to %s:%s", self.host, self.port)
        self._pending.clear()
        self.state = SessionState.DISCONNECTED

    @property
    def ready(self) -> bool:
        return self.state == SessionState.READY

    # ------------- outbound -------------

    def _next_id(self) -> int:
        self._id += 1
        return self._id

    def _request(self, request: JSON, context: Any = None) -> bool:
        """Track `request` by its id so the response can be matched, then send it."""
        self._pending[request["id"]] = (request["method"], context)
        return self.send(request)

    def send(self, obj: JSON) -> bool:
        """
        Write one framed message. A missing transport or a failed write is
        reported as a SendFailed event; nothing is retried.
        """
        method = str(obj.get("method", "?"))
        writer = self._writer
        if writer is None or writer.is_closing():
            self._send_failed(method, "not connected")
            return False
        try:
            writer.write(encode_lines(obj))
        except (OSError, RuntimeError) as exc:
            self._send_failed(method, str(exc) or type(exc).__name__)
            return False
        return True

    async def flush(self) -> bool:
        writer = self._writer
        if writer is None:
            return False
        try:
            await writer.drain()
        except (OSError, RuntimeError) as exc:
            self._send_failed("flush", str(exc) or type(exc).__name__)
            return False
        return True

    async def submit(self, job_id: str, extranonce2: str, ntime: str, nonce: int) -> bool:
        """Send `mining.submit` for a found nonce; the reply arrives as SubmitResult."""
        request = req_submit(self.worker, job_id, extranonce2, ntime, nonce, id=self._next_id())
        if not self._request(request, context=(job_id, nonce)):
            return False
        return await self.flush()

    def _send_failed(self, method: str, reason: str) -> None:
        log.warning("send %s failed: %s", method, reason)
        self._emit(SendFailed(method=method, reason=reason))

    # ------------- inbound -------------

    def feed(self, data: bytes) -> List[SessionEvent]:
        """
        Append raw bytes from the socket and process every complete line.
        Partial trailing data stays buffered for the next call.
        """
        self._buf.extend(data)
        emitted: List[SessionEvent] = []
        for obj in decode_lines(self._buf):
            try:
                events = self._handle_message(obj)
            except (TypeError, KeyError, ValueError) as exc:
                log.debug("dropping unusable message %.120r: %s", obj, exc)
                continue
            for event in events:
                self._emit(event)
                emitted.append(event)
        return emitted

    def _emit(self, event: SessionEvent) -> None:
        self.events.put_nowait(event)

    async def _rx_loop(self) -> None:
        reader = self._reader
        if reader is None:
            return
        try:
            while not self._closing:
                try:
                    chunk = await asyncio.wait_for(reader.read(65536), timeout=self.read_timeout)
                except asyncio.TimeoutError:
                    continue
                if not chunk:
                    raise ConnectionResetError("eof")
                self.feed(chunk)
                await self.flush()
        except OSError as e:
            if not self._closing:
                self._drop(str(e) or type(e).__name__)
        except Exception as e:  # any other failure still ends the session
            if not self._closing:
                log.error("receive loop failed: %r", e, exc_info=True)
                self._drop(f"receive error: {type(e).__name__}")

    def _drop(self, reason: str) -> None:
        """I/O failure: back to DISCONNECTED and tell the coordinator once."""
        if self.state == SessionState.DISCONNECTED:
            return
        self.state = SessionState.DISCONNECTED
        writer, self._writer = self._writer, None
        self._reader = None
        self._rx_task = None
        if writer is not None:
            writer.close()
        self._pending.clear()
        log.warning("disconnected from %s:%s: %s", self.host, self.port, reason)
        self._emit(Disconnected(reason=reason))

    def _handle_message(self, obj: JSON) -> List[SessionEvent]:
        if is_response(obj):
            entry = self._pending.pop(obj["id"], None)
            if entry is None:
                log.debug("response for unknown id %r ignored", obj.get("id"))
                return []
            method, context = entry
            if method == Method.SUBSCRIBE.value:
                return self._on_subscribe(obj)
            if method == Method.AUTHORIZE.value:
                return self._on_authorize(obj)
            if method == Method.SUBMIT.value:
                return self._on_submit(obj, context)
            return []

        if is_notification(obj):
            method = obj["method"]
            params = obj.get("params")
            if method == Method.NOTIFY.value:
                job = Job.from_notify_params(params)
                if job is None:
                    log.debug("ignoring malformed notify: %r", params)
                    return []
                self.current_job = job
                log.info("notify job=%s clean=%s", job.job_id, job.clean_jobs)
                return [JobReceived(job=job)]
            if method == Method.SET_DIFFICULTY.value:
                if isinstance(params, list) and params and isinstance(params[0], (int, float)):
                    self.pool_difficulty = float(params[0])
                    log.info("pool difficulty %s", self.pool_difficulty)
                return []

        log.debug("unhandled message: %s", obj)
        return []

    def _on_subscribe(self, obj: JSON) -> List[SessionEvent]:
        if obj.get("error"):
            log.warning("subscribe rejected: %s", obj["error"])
            return []
        try:
            extranonce1, extranonce2_size = parse_subscribe_result(obj.get("result"))
        except ProtocolParseError as exc:
            log.warning("bad subscribe response: %s", exc.message)
            return []
        self.extranonce1 = extranonce1
        self.extranonce2_size = extranonce2_size
        self.state = SessionState.AUTHORIZING
        log.info("subscribed ex1=%s ex2size=%d", extranonce1, extranonce2_size)
        self._request(req_authorize(self.worker, self.password, id=self._next_id()))
        return []

    def _on_authorize(self, obj: JSON) -> List[SessionEvent]:
        if not obj.get("result") or obj.get("error"):
            log.warning("authorize worker=%s rejected: %s", self.worker, obj.get("error"))
            return []
        self.state = SessionState.READY
        log.info("authorized worker=%s", self.worker)
        return [
            Connected(
                extranonce1=self.extranonce1 or "",
                extranonce2_size=int(self.extranonce2_size or 0),
            )
        ]

    def _on_submit(self, obj: JSON, context: Any) -> List[SessionEvent]:
        job_id, nonce = context
        accepted = bool(obj.get("result")) and not obj.get("error")
        reason = None if accepted else str(obj.get("error"))
        log.info("submit job=%s nonce=%08x accepted=%s reason=%s", job_id, nonce, accepted, reason)
        return [SubmitResult(job_id=job_id, nonce=nonce, accepted=accepted, reason=reason)]


__all__ = [
    "SessionState",
    "Connected",
    "JobReceived",
    "Disconnected",
    "SendFailed",
    "SubmitResult",
    "SessionEvent",
    "ProtocolSession",
]
