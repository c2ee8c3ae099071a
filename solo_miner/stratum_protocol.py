from __future__ import annotations

"""
Stratum v1 Protocol (JSON-RPC over TCP)
=======================================

Purpose
-------
Defines the method names and light helpers for the Stratum v1 mining
protocol spoken by solo pools. Transport is newline-delimited UTF-8 JSON.
This module is pure-Python so the session, the tests and the fake pool used
by the tests can all import it.

Envelope
--------
Requests:
  {"id": 1, "method": "mining.subscribe", "params": [...]}
Responses:
  {"id": 1, "result": ..., "error": null}
Notifications:
  {"id": null, "method": "mining.notify", "params": [...]}

Methods
-------
Client -> Server:
  - mining.subscribe   params: [agent]                      result: [details, extranonce1, extranonce2_size]
  - mining.authorize   params: [worker, password]           result: bool
  - mining.submit      params: [worker, job_id, ex2, ntime, nonce]  result: bool

Server -> Client:
  - mining.notify          params: [job_id, prevhash, coinb1, coinb2, branches[], version, nbits, ntime, clean_jobs]
  - mining.set_difficulty  params: [difficulty]

Framing
-------
  - encode_lines(obj) -> bytes
  - decode_lines(buffer) -> list[dict]  (consumes complete lines, drops malformed ones)
"""

import json
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .mining.errors import ProtocolParseError

log = logging.getLogger("solo_miner.protocol")

JSON = Dict[str, Any]
Hex = str


# ---------------------- Methods ----------------------


class Method(str, Enum):
    SUBSCRIBE = "mining.subscribe"
    AUTHORIZE = "mining.authorize"
    SET_DIFFICULTY = "mining.set_difficulty"
    NOTIFY = "mining.notify"
    SUBMIT = "mining.submit"


# ---------------------- JSON-RPC helpers ----------------------


def make_request(
    method: Union[str, Method],
    params: Optional[Sequence[Any]] = None,
    id: Union[int, str, None] = None,
) -> JSON:
    if isinstance(method, Method):
        method = method.value
    if not isinstance(method, str) or not method:
        raise ValueError("method must be non-empty string")
    return {"id": id, "method": method, "params": list(params or [])}


def make_result(id: Union[int, str, None], result: Any, error: Any = None) -> JSON:
    return {"id": id, "result": result, "error": error}


def is_response(obj: JSON) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("id"), (int, str))
        and not isinstance(obj.get("id"), bool)
        and "method" not in obj
        and ("result" in obj or "error" in obj)
    )


def is_notification(obj: JSON) -> bool:
    return isinstance(obj, dict) and isinstance(obj.get("method"), str)


# ---------------------- Framing helpers ----------------------


def dumps(obj: JSON) -> bytes:
    """
    Compact JSON dump suitable for wire use (UTF-8, no spaces).
    """
    return json.dumps(obj, separators=(",", ":")).encode("utf-8")


def loads(data: Union[bytes, str]) -> JSON:
    try:
        if isinstance(data, (bytes, bytearray)):
            data = data.decode("utf-8", errors="strict")
        obj = json.loads(data)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise ProtocolParseError(message=f"invalid JSON frame: {str(exc)[:80] or type(exc).__name__}") from exc
    if not isinstance(obj, dict):
        raise ProtocolParseError(message="top-level must be object")
    return obj


def encode_lines(obj: JSON) -> bytes:
    return dumps(obj) + b"\n"


def decode_lines(buffer: bytearray) -> List[JSON]:
    """
    Consume as many newline-delimited JSON envelopes as available from a buffer.
    Leaves partial trailing data in-place. Malformed lines are dropped.
    """
    out: List[JSON] = []
    while True:
        idx = buffer.find(b"\n")
        if idx < 0:
            break
        line = bytes(buffer[:idx]).strip()  # exclude newline (and any \r)
        del buffer[: idx + 1]
        if not line:
            continue
        try:
            out.append(loads(line))
        except ProtocolParseError as exc:
            log.debug("dropping malformed line %r: %s", line[:120], exc.message)
    return out


# ---------------------- Convenience builders ----------------------


def req_subscribe(agent: str, id: Union[int, str, None] = 1) -> JSON:
    return make_request(Method.SUBSCRIBE, [agent], id=id)


def parse_subscribe_result(result: Any) -> Tuple[Hex, int]:
    """
    Extract (extranonce1, extranonce2_size) from a subscribe result
    `[details, extranonce1, extranonce2_size]`.
    """
    if not isinstance(result, (list, tuple)) or len(result) < 3:
        raise ProtocolParseError(message="subscribe result must be a 3-element array")
    extranonce1, size = result[1], result[2]
    if not isinstance(extranonce1, str) or not isinstance(size, int) or isinstance(size, bool):
        raise ProtocolParseError(message="subscribe result has unexpected types")
    if size < 0:
        raise ProtocolParseError(message=f"negative extranonce2 size {size}")
    return extranonce1, size


def res_subscribe(
    id: Union[int, str, None], extranonce1: Hex, extranonce2_size: int
) -> JSON:
    """Standard Stratum v1 subscribe reply.

    Format:
      [
        [["mining.set_difficulty", "<subid1>"], ["mining.notify", "<subid2>"]],
        "extranonce1",
        extranonce2_size
      ]
    """
    sub1 = "subscription-id-1"
    sub2 = "subscription-id-2"
    return make_result(
        id,
        [
            [[Method.SET_DIFFICULTY.value, sub1], [Method.NOTIFY.value, sub2]],
            extranonce1,
            int(extranonce2_size),
        ],
    )


def req_authorize(worker: str, password: str, id: Union[int, str, None] = 2) -> JSON:
    return make_request(Method.AUTHORIZE, [worker, password], id=id)


def res_authorize(id: Union[int, str, None], ok: bool = True, reason: Optional[str] = None) -> JSON:
    return make_result(
        id,
        bool(ok),
        None if ok else [24, reason or "unauthorized worker", None],
    )


def push_set_difficulty(difficulty: float) -> JSON:
    return make_request(Method.SET_DIFFICULTY, [float(difficulty)], id=None)


def push_notify(
    job_id: str,
    prevhash: Hex,
    coinb1: Hex,
    coinb2: Hex,
    merkle_branch: List[Hex],
    version: Hex,
    nbits: Hex,
    ntime: Hex,
    clean_jobs: bool,
) -> JSON:
    params: List[Any] = [
        job_id,
        prevhash,
        coinb1,
        coinb2,
        merkle_branch,
        version,
        nbits,
        ntime,
        bool(clean_jobs),
    ]
    return make_request(Method.NOTIFY, params, id=None)


def req_submit(
    worker: str,
    job_id: str,
    extranonce2: Hex,
    ntime: Hex,
    nonce: int,
    id: Union[int, str, None] = 4,
) -> JSON:
    # nonce goes out as big-endian hex of the u32 value
    return make_request(
        Method.SUBMIT, [worker, job_id, extranonce2, ntime, f"{nonce & 0xFFFFFFFF:08x}"], id=id
    )


def res_submit(id: Union[int, str, None], accepted: bool, reason: Optional[str] = None) -> JSON:
    return make_result(
        id, bool(accepted), None if accepted else [23, reason or "low difficulty share", None]
    )


__all__ = [
    "JSON",
    "Hex",
    "Method",
    "make_request",
    "make_result",
    "is_response",
    "is_notification",
    "dumps",
    "loads",
    "encode_lines",
    "decode_lines",
    "req_subscribe",
    "parse_subscribe_result",
    "res_subscribe",
    "req_authorize",
    "res_authorize",
    "push_set_difficulty",
    "push_notify",
    "req_submit",
    "res_submit",
]
