from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .ledger import DEFAULT_SHARES_FILE
from .mining.version import user_agent

DEFAULT_HOST = "solo.ckpool.org"
DEFAULT_PORT = 3333
DEFAULT_SHARE_TARGET = 32  # leading zero bits


@dataclass
class MinerConfig:
    """
    Runtime settings for one miner process.

    Attributes:
        address: Payout address; the worker name is `<address>.<worker_suffix>`.
        host, port: Pool endpoint.
        password: Stratum password (solo pools ignore it).
        device: Engine backend: "auto", "cpu" or "opencl".
        batch_size: Nonces per dispatch; None uses the engine's preference.
        share_target: Leading zero bits a candidate needs to count as a share.
        reconnect_delay: Fixed backoff between reconnect attempts (seconds).
        read_timeout: Socket read timeout; bounds shutdown latency of the rx loop.
        idle_interval: Mining loop sleep while no job/session is ready.
        report_interval: Seconds between stats log lines (0 disables).
        market_interval: Seconds between price/height refreshes.
        submit_shares: Send `mining.submit` for each share found.
    """

    address: str
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    worker_suffix: str = "solo"
    password: str = "x"
    agent: str = user_agent()
    device: str = "auto"
    engine_options: Optional[Dict[str, Any]] = None
    batch_size: Optional[int] = None
    share_target: int = DEFAULT_SHARE_TARGET
    shares_file: str = DEFAULT_SHARES_FILE
    reconnect_delay: float = 5.0
    connect_timeout: float = 10.0
    read_timeout: float = 1.0
    idle_interval: float = 0.1
    report_interval: float = 10.0
    market_enabled: bool = True
    market_interval: float = 300.0
    submit_shares: bool = False

    @property
    def worker(self) -> str:
        if not self.worker_suffix:
            return self.address
        return f"{self.address}.{self.worker_suffix}"

    @classmethod
    def from_args(cls, args: Any) -> "MinerConfig":
        engine_options: Dict[str, Any] = {}
        if getattr(args, "platform", None) is not None:
            engine_options["platform_index"] = args.platform
        if getattr(args, "device_index", None) is not None:
            engine_options["device_index"] = args.device_index
        if getattr(args, "threads", None):
            engine_options["threads"] = args.threads

        shares_file = (
            getattr(args, "shares_file", None)
            or os.getenv("SOLO_MINER_SHARES_FILE")
            or DEFAULT_SHARES_FILE
        )
        return cls(
            address=args.address,
            host=args.host,
            port=args.port,
            worker_suffix=args.worker_suffix,
            password=args.password,
            device=args.device,
            engine_options=engine_options,
            batch_size=args.batch_size,
            share_target=args.target,
            shares_file=shares_file,
            reconnect_delay=args.reconnect_delay,
            report_interval=args.report_interval,
            market_enabled=not args.no_market,
            submit_shares=args.submit,
        )


__all__ = ["DEFAULT_HOST", "DEFAULT_PORT", "DEFAULT_SHARE_TARGET", "MinerConfig"]
