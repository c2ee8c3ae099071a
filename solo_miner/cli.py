from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .config import (DEFAULT_HOST, DEFAULT_PORT, DEFAULT_SHARE_TARGET,
                     MinerConfig)
from .miner import run_miner
from .mining.version import get_version


class FriendlyFormatter(logging.Formatter):
    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",  # cyan
        logging.INFO: "\033[32m",  # green
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",  # red
        logging.CRITICAL: "\033[41m",  # red background
    }
    RESET = "\033[0m"

    def __init__(self, *, use_color: bool) -> None:
        fmt = "[%(asctime)s] %(level_display)s %(shortname)s | %(message)s"
        super().__init__(fmt=fmt, datefmt="%H:%M:%S")
        self.use_color = use_color and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        record.shortname = record.name.rsplit(".", 1)[-1]
        level_name = record.levelname
        if self.use_color:
            color = self.LEVEL_COLORS.get(record.levelno)
            if color:
                level_name = f"{color}{level_name}{self.RESET}"
        record.level_display = level_name.ljust(8)
        return super().format(record)


def setup_logging(level: int) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(FriendlyFormatter(use_color=sys.stdout.isatty()))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Solo Bitcoin Stratum miner (CPU / OpenCL)",
    )
    parser.add_argument("address", help="Payout address; used as the Stratum worker name")
    parser.add_argument("--host", default=DEFAULT_HOST, help="Stratum host")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Stratum port")
    parser.add_argument(
        "--worker-suffix",
        default="solo",
        help="Appended to the address as <address>.<suffix> (empty for none)",
    )
    parser.add_argument("--password", default="x", help="Stratum password")
    parser.add_argument(
        "--device",
        default="auto",
        choices=["auto", "cpu", "opencl"],
        help="Hash engine backend",
    )
    parser.add_argument(
        "--platform",
        type=int,
        default=None,
        help="OpenCL platform index (default: 0)",
    )
    parser.add_argument(
        "--device-index",
        type=int,
        default=None,
        help="OpenCL device index (default: 0)",
    )
    parser.add_argument(
        "--threads",
        type=int,
        default=0,
        help="CPU engine worker threads (0 = single thread)",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Nonces per engine dispatch (default: engine preference)",
    )
    parser.add_argument(
        "--target",
        type=int,
        default=DEFAULT_SHARE_TARGET,
        help="Leading zero bits a hash needs to count as a share",
    )
    parser.add_argument(
        "--shares-file",
        default=None,
        help="Lifetime share counter file (default: ~/.solo_miner_shares.json)",
    )
    parser.add_argument(
        "--reconnect-delay",
        type=float,
        default=5.0,
        help="Seconds to wait before reconnecting to the pool",
    )
    parser.add_argument(
        "--report-interval",
        type=float,
        default=10.0,
        help="Seconds between status lines (0 disables)",
    )
    parser.add_argument(
        "--no-market",
        action="store_true",
        help="Do not fetch BTC price and block height",
    )
    parser.add_argument(
        "--submit",
        action="store_true",
        help="Send mining.submit for every share found",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(getattr(logging, args.log_level))
    config = MinerConfig.from_args(args)

    try:
        asyncio.run(run_miner(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
