from __future__ import annotations

import logging

import pytest

from solo_miner.cli import FriendlyFormatter, parse_args
from solo_miner.config import DEFAULT_HOST, DEFAULT_PORT, MinerConfig
from solo_miner.ledger import DEFAULT_SHARES_FILE


def test_defaults_from_cli(monkeypatch):
    monkeypatch.delenv("SOLO_MINER_SHARES_FILE", raising=False)
    config = MinerConfig.from_args(parse_args(["bc1qaddr"]))

    assert config.host == DEFAULT_HOST
    assert config.port == DEFAULT_PORT
    assert config.worker == "bc1qaddr.solo"
    assert config.share_target == 32
    assert config.reconnect_delay == 5.0
    assert config.batch_size is None
    assert config.device == "auto"
    assert config.engine_options == {}
    assert config.shares_file == DEFAULT_SHARES_FILE
    assert config.market_enabled is True
    assert config.submit_shares is False


def test_cli_overrides():
    args = parse_args(
        [
            "bc1qaddr",
            "--host", "pool.example",
            "--port", "4444",
            "--worker-suffix", "",
            "--device", "opencl",
            "--platform", "1",
            "--device-index", "2",
            "--batch-size", "65536",
            "--target", "28",
            "--shares-file", "/tmp/s.json",
            "--no-market",
            "--submit",
        ]
    )
    config = MinerConfig.from_args(args)

    assert (config.host, config.port) == ("pool.example", 4444)
    assert config.worker == "bc1qaddr"
    assert config.engine_options == {"platform_index": 1, "device_index": 2}
    assert config.batch_size == 65536
    assert config.share_target == 28
    assert config.shares_file == "/tmp/s.json"
    assert config.market_enabled is False
    assert config.submit_shares is True


def test_shares_file_from_environment(monkeypatch):
    monkeypatch.setenv("SOLO_MINER_SHARES_FILE", "/var/lib/miner/shares.json")
    config = MinerConfig.from_args(parse_args(["bc1qaddr", "--threads", "4"]))
    assert config.shares_file == "/var/lib/miner/shares.json"
    assert config.engine_options == {"threads": 4}


def test_formatter_uses_short_logger_name():
    formatter = FriendlyFormatter(use_color=False)
    record = logging.LogRecord("solo_miner.stratum", logging.INFO, __file__, 1, "authorized %s", ("w",), None)
    line = formatter.format(record)
    assert "stratum | authorized w" in line
    assert "INFO" in line


def test_version_flag(monkeypatch, capsys):
    monkeypatch.setenv("SOLO_MINER_VERSION", "9.9.9-dev")
    with pytest.raises(SystemExit):
        parse_args(["--version"])
    assert "9.9.9-dev" in capsys.readouterr().out
