from __future__ import annotations

import pytest

from conftest import GENESIS_HEADER_HEX, GENESIS_NONCE
from solo_miner.mining import device
from solo_miner.mining.cpu_backend import CpuHashEngine
from solo_miner.mining.device import DeviceType
from solo_miner.mining.errors import DeviceUnavailable, EngineError

HEADER = bytes.fromhex(GENESIS_HEADER_HEX)


def test_finds_genesis_nonce():
    engine = CpuHashEngine()
    result = engine.search_batch(HEADER, GENESIS_NONCE - 5, 10, 32)

    assert result.hashes_attempted == 10
    assert [(c.nonce, c.leading_zero_bits) for c in result.candidates] == [(GENESIS_NONCE, 43)]


def test_threaded_split_matches_single_thread():
    engine = CpuHashEngine(threads=4)
    result = engine.search_batch(HEADER, GENESIS_NONCE - 2000, 4000, 32)

    assert result.hashes_attempted == 4000
    assert [c.nonce for c in result.candidates] == [GENESIS_NONCE]


def test_target_above_best_finds_nothing():
    result = CpuHashEngine().search_batch(HEADER, GENESIS_NONCE - 5, 10, 44)
    assert result.candidates == ()
    assert result.hashes_attempted == 10


def test_max_found_bounds_candidates():
    engine = CpuHashEngine(max_found=3)
    result = engine.search_batch(HEADER, 0, 64, 0)
    assert len(result.candidates) == 3
    assert [c.nonce for c in result.candidates] == [0, 1, 2]


def test_nonce_range_wraps():
    result = CpuHashEngine().search_batch(HEADER, 0xFFFFFFFE, 4, 0)
    assert [c.nonce for c in result.candidates] == [0xFFFFFFFE, 0xFFFFFFFF, 0, 1]


def test_bad_header_length_raises():
    with pytest.raises(EngineError):
        CpuHashEngine().search_batch(HEADER[:-1], 0, 10, 32)


def test_engine_reports_preferred_batch():
    assert CpuHashEngine(batch_size=4096).info().max_batch == 4096


def test_registry_creates_cpu_engine():
    engine = device.create("cpu", threads=2)
    assert engine.info().type == DeviceType.CPU
    assert any(info.type == DeviceType.CPU for info in device.list_available())
    assert device.auto_detect() in (DeviceType.CPU, DeviceType.OPENCL)


def test_unknown_device_type_rejected():
    with pytest.raises(ValueError):
        device.create("fpga")


def test_denied_backend_is_unavailable(monkeypatch):
    monkeypatch.setenv("SOLO_MINER_DEVICE_DENY", "cpu")
    assert all(info.type != DeviceType.CPU for info in device.list_available())
    with pytest.raises(DeviceUnavailable):
        device.create("cpu")
