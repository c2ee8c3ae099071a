from __future__ import annotations

import json

import pytest

from solo_miner.job import Job
from solo_miner.mining.errors import ProtocolParseError
from solo_miner.stratum_protocol import (Method, decode_lines, encode_lines,
                                         is_notification, is_response, loads,
                                         make_request, parse_subscribe_result,
                                         push_notify, push_set_difficulty,
                                         req_authorize, req_submit,
                                         req_subscribe, res_subscribe)


def test_requests_carry_id_method_params():
    assert req_subscribe("solo-miner/0.1.0", id=1) == {
        "id": 1,
        "method": "mining.subscribe",
        "params": ["solo-miner/0.1.0"],
    }
    assert req_authorize("bc1q.rig", "x", id=2)["params"] == ["bc1q.rig", "x"]


def test_submit_nonce_is_big_endian_hex():
    req = req_submit("w", "job1", "00000001", "495fab29", 0x7C2BAC1D, id=9)
    assert req["method"] == Method.SUBMIT.value
    assert req["params"] == ["w", "job1", "00000001", "495fab29", "7c2bac1d"]


def test_encode_is_compact_and_newline_terminated():
    line = encode_lines(make_request(Method.SUBSCRIBE, ["a"], id=1))
    assert line.endswith(b"\n")
    assert b" " not in line
    assert json.loads(line) == {"id": 1, "method": "mining.subscribe", "params": ["a"]}


def test_response_and_notification_classification():
    assert is_response({"id": 1, "result": True, "error": None})
    assert not is_response({"id": None, "method": "mining.notify", "params": []})
    assert is_notification(push_set_difficulty(1.0))
    assert not is_notification({"id": 3, "result": True})


def test_decode_lines_keeps_partial_tail():
    buf = bytearray(b'{"id":1,"result":true}\n{"id":2,"res')
    assert decode_lines(buf) == [{"id": 1, "result": True}]
    assert bytes(buf) == b'{"id":2,"res'
    buf.extend(b'ult":false}\r\n')
    assert decode_lines(buf) == [{"id": 2, "result": False}]
    assert buf == bytearray()


def test_decode_lines_drops_malformed_and_blank():
    buf = bytearray(b'not json\n\n[1,2]\n{"id":3,"result":null}\n')
    assert decode_lines(buf) == [{"id": 3, "result": None}]


def test_loads_rejects_deeply_nested_frames():
    with pytest.raises(ProtocolParseError):
        loads(b"[" * 100_000 + b"]" * 100_000)


def test_response_id_must_be_scalar():
    assert is_response({"id": 7, "result": True})
    assert is_response({"id": "a", "result": True})
    assert not is_response({"id": [1], "result": True})
    assert not is_response({"id": {"k": 1}, "error": None})
    assert not is_response({"id": True, "result": True})


def test_loads_rejects_non_objects():
    with pytest.raises(ProtocolParseError):
        loads(b"[]")
    with pytest.raises(ProtocolParseError):
        loads(b"\xff\xfe")


def test_subscribe_result_round_trip():
    res = res_subscribe(1, "f000000f", 4)
    assert parse_subscribe_result(res["result"]) == ("f000000f", 4)


@pytest.mark.parametrize(
    "result",
    [None, [], [[], "f000000f"], [[], 17, 4], [[], "f000000f", "4"], [[], "ab", True], [[], "ab", -1]],
)
def test_subscribe_result_shape_errors(result):
    with pytest.raises(ProtocolParseError):
        parse_subscribe_result(result)


def test_notify_params_build_job():
    msg = push_notify("j7", "00" * 32, "aa", "bb", ["11" * 32], "20000000", "1d00ffff", "5f5e1000", True)
    job = Job.from_notify_params(msg["params"])
    assert job is not None
    assert job.job_id == "j7"
    assert job.merkle_branches == ("11" * 32,)
    assert job.clean_jobs is True
    assert list(job.to_notify_params()) == msg["params"]


@pytest.mark.parametrize(
    "params",
    [
        None,
        [],
        ["j", "00", "aa", "bb", [], "20000000", "1d00ffff", "5f5e1000"],  # 8 fields
        ["j", "00", "aa", "bb", "not-a-list", "20000000", "1d00ffff", "5f5e1000", True],
        ["j", 0, "aa", "bb", [], "20000000", "1d00ffff", "5f5e1000", True],
        [True, "00", "aa", "bb", [], "20000000", "1d00ffff", "5f5e1000", True],
    ],
)
def test_notify_params_with_wrong_shape_are_ignored(params):
    assert Job.from_notify_params(params) is None
