import json
from dataclasses import dataclass
from datetime import timedelta

import pytest

from dfengine.common import (
    Clock,
    MasterMetaExt,
    MasterMetaKVData,
    TimeoutConfig,
    WorkerOfflineError,
    WorkerStatus,
    WorkerStatusCode,
    WorkerSuicideError,
    WorkerType,
    heartbeat_ping_topic,
    heartbeat_pong_topic,
    status_update_topic,
    workload_report_topic,
)


@dataclass
class DummyExtField:
    id: int = 0
    name: str = ""


@dataclass
class DummyStatus:
    val: int = 0


def test_fill_ext_into_dataclass():
    ws = WorkerStatus(ext_bytes=b'{"id":10,"name":"test"}')
    ws.fill_ext(DummyExtField)
    assert ws.ext == DummyExtField(id=10, name="test")
    assert ws.ext_bytes is None


def test_fill_ext_into_int():
    ws = WorkerStatus(ext_bytes=b"10")
    ws.fill_ext(int)
    assert ws.ext == 10


def test_fill_ext_with_non_type_fails():
    ws = WorkerStatus(ext_bytes=b"10")
    with pytest.raises(TypeError):
        ws.fill_ext(0)
    assert ws.ext_bytes is None


def test_fill_ext_case_insensitive_keys():
    ws = WorkerStatus(ext_bytes=b'{"Val":4}')
    ws.fill_ext(DummyStatus)
    assert ws.ext == DummyStatus(val=4)


def test_fill_ext_invalid_json_raises():
    ws = WorkerStatus(ext_bytes=b"{not json")
    with pytest.raises(ValueError):
        ws.fill_ext(int)


def test_marshal_ext_values():
    ws = WorkerStatus(ext=DummyStatus(val=1))
    ws.marshal_ext()
    assert ws.ext_bytes == b'{"val":1}'

    ws = WorkerStatus()
    ws.marshal_ext()
    assert ws.ext_bytes == b"null"


def test_worker_status_round_trip():
    ws = WorkerStatus(code=WorkerStatusCode.NORMAL, error_message="msg", ext=DummyStatus(val=5))
    ws.marshal_ext()
    data = json.loads(json.dumps(ws.to_dict()))
    assert set(data) == {"code", "error-message", "ext-bytes"}
    back = WorkerStatus.from_dict(data)
    back.fill_ext(DummyStatus)
    assert back.code == WorkerStatusCode.NORMAL
    assert back.error_message == "msg"
    assert back.ext == DummyStatus(val=5)


def test_topics():
    assert heartbeat_ping_topic("m", "w") == "heartbeat-ping-m-w"
    assert heartbeat_pong_topic("m", "w") == "heartbeat-pong-m-w"
    assert workload_report_topic("m") == "workload-report-m"
    assert status_update_topic("m", "w") == "status-update-m-w"


def test_master_meta_ext_round_trip():
    ext = MasterMetaExt(id="job-1", tp=WorkerType.FAKE_JOB_MASTER, config=b"\x00cfg", checkpoint=None)
    back = MasterMetaExt.unmarshal(ext.marshal())
    assert back == ext
    assert back.tp is WorkerType.FAKE_JOB_MASTER


def test_master_meta_ext_unmarshal_invalid():
    with pytest.raises(ValueError):
        MasterMetaExt.unmarshal(b"")


def test_master_meta_kv_data_round_trip():
    meta = MasterMetaKVData(
        id="m", addr="127.0.0.1:1", node_id="n", epoch=3, initialized=True,
        master_meta_ext=MasterMetaExt(id="m", tp=WorkerType.CVS_JOB_MASTER),
    )
    text = meta.to_json()
    raw = json.loads(text)
    assert raw["node-id"] == "n"
    assert raw["meta-ext"]["type"] == 2
    assert MasterMetaKVData.from_json(text) == meta
    assert MasterMetaKVData.from_json(text.encode()) == meta


def test_master_meta_kv_data_without_ext():
    back = MasterMetaKVData.from_json(MasterMetaKVData(id="x").to_json())
    assert back.id == "x"
    assert back.master_meta_ext is None


def test_timeout_defaults():
    config = TimeoutConfig()
    assert config.worker_timeout_duration == timedelta(seconds=15)
    assert config.worker_heartbeat_interval == timedelta(seconds=3)


def test_clock_mono_does_not_go_back():
    clock = Clock()
    first = clock.mono()
    assert clock.mono() >= first


def test_errors_carry_details():
    err = WorkerOfflineError("w1")
    assert err.worker_id == "w1"
    assert "w1" in str(err)
    assert "Suicide" in str(WorkerSuicideError())