from dataclasses import dataclass

import pytest

from dfengine.common import (
    MasterMetaExt,
    MasterMetaKVData,
    WorkerNoMetaError,
    WorkerStatus,
    WorkerStatusCode,
    WorkerType,
)
from dfengine.metadata import (
    JOB_MANAGER_UUID,
    MasterMetadataClient,
    MemoryMetaKV,
    WorkerMetadataClient,
    master_meta_key,
    worker_meta_key,
)


@dataclass
class DummyStatus:
    val: int = 0


def test_master_metadata_load_all_masters_skips_job_manager():
    kv = MemoryMetaKV()
    metas = [
        MasterMetaKVData(master_meta_ext=MasterMetaExt(id=JOB_MANAGER_UUID, tp=WorkerType.JOB_MANAGER)),
        MasterMetaKVData(master_meta_ext=MasterMetaExt(id="master-1", tp=WorkerType.FAKE_JOB_MASTER)),
        MasterMetaKVData(master_meta_ext=MasterMetaExt(id="master-2", tp=WorkerType.FAKE_JOB_MASTER)),
    ]
    for data in metas:
        MasterMetadataClient(data.master_meta_ext.id, kv).store(data)

    masters = MasterMetadataClient("job-manager", kv).load_all_masters()
    assert len(masters) == 2
    assert all(m.master_meta_ext.tp == WorkerType.FAKE_JOB_MASTER for m in masters)


def test_master_load_missing_returns_fresh_record():
    client = MasterMetadataClient("my-master", MemoryMetaKV())
    meta = client.load()
    assert meta.id == "my-master"
    assert meta.initialized is False


def test_master_store_and_load_round_trip():
    kv = MemoryMetaKV()
    client = MasterMetadataClient("my-master", kv)
    client.store(MasterMetaKVData(id="my-master", node_id="node-1", epoch=3, initialized=True))
    meta = client.load()
    assert meta.id == "my-master"
    assert meta.node_id == "node-1"
    assert meta.epoch == 3
    assert meta.initialized is True


def test_generate_epoch_follows_revision():
    kv = MemoryMetaKV()
    client = MasterMetadataClient("m", kv)
    first = client.generate_epoch()
    kv.put("k", "v")
    second = client.generate_epoch()
    assert second == first + 1
    assert second == kv.revision()


def test_memory_kv_prefix_and_revision():
    kv = MemoryMetaKV()
    assert kv.put("/a/2", "y") == 1
    assert kv.put("/a/1", "x") == 2
    kv.put("/b/1", "z")
    assert kv.get_prefix("/a/") == [("/a/1", "x"), ("/a/2", "y")]
    assert kv.get("/missing") is None
    assert kv.revision() == 3


def test_keys():
    assert master_meta_key("m1") == "/dataflow/master/meta/m1"
    assert worker_meta_key("m", "w1") == "/dataflow/worker/meta/m/w1"


def test_worker_load_missing_raises():
    client = WorkerMetadataClient("m", "w", MemoryMetaKV(), int)
    with pytest.raises(WorkerNoMetaError):
        client.load()


def test_worker_store_and_load_round_trip():
    kv = MemoryMetaKV()
    client = WorkerMetadataClient("m", "w", kv, int)
    client.store(WorkerStatus(code=WorkerStatusCode.INIT, error_message="test message", ext=7))
    status = client.load()
    assert status.code == WorkerStatusCode.INIT
    assert status.error_message == "test message"
    assert status.ext == 7


def test_worker_store_and_load_dataclass_ext():
    kv = MemoryMetaKV()
    client = WorkerMetadataClient("my-master", "worker-1", kv, DummyStatus)
    client.store(WorkerStatus(code=WorkerStatusCode.INIT, error_message="test message",
                              ext=DummyStatus(val=4)))
    status = client.load()
    assert status == WorkerStatus(code=WorkerStatusCode.INIT, error_message="test message",
                                  ext_bytes=None, ext=DummyStatus(val=4))