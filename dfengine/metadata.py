"""Metadata storage for masters and workers on top of a key-value store."""

import json
import threading

from dfengine.common import (
    MasterMetaKVData,
    WorkerNoMetaError,
    WorkerStatus,
    WorkerType,
)

JOB_MANAGER_UUID = "dataflow-engine-job-manager"

_MASTER_META_PREFIX = "/dataflow/master/meta/"
_WORKER_META_PREFIX = "/dataflow/worker/meta/"
_EPOCH_KEY = "/fake-key"


def master_meta_key(master_id):
    """Key under which the metadata of a master is stored."""
    return f"{_MASTER_META_PREFIX}{master_id}"


def worker_meta_key(master_id, worker_id):
    """Key under which the status of a worker is stored."""
    return f"{_WORKER_META_PREFIX}{master_id}/{worker_id}"


class MemoryMetaKV:
    """A revisioned in-memory key-value store.

    Every put bumps a store-wide revision, which serves as the source of epochs.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._data = {}
        self._revision = 0

    def get(self, key):
        """Return the value stored under ``key``, or None when it is absent."""
        with self._lock:
            return self._data.get(key)

    def get_prefix(self, prefix):
        """Return ``(key, value)`` pairs whose key starts with ``prefix``, sorted by key."""
        with self._lock:
            return sorted(
                (key, value) for key, value in self._data.items() if key.startswith(prefix)
            )

    def put(self, key, value):
        """Store ``value`` under ``key`` and return the new revision."""
        with self._lock:
            self._data[key] = value
            self._revision += 1
            return self._revision

    def revision(self):
        """Return the current revision of the store."""
        with self._lock:
            return self._revision


class MasterMetadataClient:
    """Reads and writes the metadata record of one master."""

    def __init__(self, master_id, meta_kv_client):
        self.master_id = master_id
        self.meta_kv_client = meta_kv_client

    def load(self):
        """Load the master's record, or a fresh one when nothing is stored yet."""
        raw = self.meta_kv_client.get(master_meta_key(self.master_id))
        if raw is None:
            return MasterMetaKVData(id=self.master_id)
        return MasterMetaKVData.from_json(raw)

    def store(self, data):
        """Persist ``data`` as the master's record."""
        self.meta_kv_client.put(master_meta_key(self.master_id), data.to_json())

    def load_all_masters(self):
        """Load every stored job master, leaving out the job manager."""
        masters = []
        for _key, raw in self.meta_kv_client.get_prefix(_MASTER_META_PREFIX):
            meta = MasterMetaKVData.from_json(raw)
            ext = meta.master_meta_ext
            if ext is not None and ext.tp == WorkerType.JOB_MANAGER:
                continue
            masters.append(meta)
        return masters

    def generate_epoch(self):
        """Return a fresh epoch taken from the store's revision."""
        self.meta_kv_client.get(_EPOCH_KEY)
        return self.meta_kv_client.revision()


class WorkerMetadataClient:
    """Reads and writes the status record of one worker."""

    def __init__(self, master_id, worker_id, meta_kv_client, ext_type):
        self.master_id = master_id
        self.worker_id = worker_id
        self.meta_kv_client = meta_kv_client
        self.ext_type = ext_type

    def _key(self):
        return worker_meta_key(self.master_id, self.worker_id)

    def load(self):
        """Load the worker's status, decoding its extension with ``ext_type``."""
        raw = self.meta_kv_client.get(self._key())
        if raw is None:
            raise WorkerNoMetaError(f"no metadata for worker {self.worker_id}")
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        status = WorkerStatus.from_dict(json.loads(raw))
        status.fill_ext(self.ext_type)
        return status

    def store(self, data):
        """Persist ``data`` as the worker's status."""
        data.marshal_ext()
        self.meta_kv_client.put(
            self._key(), json.dumps(data.to_dict(), separators=(",", ":"))
        )