"""Fake job master and dummy worker used to exercise the framework end to end."""

import logging
import threading
from dataclasses import dataclass

from dfengine.common import WorkerStatus, WorkerStatusCode, WorkerType
from dfengine.jobmaster import BaseJobMaster
from dfengine.master import MasterImpl
from dfengine.worker import BaseWorker, WorkerImpl

log = logging.getLogger(__name__)

FAKE_WORKER_COUNT = 20

_STATUS_NORMAL = WorkerStatusCode(1)
_STATUS_CREATED = WorkerStatusCode(2)
_FAKE_TASK = WorkerType(7)
_DUMMY_WORKLOAD = 10
_LOG_EVERY_TICKS = 200


@dataclass
class FakeConfig:
    """Configuration of the fake master and dummy worker; it carries nothing."""


def _dep(deps, name, default=None):
    if deps is None:
        return default
    return getattr(deps, name, default)


class FakeMaster(BaseJobMaster, MasterImpl, WorkerImpl):
    """A job master that keeps a fixed number of dummy workers dispatched."""

    def __init__(self, worker_id, master_id, message_handler_manager, message_sender,
                 meta_kv_client, executor_client_manager, server_master_client, **kwargs):
        self._worker_id = worker_id
        self._worker_list_lock = threading.Lock()
        self.worker_list = [None] * FAKE_WORKER_COUNT
        self.pending_worker_set = {}
        self._tick_count = 0
        super().__init__(
            self, self, master_id, worker_id,
            message_handler_manager, message_sender, meta_kv_client,
            executor_client_manager, server_master_client, **kwargs,
        )

    def id(self):
        return self._worker_id

    def workload(self):
        return 0

    def init_impl(self):
        log.info("FakeMaster: init")

    def tick(self):
        """Request a worker for every empty slot that has no request in flight."""
        self._tick_count += 1
        if self._tick_count % _LOG_EVERY_TICKS == 0:
            log.info("FakeMaster: tick %d", self._tick_count)

        with self._worker_list_lock:
            pending_slots = set(self.pending_worker_set.values())
            for index, handle in enumerate(self.worker_list):
                if handle is not None or index in pending_slots:
                    continue
                worker_id = self.create_worker(_FAKE_TASK, FakeConfig(), 1)
                log.info("create_worker called for slot %d: %s", index, worker_id)
                self.pending_worker_set[worker_id] = index

    def on_master_recovered(self):
        log.info("FakeMaster: on_master_recovered")

    def on_worker_dispatched(self, worker, result):
        """Place a dispatched worker in its slot; re-raise a dispatch failure."""
        if result is not None:
            log.error("FakeMaster: worker dispatch failed: %s", result)
            raise result

        log.info("FakeMaster: worker %s dispatched", worker.id)
        with self._worker_list_lock:
            index = self.pending_worker_set.pop(worker.id, None)
            if index is None:
                raise RuntimeError(f"worker {worker.id} was dispatched but never requested")
            self.worker_list[index] = worker

    def on_worker_online(self, worker):
        log.info("FakeMaster: worker %s online", worker.id)

    def on_worker_offline(self, worker, reason):
        log.info("FakeMaster: worker %s offline: %s", worker.id, reason)

    def on_worker_message(self, worker, topic, message):
        log.info("FakeMaster: message on %s: %r", topic, message)

    def close_impl(self):
        log.info("FakeMaster: close")

    def on_master_failover(self, reason):
        log.info("FakeMaster: master failover: %r", reason)

    def status(self):
        return WorkerStatus(code=_STATUS_NORMAL)


class DummyWorker(BaseWorker, WorkerImpl):
    """A worker that only counts its ticks and reports the count as status."""

    def __init__(self, worker_id, master_id, message_handler_manager=None,
                 message_sender=None, meta_kv_client=None, **kwargs):
        super().__init__(
            self, message_handler_manager, message_sender, meta_kv_client,
            worker_id, master_id, **kwargs,
        )
        self._initialized = False
        self._closed = threading.Event()
        self._ticks = 0

    def init_impl(self):
        if self._initialized:
            raise RuntimeError("repeated init")
        self._initialized = True

    def tick(self):
        if not self._initialized:
            raise RuntimeError("not yet init")
        if self._ticks % _LOG_EVERY_TICKS == 0:
            log.info("DummyWorker %s: tick %d", self.id(), self._ticks)
        if self._closed.is_set():
            return
        self._ticks += 1

    def status(self):
        if self._initialized:
            return WorkerStatus(code=_STATUS_NORMAL, ext=self._ticks)
        return WorkerStatus(code=_STATUS_CREATED)

    def workload(self):
        return _DUMMY_WORKLOAD

    def on_master_failover(self, reason):
        return None

    def close_impl(self):
        self._closed.set()


def new_fake_master(deps, worker_id, master_id, config):
    """Build a FakeMaster wired to the services found in ``deps``."""
    return FakeMaster(
        worker_id,
        master_id,
        _dep(deps, "message_handler_manager"),
        _dep(deps, "message_router"),
        _dep(deps, "meta_kv_client"),
        _dep(deps, "executor_client_manager"),
        _dep(deps, "server_master_client"),
        node_id=_dep(deps, "node_id", "") or "",
        advertise_addr=_dep(deps, "addr", "") or "",
        master_meta_ext=_dep(deps, "master_meta_ext"),
    )


def new_dummy_worker(deps, worker_id, master_id, config):
    """Build a DummyWorker wired to the services found in ``deps``."""
    return DummyWorker(
        worker_id,
        master_id,
        _dep(deps, "message_handler_manager"),
        _dep(deps, "message_router"),
        _dep(deps, "meta_kv_client"),
    )