"""Bookkeeping of a master's workers: heartbeats, statuses and time-outs."""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from dfengine.common import (
    Clock,
    HeartbeatPongMessage,
    TimeoutConfig,
    WorkerNotFoundError,
    WorkerOfflineError,
    WorkerStatus,
    WorkerStatusCode,
    heartbeat_pong_topic,
)

log = logging.getLogger(__name__)

_INITIAL_WORKLOAD = 10


def _seconds(duration):
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _elapsed(now, then):
    return _seconds(now - then)


@dataclass
class WorkerInfo:
    """What a master knows about one of its workers."""

    id: str
    node_id: str
    last_heartbeat_receive_time: Any = None
    last_heartbeat_send_time: Any = None
    has_pending_heartbeat: bool = False
    just_onlined: bool = False
    status: WorkerStatus = field(default_factory=WorkerStatus)
    workload: int = 0

    def has_timed_out(self, clock, config):
        """Whether no heartbeat arrived within the worker time-out."""
        return _elapsed(clock.now(), self.last_heartbeat_receive_time) > _seconds(
            config.worker_timeout_duration
        )


class WorkerHandle:
    """Handle to a live worker tracked by a WorkerManager."""

    def __init__(self, manager, worker_id):
        self._manager = manager
        self.id = worker_id

    def send_message(self, topic, message):
        """Send a business message to the worker's executor."""
        info = self._manager.get_worker_info(self.id)
        if info is None:
            raise WorkerNotFoundError(self.id)
        prefixed_topic = f"worker-message/{self.id}/{topic}"
        self._manager.message_sender.send_to_node(info.node_id, prefixed_topic, message)

    def status(self):
        """Current status of the worker, or None if it is no longer tracked."""
        info = self._manager.get_worker_info(self.id)
        return None if info is None else info.status

    def is_tombstone(self):
        return False

    def __repr__(self):
        return f"WorkerHandle(id={self.id!r})"


class TombstoneWorkerHandle:
    """Handle to a worker that has gone offline."""

    def __init__(self, worker_id, status):
        self.id = worker_id
        self._status = status

    def send_message(self, topic, message):
        raise WorkerOfflineError(self.id)

    def status(self):
        return self._status

    def workload(self):
        return 0

    def is_tombstone(self):
        return True

    def __repr__(self):
        return f"TombstoneWorkerHandle(id={self.id!r})"


class WorkerManager:
    """Tracks the workers of one master and answers their heartbeats."""

    def __init__(self, master_id, need_wait, epoch, clock=None, timeout_config=None,
                 message_sender=None):
        self._lock = threading.RLock()
        self.initialized = not need_wait
        self._init_start_time = None
        self.worker_infos = {}
        self.tombstones = {}
        self.master_epoch = epoch
        self.master_id = master_id
        self.timeout_config = timeout_config if timeout_config is not None else TimeoutConfig()
        self.clock = clock if clock is not None else Clock()
        self.message_sender = message_sender

    def is_initialized(self):
        """Whether workers from earlier epochs have had time to report back."""
        with self._lock:
            if self.initialized:
                return True
            if self._init_start_time is None:
                self._init_start_time = self.clock.now()
            threshold = _seconds(self.timeout_config.worker_timeout_duration) + _seconds(
                self.timeout_config.worker_timeout_graceful_duration
            )
            if _elapsed(self.clock.now(), self._init_start_time) > threshold:
                self.initialized = True
                return True
            return False

    def tick(self, sender):
        """Answer pending heartbeats and detect state changes.

        Returns ``(offlined, onlined)`` lists of WorkerInfo.
        """
        offlined = []
        onlined = []
        with self._lock:
            for worker_id, info in list(self.worker_infos.items()):
                if info.just_onlined and info.has_pending_heartbeat:
                    info.just_onlined = False
                    info.status.code = WorkerStatusCode.INIT
                    onlined.append(info)

                if info.has_timed_out(self.clock, self.timeout_config):
                    offlined.append(info)
                    del self.worker_infos[worker_id]
                    self.tombstones[worker_id] = dataclasses.replace(
                        info.status, code=WorkerStatusCode.ERROR
                    )

                if not info.has_pending_heartbeat:
                    continue
                reply = HeartbeatPongMessage(
                    send_time=info.last_heartbeat_send_time,
                    reply_time=self.clock.now(),
                    to_worker_id=worker_id,
                    epoch=self.master_epoch,
                )
                log.debug("sending heartbeat response to worker %s on %s", worker_id, info.node_id)
                try:
                    ok = sender.send_to_node(
                        info.node_id, heartbeat_pong_topic(self.master_id, worker_id), reply
                    )
                except Exception:
                    log.exception("failed to send heartbeat")
                    ok = False
                if not ok:
                    log.info("sending heartbeat would block, will try again")
                    continue
                info.has_pending_heartbeat = False
        return offlined, onlined

    def handle_heartbeat(self, msg, from_node):
        """Record a heartbeat ping from a worker."""
        with self._lock:
            info = self.worker_infos.get(msg.from_worker_id)
            if info is None:
                if self.initialized:
                    log.info("discarding heartbeat from unknown worker %s on %s",
                             msg.from_worker_id, from_node)
                    return
                # Still taking over workers from earlier epochs.
                self._add_worker(msg.from_worker_id, from_node, WorkerStatusCode.INIT)
                info = self.worker_infos[msg.from_worker_id]
            info.last_heartbeat_receive_time = self.clock.now()
            info.last_heartbeat_send_time = msg.send_time
            info.has_pending_heartbeat = True

    def update_status(self, msg):
        """Replace a worker's status with the one in a status update."""
        with self._lock:
            info = self.worker_infos.get(msg.worker_id)
            if info is None:
                log.info("status update for unknown worker %s of master %s",
                         msg.worker_id, self.master_id)
                return
            info.status = msg.status

    def get_worker_info(self, worker_id):
        """Return the WorkerInfo for ``worker_id``, or None."""
        with self._lock:
            return self.worker_infos.get(worker_id)

    def put_worker_info(self, info):
        """Store ``info``; return True if the worker was new."""
        with self._lock:
            return self._put_worker_info(info)

    def _put_worker_info(self, info):
        is_new = info.id not in self.worker_infos
        self.worker_infos[info.id] = info
        return is_new

    def add_worker(self, worker_id, node_id, status_code):
        """Start tracking a worker, or update the status code of a known one."""
        with self._lock:
            self._add_worker(worker_id, node_id, status_code)

    def _add_worker(self, worker_id, node_id, status_code):
        existing = self.worker_infos.get(worker_id)
        if existing is not None:
            if existing.node_id != node_id:
                raise RuntimeError(
                    f"worker {worker_id} already exists on node {existing.node_id}"
                )
            existing.status.code = status_code
            return
        self._put_worker_info(WorkerInfo(
            id=worker_id,
            node_id=node_id,
            last_heartbeat_receive_time=self.clock.now(),
            status=WorkerStatus(code=status_code),
            workload=_INITIAL_WORKLOAD,
            just_onlined=True,
        ))

    def get_worker_handle(self, worker_id):
        return WorkerHandle(self, worker_id)

    def get_workers(self):
        """Map every known worker id, live or tombstoned, to a handle."""
        with self._lock:
            handles = {worker_id: self.get_worker_handle(worker_id)
                       for worker_id in self.worker_infos}
            for worker_id, status in self.tombstones.items():
                handles[worker_id] = TombstoneWorkerHandle(worker_id, status)
            return handles