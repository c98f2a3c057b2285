"""Worker side of the master/worker framework: heartbeats, status reports and the watchdog."""

import abc
import dataclasses
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from dfengine.common import (
    Clock,
    HeartbeatPingMessage,
    HeartbeatPongMessage,
    MasterFailoverReason,
    MasterFailoverReasonCode,
    StatusUpdateMessage,
    TimeoutConfig,
    WorkerSuicideError,
    heartbeat_ping_topic,
    heartbeat_pong_topic,
    status_update_topic,
)
from dfengine.metadata import MasterMetadataClient

log = logging.getLogger(__name__)

# Failover reason reported when the master stops answering heartbeats.
_MASTER_TIMED_OUT = MasterFailoverReasonCode(1)


def _seconds(duration):
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


class WorkerImpl(abc.ABC):
    """Business logic of a worker, driven by a BaseWorker."""

    @abc.abstractmethod
    def init_impl(self):
        """Initialise the business logic."""

    @abc.abstractmethod
    def tick(self):
        """Called on every poll of the worker."""

    @abc.abstractmethod
    def status(self):
        """Return the WorkerStatus to report to the master."""

    @abc.abstractmethod
    def workload(self):
        """Return the current workload of the worker."""

    @abc.abstractmethod
    def on_master_failover(self, reason):
        """Called when the master has failed over."""

    @abc.abstractmethod
    def close_impl(self):
        """Release the resources held by the business logic."""


class MasterClient:
    """A worker's view of its master: where it runs, its epoch and its liveness."""

    def __init__(self, master_id, worker_id, message_sender, meta_kv_client,
                 init_time, on_master_failover, timeout_config=None):
        self._lock = threading.RLock()
        self.master_id = master_id
        self.worker_id = worker_id
        self._master_node = ""
        self._master_epoch = 0
        self._message_sender = message_sender
        self._meta_kv_client = meta_kv_client
        self._last_master_acked_ping_time = init_time
        self._timeout_config = timeout_config if timeout_config is not None else TimeoutConfig()
        self._on_master_failover = on_master_failover

    def init_master_info_from_meta(self):
        """Load the master's node and epoch from the metastore."""
        meta = MasterMetadataClient(self.master_id, self._meta_kv_client).load()
        with self._lock:
            self._master_node = meta.node_id
            self._master_epoch = meta.epoch

    def _refresh_master_info(self):
        meta = MasterMetadataClient(self.master_id, self._meta_kv_client).load()
        with self._lock:
            self._master_node = meta.node_id
            failed_over = self._master_epoch < meta.epoch
            if failed_over:
                self._master_epoch = meta.epoch
        if failed_over:
            self._on_master_failover()

    def master_node(self):
        """Node the master currently runs on."""
        with self._lock:
            return self._master_node

    def epoch(self):
        """Epoch of the master as last seen."""
        with self._lock:
            return self._master_epoch

    def handle_heartbeat(self, sender, msg):
        """Record a heartbeat pong from the master."""
        with self._lock:
            if msg.epoch < self._master_epoch:
                log.info("ignoring stale heartbeat %r, master epoch %d", msg, self._master_epoch)
                return
            if msg.epoch > self._master_epoch:
                # The master has restarted; follow it.
                self._master_epoch = msg.epoch
                self._master_node = sender
            self._last_master_acked_ping_time = msg.send_time

    def check_master_timeout(self, clock):
        """Return False once the master has not answered for too long.

        In the grey zone between a missed heartbeat and the time-out the
        master's information is refreshed from the metastore.
        """
        with self._lock:
            last_acked = self._last_master_acked_ping_time
        since_last_acked = _seconds(clock.mono() - last_acked)
        heartbeat_interval = _seconds(self._timeout_config.worker_heartbeat_interval)
        if since_last_acked <= 2 * heartbeat_interval:
            return True
        if since_last_acked < _seconds(self._timeout_config.worker_timeout_duration):
            self._refresh_master_info()
            return True
        return False

    def send_heartbeat(self, clock):
        """Send a heartbeat ping stamped with the local monotonic time."""
        with self._lock:
            msg = HeartbeatPingMessage(
                send_time=clock.mono(),
                from_worker_id=self.worker_id,
                epoch=self._master_epoch,
            )
            ok = self._message_sender.send_to_node(
                self._master_node, heartbeat_ping_topic(self.master_id, self.worker_id), msg
            )
        if not ok:
            log.warning("sending heartbeat ping would block")

    def send_status(self, status):
        """Send a status update to the master."""
        with self._lock:
            status = dataclasses.replace(status)
            status.marshal_ext()
            msg = StatusUpdateMessage(worker_id=self.worker_id, status=status)
            ok = self._message_sender.send_to_node(
                self._master_node, status_update_topic(self.master_id, self.worker_id), msg
            )
        if not ok:
            log.warning("sending status update would block")


@dataclass
class _Periodic:
    interval: float
    action: Callable[[], Any]
    last: Any


class BaseWorker:
    """Runs a WorkerImpl and keeps it in touch with its master."""

    def __init__(self, impl, message_handler_manager, message_sender, meta_kv_client,
                 worker_id, master_id, clock=None, timeout_config=None, check_interval=0.01):
        self.impl = impl
        self._message_handler_manager = message_handler_manager
        self._message_sender = message_sender
        self._meta_kv_client = meta_kv_client
        self._worker_id = worker_id
        self._master_id = master_id
        self.clock = clock if clock is not None else Clock()
        self.timeout_config = timeout_config if timeout_config is not None else TimeoutConfig()
        self._check_interval = check_interval
        self.master_client = None
        self._errors = queue.Queue(maxsize=1)
        self._stop = None
        self._thread = None

    def workload(self):
        return self.impl.workload()

    def id(self):
        return self._worker_id

    def meta_kv_client(self):
        return self._meta_kv_client

    def init(self):
        """Connect to the master, initialise the business logic and start background tasks."""
        self.master_client = MasterClient(
            self._master_id,
            self._worker_id,
            self._message_sender,
            self._meta_kv_client,
            self.clock.mono(),
            self._notify_failover,
            self.timeout_config,
        )
        self._init_message_handlers()
        self.master_client.init_master_info_from_meta()
        self.impl.init_impl()
        self._start_background_tasks()

    def poll(self):
        """Raise any pending error, then tick the business logic."""
        self._message_handler_manager.check_error()
        try:
            err = self._errors.get_nowait()
        except queue.Empty:
            pass
        else:
            raise err
        self.impl.tick()

    def close(self):
        """Stop background tasks and close the business logic."""
        if self._stop is not None:
            self._stop.set()
        try:
            self._message_handler_manager.clean()
        except Exception as exc:
            log.warning("cleaning message handlers failed: %s", exc)
        if self._thread is not None:
            self._thread.join()
        self.impl.close_impl()

    def _notify_failover(self):
        self.impl.on_master_failover(MasterFailoverReason(code=_MASTER_TIMED_OUT))

    def _init_message_handlers(self):
        topic = heartbeat_pong_topic(self.master_client.master_id, self._worker_id)

        def on_pong(sender, msg):
            log.debug("heartbeat pong received: %r", msg)
            self.master_client.handle_heartbeat(sender, msg)

        if not self._message_handler_manager.register_handler(topic, HeartbeatPongMessage, on_pong):
            raise RuntimeError(f"duplicate handler for topic {topic}")

    def _on_error(self, err):
        try:
            self._errors.put_nowait(err)
        except queue.Full:
            pass

    def _report_status(self):
        self.master_client.send_status(self.impl.status())

    def _send_heartbeat(self):
        self.master_client.send_heartbeat(self.clock)

    def _watch_master(self):
        if not self.master_client.check_master_timeout(self.clock):
            raise WorkerSuicideError(f"worker {self._worker_id} commits Suicide: master timed out")

    def _start_background_tasks(self):
        start = self.clock.mono()
        tasks = [
            _Periodic(_seconds(self.timeout_config.worker_report_status_interval),
                      self._report_status, start),
            _Periodic(_seconds(self.timeout_config.worker_heartbeat_interval),
                      self._send_heartbeat, start),
            _Periodic(_seconds(self.timeout_config.worker_heartbeat_interval),
                      self._watch_master, start),
        ]
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run_background, args=(tasks, self._stop),
            name=f"worker-{self._worker_id}", daemon=True,
        )
        self._thread.start()

    def _run_background(self, tasks, stop):
        while tasks and not stop.wait(self._check_interval):
            now = self.clock.mono()
            for task in list(tasks):
                if _seconds(now - task.last) < task.interval:
                    continue
                task.last = now
                try:
                    task.action()
                except Exception as exc:
                    tasks.remove(task)
                    self._on_error(exc)