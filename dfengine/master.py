"""Master side of the master/worker framework: dispatching workers and tracking their liveness."""

import abc
import dataclasses
import json
import logging
import queue
import threading
import uuid
from datetime import timedelta

from dfengine.common import (
    Clock,
    EngineError,
    HeartbeatPingMessage,
    MasterClosedError,
    MasterConcurrencyExceededError,
    MasterMetaExt,
    MasterMetaKVData,
    MasterNotFoundError,
    StatusUpdateMessage,
    TimeoutConfig,
    WorkerOfflineError,
    WorkerStatus,
    WorkerStatusCode,
    WorkerType,
    heartbeat_ping_topic,
    status_update_topic,
)
from dfengine.metadata import MasterMetadataClient
from dfengine.quota import ConcurrencyQuota
from dfengine.worker_manager import TombstoneWorkerHandle, WorkerManager

log = logging.getLogger(__name__)

CREATE_WORKER_TIMEOUT = 10.0
MAX_CREATE_WORKER_CONCURRENCY = 100

_STATUS_CREATED = WorkerStatusCode(2)
_STATUS_ERROR = WorkerStatusCode(4)
# Job masters get the pre-allocated ID carried by their MasterMetaExt config.
_JOB_MASTER_TYPES = frozenset({WorkerType(2), WorkerType(3)})
_DISPATCH_OK = 0


def _seconds(duration):
    if isinstance(duration, timedelta):
        return duration.total_seconds()
    return float(duration)


def _encode_config(config):
    """Serialise a worker config to bytes; bytes are taken as already encoded."""
    if isinstance(config, (bytes, bytearray)):
        return bytes(config)
    if isinstance(config, MasterMetaExt):
        data = config.marshal()
        return data.encode("utf-8") if isinstance(data, str) else bytes(data)
    if dataclasses.is_dataclass(config) and not isinstance(config, type):
        config = dataclasses.asdict(config)
    return json.dumps(config, separators=(",", ":")).encode("utf-8")


class MasterImpl(abc.ABC):
    """Business logic of a master, driven by a BaseMaster."""

    @abc.abstractmethod
    def init_impl(self):
        """Initialise the business logic on a first start."""

    @abc.abstractmethod
    def tick(self):
        """Called on every poll of the master."""

    @abc.abstractmethod
    def on_master_recovered(self):
        """Called when the master restarts after a failure."""

    @abc.abstractmethod
    def on_worker_dispatched(self, worker, result):
        """Called when a request to launch a worker finishes; ``result`` is None or the error."""

    @abc.abstractmethod
    def on_worker_online(self, worker):
        """Called when the first heartbeat of a worker arrives."""

    @abc.abstractmethod
    def on_worker_offline(self, worker, reason):
        """Called when a worker exits or times out."""

    @abc.abstractmethod
    def on_worker_message(self, worker, topic, message):
        """Called when a business message from a worker arrives."""

    @abc.abstractmethod
    def close_impl(self):
        """Called when the master is being closed."""

    @abc.abstractmethod
    def get_worker_status_ext_type_info(self):
        """Return the type into which the ``ext`` of worker statuses is decoded."""


class BaseMaster:
    """Runs a MasterImpl: persists its metadata, dispatches and watches its workers.

    ``server_master_client.schedule_task(cost=, timeout=)`` returns a sequence of
    ``(executor_id, addr)`` pairs; ``executor_client_manager`` offers
    ``add_executor(executor_id, addr)`` and ``executor_client(executor_id)``, whose
    ``dispatch_task(worker_type=, config=, master_id=, worker_id=, timeout=)``
    returns an error code, zero meaning success.
    """

    def __init__(self, impl, master_id, message_handler_manager, message_sender,
                 meta_kv_client, executor_client_manager, server_master_client, *,
                 node_id="", advertise_addr="", master_meta_ext=None, clock=None,
                 timeout_config=None, uuid_gen=None,
                 max_create_worker_concurrency=MAX_CREATE_WORKER_CONCURRENCY):
        self.impl = impl
        self._id = master_id
        self._message_handler_manager = message_handler_manager
        self._message_sender = message_sender
        self._meta_kv_client = meta_kv_client
        self._executor_client_manager = executor_client_manager
        self._server_master_client = server_master_client
        self.node_id = node_id
        self.advertise_addr = advertise_addr
        self.master_meta_ext = self._parse_meta_ext(master_meta_ext)
        self.clock = clock if clock is not None else Clock()
        self.timeout_config = timeout_config if timeout_config is not None else TimeoutConfig()
        self._uuid_gen = uuid_gen if uuid_gen is not None else (lambda: str(uuid.uuid4()))
        self._create_worker_quota = ConcurrencyQuota(max_create_worker_concurrency)
        self.worker_manager = None
        self._epoch_lock = threading.Lock()
        self._current_epoch = 0
        self._errors = queue.Queue(maxsize=1)
        self._closed = threading.Event()
        self._threads = []

    @staticmethod
    def _parse_meta_ext(raw):
        if raw is None:
            return MasterMetaExt()
        if isinstance(raw, MasterMetaExt):
            return raw
        try:
            return MasterMetaExt.unmarshal(raw)
        except Exception as exc:
            log.warning("invalid master meta %r: %s", raw, exc)
            return MasterMetaExt()

    @property
    def current_epoch(self):
        with self._epoch_lock:
            return self._current_epoch

    def meta_kv_client(self):
        return self._meta_kv_client

    def master_id(self):
        return self._id

    def init(self):
        """Load or create the metadata, start background tasks and initialise or recover."""
        is_init, epoch = self._init_metadata()
        with self._epoch_lock:
            self._current_epoch = epoch
        self.worker_manager = WorkerManager(
            self._id, not is_init, epoch,
            clock=self.clock,
            timeout_config=self.timeout_config,
            message_sender=self._message_sender,
        )
        self._errors = queue.Queue(maxsize=1)
        self._closed = threading.Event()
        self._start_background_tasks()

        if is_init:
            self.impl.init_impl()
        else:
            self.impl.on_master_recovered()
        self._mark_initialized_in_metadata()

    def poll(self):
        """Raise a pending error or MasterClosedError, then tick the business logic."""
        try:
            err = self._errors.get_nowait()
        except queue.Empty:
            pass
        else:
            raise err
        if self._closed.is_set():
            raise MasterClosedError(f"master {self._id} is closed")
        self._message_handler_manager.check_error()
        self.impl.tick()

    def get_workers(self):
        """Map every known worker id to a handle."""
        if self.worker_manager is None:
            return {}
        return self.worker_manager.get_workers()

    def close(self):
        """Close the business logic, stop background tasks and drop message handlers."""
        self.impl.close_impl()
        self._closed.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        self._message_handler_manager.clean()

    def on_error(self, err):
        """Record an error to be raised by the next poll; later errors are dropped."""
        try:
            self._errors.put_nowait(err)
        except queue.Full:
            pass

    def get_worker_status_ext_type_info(self):
        """Trivial default: worker status extensions are integers."""
        return int

    def create_worker(self, worker_type, config, cost):
        """Request a new worker and return its id; dispatch completes in the background."""
        log.info("creating worker of type %s with config %r", worker_type, config)
        config_bytes = _encode_config(config)
        worker_id = self._generate_worker_id(worker_type, config)

        if not self._create_worker_quota.try_consume():
            raise MasterConcurrencyExceededError(
                f"master {self._id} has too many workers being created"
            )

        threading.Thread(
            target=self._dispatch_worker,
            args=(worker_type, config_bytes, cost, worker_id),
            name=f"dispatch-{worker_id}",
            daemon=True,
        ).start()

        self._register_handlers_for_worker(worker_id)
        return worker_id

    # --- internals ------------------------------------------------------------

    def _generate_worker_id(self, worker_type, config):
        if worker_type in _JOB_MASTER_TYPES:
            if isinstance(config, MasterMetaExt):
                return config.id
            log.warning("invalid master config, will generate a random worker id")
        return self._uuid_gen()

    def _notify_dispatched(self, handle, result):
        try:
            self.impl.on_worker_dispatched(handle, result)
        except Exception as exc:
            self.on_error(exc)

    def _dispatch_worker(self, worker_type, config_bytes, cost, worker_id):
        try:
            failed_handle = TombstoneWorkerHandle(worker_id, WorkerStatus(code=_STATUS_ERROR))
            try:
                schedule = list(self._server_master_client.schedule_task(
                    cost=int(cost), timeout=CREATE_WORKER_TIMEOUT))
            except Exception as exc:
                self._notify_dispatched(failed_handle, exc)
                return
            if len(schedule) != 1:
                self.on_error(RuntimeError(
                    f"expected exactly one schedule entry, got {len(schedule)}"))
                return
            executor_id, addr = schedule[0]

            try:
                self._executor_client_manager.add_executor(executor_id, addr)
                executor_client = self._executor_client_manager.executor_client(executor_id)
                error_code = executor_client.dispatch_task(
                    worker_type=int(worker_type),
                    config=config_bytes,
                    master_id=self._id,
                    worker_id=worker_id,
                    timeout=CREATE_WORKER_TIMEOUT,
                )
            except Exception as exc:
                self._notify_dispatched(failed_handle, exc)
                return
            log.info("worker %s dispatched with error code %s", worker_id, error_code)
            if error_code != _DISPATCH_OK:
                self._notify_dispatched(failed_handle, EngineError(
                    f"dispatch worker failed with error code: {error_code}"))
                return

            try:
                self.worker_manager.add_worker(worker_id, executor_id, _STATUS_CREATED)
            except Exception as exc:
                self.on_error(exc)
            handle = self.worker_manager.get_worker_handle(worker_id)
            self._notify_dispatched(handle, None)
        finally:
            self._create_worker_quota.release()

    def _register_handlers_for_worker(self, worker_id):
        def on_heartbeat(sender, msg):
            current = self.current_epoch
            if msg.epoch < current:
                log.info("stale heartbeat %r dropped, current epoch %d", msg, current)
                return
            try:
                self.worker_manager.handle_heartbeat(msg, sender)
            except Exception as exc:
                log.error("handling heartbeat failed: %s", exc)
                self.on_error(exc)

        def on_status_update(sender, msg):
            try:
                msg.status.fill_ext(self.impl.get_worker_status_ext_type_info())
            except Exception as exc:
                self.on_error(exc)
                return
            self.worker_manager.update_status(msg)

        for topic, message_type, handler in (
            (heartbeat_ping_topic(self._id, worker_id), HeartbeatPingMessage, on_heartbeat),
            (status_update_topic(self._id, worker_id), StatusUpdateMessage, on_status_update),
        ):
            if not self._message_handler_manager.register_handler(topic, message_type, handler):
                raise RuntimeError(f"duplicate handler for topic {topic}")

    def _unregister_message_handlers(self, worker_id):
        for topic in (heartbeat_ping_topic(self._id, worker_id),
                      status_update_topic(self._id, worker_id)):
            if not self._message_handler_manager.unregister_handler(topic):
                log.warning("message handler for topic %s was not removed", topic)

    def _init_metadata(self):
        client = MasterMetadataClient(self._id, self._meta_kv_client)
        try:
            meta = client.load()
        except MasterNotFoundError:
            # First start: nothing in the metastore yet.
            meta = MasterMetaKVData(id=self._id)
            client.store(meta)

        epoch = client.generate_epoch()
        is_init = not meta.initialized

        meta.addr = self.advertise_addr
        meta.node_id = self.node_id
        meta.epoch = epoch
        meta.master_meta_ext = self.master_meta_ext
        client.store(meta)
        return is_init, epoch

    def _mark_initialized_in_metadata(self):
        client = MasterMetadataClient(self._id, self._meta_kv_client)
        meta = client.load()
        meta.initialized = True
        client.store(meta)

    def _start_background_tasks(self):
        thread = threading.Thread(
            target=self._run_worker_check, args=(self._closed,),
            name=f"master-{self._id}-check", daemon=True,
        )
        self._threads = [thread]
        thread.start()

    def _run_worker_check(self, closed):
        interval = _seconds(self.timeout_config.master_heartbeat_check_loop_interval)
        while not closed.wait(interval):
            try:
                self._check_workers()
            except Exception as exc:
                self.on_error(exc)
                return

    def _check_workers(self):
        offlined, onlined = self.worker_manager.tick(self._message_sender)
        # Online events go first in case both happen in the same tick.
        for info in onlined:
            log.info("worker %s is online", info.id)
            self.impl.on_worker_online(self.worker_manager.get_worker_handle(info.id))
        for info in offlined:
            log.info("worker %s is offline", info.id)
            handle = TombstoneWorkerHandle(info.id, info.status)
            self._unregister_message_handlers(info.id)
            self.impl.on_worker_offline(handle, WorkerOfflineError(info.id))