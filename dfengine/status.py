"""Propagation of a worker's status to its master through the metastore."""

import dataclasses
import enum
import logging
import queue
import threading
from dataclasses import dataclass
from datetime import timedelta

from dfengine.common import WorkerStatus, WorkerUpdateStatusTryAgainError, status_update_topic

log = logging.getLogger(__name__)

_STATUS_REFRESH_INTERVAL = timedelta(seconds=10)


def worker_status_updated_topic(master_id, worker_id):
    """Topic on which a worker announces that its stored status changed."""
    return f"worker-status-updated-{master_id}-{worker_id}"


@dataclass
class WorkerStatusUpdatedMessage:
    """Notification that a worker has stored a new status."""

    epoch: int = 0


class _SenderState(enum.Enum):
    IDLE = 1
    PENDING = 2
    SENDING = 3


def _push_error(errors, err):
    try:
        errors.put_nowait(err)
    except queue.Full:
        log.warning("error dropped because the error queue is full: %s", err)


def _raise_pending(errors):
    try:
        err = errors.get_nowait()
    except queue.Empty:
        return
    raise err


class StatusSender:
    """Lets a worker store its status and notify its master.

    State transitions: IDLE --send_status--> PENDING --pool--> SENDING,
    SENDING --sent--> IDLE, SENDING --retry--> PENDING.
    The executor ``pool`` is owned by the caller.
    """

    def __init__(self, master_client, worker_meta_client, message_sender, pool):
        self._master_client = master_client
        self._worker_meta_client = worker_meta_client
        self._message_sender = message_sender
        self._pool = pool
        self._state_lock = threading.Lock()
        self._state = _SenderState.IDLE
        self._last_unsent_status = None
        self._errors = queue.Queue(maxsize=1)

    def tick(self):
        """Raise an error from a previous send, or retry a pending one."""
        _raise_pending(self._errors)
        with self._state_lock:
            pending = self._state is _SenderState.PENDING
        if pending:
            self._send_status()

    def send_status(self, status):
        """Start sending ``status``; raise if a previous send is still in flight."""
        with self._state_lock:
            if self._state is not _SenderState.IDLE:
                raise WorkerUpdateStatusTryAgainError("status update in progress, try again")
            self._last_unsent_status = dataclasses.replace(status)
            self._state = _SenderState.PENDING
        self._send_status()

    def _send_status(self):
        self._pool.submit(self._do_send)

    def _transition(self, expected, new):
        with self._state_lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def _do_send(self):
        if not self._transition(_SenderState.PENDING, _SenderState.SENDING):
            return
        try:
            self._worker_meta_client.store(self._last_unsent_status)
        except Exception as exc:
            _push_error(self._errors, exc)

        client = self._master_client
        try:
            ok = self._message_sender.send_to_node(
                client.master_node(),
                worker_status_updated_topic(client.master_id, client.worker_id),
                WorkerStatusUpdatedMessage(epoch=client.epoch()),
            )
        except Exception as exc:
            _push_error(self._errors, exc)
            ok = False

        next_state = _SenderState.IDLE if ok else _SenderState.PENDING
        if not self._transition(_SenderState.SENDING, next_state):
            log.error("status sender left the SENDING state unexpectedly")


class StatusReceiver:
    """Keeps a master's cached copy of one worker's status up to date.

    The message handler manager is only used to register a handler; the
    executor ``pool`` is owned by the caller.
    """

    def __init__(self, worker_meta_client, message_handler_manager, epoch, pool, clock):
        self._worker_meta_client = worker_meta_client
        self._message_handler_manager = message_handler_manager
        self._epoch = epoch
        self._pool = pool
        self._clock = clock
        self._lock = threading.Lock()
        self._status_cache = WorkerStatus()
        self._last_status_updated = None
        self._has_pending_notification = False
        self._is_loading = False
        self._errors = queue.Queue(maxsize=1)

    def init(self):
        """Register for update notifications and load the current status."""
        client = self._worker_meta_client
        topic = status_update_topic(client.master_id, client.worker_id)
        if not self._message_handler_manager.register_handler(
            topic, WorkerStatusUpdatedMessage, self._on_notification
        ):
            raise RuntimeError(f"duplicate handler for topic {topic}")

        status = client.load()
        with self._lock:
            self._status_cache = status
            self._last_status_updated = self._clock.now()

    def _on_notification(self, sender, msg):
        log.debug("received status update notification from %s: %r", sender, msg)
        if msg.epoch != self._epoch:
            return
        with self._lock:
            self._has_pending_notification = True

    def status(self):
        """Latest known status of the worker."""
        with self._lock:
            return dataclasses.replace(self._status_cache)

    def tick(self):
        """Reload the status when notified or when the cache is stale."""
        _raise_pending(self._errors)
        with self._lock:
            notified = self._has_pending_notification
            self._has_pending_notification = False
            stale = self._clock.now() - self._last_status_updated > _STATUS_REFRESH_INTERVAL
            if not (notified or stale) or self._is_loading:
                return
            self._is_loading = True
        try:
            self._pool.submit(self._load)
        except Exception:
            with self._lock:
                self._is_loading = False
            raise

    def _load(self):
        try:
            status = self._worker_meta_client.load()
        except Exception as exc:
            _push_error(self._errors, exc)
            with self._lock:
                self._is_loading = False
            return
        with self._lock:
            self._status_cache = status
            self._last_status_updated = self._clock.now()
            self._is_loading = False