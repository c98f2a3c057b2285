import json
import threading
import time
from collections import defaultdict, deque
from datetime import datetime, timedelta, timezone

import pytest

from dfengine.common import (
    HeartbeatPingMessage,
    HeartbeatPongMessage,
    MasterMetaKVData,
    StatusUpdateMessage,
    TimeoutConfig,
    WorkerStatus,
    WorkerStatusCode,
    WorkerSuicideError,
    heartbeat_ping_topic,
    heartbeat_pong_topic,
    status_update_topic,
)
from dfengine.metadata import MasterMetadataClient, MemoryMetaKV
from dfengine.worker import BaseWorker, MasterClient, WorkerImpl

MASTER = "my-master"
MASTER_NODE = "node-1"
EXECUTOR_NODE3 = "node-exec-3"
WORKER1 = "worker-1"


def _secs(duration):
    return duration.total_seconds() if isinstance(duration, timedelta) else float(duration)


HEARTBEAT = _secs(TimeoutConfig().worker_heartbeat_interval)
TIMEOUT = _secs(TimeoutConfig().worker_timeout_duration)


class FakeClock:
    def __init__(self):
        self._lock = threading.Lock()
        self._offset = 0.0
        self._base = datetime(2022, 1, 1, tzinfo=timezone.utc)

    def now(self):
        with self._lock:
            return self._base + timedelta(seconds=self._offset)

    def mono(self):
        with self._lock:
            return 1000.0 + self._offset

    def add(self, seconds):
        with self._lock:
            self._offset += seconds


class MockMessageSender:
    def __init__(self):
        self._lock = threading.Lock()
        self._queues = defaultdict(deque)
        self.blocked = False

    def send_to_node(self, node_id, topic, message):
        with self._lock:
            if self.blocked:
                return False
            self._queues[(node_id, topic)].append(message)
            return True

    def try_pop(self, node_id, topic):
        with self._lock:
            q = self._queues[(node_id, topic)]
            return q.popleft() if q else None


class MockHandlerManager:
    def __init__(self):
        self.handlers = {}

    def register_handler(self, topic, message_type, handler):
        if topic in self.handlers:
            return False
        self.handlers[topic] = handler
        return True

    def unregister_handler(self, topic):
        return self.handlers.pop(topic, None) is not None

    def check_error(self):
        return None

    def clean(self):
        self.handlers.clear()

    def invoke_handler(self, topic, sender, message):
        return self.handlers[topic](sender, message)


class RecordingImpl(WorkerImpl):
    def __init__(self, status):
        self._status = status
        self.init_count = 0
        self.tick_count = 0
        self.failover_count = 0
        self.closed = 0

    def init_impl(self):
        self.init_count += 1

    def tick(self):
        self.tick_count += 1

    def status(self):
        return self._status

    def workload(self):
        return 7

    def on_master_failover(self, reason):
        self.failover_count += 1

    def close_impl(self):
        self.closed += 1


def _eventually(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        result = predicate()
        if result:
            return result
        time.sleep(0.002)
    return predicate()


def put_master_meta(kv, node_id, epoch):
    MasterMetadataClient(MASTER, kv).store(
        MasterMetaKVData(id=MASTER, node_id=node_id, epoch=epoch, initialized=True)
    )


class Harness:
    def __init__(self, status):
        self.clock = FakeClock()
        self.sender = MockMessageSender()
        self.handlers = MockHandlerManager()
        self.kv = MemoryMetaKV()
        self.impl = RecordingImpl(status)
        put_master_meta(self.kv, MASTER_NODE, 1)
        self.worker = BaseWorker(
            self.impl, self.handlers, self.sender, self.kv, WORKER1, MASTER,
            clock=self.clock, check_interval=0.001,
        )

    def pop_ping(self):
        return self.sender.try_pop(MASTER_NODE, heartbeat_ping_topic(MASTER, WORKER1))

    def pop_status(self):
        return self.sender.try_pop(MASTER_NODE, status_update_topic(MASTER, WORKER1))


def _harness(status):
    h = Harness(status)
    h.worker.init()
    return h


@pytest.fixture
def harness():
    h = _harness(WorkerStatus(code=WorkerStatusCode.NORMAL))
    yield h
    h.worker.close()


def test_worker_init_and_close():
    h = _harness(WorkerStatus(code=WorkerStatusCode.NORMAL))
    assert h.impl.init_count == 1
    h.clock.add(HEARTBEAT + 1)
    h.clock.add(HEARTBEAT + 1)

    ping = _eventually(h.pop_ping)
    assert isinstance(ping, HeartbeatPingMessage)
    assert ping.from_worker_id == WORKER1
    assert ping.epoch == 1

    status_msg = _eventually(h.pop_status)
    assert isinstance(status_msg, StatusUpdateMessage)
    assert status_msg.worker_id == WORKER1
    assert status_msg.status.code == WorkerStatusCode.NORMAL
    assert json.loads(status_msg.status.ext_bytes) is None

    h.worker.close()
    assert h.impl.closed == 1


def test_worker_heartbeat_ping_pong(harness):
    harness.clock.add(HEARTBEAT)
    last_send_time = 0.0
    for _ in range(100):
        harness.worker.poll()
        harness.clock.add(HEARTBEAT)
        ping = _eventually(harness.pop_ping)
        assert ping is not None
        assert ping.send_time - last_send_time >= HEARTBEAT
        last_send_time = ping.send_time
        pong = HeartbeatPongMessage(
            send_time=ping.send_time,
            reply_time=datetime.now(timezone.utc),
            to_worker_id=WORKER1,
            epoch=1,
        )
        harness.handlers.invoke_handler(heartbeat_pong_topic(MASTER, WORKER1), MASTER_NODE, pong)
    assert harness.impl.tick_count == 100


def test_worker_master_failover(harness):
    harness.clock.add(HEARTBEAT)
    harness.clock.add(HEARTBEAT)
    ping = _eventually(harness.pop_ping)
    assert ping is not None

    pong = HeartbeatPongMessage(
        send_time=ping.send_time,
        reply_time=datetime.now(timezone.utc),
        to_worker_id=WORKER1,
        epoch=1,
    )
    harness.handlers.invoke_handler(heartbeat_pong_topic(MASTER, WORKER1), MASTER_NODE, pong)

    harness.clock.add(1)
    put_master_meta(harness.kv, EXECUTOR_NODE3, 2)
    harness.clock.add(3 * HEARTBEAT)

    assert _eventually(lambda: harness.impl.failover_count == 1)
    assert harness.worker.master_client.epoch() == 2
    assert harness.worker.master_client.master_node() == EXECUTOR_NODE3


def test_worker_status_carries_ext():
    h = _harness(WorkerStatus(code=WorkerStatusCode.NORMAL, ext={"Val": 1}))
    try:
        h.clock.add(TIMEOUT)
        h.clock.add(TIMEOUT)
        status_msg = _eventually(h.pop_status)
        assert status_msg.worker_id == WORKER1
        assert status_msg.status.code == WorkerStatusCode.NORMAL
        assert status_msg.status.ext == {"Val": 1}
        assert json.loads(status_msg.status.ext_bytes) == {"Val": 1}
    finally:
        h.worker.close()


def test_worker_suicide(harness):
    harness.worker.poll()
    assert harness.impl.tick_count == 1
    harness.clock.add(TIMEOUT)
    harness.clock.add(TIMEOUT)

    deadline = time.monotonic() + 2.0
    with pytest.raises(WorkerSuicideError):
        while time.monotonic() < deadline:
            harness.worker.poll()
            time.sleep(0.005)


def test_worker_identity_and_workload(harness):
    assert harness.worker.id() == WORKER1
    assert harness.worker.workload() == 7
    assert harness.worker.meta_kv_client() is harness.kv


def _master_client(kv, sender, clock, failovers):
    client = MasterClient(MASTER, WORKER1, sender, kv, clock.mono(),
                          lambda: failovers.append(1))
    client.init_master_info_from_meta()
    return client


def test_master_client_handles_heartbeat_epochs():
    kv = MemoryMetaKV()
    put_master_meta(kv, MASTER_NODE, 3)
    clock = FakeClock()
    client = _master_client(kv, MockMessageSender(), clock, [])
    assert client.master_node() == MASTER_NODE
    assert client.epoch() == 3

    stale = HeartbeatPongMessage(send_time=2000.0, reply_time=clock.now(),
                                 to_worker_id=WORKER1, epoch=2)
    client.handle_heartbeat("other-node", stale)
    assert client.epoch() == 3
    assert client.master_node() == MASTER_NODE

    newer = HeartbeatPongMessage(send_time=1001.0, reply_time=clock.now(),
                                 to_worker_id=WORKER1, epoch=5)
    client.handle_heartbeat("other-node", newer)
    assert client.epoch() == 5
    assert client.master_node() == "other-node"


def test_master_client_timeout_check_refreshes_then_fails():
    kv = MemoryMetaKV()
    put_master_meta(kv, MASTER_NODE, 1)
    clock = FakeClock()
    failovers = []
    client = _master_client(kv, MockMessageSender(), clock, failovers)

    assert client.check_master_timeout(clock) is True
    assert failovers == []

    put_master_meta(kv, EXECUTOR_NODE3, 2)
    clock.add(2 * HEARTBEAT + 1)
    assert client.check_master_timeout(clock) is True
    assert failovers == [1]
    assert client.master_node() == EXECUTOR_NODE3

    clock.add(TIMEOUT)
    assert client.check_master_timeout(clock) is False


def test_master_client_send_status_blocked_and_unblocked():
    kv = MemoryMetaKV()
    put_master_meta(kv, MASTER_NODE, 1)
    sender = MockMessageSender()
    clock = FakeClock()
    client = _master_client(kv, sender, clock, [])
    topic = status_update_topic(MASTER, WORKER1)

    sender.blocked = True
    client.send_status(WorkerStatus(code=WorkerStatusCode.NORMAL))
    assert sender.try_pop(MASTER_NODE, topic) is None

    sender.blocked = False
    client.send_status(WorkerStatus(code=WorkerStatusCode.NORMAL, ext={"Val": 2}))
    msg = sender.try_pop(MASTER_NODE, topic)
    assert msg.worker_id == WORKER1
    assert json.loads(msg.status.ext_bytes) == {"Val": 2}


def test_master_client_send_heartbeat_uses_clock():
    kv = MemoryMetaKV()
    put_master_meta(kv, MASTER_NODE, 4)
    sender = MockMessageSender()
    clock = FakeClock()
    client = _master_client(kv, sender, clock, [])
    clock.add(5)
    client.send_heartbeat(clock)
    msg = sender.try_pop(MASTER_NODE, heartbeat_ping_topic(MASTER, WORKER1))
    assert msg.send_time == 1005.0
    assert msg.epoch == 4
    assert msg.from_worker_id == WORKER1