# dfengine

`dfengine` is a small framework for building masters and workers in a dataflow
engine. Masters create workers and watch their heartbeats. Workers report
heartbeats and status to their master, and stop themselves when the master has
stayed silent for too long. It has no dependencies outside the standard library.

## Modules

- `dfengine.model`: dataclasses and enums that describe the cluster and jobs.
  These are `NodeInfo` (with `to_json()`), `JobMaster`, `Task`, the operator
  configs (`TableReaderOp`, `HashOp`, `TableSinkOp`, `ProducerOp`, `BinlogOp`)
  and the sub-job graph (`DAG`, `Node`).
- `dfengine.common`: the shared types.
  - `WorkerStatusCode`, `WorkerType` and `MasterFailoverReasonCode`.
  - `TimeoutConfig`, which holds the heartbeat intervals and time-outs, and
    `Clock`, which gives `now()` and `mono()`.
  - `WorkerStatus`. Its `ext` payload is encoded with `marshal_ext()` and
    decoded into a given type with `fill_ext(ext_type)`.
  - The heartbeat and status messages and their topic helpers
    (`heartbeat_ping_topic`, `heartbeat_pong_topic`, `status_update_topic`,
    `workload_report_topic`).
  - `MasterMetaExt` and `MasterMetaKVData`, with JSON encoding.
  - The error classes, all derived from `EngineError`.
- `dfengine.quota`: `ConcurrencyQuota`. `try_consume()` never blocks.
  `release()` raises `ValueError` when no unit is held.
- `dfengine.metadata`: `MemoryMetaKV`, a revisioned in-memory key-value store,
  and the helpers built on it.
  - `MasterMetadataClient` offers `load`, `store`, `load_all_masters` and
    `generate_epoch`. `load_all_masters` leaves out the job manager.
  - `WorkerMetadataClient` offers `load` and `store`. `load` raises
    `WorkerNoMetaError` when nothing is stored.
- `dfengine.worker_manager`: `WorkerManager` tracks a master's workers. It
  answers pending heartbeats on `tick(sender)`, which returns the workers that
  went offline and those that came online. It hands out `WorkerHandle` objects
  for live workers and `TombstoneWorkerHandle` objects for timed-out ones.
- `dfengine.worker`: `WorkerImpl` is the abstract business logic of a worker.
  - `MasterClient` is a worker's view of its master.
  - `BaseWorker` drives a `WorkerImpl`. A background thread sends heartbeats,
    reports status and watches the master. A watchdog failure is raised from the
    next `poll()` as `WorkerSuicideError`.
- `dfengine.status`: `StatusSender` and `StatusReceiver` carry a worker's status
  through the metadata store. They notify on `worker_status_updated_topic`. A
  stale cached status is reloaded after 10 seconds.
- `dfengine.master`: `MasterImpl` is the abstract business logic of a master.
  - `BaseMaster` persists the master's metadata and chooses an epoch. It calls
    `init_impl` on a first start and `on_master_recovered` after a restart.
  - `create_worker` dispatches workers in the background. At most 100 creations
    run at once, beyond which `MasterConcurrencyExceededError` is raised.
  - `poll()` raises `MasterClosedError` once the master is closed.
- `dfengine.jobmaster`: `BaseJobMaster` joins a `BaseMaster` and a `BaseWorker`
  that share one identity.
- `dfengine.fake`: `FakeMaster`, which keeps 20 dummy workers dispatched, and
  `DummyWorker`, which counts its ticks. Both are built with `new_fake_master`
  and `new_dummy_worker` from a `Dependencies` object.
- `dfengine.registry`: `WorkerFactory`, `SimpleWorkerFactory`, `Registry`,
  `global_worker_registry()` and `register_fake()`.

## Installation

```
pip install .
```

Install the test extra to run the tests:

```
pip install ".[test]"
pytest
```

## Examples

```python
from dfengine.quota import ConcurrencyQuota

quota = ConcurrencyQuota(2)
assert quota.try_consume()
assert quota.try_consume()
assert not quota.try_consume()
quota.release()
assert quota.try_consume()
```

Store a master record and load it back:

```python
from dfengine.common import MasterMetaKVData
from dfengine.metadata import MemoryMetaKV, MasterMetadataClient

kv = MemoryMetaKV()
client = MasterMetadataClient("my-master", kv)
client.store(MasterMetaKVData(id="my-master", node_id="node-1"))
assert client.load().node_id == "node-1"
```

Build a worker from its serialized config:

```python
from dfengine.common import Dependencies, WorkerType
from dfengine.registry import Registry, register_fake

registry = Registry()
register_fake(registry)
worker = registry.create_worker(
    Dependencies(), WorkerType.FAKE_TASK, "worker-1", "master-1", b"{}"
)
assert worker.id() == "worker-1"
```

## What you supply

Masters and workers talk to the outside world only through objects you pass in.

- **Message sender.** It needs `send_to_node(node_id, topic, message)`, which
  returns whether the message was accepted.
- **Message handler manager.** It needs these methods:
  - `register_handler(topic, message_type, handler)`, which returns False for a
    duplicate.
  - `unregister_handler(topic)`.
  - `check_error()`.
  - `clean()`.
- **Scheduler client.** `BaseMaster` needs `schedule_task(cost=, timeout=)`,
  which returns `(executor_id, addr)` pairs.
- **Executor client manager.** `BaseMaster` needs these methods:
  - `add_executor(executor_id, addr)`.
  - `executor_client(executor_id)`. The client it returns needs
    `dispatch_task(...)`, which returns an error code; zero means success.
- **Executor pool.** `StatusSender` and `StatusReceiver` take a pool with
  `submit(fn)`, such as a `concurrent.futures.ThreadPoolExecutor`.

## What it does not do

- There is no network transport, RPC layer, scheduler or executor. The objects
  listed above are for you to provide.
- The only metadata store is the in-memory `MemoryMetaKV`, so nothing persists
  across processes.
- There is no command-line program and no server to run.