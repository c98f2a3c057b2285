"""Cluster, job, operator and DAG descriptions shared across the engine."""

import json
from dataclasses import dataclass, field
from enum import IntEnum


def _wire(name, **kwargs):
    """Declare a dataclass field together with its JSON key."""
    return field(metadata={"json": name}, **kwargs)


class NodeType(IntEnum):
    """Kind of server instance."""

    SERVER_MASTER = 1
    EXECUTOR = 2


class ExecutorStatus(IntEnum):
    """Lifecycle state of an executor."""

    INITING = 0
    RUNNING = 1
    DISCONNECTED = 2
    TOMBSTONE = 3
    BUSY = 4


@dataclass
class NodeInfo:
    """A server instance: its type, id, advertised address and capability."""

    type: NodeType = _wire("type", default=NodeType.SERVER_MASTER)
    id: str = _wire("id", default="")
    addr: str = _wire("addr", default="")
    capability: int = _wire("cap", default=0)

    def to_json(self):
        """Serialise the node description as compact JSON text."""
        payload = {
            "type": int(self.type),
            "id": self.id,
            "addr": self.addr,
            "cap": self.capability,
        }
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


class WorkloadType(IntEnum):
    """Kind of workload a job runs."""

    BENCHMARK = 0
    DM = 1
    CDC = 2


class TaskStatus(IntEnum):
    """Lifecycle state of a task."""

    INIT = 0
    SERVING = 1
    PAUSED = 2
    STOPPED = 3


class OperatorType(IntEnum):
    """Kind of operator a task executes."""

    TABLE_READER = 0
    HASH = 1
    TABLE_SINK = 2
    PRODUCER = 3
    BINLOG = 4
    JOB_MASTER = 5


@dataclass
class JobMaster:
    """A job master and the configuration it was submitted with."""

    id: int = _wire("id", default=0)
    tp: WorkloadType = _wire("type", default=WorkloadType.BENCHMARK)
    config: bytes | None = _wire("config", default=None)
    master_addrs: list[str] = _wire("masters", default_factory=list)


@dataclass
class Task:
    """A unit of work placed on an executor."""

    flow_id: str = _wire("flow_id", default="")
    id: int = _wire("id", default=0)
    outputs: list[int] = _wire("outputs", default_factory=list)
    inputs: list[int] = _wire("inputs", default_factory=list)
    op_tp: OperatorType = _wire("type", default=OperatorType.TABLE_READER)
    op: bytes | None = _wire("op", default=None)
    cost: int = _wire("cost", default=0)
    preferred_location: str = _wire("location", default="")
    executor: str = _wire("exec", default="")
    status: TaskStatus = _wire("Status", default=TaskStatus.INIT)


@dataclass
class TableReaderOp:
    """Benchmark operator reading a table from a remote address."""

    flow_id: str = _wire("flow-id", default="")
    addr: str = _wire("address", default="")


@dataclass
class HashOp:
    """Benchmark operator hashing rows of a table."""

    table_id: int = _wire("id", default=0)


@dataclass
class TableSinkOp:
    """Benchmark operator writing a table to a file."""

    table_id: int = _wire("id", default=0)
    file: str = _wire("file", default="")


@dataclass
class ProducerOp:
    """Benchmark operator generating records."""

    table_id: int = _wire("tbl-num", default=0)
    record_cnt: int = _wire("rcd-cnt", default=0)
    ddl_frequency: int = _wire("ddl-freq", default=0)
    output_cnt: int = _wire("output-cnt", default=0)


@dataclass
class BinlogOp:
    """Operator reading a binlog stream."""

    address: str = _wire("addr", default="")


@dataclass
class Node:
    """A node in a sub-job DAG."""

    id: int = _wire("id", default=0)
    outputs: list["Node"] = _wire("outputs", default_factory=list)


@dataclass
class DAG:
    """Directed acyclic graph of sub-jobs, held from its root."""

    root: Node | None = _wire("root", default=None)