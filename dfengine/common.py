"""Shared types of the master/worker framework: statuses, messages, metadata and errors."""

import base64
import dataclasses
import enum
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any


# --- enumerations ---------------------------------------------------------


class WorkerStatusCode(enum.IntEnum):
    """Status codes a worker reports; only CREATED is used by the framework itself."""

    NORMAL = 1
    CREATED = 2
    INIT = 3
    ERROR = 4
    FINISHED = 5


class WorkerType(enum.IntEnum):
    """Kinds of workers, job masters included."""

    JOB_MANAGER = 1
    CVS_JOB_MASTER = 2
    FAKE_JOB_MASTER = 3
    DM_JOB_MASTER = 4
    CDC_JOB_MASTER = 5
    CVS_TASK = 6
    FAKE_TASK = 7
    DM_TASK = 8
    CDC_TASK = 9


class MasterFailoverReasonCode(enum.IntEnum):
    """Why a worker considers its master failed over."""

    MASTER_TIMED_OUT = 1
    MASTER_REPORTED_ERROR = 2


def _as_enum(enum_type, value):
    try:
        return enum_type(value)
    except ValueError:
        return int(value)


@dataclass
class MasterFailoverReason:
    code: MasterFailoverReasonCode
    error_message: str = ""


@dataclass
class TimeoutConfig:
    """Intervals and time-outs of the heartbeat protocol."""

    worker_timeout_duration: timedelta = timedelta(seconds=15)
    worker_timeout_graceful_duration: timedelta = timedelta(seconds=5)
    worker_heartbeat_interval: timedelta = timedelta(seconds=3)
    worker_report_status_interval: timedelta = timedelta(seconds=3)
    master_heartbeat_check_loop_interval: timedelta = timedelta(seconds=1)


class Clock:
    """Wall-clock and monotonic time source."""

    def now(self):
        """Current wall-clock time."""
        return datetime.now(timezone.utc)

    def mono(self):
        """Current monotonic time in seconds."""
        return time.monotonic()


@dataclass
class Dependencies:
    """Services and environment handed to masters and workers."""

    message_handler_manager: Any = None
    message_router: Any = None
    meta_kv_client: Any = None
    executor_client_manager: Any = None
    server_master_client: Any = None
    node_id: str = ""
    addr: str = ""
    master_meta_ext: bytes = b""


# --- JSON helpers ---------------------------------------------------------


def _to_jsonable(value):
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, datetime):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {
            f.metadata.get("json", f.name): _to_jsonable(getattr(value, f.name))
            for f in dataclasses.fields(value)
        }
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(v) for v in value]
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def _decode_as(tp, value):
    """Build an instance of ``tp`` from decoded JSON ``value``."""
    if value is None:
        return tp()
    if dataclasses.is_dataclass(tp):
        if not isinstance(value, dict):
            raise TypeError(f"cannot decode {value!r} into {tp.__name__}")
        folded = {str(k).lower(): v for k, v in value.items()}
        kwargs = {}
        for f in dataclasses.fields(tp):
            if not f.init:
                continue
            key = f.metadata.get("json", f.name)
            if key in value:
                kwargs[f.name] = value[key]
            elif key.lower() in folded:
                kwargs[f.name] = folded[key.lower()]
        return tp(**kwargs)
    if issubclass(tp, enum.Enum):
        return tp(value)
    if issubclass(tp, bool):
        if not isinstance(value, bool):
            raise TypeError(f"cannot decode {value!r} into bool")
        return value
    if issubclass(tp, int):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"cannot decode {value!r} into {tp.__name__}")
        if isinstance(value, float) and not value.is_integer():
            raise ValueError(f"cannot decode {value!r} into {tp.__name__}")
        return tp(int(value))
    if issubclass(tp, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"cannot decode {value!r} into {tp.__name__}")
        return tp(value)
    if issubclass(tp, str):
        if not isinstance(value, str):
            raise TypeError(f"cannot decode {value!r} into {tp.__name__}")
        return tp(value)
    if issubclass(tp, (list, dict)):
        if not isinstance(value, tp):
            raise TypeError(f"cannot decode {value!r} into {tp.__name__}")
        return value
    return tp(value)


def _b64(data):
    return None if data is None else base64.b64encode(bytes(data)).decode("ascii")


def _unb64(text):
    return None if text is None else base64.b64decode(text)


def _loads(data):
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode("utf-8")
    return json.loads(data)


def _dumps(obj):
    return json.dumps(obj, separators=(",", ":"))


# --- worker status --------------------------------------------------------


@dataclass
class WorkerStatus:
    """Status of a worker; ``ext`` holds business data, ``ext_bytes`` its encoded form."""

    code: int = 0
    error_message: str = ""
    ext_bytes: bytes | None = None
    ext: Any = None

    def fill_ext(self, ext_type):
        """Decode ``ext_bytes`` into an instance of ``ext_type`` and store it as ``ext``."""
        try:
            if not isinstance(ext_type, type):
                raise TypeError(
                    f"fill ext field of worker status failed: {ext_type!r} is not a type"
                )
            raw = self.ext_bytes if self.ext_bytes is not None else b""
            self.ext = _decode_as(ext_type, json.loads(raw))
        finally:
            self.ext_bytes = None

    def marshal_ext(self):
        """Encode ``ext`` into ``ext_bytes``."""
        self.ext_bytes = _dumps(_to_jsonable(self.ext)).encode("utf-8")

    def to_dict(self):
        """Wire form of the status; ``ext`` itself is not included."""
        return {
            "code": int(self.code),
            "error-message": self.error_message,
            "ext-bytes": _b64(self.ext_bytes),
        }

    @classmethod
    def from_dict(cls, data):
        """Build a status from its wire form."""
        return cls(
            code=_as_enum(WorkerStatusCode, data.get("code") or 0),
            error_message=data.get("error-message") or "",
            ext_bytes=_unb64(data.get("ext-bytes")),
        )


# --- topics and messages --------------------------------------------------


def heartbeat_ping_topic(master_id, worker_id):
    return f"heartbeat-ping-{master_id}-{worker_id}"


def heartbeat_pong_topic(master_id, worker_id):
    return f"heartbeat-pong-{master_id}-{worker_id}"


def workload_report_topic(master_id):
    return f"workload-report-{master_id}"


def status_update_topic(master_id, worker_id):
    return f"status-update-{master_id}-{worker_id}"


@dataclass
class HeartbeatPingMessage:
    send_time: float
    from_worker_id: str
    epoch: int


@dataclass
class HeartbeatPongMessage:
    send_time: float
    reply_time: datetime
    to_worker_id: str
    epoch: int


@dataclass
class StatusUpdateMessage:
    worker_id: str
    status: WorkerStatus


@dataclass
class WorkloadReportMessage:
    worker_id: str
    workload: int


# --- master metadata ------------------------------------------------------


@dataclass
class MasterMetaExt:
    """Configuration of a job, kept for failover."""

    id: str = ""
    tp: int = 0
    config: bytes | None = None
    checkpoint: bytes | None = None

    def _to_dict(self):
        return {
            "id": self.id,
            "type": int(self.tp),
            "config": _b64(self.config),
            "checkpoint": _b64(self.checkpoint),
        }

    @classmethod
    def _from_dict(cls, data):
        return cls(
            id=data.get("id") or "",
            tp=_as_enum(WorkerType, data.get("type") or 0),
            config=_unb64(data.get("config")),
            checkpoint=_unb64(data.get("checkpoint")),
        )

    def marshal(self):
        """Encode as JSON bytes."""
        return _dumps(self._to_dict()).encode("utf-8")

    @classmethod
    def unmarshal(cls, data):
        """Decode from JSON text or bytes."""
        return cls._from_dict(_loads(data))


@dataclass
class MasterMetaKVData:
    """The metadata record of a master."""

    id: str = ""
    addr: str = ""
    node_id: str = ""
    epoch: int = 0
    initialized: bool = False
    master_meta_ext: MasterMetaExt | None = None

    def to_json(self):
        """Encode as JSON text."""
        ext = self.master_meta_ext
        return _dumps({
            "id": self.id,
            "addr": self.addr,
            "node-id": self.node_id,
            "epoch": self.epoch,
            "initialized": self.initialized,
            "meta-ext": None if ext is None else ext._to_dict(),
        })

    @classmethod
    def from_json(cls, data):
        """Decode from JSON text or bytes."""
        obj = _loads(data)
        ext = obj.get("meta-ext")
        return cls(
            id=obj.get("id") or "",
            addr=obj.get("addr") or "",
            node_id=obj.get("node-id") or "",
            epoch=obj.get("epoch") or 0,
            initialized=bool(obj.get("initialized")),
            master_meta_ext=None if ext is None else MasterMetaExt._from_dict(ext),
        )


@dataclass
class WorkerMetaKVData:
    master_id: str = ""
    node_id: str = ""
    status_code: int = 0
    message: str = ""


# --- errors ---------------------------------------------------------------


class EngineError(Exception):
    """Base class of the framework's errors."""


class MasterClosedError(EngineError):
    def __init__(self, message="master is closed"):
        super().__init__(message)


class MasterNotFoundError(EngineError):
    def __init__(self, message="master is not found"):
        super().__init__(message)


class MasterConcurrencyExceededError(EngineError):
    def __init__(self, message="master concurrency exceeded"):
        super().__init__(message)


class WorkerOfflineError(EngineError):
    def __init__(self, worker_id=""):
        self.worker_id = worker_id
        super().__init__(f"worker {worker_id} is offline")


class WorkerNotFoundError(EngineError):
    def __init__(self, worker_id=""):
        self.worker_id = worker_id
        super().__init__(f"worker {worker_id} is not found")


class WorkerNoMetaError(EngineError):
    def __init__(self, message="worker metadata is not found"):
        super().__init__(message)


class WorkerSuicideError(EngineError):
    def __init__(self, message="Suicide: worker lost contact with its master"):
        super().__init__(message)


class WorkerUpdateStatusTryAgainError(EngineError):
    def __init__(self, message="worker status update is in progress, try again later"):
        super().__init__(message)


class WorkerTypeNotFoundError(EngineError):
    def __init__(self, worker_type=None):
        self.worker_type = worker_type
        super().__init__(f"worker type {worker_type} is not found")