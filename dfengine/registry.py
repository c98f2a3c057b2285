"""Registry mapping worker types to the factories that build them."""

import abc
import dataclasses
import json
import logging
import threading

from dfengine.common import WorkerType, WorkerTypeNotFoundError
from dfengine.fake import FakeConfig, new_dummy_worker, new_fake_master

log = logging.getLogger(__name__)

_FAKE_JOB_MASTER = WorkerType(3)
_FAKE_TASK = WorkerType(7)


class WorkerFactory(abc.ABC):
    """Builds workers of one type and decodes their configuration."""

    @abc.abstractmethod
    def new_worker(self, deps, worker_id, master_id, config):
        """Build a worker with the given ids and decoded config."""

    @abc.abstractmethod
    def deserialize_config(self, config_bytes):
        """Decode the JSON configuration of a worker."""


def _build_config(config_type, data):
    if data is None:
        return config_type()
    if dataclasses.is_dataclass(config_type):
        if not isinstance(data, dict):
            raise TypeError(
                f"cannot decode {type(data).__name__} into {config_type.__name__}"
            )
        names = {
            f.metadata.get("json", f.name).lower(): f.name
            for f in dataclasses.fields(config_type)
            if f.init
        }
        kwargs = {}
        for key, value in data.items():
            name = names.get(str(key).lower())
            if name is not None:
                kwargs[name] = value
        return config_type(**kwargs)
    return config_type(data)


class SimpleWorkerFactory(WorkerFactory):
    """A factory built from a constructor function and a config type."""

    def __init__(self, constructor, config_type):
        self._constructor = constructor
        self._config_type = config_type

    def new_worker(self, deps, worker_id, master_id, config):
        return self._constructor(deps, worker_id, master_id, config)

    def deserialize_config(self, config_bytes):
        """Decode JSON into an instance of the config type; keys match case-insensitively."""
        return _build_config(self._config_type, json.loads(config_bytes))


class Registry:
    """Thread-safe map from worker type to WorkerFactory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._factories = {}

    def must_register_worker_type(self, worker_type, factory):
        """Register ``factory``; raise ValueError if the type is already taken."""
        if not self.register_worker_type(worker_type, factory):
            raise ValueError(f"duplicate worker type {int(worker_type)}")
        log.info("registered worker type %d", int(worker_type))

    def register_worker_type(self, worker_type, factory):
        """Register ``factory``; return False if the type is already taken."""
        with self._lock:
            if worker_type in self._factories:
                return False
            self._factories[worker_type] = factory
            return True

    def create_worker(self, deps, worker_type, worker_id, master_id, config_bytes):
        """Decode ``config_bytes`` and build a worker of ``worker_type``."""
        with self._lock:
            factory = self._factories.get(worker_type)
        if factory is None:
            raise WorkerTypeNotFoundError(f"worker type {int(worker_type)} not found")
        config = factory.deserialize_config(config_bytes)
        return factory.new_worker(deps, worker_id, master_id, config)


_GLOBAL_WORKER_REGISTRY = Registry()


def global_worker_registry():
    """The process-wide worker registry."""
    return _GLOBAL_WORKER_REGISTRY


def register_fake(registry):
    """Register the fake job master and the dummy worker; meant for testing."""
    registry.must_register_worker_type(
        _FAKE_JOB_MASTER, SimpleWorkerFactory(new_fake_master, FakeConfig)
    )
    registry.must_register_worker_type(
        _FAKE_TASK, SimpleWorkerFactory(new_dummy_worker, FakeConfig)
    )