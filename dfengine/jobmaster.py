"""A job master: a master of its own workers that is itself a worker of the job manager."""

from dfengine.master import BaseMaster
from dfengine.worker import BaseWorker


class BaseJobMaster:
    """Combines a BaseMaster and a BaseWorker sharing one identity.

    ``master_id`` is the id of the master this object reports to as a worker;
    ``worker_id`` is the id of this object, also used as its id as a master.
    """

    def __init__(self, master_impl, worker_impl, master_id, worker_id,
                 message_handler_manager, message_sender, meta_kv_client,
                 executor_client_manager, server_master_client, *,
                 node_id="", advertise_addr="", master_meta_ext=None, clock=None,
                 timeout_config=None, uuid_gen=None):
        self.master = BaseMaster(
            master_impl, worker_id, message_handler_manager, message_sender,
            meta_kv_client, executor_client_manager, server_master_client,
            node_id=node_id, advertise_addr=advertise_addr,
            master_meta_ext=master_meta_ext, clock=clock,
            timeout_config=timeout_config, uuid_gen=uuid_gen,
        )
        self.worker = BaseWorker(
            worker_impl, message_handler_manager, message_sender, meta_kv_client,
            worker_id, master_id, clock=clock, timeout_config=timeout_config,
        )

    def meta_kv_client(self):
        return self.master.meta_kv_client()

    def init(self):
        """Initialise the worker role, then the master role."""
        self.worker.init()
        self.master.init()

    def poll(self):
        """Poll the worker role, then the master role."""
        self.worker.poll()
        self.master.poll()

    def master_id(self):
        return self.master.master_id()

    def get_workers(self):
        return self.master.get_workers()

    def close(self):
        """Close the master role, then the worker role."""
        self.master.close()
        self.worker.close()

    def on_error(self, err):
        self.master.on_error(err)

    def create_worker(self, worker_type, config, cost):
        return self.master.create_worker(worker_type, config, cost)

    def get_worker_status_ext_type_info(self):
        return self.master.get_worker_status_ext_type_info()

    def workload(self):
        return self.worker.workload()

    def id(self):
        return self.worker.id()