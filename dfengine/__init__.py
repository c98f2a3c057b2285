"""Master/worker framework for a dataflow engine: models, metadata, heartbeats, status and registries."""

__version__ = "0.1.0"