"""Replicated event-log, key-value and document stores over an operation log, with pubsub channels."""

__version__ = "0.1.0"

__all__ = [
    "basestore",
    "coreapi_pubsub",
    "directchannel",
    "documentstore",
    "eventlog",
    "events",
    "indexes",
    "kvstore",
    "manifest",
    "oneonone",
    "operation",
    "raw_pubsub",
    "replication",
    "replicator",
]