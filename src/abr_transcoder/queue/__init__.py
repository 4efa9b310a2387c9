"""Durable, leased job queue and the worker pool that drains it."""

from .backends import QueueBackend
from .models import BackoffPolicy, Job, JobStatus, StateTransition
from .sqlite_backend import SQLiteQueue
from .worker import JobWorkerPool, PoolStats

__all__ = [
    "QueueBackend",
    "BackoffPolicy",
    "Job",
    "JobStatus",
    "StateTransition",
    "SQLiteQueue",
    "JobWorkerPool",
    "PoolStats",
]
