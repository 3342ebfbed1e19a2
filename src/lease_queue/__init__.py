"""Durable task queue with session-owned leases."""

from lease_queue.errors import ErrorStatus, QueueError
from lease_queue.queue.manager import Manager
from lease_queue.queue.models import (
    NO_PARAMS,
    ManagerConfig,
    ProcessOptions,
    ProcessResult,
    PruneOptions,
    PruneResult,
    ReclaimResult,
    TaskCreate,
    TaskFilter,
    TaskStatus,
    TaskUpdate,
)
from lease_queue.queue.pruner import Pruner
from lease_queue.queue.task import Task

__version__ = "0.1.0"

__all__ = [
    "NO_PARAMS",
    "ErrorStatus",
    "Manager",
    "ManagerConfig",
    "ProcessOptions",
    "ProcessResult",
    "PruneOptions",
    "PruneResult",
    "Pruner",
    "QueueError",
    "ReclaimResult",
    "Task",
    "TaskCreate",
    "TaskFilter",
    "TaskStatus",
    "TaskUpdate",
    "__version__",
]
