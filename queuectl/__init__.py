"""Persistent priority job queue with workers, retries and health checks."""

__version__ = "0.2"

from queuectl.config import Settings, load_settings
from queuectl.errors import (
    ConfigurationError,
    ExecutionError,
    InvalidStateError,
    JobTimeoutError,
    NotFoundError,
    QueueError,
    StorageError,
    ValidationError,
)
from queuectl.executor import ExecutionResult, JobExecutor, JobRegistry, default_registry, register
from queuectl.job import Job
from queuectl.queue_manager import Queue, QueueConfig, QueueManager

# built-in executors register themselves on import
from queuectl import jobs  # noqa: E402,F401

__all__ = [
    "ConfigurationError",
    "ExecutionError",
    "ExecutionResult",
    "InvalidStateError",
    "Job",
    "JobExecutor",
    "JobRegistry",
    "JobTimeoutError",
    "NotFoundError",
    "Queue",
    "QueueConfig",
    "QueueError",
    "QueueManager",
    "Settings",
    "StorageError",
    "ValidationError",
    "default_registry",
    "load_settings",
    "register",
]
