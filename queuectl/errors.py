"""Error taxonomy shared by storage, manager, workers and the CLI."""


class QueueError(Exception):
    """Base class for every error raised by queuectl."""


class ValidationError(QueueError):
    """Job payload rejected by its executor. Never retried."""


class ExecutionError(QueueError):
    """Executor raised while running a job. Subject to the retry policy."""


class JobTimeoutError(ExecutionError):
    """Execution ran past the executor's max_execution_time."""


class StorageError(QueueError):
    """Persistence layer unavailable or an operation on it failed."""


class NotFoundError(QueueError):
    """Unknown queue, job id or job name."""


class ConfigurationError(QueueError):
    """Invalid settings or unsupported backend, raised at startup."""


class InvalidStateError(QueueError):
    """Requested transition is not allowed from the job's current status."""
