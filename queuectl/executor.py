import importlib
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from queuectl.errors import (
    ConfigurationError,
    ExecutionError,
    JobTimeoutError,
    NotFoundError,
    QueueError,
    ValidationError,
)
from queuectl.job import clamp_priority

logger = logging.getLogger(__name__)


class JobExecutor:
    """Logic behind one job name.

    Subclasses set ``name`` and implement :meth:`execute`. Returning normally
    completes the job; raising (or returning a failed
    :class:`ExecutionResult`) fails it and consults :meth:`handle_failure`.
    """

    name: str = ""
    description: str = "No description provided"
    # None falls back to the default_max_* settings
    max_execution_time: Optional[float] = None
    max_retries: Optional[int] = None
    priority: Optional[int] = None
    can_run_concurrently: bool = True
    dependencies: List[str] = []

    def __init__(self, **config):
        if "max_execution_time" in config:
            self.max_execution_time = config["max_execution_time"]
        if "max_retries" in config:
            self.max_retries = config["max_retries"]
        if "priority" in config:
            self.priority = config["priority"]
        if "can_run_concurrently" in config:
            self.can_run_concurrently = config["can_run_concurrently"]
        if "dependencies" in config:
            self.dependencies = list(config["dependencies"])
        if self.priority is not None:
            self.priority = clamp_priority(self.priority)
        if not self.name:
            self.name = type(self).__name__

    def execute(self, data: Dict[str, Any]) -> Any:
        raise NotImplementedError

    def validate(self, data: Dict[str, Any]) -> bool:
        return isinstance(data, dict)

    def handle_failure(self, error: QueueError, data: Dict[str, Any], attempt: int) -> bool:
        """Return True to retry. Default: retry while attempts remain."""
        logger.warning("Job %s failed on attempt %d: %s", self.name, attempt, error)
        if self.max_retries is None:
            # the job's own max_attempts still caps it
            return True
        return attempt < self.max_retries


@dataclass
class ExecutionResult:
    value: Any = None
    error: Optional[QueueError] = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, JobTimeoutError)

    @property
    def invalid(self) -> bool:
        return isinstance(self.error, ValidationError)

    @classmethod
    def success(cls, value=None) -> "ExecutionResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Union[QueueError, str]) -> "ExecutionResult":
        if isinstance(error, str):
            error = ExecutionError(error)
        return cls(error=error)


def run_job(executor: JobExecutor, data: Dict[str, Any],
            timeout: Optional[float] = None) -> ExecutionResult:
    """Validate then execute ``data`` on a supervised thread.

    The thread is abandoned if it overruns ``timeout`` (defaults to the
    executor's ``max_execution_time``, no deadline when both are None);
    the caller gets a timeout result and is free to carry on.
    """
    try:
        valid = executor.validate(data)
    except Exception as exc:
        logger.warning("Validator for %s raised: %s", executor.name, exc)
        valid = False
    if not valid:
        return ExecutionResult.failure(ValidationError(f"Invalid job data for '{executor.name}'"))

    if timeout is None:
        timeout = executor.max_execution_time
    outcome: Dict[str, Any] = {}

    def target():
        try:
            outcome["value"] = executor.execute(data)
        except Exception as exc:
            outcome["error"] = exc

    thread = threading.Thread(target=target, name=f"job-{executor.name}", daemon=True)
    started = time.monotonic()
    thread.start()
    thread.join(timeout if timeout and timeout > 0 else None)
    duration = time.monotonic() - started

    if thread.is_alive():
        return ExecutionResult(
            error=JobTimeoutError(f"Job '{executor.name}' timed out after {timeout}s"),
            duration=duration,
        )

    if "error" in outcome:
        exc = outcome["error"]
        if isinstance(exc, ExecutionError):
            error = exc
        else:
            error = ExecutionError(f"{type(exc).__name__}: {exc}")
            error.__cause__ = exc
        return ExecutionResult(error=error, duration=duration)

    value = outcome.get("value")
    if isinstance(value, ExecutionResult):
        value.duration = duration
        return value
    return ExecutionResult(value=value, duration=duration)


Factory = Union[JobExecutor, Callable[[], JobExecutor]]


class JobRegistry:
    """Maps job names to executor classes, factories or instances."""

    def __init__(self):
        self._factories: Dict[str, Factory] = {}

    def register(self, target: Optional[Factory] = None, name: Optional[str] = None):
        def _add(obj):
            key = name or getattr(obj, "name", None)
            if not key:
                raise ConfigurationError(f"Executor {obj!r} has no name")
            existing = self._factories.get(key)
            if existing is not None and existing is not obj:
                raise ConfigurationError(f"Executor name '{key}' is already registered")
            self._factories[key] = obj
            return obj

        if target is None:
            return _add
        return _add(target)

    def unregister(self, name: str) -> None:
        self._factories.pop(name, None)

    def resolve(self, name: str) -> JobExecutor:
        factory = self._factories.get(name)
        if factory is None:
            raise NotFoundError(f"No executor registered for job '{name}'")
        if isinstance(factory, JobExecutor):
            return factory
        return factory()

    def names(self) -> List[str]:
        return sorted(self._factories)

    def __contains__(self, name) -> bool:
        return name in self._factories

    def import_modules(self, modules: Iterable[str]) -> None:
        """Import modules whose import registers executors."""
        for module in modules:
            try:
                importlib.import_module(module)
            except ImportError as exc:
                raise ConfigurationError(f"Cannot import jobs module '{module}': {exc}") from exc


default_registry = JobRegistry()
register = default_registry.register
