import csv
import io
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from queuectl.config import Settings
from queuectl.errors import (
    ConfigurationError,
    InvalidStateError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from queuectl.executor import JobExecutor, JobRegistry, default_registry
from queuectl.job import (
    FAILED,
    PENDING,
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
    Job,
    clamp_priority,
)
from queuectl.storage import create_storage
from queuectl.storage.base import QueueStorage
from queuectl.worker import JobProcessor
from queuectl.worker_manager import WorkerPool

logger = logging.getLogger(__name__)

DEFAULT_QUEUES = {
    "default": PRIORITY_NORMAL,
    "high": PRIORITY_HIGH,
    "low": PRIORITY_LOW,
    "critical": PRIORITY_CRITICAL,
}


@dataclass(frozen=True)
class QueueConfig:
    max_size: int = 10000
    priority: int = PRIORITY_NORMAL
    retention_days: float = 7
    enable_monitoring: bool = True

    def __post_init__(self):
        if self.max_size < 1:
            raise ConfigurationError("max_size must be >= 1")
        if self.retention_days < 0:
            raise ConfigurationError("retention_days must not be negative")
        object.__setattr__(self, "priority", clamp_priority(self.priority))

    @classmethod
    def from_value(cls, value: Union["QueueConfig", dict, None], **defaults) -> "QueueConfig":
        if isinstance(value, QueueConfig):
            return value
        merged = dict(defaults)
        merged.update(value or {})
        try:
            return cls(**merged)
        except TypeError as exc:
            raise ConfigurationError(f"Malformed queue config: {exc}") from exc


def _empty_counters() -> Dict[str, float]:
    return {
        "jobs_queued": 0,
        "jobs_processed": 0,
        "jobs_failed": 0,
        "avg_processing_time": 0.0,
    }


class Queue:
    """Named partition over the shared storage."""

    def __init__(self, name: str, config: QueueConfig, storage: QueueStorage):
        self.name = name
        self.config = config
        self.storage = storage
        self._lock = threading.Lock()
        self.stats = _empty_counters()

    def push(self, job: Job) -> None:
        job.queue_name = self.name
        self.storage.store(job)
        with self._lock:
            self.stats["jobs_queued"] += 1

    def pop(self, worker_id: Optional[str] = None) -> Optional[Job]:
        return self.storage.claim_next(self.name, worker_id)

    def peek(self) -> Optional[Job]:
        return self.storage.peek_next(self.name)

    def size(self) -> int:
        return self.storage.size(self.name)

    def is_empty(self) -> bool:
        return self.size() == 0

    def pending_count(self) -> int:
        return self.storage.pending_count(self.name)

    def clear(self) -> int:
        removed = self.storage.clear(self.name)
        with self._lock:
            self.stats = _empty_counters()
        return removed

    def update_job_stats(self, success: bool, processing_time: Optional[float] = None):
        with self._lock:
            if success:
                self.stats["jobs_processed"] += 1
            else:
                self.stats["jobs_failed"] += 1
            if processing_time is not None:
                n = self.stats["jobs_processed"] + self.stats["jobs_failed"]
                avg = self.stats["avg_processing_time"]
                self.stats["avg_processing_time"] = avg + (processing_time - avg) / n

    def get_stats(self) -> dict:
        with self._lock:
            counters = dict(self.stats)
        storage_stats = self.storage.stats(self.name)
        return {
            **counters,
            "name": self.name,
            "current_size": storage_stats["total_jobs"],
            "pending_count": storage_stats["pending_jobs"],
            "running_count": storage_stats["running_jobs"],
            "completed_count": storage_stats["completed_jobs"],
            "failed_count": storage_stats["failed_jobs"],
            "timeout_count": storage_stats["timeout_jobs"],
            "cancelled_count": storage_stats["cancelled_jobs"],
            "storage_avg_processing_time": storage_stats["avg_processing_time"],
            "config": asdict(self.config),
        }

    def cleanup(self) -> int:
        return self.storage.cleanup(self.config.retention_days, self.name)


class QueueManager:
    """Creates queues, routes submissions and owns the in-process workers."""

    def __init__(self, settings: Optional[Settings] = None, storage: Optional[QueueStorage] = None,
                 registry: Optional[JobRegistry] = None, clock=None,
                 create_default_queues: bool = True):
        self.settings = (settings or Settings()).validate()
        self.storage = storage or create_storage(self.settings, clock=clock)
        self.registry = registry or default_registry
        self.clock = clock or self.storage.clock
        self.queues: Dict[str, Queue] = {}
        self.worker_id = f"sync-{os.getpid()}"

        self._lock = threading.Lock()
        self.stats = {
            "jobs_processed": 0,
            "jobs_succeeded": 0,
            "jobs_failed": 0,
            "avg_processing_time": 0.0,
        }

        self.processor = JobProcessor(self.storage, self.registry, self.settings, self.clock)
        self.workers = WorkerPool(
            self.storage,
            registry=self.registry,
            settings=self.settings,
            listener=self._on_job_processed,
        )

        if create_default_queues:
            for name, priority in DEFAULT_QUEUES.items():
                self.create_queue(name, {"priority": priority})

    # ---------- queues ----------
    def create_queue(self, name: str, config: Union[QueueConfig, dict, None] = None) -> Queue:
        if not name or not name.strip():
            raise ConfigurationError("Queue name cannot be empty")
        cfg = QueueConfig.from_value(config, retention_days=self.settings.retention_days)
        queue = Queue(name, cfg, self.storage)
        self.queues[name] = queue
        logger.debug("Queue %s ready (%s)", name, cfg)
        return queue

    def get_queue(self, name: str = "default") -> Queue:
        queue = self.queues.get(name)
        if queue is None:
            raise NotFoundError(f"Queue '{name}' does not exist")
        return queue

    def queue_names(self) -> List[str]:
        return list(self.queues)

    # ---------- submission ----------
    def _build_job(self, executor: JobExecutor, payload, queue: Queue, scheduled_at: datetime,
                   dependencies: Optional[Iterable[str]] = None) -> Job:
        now = self.clock()
        priority = executor.priority if executor.priority is not None else queue.config.priority
        max_attempts = executor.max_retries
        if max_attempts is None:
            max_attempts = self.settings.default_max_attempts
        return Job(
            name=executor.name,
            data=dict(payload or {}),
            priority=priority,
            queue_name=queue.name,
            max_attempts=max(1, int(max_attempts)),
            created_at=now,
            scheduled_at=scheduled_at,
            can_run_concurrently=executor.can_run_concurrently,
            dependencies=list(executor.dependencies) + list(dependencies or []),
        )

    def add_job(self, executor: JobExecutor, payload: Optional[dict] = None,
                queue_name: str = "default", delay: float = 0,
                dependencies: Optional[Iterable[str]] = None) -> str:
        if delay < 0:
            raise ValidationError("delay must not be negative")
        queue = self.get_queue(queue_name)
        scheduled_at = self.clock() + timedelta(seconds=delay)
        job = self._build_job(executor, payload, queue, scheduled_at, dependencies)
        queue.push(job)
        logger.info("Enqueued job %s [%s] on %s (priority=%d, delay=%ss)",
                    job.id, job.name, queue.name, job.priority, delay)
        return job.id

    def schedule_job(self, executor: JobExecutor, payload: Optional[dict],
                     scheduled_at: Union[datetime, str], queue_name: str = "default") -> str:
        if isinstance(scheduled_at, str):
            try:
                scheduled_at = datetime.fromisoformat(scheduled_at.replace("Z", "+00:00"))
            except ValueError:
                raise ValidationError(f"Invalid schedule time: {scheduled_at}")
        if scheduled_at.tzinfo is not None:
            scheduled_at = scheduled_at.astimezone(timezone.utc).replace(tzinfo=None)
        queue = self.get_queue(queue_name)
        job = self._build_job(executor, payload, queue, scheduled_at)
        queue.push(job)
        logger.info("Scheduled job %s [%s] on %s for %s",
                    job.id, job.name, queue.name, scheduled_at.isoformat())
        return job.id

    def submit(self, job_name: str, payload: Optional[dict] = None,
               queue_name: str = "default", delay: float = 0) -> str:
        """Entry point for other subsystems: enqueue by registered job name."""
        return self.add_job(self.registry.resolve(job_name), payload, queue_name, delay)

    # ---------- workers ----------
    def start_worker(self, queue_names: Optional[Iterable[str]] = None,
                     worker_id: Optional[str] = None) -> str:
        names = list(queue_names or ["default"])
        for name in names:
            self.get_queue(name)
        return self.workers.start_worker(names, worker_id)

    def stop_worker(self, worker_id: str) -> None:
        self.workers.stop_worker(worker_id)

    def stop_all_workers(self) -> None:
        self.workers.stop_all()

    def get_worker_stats(self, worker_id: Optional[str] = None):
        return self.workers.get_worker_stats(worker_id)

    def _on_job_processed(self, job: Job, success: bool, duration: float):
        with self._lock:
            if success:
                self.stats["jobs_succeeded"] += 1
            else:
                self.stats["jobs_failed"] += 1
            self.stats["jobs_processed"] += 1
            n = self.stats["jobs_processed"]
            avg = self.stats["avg_processing_time"]
            self.stats["avg_processing_time"] = avg + (duration - avg) / n
        queue = self.queues.get(job.queue_name)
        if queue is not None:
            queue.update_job_stats(success, duration)

    # ---------- job control ----------
    def get_job_status(self, job_id: str) -> Job:
        job = self.storage.get(job_id)
        if job is None:
            raise NotFoundError(f"Job '{job_id}' does not exist")
        return job

    def cancel_job(self, job_id: str) -> Job:
        job = self.get_job_status(job_id)
        if job.status != PENDING:
            raise InvalidStateError(f"Job '{job_id}' is {job.status}; only pending jobs can be cancelled")
        job.mark_cancelled(self.clock())
        if not self.storage.update(job, expected_status=[PENDING]):
            raise InvalidStateError(f"Job '{job_id}' was claimed before it could be cancelled")
        logger.info("Cancelled job %s", job_id)
        return job

    def retry_job(self, job_id: str) -> Job:
        job = self.get_job_status(job_id)
        if not job.can_retry():
            raise InvalidStateError(
                f"Job '{job_id}' is {job.status} with {job.attempts}/{job.max_attempts} attempts; "
                "only failed jobs with attempts left can be retried"
            )
        delay = job.retry_delay(self.settings.backoff_base, self.settings.backoff_unit_seconds)
        job.schedule_retry(delay, self.clock())
        if not self.storage.update(job, expected_status=[FAILED]):
            raise InvalidStateError(f"Job '{job_id}' changed state before it could be retried")
        logger.info("Job %s scheduled for retry at %s", job_id, job.scheduled_at.isoformat())
        return job

    def get_failed_jobs(self, queue_name: Optional[str] = None, limit: int = 100) -> List[Job]:
        return self.storage.failed_jobs(queue_name, limit)

    def retry_failed_jobs(self, queue_name: Optional[str] = None, limit: int = 50) -> int:
        retried = 0
        for job in self.get_failed_jobs(queue_name, limit):
            if not job.can_retry():
                continue
            try:
                self.retry_job(job.id)
                retried += 1
            except InvalidStateError as exc:
                logger.info("Skipped retry of %s: %s", job.id, exc)
        return retried

    def process_jobs(self, queue_name: str = "default", limit: int = 10) -> int:
        """Drain up to ``limit`` jobs synchronously in the calling thread."""
        queue = self.get_queue(queue_name)
        processed = 0
        while processed < limit:
            try:
                job = queue.pop(self.worker_id)
            except StorageError as exc:
                logger.error("Cannot pop from %s: %s", queue_name, exc)
                break
            if job is None:
                break
            result = self.processor.process(job)
            self._on_job_processed(job, result.ok, result.duration)
            processed += 1
        return processed

    # ---------- stats ----------
    def get_pending_jobs_count(self, queue_name: Optional[str] = None) -> int:
        if queue_name:
            return self.get_queue(queue_name).pending_count()
        return self.storage.pending_count()

    def get_queue_stats(self, queue_name: Optional[str] = None):
        if queue_name:
            return self.get_queue(queue_name).get_stats()
        return {name: queue.get_stats() for name, queue in self.queues.items()}

    def get_system_stats(self) -> dict:
        with self._lock:
            stats = dict(self.stats)
        stats["workers_active"] = len(self.workers)
        stats["workers_healthy"] = self.workers.active_workers_count()
        stats["queues_active"] = len(self.queues)
        stats["storage_type"] = self.storage.storage_type
        stats["jobs"] = self.storage.stats()
        stats["workers"] = self.workers.get_overall_stats()
        stats["queues"] = self.get_queue_stats()
        return stats

    # ---------- housekeeping ----------
    def clear_queue(self, queue_name: str) -> int:
        removed = self.get_queue(queue_name).clear()
        logger.info("Cleared %d jobs from %s", removed, queue_name)
        return removed

    def clear_all_queues(self) -> int:
        return sum(queue.clear() for queue in self.queues.values())

    def cleanup(self) -> int:
        removed = sum(queue.cleanup() for queue in self.queues.values())
        removed += self.storage.cleanup(self.settings.retention_days)
        if removed:
            logger.info("Cleanup removed %d finished jobs", removed)
        return removed

    def stuck_jobs(self) -> List[Job]:
        return self.storage.stuck_jobs(self.settings.stuck_timeout_minutes)

    def reset_stuck_jobs(self) -> int:
        reset = self.storage.reset_stuck(self.settings.stuck_timeout_minutes)
        if reset:
            logger.warning("Reset %d stuck jobs back to pending", reset)
        return reset

    def shutdown(self, cleanup: bool = True) -> None:
        self.stop_all_workers()
        if cleanup:
            try:
                self.cleanup()
            except StorageError as exc:
                logger.error("Cleanup on shutdown failed: %s", exc)
        self.storage.close()

    # ---------- export ----------
    def export_data(self, fmt: str = "json"):
        data = {
            "system_stats": self.get_system_stats(),
            "workers": self.workers.worker_ids(),
            "exported_at": self.clock().isoformat(),
        }
        if fmt == "json":
            return json.dumps(data, indent=2, default=str)
        if fmt == "csv":
            return _to_csv(data)
        if fmt == "dict":
            return data
        raise ValueError(f"Unsupported export format: {fmt}")


def flatten(data, prefix: str = "") -> Dict[str, object]:
    """Flatten nested dicts into dotted keys."""
    out: Dict[str, object] = {}
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            out.update(flatten(value, name))
        elif isinstance(value, (list, tuple)):
            out[name] = json.dumps(list(value), default=str)
        else:
            out[name] = value
    return out


def _to_csv(data) -> str:
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["Metric", "Value"])
    for key, value in flatten(data).items():
        writer.writerow([key, value])
    return buf.getvalue()
