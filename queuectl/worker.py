# Background worker: claims jobs, runs their executors under a deadline,
# records the outcome, retries with backoff and keeps a heartbeat.
import json
import logging
import os
import threading
import time
import uuid
from typing import Callable, Iterable, Optional

import psutil

from queuectl.config import Settings
from queuectl.errors import NotFoundError, StorageError
from queuectl.executor import ExecutionResult, JobRegistry, default_registry, run_job
from queuectl.job import Job, utcnow
from queuectl.storage.base import QueueStorage

logger = logging.getLogger(__name__)

Listener = Callable[[Job, bool, float], None]


def new_worker_id() -> str:
    return f"worker_{uuid.uuid4().hex[:12]}"


def _jsonable(value):
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return json.loads(json.dumps(value, default=str))


class JobProcessor:
    """Runs one claimed job and writes its next state back to storage."""

    def __init__(self, storage: QueueStorage, registry: Optional[JobRegistry] = None,
                 settings: Optional[Settings] = None, clock=None):
        self.storage = storage
        self.registry = registry or default_registry
        self.settings = settings or Settings()
        self.clock = clock or storage.clock or utcnow

    def process(self, job: Job) -> ExecutionResult:
        try:
            executor = self.registry.resolve(job.name)
        except NotFoundError as exc:
            job.mark_rejected(str(exc), self.clock())
            logger.error("Job %s failed permanently: %s", job.id, exc)
            self._save(job)
            return ExecutionResult(error=exc)

        timeout = executor.max_execution_time
        if timeout is None:
            timeout = self.settings.default_max_execution_time
        result = run_job(executor, job.data, timeout)
        now = self.clock()

        if result.ok:
            job.mark_completed(_jsonable(result.value), now)
            logger.info("Job %s (%s) completed in %.2fs", job.id, job.name, result.duration)
        elif result.invalid:
            # bad payload never gets better on retry
            job.mark_rejected(str(result.error), now)
            logger.error("Job %s rejected: %s", job.id, result.error)
        else:
            self._handle_failure(job, executor, result, now)

        self._save(job)
        return result

    def _handle_failure(self, job: Job, executor, result: ExecutionResult, now):
        try:
            should_retry = executor.handle_failure(result.error, job.data, job.attempts)
        except Exception:
            logger.exception("Failure handler of %s raised; not retrying", job.name)
            should_retry = False

        message = str(result.error)
        if should_retry and job.attempts < job.max_attempts:
            delay = job.retry_delay(self.settings.backoff_base, self.settings.backoff_unit_seconds)
            job.error_message = message
            job.schedule_retry(delay, now)
            logger.warning(
                "Job %s retry %d/%d at %s: %s",
                job.id, job.attempts, job.max_attempts, job.scheduled_at.isoformat(), message,
            )
        elif result.timed_out:
            job.mark_timeout(message, now)
            logger.error("Job %s timed out permanently after %d attempts", job.id, job.attempts)
        else:
            job.mark_failed(message, now)
            logger.error("Job %s failed permanently after %d attempts: %s",
                         job.id, job.attempts, message)

    def _save(self, job: Job):
        try:
            self.storage.update(job)
        except StorageError as exc:
            # the job stays running in storage until stuck-job recovery resets it
            logger.error("Could not record outcome of job %s: %s", job.id, exc)


class QueueWorker:
    """Polls one or more queues in order and processes what it claims."""

    def __init__(self, worker_id: Optional[str], queue_names: Iterable[str],
                 storage: QueueStorage, registry: Optional[JobRegistry] = None,
                 settings: Optional[Settings] = None, listener: Optional[Listener] = None):
        self.worker_id = worker_id or new_worker_id()
        self.queue_names = list(queue_names) or ["default"]
        self.storage = storage
        self.settings = settings or Settings()
        self.processor = JobProcessor(storage, registry, self.settings)
        self.listener = listener

        self._stop = threading.Event()
        self.is_running = False
        self.current_job: Optional[Job] = None

        self.start_time = time.time()
        self.last_heartbeat: Optional[float] = None
        self.memory_usage = 0
        self.jobs_processed = 0
        self.jobs_succeeded = 0
        self.jobs_failed = 0
        self.avg_processing_time = 0.0

    @property
    def heartbeat_path(self) -> Optional[str]:
        if not self.settings.heartbeat_dir:
            return None
        return os.path.join(self.settings.heartbeat_dir, f"{self.worker_id}.hb")

    # ---------- lifecycle ----------
    def start(self):
        """Run the loop in the calling thread until :meth:`stop`."""
        self.is_running = True
        self._stop.clear()
        logger.info("Worker %s starting for queues: %s", self.worker_id, ", ".join(self.queue_names))
        try:
            while not self._stop.is_set():
                busy = self.run_once()
                if self.over_memory_limit():
                    logger.warning(
                        "Worker %s stopping: memory %.1f MB over limit of %.1f MB",
                        self.worker_id, self.memory_usage / 1024 / 1024,
                        self.settings.worker_max_memory_mb,
                    )
                    break
                if not busy:
                    self._stop.wait(self.settings.worker_sleep_time)
        finally:
            self.is_running = False
            self._remove_heartbeat()
            logger.info(
                "Worker %s stopped after %.0fs. processed=%d succeeded=%d failed=%d",
                self.worker_id, time.time() - self.start_time,
                self.jobs_processed, self.jobs_succeeded, self.jobs_failed,
            )

    def stop(self):
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def run_once(self) -> bool:
        """Claim and process at most one job. Returns False when idle."""
        self._heartbeat()
        job = self._claim()
        if job is None:
            return False

        self.current_job = job
        try:
            result = self.processor.process(job)
        except Exception:
            logger.exception("Worker %s crashed processing job %s", self.worker_id, job.id)
            result = ExecutionResult.failure("worker error")
        finally:
            self.current_job = None

        self._record(job, result)
        return True

    def _claim(self) -> Optional[Job]:
        for queue_name in self.queue_names:
            try:
                job = self.storage.claim_next(queue_name, self.worker_id)
            except StorageError as exc:
                logger.error("Worker %s could not poll %s: %s", self.worker_id, queue_name, exc)
                continue
            if job is not None:
                logger.info("Worker %s claimed job %s [%s] from %s",
                            self.worker_id, job.id, job.name, queue_name)
                return job
        return None

    def _record(self, job: Job, result: ExecutionResult):
        self.jobs_processed += 1
        if result.ok:
            self.jobs_succeeded += 1
        else:
            self.jobs_failed += 1
        # running mean over every attempt
        self.avg_processing_time += (result.duration - self.avg_processing_time) / self.jobs_processed

        if self.listener is not None:
            try:
                self.listener(job, result.ok, result.duration)
            except Exception:
                logger.exception("Worker listener failed for job %s", job.id)

    # ---------- heartbeat ----------
    def _heartbeat(self):
        now = time.time()
        if self.last_heartbeat is not None and now - self.last_heartbeat < self.settings.heartbeat_interval:
            return
        self.last_heartbeat = now
        self.memory_usage = psutil.Process().memory_info().rss

        path = self.heartbeat_path
        if path is None:
            return
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            tmp = path + ".tmp"
            with open(tmp, "w") as f:
                json.dump(
                    {
                        "worker_id": self.worker_id,
                        "timestamp": now,
                        "pid": os.getpid(),
                        "memory_usage": self.memory_usage,
                        "jobs_processed": self.jobs_processed,
                        "current_job": self.current_job.id if self.current_job else None,
                        "queues": self.queue_names,
                    },
                    f,
                )
            os.replace(tmp, path)
        except OSError as exc:
            # heartbeat should never crash the worker
            logger.warning("Worker %s heartbeat write failed: %s", self.worker_id, exc)

    def _remove_heartbeat(self):
        path = self.heartbeat_path
        if path and os.path.exists(path):
            try:
                os.remove(path)
            except OSError:
                logger.debug("Heartbeat file %s already gone", path)

    # ---------- stats ----------
    @property
    def success_rate(self) -> float:
        if self.jobs_processed == 0:
            return 100.0
        return self.jobs_succeeded / self.jobs_processed * 100

    def is_healthy(self) -> bool:
        if not self.is_running:
            return False
        if self.last_heartbeat is not None and \
                time.time() - self.last_heartbeat > self.settings.heartbeat_interval * 2 + self.settings.worker_sleep_time:
            return False
        return not self.over_memory_limit()

    def over_memory_limit(self) -> bool:
        return self.memory_usage > self.settings.worker_max_memory_mb * 1024 * 1024

    def get_stats(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "queues": list(self.queue_names),
            "is_running": self.is_running,
            "start_time": self.start_time,
            "runtime": time.time() - self.start_time,
            "jobs_processed": self.jobs_processed,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_failed": self.jobs_failed,
            "success_rate": self.success_rate,
            "avg_processing_time": self.avg_processing_time,
            "memory_usage": self.memory_usage,
            "last_heartbeat": self.last_heartbeat,
            "current_job": self.current_job.id if self.current_job else None,
        }
