import itertools
import logging
import threading
from copy import deepcopy
from typing import Dict, List, Optional, Tuple

from queuectl.job import (
    CLAIMABLE_STATUSES,
    COMPLETED,
    FINISHED_STATUSES,
    PENDING,
    RUNNING,
    Job,
)
from .base import QueueStorage, count_status, empty_stats, stuck_message

logger = logging.getLogger(__name__)


class InMemoryQueueStorage(QueueStorage):
    """Process-local backend guarded by a single lock."""

    storage_type = "memory"

    def __init__(self, clock=None):
        super().__init__(clock)
        self._lock = threading.Lock()
        self._jobs: Dict[str, Tuple[int, Job]] = {}
        self._seq = itertools.count()

    def store(self, job: Job) -> None:
        with self._lock:
            existing = self._jobs.get(job.id)
            seq = existing[0] if existing else next(self._seq)
            self._jobs[job.id] = (seq, job.copy())

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            entry = self._jobs.get(job_id)
            return entry[1].copy() if entry else None

    def update(self, job: Job, expected_status=None) -> bool:
        with self._lock:
            entry = self._jobs.get(job.id)
            if entry is None:
                logger.warning("Update for unknown job %s ignored", job.id)
                return False
            current = entry[1]
            if expected_status is not None and current.status not in tuple(expected_status):
                return False
            current.status = job.status
            current.scheduled_at = job.scheduled_at
            current.started_at = job.started_at
            current.completed_at = job.completed_at
            current.attempts = job.attempts
            current.result = deepcopy(job.result)
            current.error_message = job.error_message
            current.worker_id = job.worker_id
            return True

    # ---------- claim ----------
    def _eligible(self, job: Job, now) -> bool:
        if job.status not in CLAIMABLE_STATUSES:
            return False
        if job.scheduled_at > now or job.attempts >= job.max_attempts:
            return False
        for dep_id in job.dependencies:
            dep = self._jobs.get(dep_id)
            if dep is None or dep[1].status != COMPLETED:
                return False
        if not job.can_run_concurrently:
            for _, other in self._jobs.values():
                if other.name == job.name and other.status == RUNNING:
                    return False
        return True

    def _select(self, queue_name: str) -> Optional[Job]:
        now = self.now()
        candidates = [
            (seq, job)
            for seq, job in self._jobs.values()
            if job.queue_name == queue_name and self._eligible(job, now)
        ]
        if not candidates:
            return None
        candidates.sort(key=lambda e: (-e[1].priority, e[1].created_at, e[0]))
        return candidates[0][1]

    def claim_next(self, queue_name: str, worker_id: Optional[str] = None) -> Optional[Job]:
        with self._lock:
            job = self._select(queue_name)
            if job is None:
                return None
            job.mark_started(worker_id, self.now())
            return job.copy()

    def peek_next(self, queue_name: str) -> Optional[Job]:
        with self._lock:
            job = self._select(queue_name)
            return job.copy() if job else None

    # ---------- queries ----------
    def _scoped(self, queue_name: Optional[str]) -> List[Tuple[int, Job]]:
        return [
            e for e in self._jobs.values() if queue_name is None or e[1].queue_name == queue_name
        ]

    def size(self, queue_name: Optional[str] = None) -> int:
        with self._lock:
            return len(self._scoped(queue_name))

    def pending_count(self, queue_name: Optional[str] = None) -> int:
        with self._lock:
            return sum(1 for _, j in self._scoped(queue_name) if j.status in CLAIMABLE_STATUSES)

    def jobs_by_status(self, status, queue_name=None, limit=100) -> List[Job]:
        with self._lock:
            rows = [e for e in self._scoped(queue_name) if e[1].status == status]
            rows.sort(key=lambda e: (e[1].created_at, e[0]), reverse=True)
            return [j.copy() for _, j in rows[:limit]]

    def stuck_jobs(self, timeout_minutes: float = 30) -> List[Job]:
        cutoff = self.stuck_cutoff(timeout_minutes)
        with self._lock:
            rows = [
                j
                for _, j in self._jobs.values()
                if j.status == RUNNING and j.started_at is not None and j.started_at < cutoff
            ]
            rows.sort(key=lambda j: j.started_at)
            return [j.copy() for j in rows]

    def reset_stuck(self, timeout_minutes: float = 30) -> int:
        cutoff = self.stuck_cutoff(timeout_minutes)
        now = self.now()
        reset = 0
        with self._lock:
            for _, job in self._jobs.values():
                if job.status == RUNNING and job.started_at is not None and job.started_at < cutoff:
                    if job.attempts >= job.max_attempts:
                        job.mark_timeout(stuck_message(timeout_minutes), now)
                    else:
                        job.status = PENDING
                        job.started_at = None
                        job.worker_id = None
                    reset += 1
        return reset

    # ---------- deletion ----------
    def clear(self, queue_name: Optional[str] = None) -> int:
        with self._lock:
            doomed = [j.id for _, j in self._scoped(queue_name)]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    def cleanup(self, retention_days: float = 7, queue_name: Optional[str] = None) -> int:
        cutoff = self.retention_cutoff(retention_days)
        with self._lock:
            doomed = [
                j.id
                for _, j in self._scoped(queue_name)
                if j.status in FINISHED_STATUSES
                and j.completed_at is not None
                and j.completed_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            return len(doomed)

    def stats(self, queue_name: Optional[str] = None):
        out = empty_stats()
        durations = []
        with self._lock:
            for _, job in self._scoped(queue_name):
                count_status(out, job.status, 1)
                if job.status == COMPLETED and job.started_at and job.completed_at:
                    durations.append((job.completed_at - job.started_at).total_seconds())
        if durations:
            out["avg_processing_time"] = sum(durations) / len(durations)
        return out
