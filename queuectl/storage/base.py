from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from queuectl.job import FAILED, Job, utcnow

Clock = Callable[[], datetime]


class QueueStorage(ABC):
    """Durable home of job records.

    Every backend must make ``claim_next`` atomic: two concurrent callers
    never receive the same job. Failures surface as ``StorageError``;
    a missing id is not a failure (``get`` returns None).
    """

    storage_type = "abstract"
    # true when all sessions share one connection (in-memory SQLite)
    single_connection = False

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or utcnow

    def now(self) -> datetime:
        return self.clock()

    def stuck_cutoff(self, timeout_minutes: float) -> datetime:
        return self.now() - timedelta(minutes=timeout_minutes)

    def retention_cutoff(self, retention_days: float) -> datetime:
        return self.now() - timedelta(days=retention_days)

    @abstractmethod
    def store(self, job: Job) -> None:
        """Insert, or overwrite the record with the same id."""

    @abstractmethod
    def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    def update(self, job: Job, expected_status: Optional[Iterable[str]] = None) -> bool:
        """Persist the mutable fields of one job.

        With ``expected_status`` the write only happens while the stored
        status is one of those values. Returns whether a record was written.
        """

    @abstractmethod
    def claim_next(self, queue_name: str, worker_id: Optional[str] = None) -> Optional[Job]:
        ...

    @abstractmethod
    def peek_next(self, queue_name: str) -> Optional[Job]:
        ...

    @abstractmethod
    def size(self, queue_name: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def pending_count(self, queue_name: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def jobs_by_status(
        self, status: str, queue_name: Optional[str] = None, limit: int = 100
    ) -> List[Job]:
        ...

    @abstractmethod
    def stuck_jobs(self, timeout_minutes: float = 30) -> List[Job]:
        ...

    @abstractmethod
    def reset_stuck(self, timeout_minutes: float = 30) -> int:
        """Recover jobs left running past the timeout.

        Jobs with attempts left go back to pending; the rest end in
        ``timeout``. Returns how many jobs were recovered.
        """

    @abstractmethod
    def clear(self, queue_name: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def cleanup(self, retention_days: float = 7, queue_name: Optional[str] = None) -> int:
        ...

    @abstractmethod
    def stats(self, queue_name: Optional[str] = None) -> Dict[str, float]:
        ...

    def failed_jobs(self, queue_name: Optional[str] = None, limit: int = 100) -> List[Job]:
        return self.jobs_by_status(FAILED, queue_name, limit)

    def close(self) -> None:
        pass


def empty_stats() -> Dict[str, float]:
    return {
        "total_jobs": 0,
        "pending_jobs": 0,
        "running_jobs": 0,
        "completed_jobs": 0,
        "failed_jobs": 0,
        "cancelled_jobs": 0,
        "timeout_jobs": 0,
        "avg_processing_time": 0.0,
    }


def count_status(stats: Dict[str, float], status: str, count: int) -> None:
    """Fold a per-status count into a stats dict built by ``empty_stats``."""
    stats["total_jobs"] += count
    if status in ("pending", "retry"):
        stats["pending_jobs"] += count
    elif status in ("running", "completed", "failed", "cancelled", "timeout"):
        stats[f"{status}_jobs"] += count


def stuck_message(timeout_minutes: float) -> str:
    return f"Stuck in running for over {timeout_minutes:g} minutes with no attempts left"
