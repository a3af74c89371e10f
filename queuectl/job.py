import uuid
from copy import deepcopy
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Job states
PENDING = "pending"
RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"
RETRY = "retry"
CANCELLED = "cancelled"
TIMEOUT = "timeout"

ALL_STATUSES = (PENDING, RUNNING, COMPLETED, FAILED, RETRY, CANCELLED, TIMEOUT)
CLAIMABLE_STATUSES = (PENDING, RETRY)
FINISHED_STATUSES = (COMPLETED, FAILED, CANCELLED, TIMEOUT)

# Priorities (higher is served first)
PRIORITY_LOW = 1
PRIORITY_NORMAL = 5
PRIORITY_HIGH = 8
PRIORITY_CRITICAL = 10


def utcnow() -> datetime:
    # naive UTC; SQLite drops tzinfo so everything is stored naive
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def clamp_priority(value) -> int:
    return max(PRIORITY_LOW, min(PRIORITY_CRITICAL, int(value)))


@dataclass
class Job:
    """A unit of work as persisted by a storage backend."""

    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_job_id)
    priority: int = PRIORITY_NORMAL
    queue_name: str = "default"
    status: str = PENDING
    attempts: int = 0
    max_attempts: int = 3
    created_at: datetime = field(default_factory=utcnow)
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None
    can_run_concurrently: bool = True
    dependencies: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.priority = clamp_priority(self.priority)
        if self.scheduled_at is None:
            self.scheduled_at = self.created_at
        if self.data is None:
            self.data = {}
        if self.dependencies is None:
            self.dependencies = []

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        for key in ("created_at", "scheduled_at", "started_at", "completed_at"):
            if d[key] is not None:
                d[key] = d[key].isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Job":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in d.items() if k in known}
        for key in ("created_at", "scheduled_at", "started_at", "completed_at"):
            if isinstance(kwargs.get(key), str):
                kwargs[key] = datetime.fromisoformat(kwargs[key])
        return cls(**kwargs)

    def copy(self) -> "Job":
        return Job.from_dict(
            {
                **{f.name: getattr(self, f.name) for f in fields(self)},
                "data": deepcopy(self.data),
                "result": deepcopy(self.result),
                "dependencies": list(self.dependencies),
            }
        )

    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    def can_retry(self) -> bool:
        return self.status == FAILED and self.attempts < self.max_attempts

    def retry_delay(self, base: float = 2.0, unit: float = 60.0) -> timedelta:
        """Exponential backoff: ``unit * base ** attempts`` seconds."""
        return timedelta(seconds=unit * (base ** self.attempts))

    # ---------- transitions ----------
    def mark_started(self, worker_id: Optional[str], now: datetime):
        self.status = RUNNING
        self.started_at = now
        self.worker_id = worker_id
        self.attempts += 1

    def mark_completed(self, result: Any, now: datetime):
        self.status = COMPLETED
        self.completed_at = now
        self.result = result
        self.error_message = None

    def mark_failed(self, message: Optional[str], now: datetime):
        self.status = FAILED
        self.completed_at = now
        self.error_message = message

    def mark_rejected(self, message: Optional[str], now: datetime):
        """Fail for good: no attempts are left for ``retry_job`` to use."""
        self.attempts = max(self.attempts, self.max_attempts)
        self.mark_failed(message, now)

    def mark_timeout(self, message: Optional[str], now: datetime):
        self.status = TIMEOUT
        self.completed_at = now
        self.error_message = message

    def mark_cancelled(self, now: datetime):
        self.status = CANCELLED
        self.completed_at = now

    def schedule_retry(self, delay: timedelta, now: datetime):
        # backoff only ever pushes the job further out
        base = max(self.scheduled_at or now, now)
        self.status = RETRY
        self.scheduled_at = base + delay
        self.completed_at = None
