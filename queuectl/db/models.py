from sqlalchemy import Boolean, Column, Index, Integer, JSON, String, Text
from sqlalchemy.types import DateTime

from queuectl.job import PENDING, PRIORITY_NORMAL, utcnow
from .base import Base


class JobRecord(Base):
    __tablename__ = "job_queue"

    # surrogate key keeps insertion order for FIFO ties on created_at
    pk = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(64), unique=True, nullable=False)
    name = Column(String(255), nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    priority = Column(Integer, nullable=False, default=PRIORITY_NORMAL)

    # pending, running, completed, failed, retry, cancelled, timeout
    status = Column(String(32), nullable=False, default=PENDING)
    queue_name = Column(String(100), nullable=False, default="default")

    created_at = Column(DateTime, nullable=False, default=utcnow)
    # when the job becomes eligible to run (delay and retry backoff)
    scheduled_at = Column(DateTime, nullable=False, default=utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    worker_id = Column(String(255), nullable=True)
    can_run_concurrently = Column(Boolean, nullable=False, default=True)
    dependencies = Column(JSON, nullable=False, default=list)

    __table_args__ = (
        Index(
            "ix_job_queue_claim",
            "queue_name",
            "status",
            "scheduled_at",
            "priority",
            "created_at",
        ),
        Index("ix_job_queue_cleanup", "status", "completed_at"),
        Index("ix_job_queue_name_status", "name", "status"),
    )


class ConfigEntry(Base):
    __tablename__ = "queue_config"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
