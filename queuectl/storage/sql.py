import logging
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlalchemy.pool import StaticPool

from queuectl.db.base import init_db, make_engine, make_session_factory
from queuectl.db.models import JobRecord
from queuectl.errors import StorageError
from queuectl.job import (
    CLAIMABLE_STATUSES,
    COMPLETED,
    FINISHED_STATUSES,
    PENDING,
    RUNNING,
    TIMEOUT,
    Job,
)
from .base import QueueStorage, count_status, empty_stats, stuck_message

logger = logging.getLogger(__name__)

# dialects that understand SELECT ... FOR UPDATE SKIP LOCKED
SKIP_LOCKED_DIALECTS = ("postgresql", "mysql", "oracle")


class SQLAlchemyQueueStorage(QueueStorage):
    """Relational backend over a single ``job_queue`` table.

    ``claim_next`` picks candidates in priority order (row-locked with
    SKIP LOCKED where the database supports it) and then flips one of them
    to running with a compare-and-swap UPDATE guarded on status. A caller
    that loses the race on a candidate moves on to the next one, so the
    same job is never handed to two workers.
    """

    storage_type = "database"

    def __init__(self, engine=None, url: Optional[str] = None, clock=None,
                 claim_batch_size: int = 20, create_tables: bool = True):
        super().__init__(clock)
        if engine is None:
            try:
                engine = make_engine(url) if url else make_engine()
            except (SQLAlchemyError, ImportError) as exc:
                raise StorageError(f"Cannot create engine for {url!r}: {exc}") from exc
        self.engine = engine
        self.session_factory = make_session_factory(engine)
        self.claim_batch_size = claim_batch_size
        self._skip_locked = engine.dialect.name in SKIP_LOCKED_DIALECTS
        self.single_connection = isinstance(engine.pool, StaticPool)
        if create_tables:
            try:
                init_db(engine)
            except SQLAlchemyError as exc:
                raise StorageError(f"Failed to create job tables: {exc}") from exc

    @contextmanager
    def _session(self, what: str):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Storage failure during %s: %s", what, exc)
            raise StorageError(f"{what} failed: {exc}") from exc
        finally:
            session.close()

    # ---------- row <-> job ----------
    @staticmethod
    def _to_job(row: JobRecord) -> Job:
        return Job(
            id=row.id,
            name=row.name,
            data=dict(row.data or {}),
            priority=row.priority,
            queue_name=row.queue_name,
            status=row.status,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            created_at=row.created_at,
            scheduled_at=row.scheduled_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
            result=row.result,
            error_message=row.error_message,
            worker_id=row.worker_id,
            can_run_concurrently=bool(row.can_run_concurrently),
            dependencies=list(row.dependencies or []),
        )

    @staticmethod
    def _mutable_values(job: Job) -> dict:
        return {
            "status": job.status,
            "scheduled_at": job.scheduled_at,
            "started_at": job.started_at,
            "completed_at": job.completed_at,
            "attempts": job.attempts,
            "result": job.result,
            "error_message": job.error_message,
            "worker_id": job.worker_id,
        }

    def _full_values(self, job: Job) -> dict:
        values = self._mutable_values(job)
        values.update(
            name=job.name,
            data=job.data,
            priority=job.priority,
            queue_name=job.queue_name,
            created_at=job.created_at,
            max_attempts=job.max_attempts,
            can_run_concurrently=job.can_run_concurrently,
            dependencies=list(job.dependencies),
        )
        return values

    # ---------- CRUD ----------
    def store(self, job: Job) -> None:
        values = self._full_values(job)
        for _ in range(2):
            try:
                with self._session("store") as s:
                    row = s.execute(
                        select(JobRecord).where(JobRecord.id == job.id)
                    ).scalar_one_or_none()
                    if row is None:
                        s.add(JobRecord(id=job.id, **values))
                    else:
                        for key, value in values.items():
                            setattr(row, key, value)
                return
            except StorageError as exc:
                # another writer inserted the same id first; retry as an update
                if not isinstance(exc.__cause__, IntegrityError):
                    raise
        raise StorageError(f"store failed: could not upsert job {job.id}")

    def get(self, job_id: str) -> Optional[Job]:
        with self._session("get") as s:
            row = s.execute(select(JobRecord).where(JobRecord.id == job_id)).scalar_one_or_none()
            return self._to_job(row) if row else None

    def update(self, job: Job, expected_status=None) -> bool:
        stmt = update(JobRecord).where(JobRecord.id == job.id)
        if expected_status is not None:
            stmt = stmt.where(JobRecord.status.in_(tuple(expected_status)))
        with self._session("update") as s:
            res = s.execute(
                stmt.values(**self._mutable_values(job)).execution_options(synchronize_session=False)
            )
            if res.rowcount == 0 and expected_status is None:
                logger.warning("Update for unknown job %s ignored", job.id)
            return res.rowcount == 1

    # ---------- claim ----------
    def _candidates(self, s, queue_name: str, now):
        """Yield claimable rows in claim order, one batch at a time.

        Rows blocked by a running non-concurrent job are filtered in SQL;
        dependency gating happens in ``claim_next``, so batches keep coming
        until the queue runs out rather than stopping at the first window.
        """
        running = aliased(JobRecord)
        base = (
            select(JobRecord)
            .where(
                JobRecord.queue_name == queue_name,
                JobRecord.status.in_(CLAIMABLE_STATUSES),
                JobRecord.scheduled_at <= now,
                JobRecord.attempts < JobRecord.max_attempts,
                or_(
                    JobRecord.can_run_concurrently.is_(True),
                    ~select(running.pk)
                    .where(running.name == JobRecord.name, running.status == RUNNING)
                    .exists(),
                ),
            )
            .order_by(
                JobRecord.priority.desc(),
                JobRecord.created_at.asc(),
                JobRecord.pk.asc(),
            )
            .limit(self.claim_batch_size)
        )
        last = None
        while True:
            stmt = base
            if last is not None:
                # keyset: everything strictly after the last row seen
                stmt = stmt.where(
                    or_(
                        JobRecord.priority < last.priority,
                        and_(JobRecord.priority == last.priority,
                             JobRecord.created_at > last.created_at),
                        and_(JobRecord.priority == last.priority,
                             JobRecord.created_at == last.created_at,
                             JobRecord.pk > last.pk),
                    )
                )
            if self._skip_locked:
                stmt = stmt.with_for_update(skip_locked=True)
            rows = list(s.execute(stmt).scalars())
            yield from rows
            if len(rows) < self.claim_batch_size:
                return
            last = rows[-1]

    @staticmethod
    def _dependencies_met(s, dependencies) -> bool:
        deps = set(dependencies or [])
        if not deps:
            return True
        done = s.execute(
            select(func.count())
            .select_from(JobRecord)
            .where(JobRecord.id.in_(deps), JobRecord.status == COMPLETED)
        ).scalar_one()
        return done == len(deps)

    def claim_next(self, queue_name: str, worker_id: Optional[str] = None) -> Optional[Job]:
        now = self.now()
        with self._session("claim_next") as s:
            for row in self._candidates(s, queue_name, now):
                if not self._dependencies_met(s, row.dependencies):
                    continue

                cas = update(JobRecord).where(
                    JobRecord.pk == row.pk,
                    JobRecord.status.in_(CLAIMABLE_STATUSES),
                    JobRecord.attempts < JobRecord.max_attempts,
                )
                if not row.can_run_concurrently:
                    running = aliased(JobRecord)
                    cas = cas.where(
                        ~select(running.pk)
                        .where(running.name == row.name, running.status == RUNNING)
                        .exists()
                    )
                res = s.execute(
                    cas.values(
                        status=RUNNING,
                        started_at=now,
                        worker_id=worker_id,
                        attempts=JobRecord.attempts + 1,
                    ).execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    continue

                s.refresh(row)
                return self._to_job(row)
        return None

    def peek_next(self, queue_name: str) -> Optional[Job]:
        now = self.now()
        with self._session("peek_next") as s:
            for row in self._candidates(s, queue_name, now):
                if self._dependencies_met(s, row.dependencies):
                    return self._to_job(row)
        return None

    # ---------- queries ----------
    def size(self, queue_name: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(JobRecord)
        if queue_name:
            stmt = stmt.where(JobRecord.queue_name == queue_name)
        with self._session("size") as s:
            return int(s.execute(stmt).scalar_one())

    def pending_count(self, queue_name: Optional[str] = None) -> int:
        stmt = (
            select(func.count())
            .select_from(JobRecord)
            .where(JobRecord.status.in_(CLAIMABLE_STATUSES))
        )
        if queue_name:
            stmt = stmt.where(JobRecord.queue_name == queue_name)
        with self._session("pending_count") as s:
            return int(s.execute(stmt).scalar_one())

    def jobs_by_status(self, status, queue_name=None, limit=100) -> List[Job]:
        stmt = select(JobRecord).where(JobRecord.status == status)
        if queue_name:
            stmt = stmt.where(JobRecord.queue_name == queue_name)
        stmt = stmt.order_by(JobRecord.created_at.desc(), JobRecord.pk.desc()).limit(limit)
        with self._session("jobs_by_status") as s:
            return [self._to_job(r) for r in s.execute(stmt).scalars()]

    def stuck_jobs(self, timeout_minutes: float = 30) -> List[Job]:
        cutoff = self.stuck_cutoff(timeout_minutes)
        stmt = (
            select(JobRecord)
            .where(JobRecord.status == RUNNING, JobRecord.started_at < cutoff)
            .order_by(JobRecord.started_at.asc())
        )
        with self._session("stuck_jobs") as s:
            return [self._to_job(r) for r in s.execute(stmt).scalars()]

    def reset_stuck(self, timeout_minutes: float = 30) -> int:
        cutoff = self.stuck_cutoff(timeout_minutes)
        stuck = (JobRecord.status == RUNNING, JobRecord.started_at < cutoff)
        with self._session("reset_stuck") as s:
            expired = s.execute(
                update(JobRecord)
                .where(*stuck, JobRecord.attempts >= JobRecord.max_attempts)
                .values(
                    status=TIMEOUT,
                    completed_at=self.now(),
                    error_message=stuck_message(timeout_minutes),
                )
                .execution_options(synchronize_session=False)
            ).rowcount
            requeued = s.execute(
                update(JobRecord)
                .where(*stuck)
                .values(status=PENDING, started_at=None, worker_id=None)
                .execution_options(synchronize_session=False)
            ).rowcount
        if expired:
            logger.warning("%d stuck job(s) had no attempts left and timed out", expired)
        return expired + requeued

    # ---------- deletion ----------
    def clear(self, queue_name: Optional[str] = None) -> int:
        stmt = delete(JobRecord)
        if queue_name:
            stmt = stmt.where(JobRecord.queue_name == queue_name)
        with self._session("clear") as s:
            return s.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def cleanup(self, retention_days: float = 7, queue_name: Optional[str] = None) -> int:
        cutoff = self.retention_cutoff(retention_days)
        stmt = delete(JobRecord).where(
            JobRecord.status.in_(FINISHED_STATUSES),
            JobRecord.completed_at < cutoff,
        )
        if queue_name:
            stmt = stmt.where(JobRecord.queue_name == queue_name)
        with self._session("cleanup") as s:
            return s.execute(stmt.execution_options(synchronize_session=False)).rowcount

    def stats(self, queue_name: Optional[str] = None):
        out = empty_stats()
        counts = select(JobRecord.status, func.count()).group_by(JobRecord.status)
        # average over the most recent completions only
        times = (
            select(JobRecord.started_at, JobRecord.completed_at)
            .where(
                JobRecord.status == COMPLETED,
                JobRecord.started_at.is_not(None),
                JobRecord.completed_at.is_not(None),
            )
            .order_by(JobRecord.completed_at.desc())
            .limit(1000)
        )
        if queue_name:
            counts = counts.where(JobRecord.queue_name == queue_name)
            times = times.where(JobRecord.queue_name == queue_name)
        with self._session("stats") as s:
            for status, count in s.execute(counts):
                count_status(out, status, int(count))
            durations = [
                (done - started).total_seconds() for started, done in s.execute(times)
            ]
        if durations:
            out["avg_processing_time"] = sum(durations) / len(durations)
        return out

    def close(self) -> None:
        self.engine.dispose()
