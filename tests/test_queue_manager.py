import json
import time
from datetime import timedelta, timezone

import pytest

from conftest import SendEmailJob, wait_for
from queuectl.config import with_overrides
from queuectl.db.base import make_engine
from queuectl.errors import (
    ConfigurationError,
    ExecutionError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from queuectl.executor import JobExecutor
from queuectl.job import CANCELLED, COMPLETED, FAILED, PENDING, RETRY, RUNNING, TIMEOUT, Job
from queuectl.queue_manager import QueueConfig, QueueManager, flatten
from queuectl.storage import SQLAlchemyQueueStorage


def test_default_queues(manager):
    assert set(manager.queue_names()) == {"default", "high", "low", "critical"}
    assert manager.get_queue("high").config.priority == 8
    assert manager.get_queue("critical").config.priority == 10
    assert manager.get_queue("low").config.max_size == 10000


def test_unknown_queue_raises(manager):
    with pytest.raises(NotFoundError):
        manager.get_queue("nope")
    with pytest.raises(NotFoundError):
        manager.submit("send_email", {"to": "a@b.com"}, queue_name="nope")


def test_create_queue_with_dict_config(manager):
    queue = manager.create_queue("reports", {"max_size": 50, "priority": 3})
    assert queue.config == QueueConfig(max_size=50, priority=3, retention_days=7)
    with pytest.raises(ConfigurationError):
        manager.create_queue("bad", {"max_size": 0})
    with pytest.raises(ConfigurationError):
        manager.create_queue("bad", {"colour": "blue"})


def test_end_to_end_success(manager, clock):
    job_id = manager.submit("send_email", {"to": "a@b.com"}, queue_name="default")

    claimed = manager.get_queue("default").pop("w1")
    assert claimed.id == job_id
    assert claimed.attempts == 1
    assert claimed.status == RUNNING

    result = manager.processor.process(claimed)
    assert result.ok

    job = manager.get_job_status(job_id)
    assert job.status == COMPLETED
    assert job.result == {"sent_to": "a@b.com"}
    assert job.completed_at == clock()
    assert manager.get_queue_stats("default")["pending_count"] == 0


def test_end_to_end_failure_exhausts_attempts(manager, clock):
    job_id = manager.submit("always_fails")
    job = manager.get_job_status(job_id)
    assert job.max_attempts == 2

    assert manager.process_jobs("default") == 1
    job = manager.get_job_status(job_id)
    assert job.status == RETRY
    assert job.attempts == 1
    assert job.error_message == "smtp down"
    # 1s unit, base 2, after one attempt
    assert job.scheduled_at == clock() + timedelta(seconds=2)

    assert manager.process_jobs("default") == 0
    clock.advance(seconds=2)
    assert manager.process_jobs("default") == 1

    job = manager.get_job_status(job_id)
    assert job.status == FAILED
    assert job.attempts == 2
    assert job.completed_at is not None

    clock.advance(hours=1)
    assert manager.process_jobs("default") == 0
    with pytest.raises(InvalidStateError):
        manager.retry_job(job_id)

    stats = manager.get_system_stats()
    assert stats["jobs_processed"] == 2
    assert stats["jobs_failed"] == 2


def test_backoff_never_moves_schedule_earlier(manager, clock):
    class FlakyJob(JobExecutor):
        name = "flaky"
        max_retries = 5

        def execute(self, data):
            raise ExecutionError("try again")

    manager.registry.register(FlakyJob)
    job_id = manager.submit("flaky")

    seen = [manager.get_job_status(job_id).scheduled_at]
    for _ in range(3):
        assert manager.process_jobs() == 1
        job = manager.get_job_status(job_id)
        assert job.status == RETRY
        seen.append(job.scheduled_at)
        clock.now = job.scheduled_at

    gaps = [(b - a).total_seconds() for a, b in zip(seen, seen[1:])]
    assert gaps == [2, 4, 8]


def test_schedule_retry_keeps_future_schedule():
    job = Job(name="x")
    later = job.created_at + timedelta(hours=1)
    job.scheduled_at = later
    job.attempts = 1
    job.schedule_retry(job.retry_delay(2, 1), job.created_at)
    assert job.scheduled_at == later + timedelta(seconds=2)
    assert job.status == RETRY
    assert job.completed_at is None


def test_invalid_payload_fails_without_retry(manager):
    job_id = manager.submit("send_email", {"subject": "hi"})
    manager.process_jobs()

    job = manager.get_job_status(job_id)
    assert job.status == FAILED
    assert job.attempts == job.max_attempts
    assert not job.can_retry()
    assert "Invalid job data" in job.error_message

    assert manager.retry_failed_jobs() == 0
    with pytest.raises(InvalidStateError):
        manager.retry_job(job_id)
    assert manager.get_job_status(job_id).status == FAILED


def test_unknown_job_name_is_terminal(manager, clock):
    orphan = Job(name="ghost", created_at=clock())
    manager.get_queue("default").push(orphan)
    manager.process_jobs()

    job = manager.get_job_status(orphan.id)
    assert job.status == FAILED
    assert "ghost" in job.error_message
    assert not job.can_retry()
    assert manager.retry_failed_jobs() == 0


def test_timeout_without_retry_ends_in_timeout(manager):
    job_id = manager.submit("slow", {"sleep": 0.5})
    manager.process_jobs()

    job = manager.get_job_status(job_id)
    assert job.status == TIMEOUT
    assert "timed out" in job.error_message


def test_settings_fill_in_executor_limits(settings, memory_storage, registry, clock):
    class Unbounded(JobExecutor):
        name = "unbounded"

        def execute(self, data):
            time.sleep(0.5)

    registry.register(Unbounded)
    tuned = with_overrides(settings, default_max_attempts=5, default_max_execution_time=0.05)
    mgr = QueueManager(tuned, storage=memory_storage, registry=registry, clock=clock)

    job_id = mgr.submit("unbounded")
    assert mgr.get_job_status(job_id).max_attempts == 5
    assert mgr.get_job_status(mgr.submit("always_fails")).max_attempts == 2

    mgr.process_jobs()
    job = mgr.get_job_status(job_id)
    assert job.status == RETRY
    assert "timed out after 0.05s" in job.error_message


def test_submit_unknown_job_raises(manager):
    with pytest.raises(NotFoundError):
        manager.submit("does_not_exist")


def test_priority_defaults_to_queue(manager):
    default_id = manager.submit("send_email", {"to": "x"})
    high_id = manager.submit("send_email", {"to": "x"}, queue_name="high")
    explicit_id = manager.add_job(SendEmailJob(priority=3), {"to": "x"}, queue_name="high")

    assert manager.get_job_status(default_id).priority == 5
    assert manager.get_job_status(high_id).priority == 8
    assert manager.get_job_status(explicit_id).priority == 3


def test_add_job_delay(manager, clock):
    job_id = manager.add_job(SendEmailJob(), {"to": "x"}, delay=30)
    assert manager.get_job_status(job_id).scheduled_at == clock() + timedelta(seconds=30)
    assert manager.process_jobs() == 0
    clock.advance(seconds=30)
    assert manager.process_jobs() == 1

    with pytest.raises(ValidationError):
        manager.add_job(SendEmailJob(), {"to": "x"}, delay=-1)


def test_schedule_job_accepts_aware_iso_string(manager, clock):
    when = (clock() + timedelta(minutes=5)).replace(tzinfo=timezone.utc).isoformat()
    job_id = manager.schedule_job(SendEmailJob(), {"to": "x"}, when)
    assert manager.get_job_status(job_id).scheduled_at == clock() + timedelta(minutes=5)

    with pytest.raises(ValidationError):
        manager.schedule_job(SendEmailJob(), {"to": "x"}, "tomorrow-ish")


def test_add_job_with_dependencies(manager):
    first = manager.submit("send_email", {"to": "x"})
    second = manager.add_job(SendEmailJob(), {"to": "y"}, dependencies=[first])
    assert manager.get_job_status(second).dependencies == [first]

    assert manager.process_jobs(limit=10) == 2
    assert manager.get_job_status(second).status == COMPLETED


def test_cancel_rules(manager):
    job_id = manager.submit("send_email", {"to": "x"})
    cancelled = manager.cancel_job(job_id)
    assert cancelled.status == CANCELLED
    assert manager.get_job_status(job_id).completed_at is not None

    with pytest.raises(InvalidStateError):
        manager.cancel_job(job_id)

    running_id = manager.submit("send_email", {"to": "x"})
    manager.get_queue("default").pop()
    with pytest.raises(InvalidStateError):
        manager.cancel_job(running_id)

    with pytest.raises(NotFoundError):
        manager.cancel_job("job_missing")


def test_retry_failed_job(manager, clock):
    job_id = manager.submit("no_retry")
    manager.process_jobs()
    job = manager.get_job_status(job_id)
    assert job.status == FAILED
    assert job.can_retry()

    retried = manager.retry_job(job_id)
    assert retried.status == RETRY
    assert retried.completed_at is None
    assert retried.scheduled_at >= clock() + timedelta(seconds=2)
    assert manager.get_job_status(job_id).status == RETRY

    with pytest.raises(InvalidStateError):
        manager.retry_job(job_id)


def test_retry_failed_jobs_bulk(manager):
    ids = [manager.submit("no_retry") for _ in range(3)]
    manager.process_jobs(limit=10)
    assert len(manager.get_failed_jobs()) == 3

    assert manager.retry_failed_jobs() == 3
    assert all(manager.get_job_status(i).status == RETRY for i in ids)
    assert manager.get_failed_jobs() == []


def test_queue_stats_and_counters(manager):
    manager.submit("send_email", {"to": "x"})
    manager.submit("send_email", {"to": "y"})
    manager.submit("always_fails")
    manager.process_jobs(limit=10)

    stats = manager.get_queue_stats("default")
    assert stats["jobs_queued"] == 3
    assert stats["jobs_processed"] == 2
    assert stats["jobs_failed"] == 1
    assert stats["current_size"] == 3
    assert stats["completed_count"] == 2
    assert stats["pending_count"] == 1
    assert manager.get_pending_jobs_count() == 1
    assert manager.get_pending_jobs_count("high") == 0

    system = manager.get_system_stats()
    assert system["jobs_succeeded"] == 2
    assert system["storage_type"] == manager.storage.storage_type
    assert system["jobs"]["total_jobs"] == 3
    assert set(system["queues"]) == set(manager.queue_names())


def test_clear_queue_resets_counters(manager):
    manager.submit("send_email", {"to": "x"})
    manager.submit("send_email", {"to": "x"}, queue_name="low")

    assert manager.clear_queue("default") == 1
    assert manager.get_queue("default").is_empty()
    assert manager.get_queue_stats("default")["jobs_queued"] == 0
    assert manager.clear_all_queues() == 1


def test_cleanup(manager, clock):
    job_id = manager.submit("send_email", {"to": "x"})
    manager.process_jobs()
    assert manager.cleanup() == 0

    clock.advance(days=8)
    assert manager.cleanup() == 1
    with pytest.raises(NotFoundError):
        manager.get_job_status(job_id)


def test_reset_stuck_jobs(manager, clock):
    job_id = manager.submit("send_email", {"to": "x"})
    manager.get_queue("default").pop("crashed-worker")
    clock.advance(minutes=45)

    assert [j.id for j in manager.stuck_jobs()] == [job_id]
    assert manager.reset_stuck_jobs() == 1
    assert manager.get_job_status(job_id).status == PENDING


def test_stuck_job_on_last_attempt_times_out(manager, clock):
    job_id = manager.add_job(SendEmailJob(max_retries=1), {"to": "x"})
    manager.get_queue("default").pop("crashed-worker")
    clock.advance(minutes=45)

    assert manager.reset_stuck_jobs() == 1
    job = manager.get_job_status(job_id)
    assert job.status == TIMEOUT
    assert job.completed_at == clock()
    assert "no attempts left" in job.error_message
    assert manager.get_pending_jobs_count() == 0

    clock.advance(days=8)
    assert manager.cleanup() == 1


def test_export_data(manager):
    manager.submit("send_email", {"to": "x"})

    doc = json.loads(manager.export_data("json"))
    assert doc["system_stats"]["jobs"]["pending_jobs"] == 1

    csv_text = manager.export_data("csv")
    lines = csv_text.splitlines()
    assert lines[0] == "Metric,Value"
    assert "system_stats.jobs.pending_jobs,1" in lines

    assert manager.export_data("dict")["workers"] == []
    with pytest.raises(ValueError):
        manager.export_data("xml")


def test_flatten():
    assert flatten({"a": {"b": 1, "c": [1, 2]}, "d": "x"}) == {"a.b": 1, "a.c": "[1, 2]", "d": "x"}


def test_worker_threads_process_jobs(memory_manager):
    manager = memory_manager
    ids = [manager.submit("send_email", {"to": f"u{i}"}) for i in range(5)]
    worker_id = manager.start_worker(["default"])

    assert wait_for(lambda: all(manager.get_job_status(i).status == COMPLETED for i in ids))
    manager.stop_worker(worker_id)

    stats = manager.get_system_stats()
    assert stats["jobs_succeeded"] == 5
    assert stats["workers_active"] == 0
    assert stats["workers_healthy"] == 0
    assert manager.get_queue_stats("default")["jobs_processed"] == 5


def test_start_worker_unknown_queue(manager):
    with pytest.raises(NotFoundError):
        manager.start_worker(["nope"])


def test_scale_workers(memory_manager):
    manager = memory_manager
    target = manager.workers.scale_workers(25)
    assert target == 3
    assert len(manager.workers) == 3

    assert manager.workers.scale_workers(500) == manager.settings.max_workers
    assert manager.workers.scale_workers(0) == 1
    assert len(manager.workers) == 1
    manager.stop_all_workers()
    assert len(manager.workers) == 0


def test_shutdown_stops_workers(memory_manager):
    manager = memory_manager
    manager.start_worker()
    manager.shutdown(cleanup=True)
    assert len(manager.workers) == 0


def test_in_memory_sqlite_backs_one_worker_only(settings, registry, clock):
    storage = SQLAlchemyQueueStorage(engine=make_engine("sqlite://"), clock=clock)
    mgr = QueueManager(settings, storage=storage, registry=registry, clock=clock)
    try:
        mgr.start_worker()
        with pytest.raises(ConfigurationError):
            mgr.start_worker()
        assert len(mgr.workers) == 1
    finally:
        mgr.stop_all_workers()
        storage.close()
