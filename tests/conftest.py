import time
from datetime import datetime, timedelta

import pytest

from queuectl.config import Settings
from queuectl.db.base import make_engine
from queuectl.errors import ExecutionError, ValidationError
from queuectl.executor import JobExecutor, JobRegistry
from queuectl.queue_manager import QueueManager
from queuectl.storage import InMemoryQueueStorage, SQLAlchemyQueueStorage


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class SendEmailJob(JobExecutor):
    name = "send_email"

    def validate(self, data):
        return isinstance(data, dict) and "to" in data

    def execute(self, data):
        return {"sent_to": data["to"]}


class AlwaysFailsJob(JobExecutor):
    name = "always_fails"
    max_retries = 2

    def execute(self, data):
        raise ExecutionError("smtp down")


class NoRetryJob(JobExecutor):
    name = "no_retry"
    max_retries = 3

    def execute(self, data):
        raise RuntimeError("boom")

    def handle_failure(self, error, data, attempt):
        return False


class SlowJob(JobExecutor):
    name = "slow"
    max_execution_time = 0.05
    max_retries = 1

    def execute(self, data):
        time.sleep(data.get("sleep", 0.5))
        return "late"


class SingletonJob(JobExecutor):
    name = "singleton"
    can_run_concurrently = False

    def execute(self, data):
        return None


class RejectingJob(JobExecutor):
    name = "rejecting"

    def validate(self, data):
        raise ValidationError("never valid")

    def execute(self, data):
        return None


TEST_EXECUTORS = (SendEmailJob, AlwaysFailsJob, NoRetryJob, SlowJob, SingletonJob, RejectingJob)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def registry():
    reg = JobRegistry()
    for cls in TEST_EXECUTORS:
        reg.register(cls)
    return reg


@pytest.fixture()
def settings():
    return Settings(
        storage_type="memory",
        backoff_unit_seconds=1.0,
        worker_sleep_time=0.01,
        heartbeat_interval=0.05,
        worker_max_memory_mb=4096,
    )


@pytest.fixture(params=["memory", "sql"])
def storage(request, clock):
    print(f"\n[SETUP] {request.param} storage")
    if request.param == "memory":
        store = InMemoryQueueStorage(clock=clock)
    else:
        store = SQLAlchemyQueueStorage(engine=make_engine("sqlite://"), clock=clock)
    yield store
    store.close()


@pytest.fixture()
def memory_storage(clock):
    return InMemoryQueueStorage(clock=clock)


@pytest.fixture()
def manager(settings, storage, registry, clock):
    mgr = QueueManager(settings, storage=storage, registry=registry, clock=clock)
    yield mgr
    mgr.stop_all_workers()


@pytest.fixture()
def memory_manager(settings, memory_storage, registry, clock):
    mgr = QueueManager(settings, storage=memory_storage, registry=registry, clock=clock)
    yield mgr
    mgr.stop_all_workers()


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
