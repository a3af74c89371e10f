import json
import logging
import math
import os
import signal
import threading
from typing import Dict, Iterable, List, Optional

from queuectl.config import Settings
from queuectl.errors import ConfigurationError, InvalidStateError, NotFoundError
from queuectl.worker import QueueWorker, new_worker_id

logger = logging.getLogger(__name__)

PIDS_FILE = os.path.join("data", "workers.pids")


class WorkerPool:
    """Runs QueueWorkers on daemon threads inside this process."""

    def __init__(self, storage, registry=None, settings: Optional[Settings] = None,
                 listener=None, default_queues: Iterable[str] = ("default",)):
        self.storage = storage
        self.registry = registry
        self.settings = settings or Settings()
        self.listener = listener
        self.default_queues = list(default_queues)
        self._workers: Dict[str, QueueWorker] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def start_worker(self, queue_names: Optional[Iterable[str]] = None,
                     worker_id: Optional[str] = None) -> str:
        worker_id = worker_id or new_worker_id()
        with self._lock:
            if worker_id in self._workers:
                raise InvalidStateError(f"Worker '{worker_id}' is already running")
            if self._workers and getattr(self.storage, "single_connection", False):
                raise ConfigurationError(
                    "In-memory SQLite shares one connection between threads; "
                    "use a file database or memory storage for more than one worker"
                )
            worker = QueueWorker(
                worker_id,
                list(queue_names or self.default_queues),
                self.storage,
                registry=self.registry,
                settings=self.settings,
                listener=self.listener,
            )
            thread = threading.Thread(target=worker.start, name=worker_id, daemon=True)
            worker.is_running = True
            self._workers[worker_id] = worker
            self._threads[worker_id] = thread
        thread.start()
        logger.info("Started worker %s for queues: %s", worker_id, ", ".join(worker.queue_names))
        return worker_id

    def stop_worker(self, worker_id: str, timeout: Optional[float] = 10.0) -> None:
        with self._lock:
            worker = self._workers.pop(worker_id, None)
            thread = self._threads.pop(worker_id, None)
        if worker is None:
            raise NotFoundError(f"Worker '{worker_id}' does not exist")
        worker.stop()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                # left running its current job; stuck-job recovery covers a hard exit
                logger.warning("Worker %s did not stop within %ss", worker_id, timeout)

    def stop_all(self, timeout: Optional[float] = 10.0) -> None:
        for worker_id in self.worker_ids():
            self.stop_worker(worker_id, timeout)

    def worker_ids(self) -> List[str]:
        with self._lock:
            return list(self._workers)

    def get_worker(self, worker_id: str) -> QueueWorker:
        with self._lock:
            worker = self._workers.get(worker_id)
        if worker is None:
            raise NotFoundError(f"Worker '{worker_id}' does not exist")
        return worker

    def __len__(self):
        with self._lock:
            return len(self._workers)

    # ---------- stats ----------
    def get_worker_stats(self, worker_id: Optional[str] = None):
        if worker_id:
            return self.get_worker(worker_id).get_stats()
        with self._lock:
            workers = list(self._workers.values())
        return {w.worker_id: w.get_stats() for w in workers}

    def get_overall_stats(self) -> dict:
        all_stats = self.get_worker_stats()
        stats = {
            "total_workers": len(all_stats),
            "active_workers": 0,
            "total_jobs_processed": 0,
            "total_jobs_succeeded": 0,
            "total_jobs_failed": 0,
            "avg_success_rate": 0.0,
            "avg_processing_time": 0.0,
        }
        rates, times = [], []
        for ws in all_stats.values():
            if ws["is_running"]:
                stats["active_workers"] += 1
            stats["total_jobs_processed"] += ws["jobs_processed"]
            stats["total_jobs_succeeded"] += ws["jobs_succeeded"]
            stats["total_jobs_failed"] += ws["jobs_failed"]
            if ws["jobs_processed"] > 0:
                rates.append(ws["success_rate"])
                times.append(ws["avg_processing_time"])
        if rates:
            stats["avg_success_rate"] = sum(rates) / len(rates)
            stats["avg_processing_time"] = sum(times) / len(times)
        return stats

    def active_workers_count(self) -> int:
        with self._lock:
            workers = list(self._workers.values())
        return sum(1 for w in workers if w.is_healthy())

    def scale_workers(self, pending_jobs: int) -> int:
        """One worker per 10 pending jobs, between 1 and max_workers."""
        target = min(self.settings.max_workers, max(1, math.ceil(pending_jobs / 10)))
        current = self.worker_ids()
        if target > len(current):
            for _ in range(target - len(current)):
                self.start_worker()
            logger.info("Scaled up to %d workers", target)
        elif target < len(current):
            for worker_id in current[: len(current) - target]:
                self.stop_worker(worker_id)
            logger.info("Scaled down to %d workers", target)
        return target


# ---------- foreground process helpers ----------
def _write_pids(pids, path=PIDS_FILE):
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    with open(path, "w") as f:
        json.dump(pids, f)


def read_pids(path=PIDS_FILE) -> List[int]:
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r") as f:
            return [int(p) for p in json.load(f)]
    except (OSError, ValueError, TypeError):
        logger.warning("Ignoring unreadable pid file %s", path)
        return []


def record_pid(path=PIDS_FILE, pid=None):
    pids = read_pids(path)
    pids.append(pid or os.getpid())
    _write_pids(pids, path)


def forget_pid(path=PIDS_FILE, pid=None):
    pid = pid or os.getpid()
    pids = [p for p in read_pids(path) if p != pid]
    if pids:
        _write_pids(pids, path)
    elif os.path.exists(path):
        os.remove(path)


def signal_workers(path=PIDS_FILE) -> List[int]:
    """Send SIGTERM to every recorded worker process."""
    signalled = []
    for pid in read_pids(path):
        try:
            os.kill(pid, signal.SIGTERM)
            signalled.append(pid)
        except ProcessLookupError:
            logger.info("Worker process %s already gone", pid)
        except PermissionError as exc:
            logger.warning("Cannot signal worker process %s: %s", pid, exc)
    if os.path.exists(path):
        os.remove(path)
    return signalled


def install_signal_handlers(shutdown: threading.Event):
    def _handle_signal(signum, frame):
        logger.info("Received signal %s, stopping workers", signum)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle_signal)
    # SIGTERM may not exist on Windows
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _handle_signal)
