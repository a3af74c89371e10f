"""Health checks and alerting for a running queue system.

:class:`HealthChecker` compares live stats against thresholds and appends
:class:`Alert` records to an :class:`AlertLog`. :class:`HealthMonitor` runs
the checks on a background thread, each on its own interval, and triggers
periodic cleanup of finished jobs.
"""
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import psutil

from queuectl.config import Settings
from queuectl.errors import QueueError
from queuectl.job import utcnow

logger = logging.getLogger(__name__)

INFO = "info"
WARNING = "warning"
CRITICAL = "critical"
SEVERITIES = (INFO, WARNING, CRITICAL)


@dataclass
class Alert:
    severity: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    id: int = 0
    acknowledged: bool = False

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["timestamp"] = self.timestamp.isoformat()
        return d


class AlertLog:
    """Bounded, thread-safe list of alerts; oldest entries fall off."""

    def __init__(self, max_size: int = 500, clock: Optional[Callable[[], datetime]] = None):
        self._alerts = deque(maxlen=max_size)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self.clock = clock or utcnow

    def add(self, severity: str, message: str, context: Optional[Dict[str, Any]] = None) -> Alert:
        if severity not in SEVERITIES:
            raise ValueError(f"Unknown severity: {severity}")
        with self._lock:
            alert = Alert(severity, message, dict(context or {}), self.clock(), next(self._ids))
            self._alerts.append(alert)
        log = logger.warning if severity != INFO else logger.info
        log("[%s] %s", severity.upper(), message)
        return alert

    def get_alerts(self, limit: Optional[int] = 10, severity: Optional[str] = None) -> List[Alert]:
        """Newest first."""
        with self._lock:
            alerts = list(reversed(self._alerts))
        if severity:
            alerts = [a for a in alerts if a.severity == severity]
        return alerts[:limit] if limit else alerts

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._alerts[-1].id if self._alerts else 0

    def since(self, alert_id: int) -> List[Alert]:
        """Alerts added after ``alert_id``, oldest first."""
        with self._lock:
            return [a for a in self._alerts if a.id > alert_id]

    def acknowledge(self, alert_id: int) -> bool:
        with self._lock:
            for alert in self._alerts:
                if alert.id == alert_id:
                    alert.acknowledged = True
                    return True
        return False

    def clear(self) -> None:
        with self._lock:
            self._alerts.clear()

    def __len__(self):
        with self._lock:
            return len(self._alerts)


@dataclass
class HealthThresholds:
    queue_warning_ratio: float = 0.8
    min_worker_health_percentage: float = 80.0
    worker_min_success_rate: float = 90.0
    max_failed_jobs_percentage: float = 10.0
    max_avg_processing_time: float = 30.0
    max_memory_usage_percentage: float = 85.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "HealthThresholds":
        return cls(
            queue_warning_ratio=settings.queue_warning_ratio,
            min_worker_health_percentage=settings.min_worker_health_percentage,
            worker_min_success_rate=settings.worker_min_success_rate,
            max_failed_jobs_percentage=settings.max_failed_jobs_percentage,
            max_avg_processing_time=settings.max_avg_processing_time,
            max_memory_usage_percentage=settings.max_memory_usage_percentage,
        )


class HealthChecker:
    CHECKS = (
        "queue_sizes",
        "worker_health",
        "failure_rate",
        "processing_times",
        "memory_usage",
        "stuck_jobs",
    )

    def __init__(self, manager, alerts: Optional[AlertLog] = None,
                 thresholds: Optional[HealthThresholds] = None):
        self.manager = manager
        self.settings = manager.settings
        self.alerts = alerts or AlertLog(self.settings.alert_log_size, manager.clock)
        self.thresholds = thresholds or HealthThresholds.from_settings(self.settings)

    def update_thresholds(self, **changes) -> None:
        for key, value in changes.items():
            if not hasattr(self.thresholds, key):
                raise ValueError(f"Unknown threshold: {key}")
            setattr(self.thresholds, key, value)

    def run_check(self, name: str) -> List[Alert]:
        """Run one named check; a failing check is logged and yields no alerts."""
        marker = self.alerts.last_id
        try:
            getattr(self, f"check_{name}")()
        except QueueError as exc:
            logger.error("Health check %s failed: %s", name, exc)
            return []
        return self.alerts.since(marker)

    def run_health_checks(self) -> List[Alert]:
        raised = []
        for name in self.CHECKS:
            raised.extend(self.run_check(name))
        return raised

    # ---------- checks ----------
    def check_queue_sizes(self):
        for name, queue in list(self.manager.queues.items()):
            if not queue.config.enable_monitoring:
                continue
            size = queue.size()
            max_size = queue.config.max_size
            context = {"queue": name, "size": size, "max_size": max_size}
            if size >= max_size:
                self.alerts.add(CRITICAL, f"Queue '{name}' has reached maximum size ({size} jobs)", context)
            elif size >= max_size * self.thresholds.queue_warning_ratio:
                self.alerts.add(WARNING, f"Queue '{name}' is approaching maximum capacity ({size} jobs)", context)

    def check_worker_health(self):
        worker_stats = self.manager.get_worker_stats()
        total = len(worker_stats)
        healthy = 0
        for worker_id, stats in worker_stats.items():
            if stats["is_running"] and stats["success_rate"] > self.thresholds.worker_min_success_rate:
                healthy += 1
            else:
                self.alerts.add(WARNING, f"Worker '{worker_id}' is unhealthy",
                                {"worker": worker_id, "stats": stats})
        if total:
            pct = healthy / total * 100
            if pct < self.thresholds.min_worker_health_percentage:
                self.alerts.add(CRITICAL, f"Worker health is below threshold ({pct:.1f}%)",
                                {"healthy_workers": healthy, "total_workers": total})

    def check_failure_rate(self):
        stats = self.manager.storage.stats()
        failed = stats["failed_jobs"] + stats["timeout_jobs"]
        finished = stats["completed_jobs"] + failed
        if not finished:
            return
        rate = failed / finished * 100
        if rate > self.thresholds.max_failed_jobs_percentage:
            self.alerts.add(CRITICAL, f"Job failure rate is too high ({rate:.1f}%)",
                            {"failure_rate": rate, "failed_jobs": failed, "total_jobs": finished})

    def check_processing_times(self):
        avg = self.manager.storage.stats()["avg_processing_time"]
        if avg > self.thresholds.max_avg_processing_time:
            self.alerts.add(WARNING, f"Average processing time is too high ({avg:.2f}s)",
                            {"avg_processing_time": avg})

    def check_memory_usage(self):
        process = psutil.Process()
        pct = process.memory_percent()
        if pct > self.thresholds.max_memory_usage_percentage:
            self.alerts.add(WARNING, f"Memory usage is too high ({pct:.1f}%)",
                            {"memory_percent": pct, "rss": process.memory_info().rss})

    def check_stuck_jobs(self):
        stuck = self.manager.stuck_jobs()
        if not stuck:
            return
        self.alerts.add(
            WARNING,
            f"{len(stuck)} jobs running longer than {self.settings.stuck_timeout_minutes:g} minutes",
            {"jobs": [j.id for j in stuck]},
        )
        if self.settings.reset_stuck_jobs:
            reset = self.manager.reset_stuck_jobs()
            self.alerts.add(INFO, f"Reset {reset} stuck jobs to pending", {"reset": reset})


class HealthMonitor:
    """Runs due health checks and cleanup on a background thread."""

    def __init__(self, checker: HealthChecker, interval: Optional[float] = None,
                 check_intervals: Optional[Dict[str, float]] = None,
                 cleanup_interval: Optional[float] = None):
        settings = checker.settings
        self.checker = checker
        self.interval = interval if interval is not None else settings.health_check_interval
        self.check_intervals = {name: self.interval for name in checker.CHECKS}
        self.check_intervals.update(check_intervals or {})
        self.cleanup_interval = (
            cleanup_interval if cleanup_interval is not None else settings.cleanup_interval
        )
        self._last_run: Dict[str, float] = {}
        self._last_cleanup: Optional[float] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_pending(self, now: Optional[float] = None) -> List[Alert]:
        now = time.monotonic() if now is None else now
        raised = []
        for name, every in self.check_intervals.items():
            last = self._last_run.get(name)
            if last is not None and now - last < every:
                continue
            self._last_run[name] = now
            raised.extend(self.checker.run_check(name))

        if self._last_cleanup is None:
            self._last_cleanup = now
        elif now - self._last_cleanup >= self.cleanup_interval:
            self._last_cleanup = now
            try:
                self.checker.manager.cleanup()
            except QueueError as exc:
                logger.error("Periodic cleanup failed: %s", exc)
        return raised

    def _loop(self):
        tick = max(0.1, min(self.check_intervals.values(), default=self.interval) / 2)
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(tick)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="health-monitor", daemon=True)
        self._thread.start()
        logger.info("Health monitor started (every %ss)", self.interval)

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


def dashboard_snapshot(manager, alerts: Optional[AlertLog] = None, limit: int = 20) -> Dict[str, Any]:
    """JSON-ready view of system, queue and worker state plus recent alerts."""
    system = manager.get_system_stats()
    return {
        "timestamp": manager.clock().isoformat(),
        "system": {k: v for k, v in system.items() if k not in ("queues", "workers")},
        "queues": system["queues"],
        "workers": manager.get_worker_stats(),
        "worker_summary": system["workers"],
        "alerts": [a.to_dict() for a in alerts.get_alerts(limit)] if alerts else [],
    }
