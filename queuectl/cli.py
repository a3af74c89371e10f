import functools
import json
import logging
import os
import threading
import time

import click
from sqlalchemy.exc import SQLAlchemyError

from queuectl import jobs  # noqa: F401  registers the built-in executors
from queuectl.config import (
    ALLOWED_CONFIG_KEYS,
    STORAGE_TYPES,
    get_all_config,
    get_config,
    load_settings,
    set_config,
    with_overrides,
)
from queuectl.db.base import init_db, make_engine, make_session_factory
from queuectl.errors import QueueError, StorageError, ValidationError
from queuectl.executor import default_registry
from queuectl.job import ALL_STATUSES
from queuectl.monitoring import CRITICAL, WARNING, AlertLog, HealthChecker, HealthMonitor, dashboard_snapshot
from queuectl.queue_manager import QueueManager
from queuectl.storage import SQLAlchemyQueueStorage
from queuectl.worker_manager import forget_pid, install_signal_handlers, record_pid, signal_workers

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_DATA_DIR = "data"
SEVERITY_COLORS = {CRITICAL: "red", WARNING: "yellow"}


class CliContext:
    """Lazily builds settings and the manager for one CLI invocation."""

    def __init__(self, database_url=None, storage_type=None):
        self.overrides = {"database_url": database_url, "storage_type": storage_type}
        self._engine = None
        self._settings = None
        self._manager = None

    @property
    def engine(self):
        if self._engine is None:
            settings = load_settings(**self.overrides)
            try:
                self._engine = make_engine(settings.database_url)
                init_db(self._engine)
            except (SQLAlchemyError, ImportError) as exc:
                raise StorageError(f"Cannot open {settings.database_url}: {exc}") from exc
        return self._engine

    def session(self):
        return make_session_factory(self.engine)()

    @property
    def settings(self):
        if self._settings is None:
            settings = load_settings(**self.overrides)
            if settings.storage_type == "database":
                s = self.session()
                try:
                    settings = load_settings(s, **self.overrides)
                finally:
                    s.close()
            if not settings.heartbeat_dir:
                settings = with_overrides(settings, heartbeat_dir=DEFAULT_DATA_DIR)
            self._settings = settings
        return self._settings

    @property
    def manager(self) -> QueueManager:
        if self._manager is None:
            storage = None
            if self.settings.storage_type == "database":
                storage = SQLAlchemyQueueStorage(engine=self.engine, create_tables=False)
            self._manager = QueueManager(self.settings, storage=storage)
        return self._manager

    @property
    def pid_file(self):
        return os.path.join(self.settings.heartbeat_dir, "workers.pids")

    def ensure_queue(self, name):
        if name not in self.manager.queues:
            self.manager.create_queue(name)
        return self.manager.get_queue(name)

    def close(self):
        if self._manager is not None:
            self._manager.shutdown(cleanup=False)
        elif self._engine is not None:
            self._engine.dispose()


def handle_errors(f):
    """Print queue errors in red and exit with status 1."""

    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except QueueError as e:
            click.secho(str(e), fg="red", err=True)
            raise SystemExit(1)

    return wrapper


def _format_job(j):
    when = j.scheduled_at.isoformat(sep=" ", timespec="seconds") if j.scheduled_at else "-"
    return (
        f"{j.id} | {j.name} | {j.queue_name} | {j.status} | priority={j.priority} "
        f"| attempts={j.attempts}/{j.max_attempts} | scheduled_at={when}"
    )


@click.group()
@click.option("--database-url", default=None, help="SQLAlchemy URL of the job database")
@click.option("--storage", "storage_type", type=click.Choice(STORAGE_TYPES), default=None,
              help="Storage backend")
@click.option("--log-level", default="WARNING", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
@click.option("--jobs-module", multiple=True, help="Module to import for extra executors")
@click.pass_context
@handle_errors
def cli(ctx, database_url, storage_type, log_level, jobs_module):
    """queuectl command line controller"""
    logging.basicConfig(level=getattr(logging, log_level.upper()), format=LOG_FORMAT)
    default_registry.import_modules(jobs_module)
    ctx.obj = CliContext(database_url, storage_type)
    ctx.call_on_close(ctx.obj.close)


# Enqueue
@cli.command("enqueue")
@click.argument("job_name", required=False)
@click.option("--payload", default="{}", help="JSON object passed to the executor")
@click.option("--command", default=None, help="Shortcut for a shell_command job")
@click.option("--queue", "queue_name", default="default", show_default=True)
@click.option("--delay", type=float, default=0, help="Seconds before the job becomes eligible")
@click.pass_obj
@handle_errors
def enqueue_cmd(obj, job_name, payload, command, queue_name, delay):
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise ValidationError(f"--payload is not valid JSON: {e}")
    if not isinstance(data, dict):
        raise ValidationError("--payload must be a JSON object")
    if command:
        job_name = job_name or "shell_command"
        data["command"] = command
    if not job_name:
        raise click.UsageError("JOB_NAME or --command is required")

    obj.ensure_queue(queue_name)
    job_id = obj.manager.submit(job_name, data, queue_name, delay)
    click.echo(f"Enqueued job {job_id}")


# Status
def _live_workers(hb_dir, max_age):
    live = 0
    now = time.time()
    if not os.path.isdir(hb_dir):
        return 0
    for name in os.listdir(hb_dir):
        if not name.endswith(".hb"):
            continue
        try:
            with open(os.path.join(hb_dir, name)) as f:
                beat = json.load(f)
        except (OSError, ValueError):
            continue
        if now - float(beat.get("timestamp", 0)) < max_age:
            live += 1
    return live


@cli.command("status")
@click.pass_obj
@handle_errors
def status_cmd(obj):
    settings = obj.settings
    stats = obj.manager.storage.stats()
    live = _live_workers(settings.heartbeat_dir, settings.heartbeat_interval * 2 + settings.worker_sleep_time)

    click.echo(f"Workers: {live} active")
    for k, v in stats.items():
        if k == "avg_processing_time":
            click.echo(f"{k}: {v:.2f}s")
        else:
            click.echo(f"{k}: {v}")


# List
@cli.command("list")
@click.option("--state", type=click.Choice(ALL_STATUSES), default=None)
@click.option("--queue", "queue_name", default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_obj
@handle_errors
def list_cmd(obj, state, queue_name, limit):
    storage = obj.manager.storage
    states = [state] if state else ALL_STATUSES
    found = []
    for st in states:
        found.extend(storage.jobs_by_status(st, queue_name, limit))
    found.sort(key=lambda j: j.created_at, reverse=True)
    for j in found[:limit]:
        click.echo(_format_job(j))


@cli.command("job")
@click.argument("job_id")
@click.pass_obj
@handle_errors
def job_cmd(obj, job_id):
    job = obj.manager.get_job_status(job_id)
    click.echo(json.dumps(job.to_dict(), indent=2, default=str))


@cli.command("cancel")
@click.argument("job_id")
@click.pass_obj
@handle_errors
def cancel_cmd(obj, job_id):
    obj.manager.cancel_job(job_id)
    click.echo(f"Cancelled job {job_id}")


@cli.command("retry")
@click.argument("job_id")
@click.pass_obj
@handle_errors
def retry_cmd(obj, job_id):
    job = obj.manager.retry_job(job_id)
    click.echo(f"Job {job_id} will retry at {job.scheduled_at.isoformat(sep=' ', timespec='seconds')}")


@cli.command("retry-failed")
@click.option("--queue", "queue_name", default=None)
@click.option("--limit", type=int, default=50, show_default=True)
@click.pass_obj
@handle_errors
def retry_failed_cmd(obj, queue_name, limit):
    count = obj.manager.retry_failed_jobs(queue_name, limit)
    click.echo(f"Scheduled {count} failed job(s) for retry")


@cli.command("clear")
@click.argument("queue_name", required=False)
@click.option("--all", "all_queues", is_flag=True, help="Clear every queue")
@click.confirmation_option(prompt="This deletes jobs permanently. Continue?")
@click.pass_obj
@handle_errors
def clear_cmd(obj, queue_name, all_queues):
    if all_queues:
        removed = obj.manager.storage.clear()
    elif queue_name:
        obj.ensure_queue(queue_name)
        removed = obj.manager.clear_queue(queue_name)
    else:
        raise click.UsageError("QUEUE_NAME or --all is required")
    click.echo(f"Removed {removed} job(s)")


@cli.command("cleanup")
@click.pass_obj
@handle_errors
def cleanup_cmd(obj):
    removed = obj.manager.cleanup()
    click.echo(f"Removed {removed} finished job(s)")


@cli.command("export")
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default="json", show_default=True)
@click.option("--output", type=click.Path(dir_okay=False, writable=True), default=None)
@click.pass_obj
@handle_errors
def export_cmd(obj, fmt, output):
    content = obj.manager.export_data(fmt)
    if output:
        with open(output, "w") as f:
            f.write(content)
        click.echo(f"Exported to {output}")
    else:
        click.echo(content)


@cli.command("health")
@click.option("--json", "as_json", is_flag=True, help="Print a dashboard snapshot as JSON")
@click.pass_obj
@handle_errors
def health_cmd(obj, as_json):
    manager = obj.manager
    alerts = AlertLog(obj.settings.alert_log_size, manager.clock)
    raised = HealthChecker(manager, alerts).run_health_checks()
    if as_json:
        click.echo(json.dumps(dashboard_snapshot(manager, alerts), indent=2, default=str))
        return
    if not raised:
        click.secho("All health checks passed", fg="green")
        return
    for alert in raised:
        click.secho(f"[{alert.severity}] {alert.message}", fg=SEVERITY_COLORS.get(alert.severity))


# Worker
@cli.group()
def worker():
    """Run or stop worker processes"""


@worker.command("start")
@click.option("--count", default=1, show_default=True, help="Number of worker threads")
@click.option("--queue", "queues", multiple=True, help="Queue to poll, in order (repeatable)")
@click.option("--no-monitor", is_flag=True, help="Do not run health checks in this process")
@click.pass_obj
@handle_errors
def worker_start(obj, count, queues, no_monitor):
    """Run workers in the foreground until SIGINT/SIGTERM."""
    manager = obj.manager
    queues = list(queues) or ["default"]
    for name in queues:
        obj.ensure_queue(name)

    shutdown = threading.Event()
    install_signal_handlers(shutdown)
    record_pid(obj.pid_file)
    monitor = None if no_monitor else HealthMonitor(HealthChecker(manager))
    try:
        if monitor:
            monitor.start()
        ids = [manager.start_worker(queues) for _ in range(count)]
        click.echo(f"Started {count} worker(s): {', '.join(ids)} (pid {os.getpid()})")
        while not shutdown.wait(1.0):
            # workers leave on their own when over the memory limit
            if manager.workers.get_overall_stats()["active_workers"] == 0:
                click.echo("All workers exited.")
                break
    finally:
        if monitor:
            monitor.stop()
        manager.stop_all_workers()
        forget_pid(obj.pid_file)
    click.echo("Workers stopped.")


@worker.command("stop")
@click.pass_obj
@handle_errors
def worker_stop(obj):
    pids = signal_workers(obj.pid_file)
    if not pids:
        click.echo("No worker PIDs found.")
        return
    click.echo(f"Workers signaled to stop: {pids}")


# Config
@cli.group()
def config():
    """Read or change settings stored in the database"""


@config.command("set")
@click.argument("key", type=click.Choice(sorted(ALLOWED_CONFIG_KEYS)))
@click.argument("value")
@click.pass_obj
@handle_errors
def config_set_cmd(obj, key, value):
    s = obj.session()
    try:
        set_config(s, key, value)
    finally:
        s.close()
    click.echo(f"{key}={value}")


@config.command("get")
@click.argument("key", required=False)
@click.pass_obj
@handle_errors
def config_get_cmd(obj, key):
    s = obj.session()
    try:
        if key:
            stored = get_config(s, key)
            click.echo(stored if stored is not None else getattr(obj.settings, key, ""))
        else:
            for k, v in sorted(get_all_config(s).items()):
                click.echo(f"{k}={v}")
    finally:
        s.close()


def main():
    cli(prog_name="queuectl")


if __name__ == "__main__":
    main()
