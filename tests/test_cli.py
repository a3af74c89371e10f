import json

import pytest
from click.testing import CliRunner

from queuectl.cli import cli


@pytest.fixture()
def run(tmp_path, mocker):
    proc = mocker.patch("queuectl.monitoring.psutil.Process")
    proc.return_value.memory_percent.return_value = 5.0
    runner = CliRunner()
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    env = {"QUEUECTL_HEARTBEAT_DIR": str(tmp_path / "data")}

    def _run(*args, input=None):
        return runner.invoke(cli, ["--database-url", db_url, *args], env=env, input=input)

    return _run


def _enqueue(run, *args):
    result = run("enqueue", *args)
    assert result.exit_code == 0, result.output
    return result.output.strip().split()[-1]


def test_enqueue_list_and_show(run):
    job_id = _enqueue(run, "echo", "--payload", '{"n": 1}')
    assert job_id.startswith("job_")

    listed = run("list", "--state", "pending")
    assert listed.exit_code == 0
    assert f"{job_id} | echo | default | pending" in listed.output

    shown = run("job", job_id)
    assert shown.exit_code == 0
    assert json.loads(shown.output)["data"] == {"n": 1}


def test_enqueue_command_shortcut(run):
    job_id = _enqueue(run, "--command", "echo hi", "--queue", "high")
    doc = json.loads(run("job", job_id).output)
    assert doc["name"] == "shell_command"
    assert doc["data"] == {"command": "echo hi"}
    assert doc["priority"] == 8


def test_enqueue_creates_missing_queue(run):
    job_id = _enqueue(run, "echo", "--queue", "reports")
    assert json.loads(run("job", job_id).output)["queue_name"] == "reports"


def test_enqueue_errors(run):
    bad_json = run("enqueue", "echo", "--payload", "{nope")
    assert bad_json.exit_code == 1
    assert "not valid JSON" in bad_json.output

    unknown = run("enqueue", "does_not_exist")
    assert unknown.exit_code == 1
    assert "No executor registered" in unknown.output

    missing = run("enqueue")
    assert missing.exit_code == 2


def test_status_counts(run):
    _enqueue(run, "echo")
    _enqueue(run, "echo")
    result = run("status")
    assert result.exit_code == 0
    assert "Workers: 0 active" in result.output
    assert "pending_jobs: 2" in result.output


def test_cancel_and_retry(run):
    job_id = _enqueue(run, "echo")
    assert "Cancelled job" in run("cancel", job_id).output

    again = run("cancel", job_id)
    assert again.exit_code == 1
    assert "only pending jobs" in again.output

    retry = run("retry", job_id)
    assert retry.exit_code == 1

    missing = run("job", "job_missing")
    assert missing.exit_code == 1


def test_retry_failed_with_nothing_failed(run):
    result = run("retry-failed")
    assert result.exit_code == 0
    assert "Scheduled 0 failed job(s)" in result.output


def test_clear_and_cleanup(run):
    _enqueue(run, "echo")
    _enqueue(run, "echo", "--queue", "low")

    assert "Removed 1 job(s)" in run("clear", "default", "--yes").output
    assert "Removed 1 job(s)" in run("clear", "--all", "--yes").output
    assert "Removed 0 finished job(s)" in run("cleanup").output


def test_export(run):
    _enqueue(run, "echo")
    csv_out = run("export", "--format", "csv")
    assert csv_out.exit_code == 0
    assert csv_out.output.splitlines()[0] == "Metric,Value"

    doc = json.loads(run("export").output)
    assert doc["system_stats"]["jobs"]["pending_jobs"] == 1


def test_export_to_file(run, tmp_path):
    target = tmp_path / "stats.json"
    result = run("export", "--output", str(target))
    assert result.exit_code == 0
    assert json.loads(target.read_text())["system_stats"]["storage_type"] == "database"


def test_health(run):
    result = run("health")
    assert result.exit_code == 0
    assert "All health checks passed" in result.output

    snap = json.loads(run("health", "--json").output)
    assert "queues" in snap


def test_config_set_get(run):
    assert run("config", "set", "max_workers", "7").output.strip() == "max_workers=7"
    assert run("config", "get", "max_workers").output.strip() == "7"
    assert "max_workers=7" in run("config", "get").output
    assert run("config", "get", "backoff_base").output.strip() == "2.0"

    bad = run("config", "set", "max_workers", "lots")
    assert bad.exit_code == 1
    unknown = run("config", "set", "colour", "blue")
    assert unknown.exit_code == 2


def test_worker_stop_without_workers(run):
    result = run("worker", "stop")
    assert result.exit_code == 0
    assert "No worker PIDs found." in result.output


def test_bad_jobs_module(run):
    result = run("--jobs-module", "no.such.module", "status")
    assert result.exit_code == 1
    assert "Cannot import jobs module" in result.output
