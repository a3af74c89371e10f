"""Executors that ship with queuectl."""
import subprocess

from queuectl.errors import ExecutionError, JobTimeoutError
from queuectl.executor import JobExecutor, register


def run_command(cmd, timeout=None):
    proc = subprocess.Popen(
        cmd,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.communicate()
        raise
    return proc.returncode, stdout, stderr


@register
class ShellCommandJob(JobExecutor):
    name = "shell_command"
    description = "Run a shell command; non-zero exit fails the job"
    max_execution_time = 60

    def validate(self, data):
        return isinstance(data, dict) and bool(str(data.get("command", "")).strip())

    def execute(self, data):
        timeout = data.get("timeout", self.max_execution_time)
        try:
            exit_code, stdout, stderr = run_command(data["command"], timeout=timeout)
        except subprocess.TimeoutExpired:
            raise JobTimeoutError(f"Command timed out after {timeout}s: {data['command']}")
        except OSError as exc:
            raise ExecutionError(f"Cannot run {data['command']!r}: {exc}") from exc

        if exit_code != 0:
            raise ExecutionError(f"exit_code={exit_code}: {(stderr or '').strip()[:500]}")
        return {"exit_code": exit_code, "stdout": stdout, "stderr": stderr}


@register
class EchoJob(JobExecutor):
    name = "echo"
    description = "Return the payload unchanged"

    def execute(self, data):
        return dict(data)
