"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import os
import subprocess
import sys
import threading
import time
from pathlib import Path

import pytest
import structlog

PROJECT_ROOT = Path(__file__).parent.parent

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("SLACK_WEBHOOK_URL", None)
for _var in (
    "KILLSWITCH_PID_FILE",
    "KILLSWITCH_STATE_FILE",
    "KILLSWITCH_WATCHDOG_PID_FILE",
    "KILLSWITCH_LOG_FILE",
    "KILLSWITCH_GRACEFUL_TIMEOUT_MS",
):
    os.environ.pop(_var, None)


@pytest.fixture(autouse=True)
def structlog_to_stderr():
    """Route structlog to stderr so stdout carries only the CLI's JSON result."""
    structlog.configure(logger_factory=structlog.PrintLoggerFactory(sys.stderr))
    yield
    structlog.reset_defaults()


@pytest.fixture
def spawn_process():
    """
    Spawn python child processes that signal readiness on stdout.

    A background thread waits on each child so it is reaped the moment it
    exits; otherwise a dead child stays a zombie and still answers kill(pid, 0).
    """
    procs: list[subprocess.Popen] = []

    def _spawn(code: str, *args: str, ready_timeout: float = 10.0) -> subprocess.Popen:
        env = dict(os.environ)
        env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(PROJECT_ROOT), env.get("PYTHONPATH")]))

        proc = subprocess.Popen(
            [sys.executable, "-c", code, *args],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            env=env,
        )
        procs.append(proc)

        deadline = time.monotonic() + ready_timeout
        while time.monotonic() < deadline:
            line = proc.stdout.readline()
            if not line:
                raise RuntimeError(f"child exited before becoming ready (rc={proc.poll()})")
            if line.strip() == "ready":
                break
        else:
            raise RuntimeError("child did not become ready in time")

        threading.Thread(target=proc.wait, daemon=True).start()
        return proc

    yield _spawn

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            pass
        if proc.stdout:
            proc.stdout.close()


@pytest.fixture
def dead_pid():
    """PID of a process that has already exited and been reaped."""
    proc = subprocess.Popen([sys.executable, "-c", "pass"])
    proc.wait(timeout=10)
    return proc.pid
