"""Tests for the bounded-time command runner using real child processes."""

import os
import sys
import time

import pytest

from app.core.command_runner import TIMEOUT_ERROR, run_command

PYTHON = sys.executable


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


@pytest.mark.asyncio
async def test_success_captures_output():
    result = await run_command(PYTHON, ["-c", "import sys; print('out'); print('err', file=sys.stderr)"])
    assert result.ok
    assert result.exit_code == 0
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert result.error is None
    assert not result.timed_out


@pytest.mark.asyncio
async def test_nonzero_exit_is_failure():
    result = await run_command(PYTHON, ["-c", "import sys; sys.exit(5)"])
    assert not result.ok
    assert result.exit_code == 5
    assert result.signal is None
    assert result.error is None


@pytest.mark.asyncio
async def test_stdin_is_closed():
    result = await run_command(PYTHON, ["-c", "import sys; print(repr(sys.stdin.read()))"], timeout=5)
    assert result.ok
    assert result.stdout.strip() == "''"


@pytest.mark.asyncio
async def test_spawn_failure_is_reported_not_raised():
    result = await run_command("quire-definitely-not-a-real-command", ["--version"])
    assert not result.ok
    assert result.exit_code is None
    assert result.error
    assert result.pid is None


@pytest.mark.asyncio
async def test_timeout_kills_and_reaps():
    started = time.monotonic()
    result = await run_command(PYTHON, ["-c", "import time; time.sleep(30)"], timeout=0.5)
    elapsed = time.monotonic() - started

    assert not result.ok
    assert result.error == TIMEOUT_ERROR
    assert result.timed_out
    assert elapsed < 3.0
    assert result.pid is not None
    assert not _pid_alive(result.pid)


@pytest.mark.asyncio
async def test_timeout_keeps_partial_output():
    script = "import time; print('started', flush=True); time.sleep(30)"
    result = await run_command(PYTHON, ["-c", script], timeout=1.0)
    assert result.timed_out
    assert "started" in result.stdout


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")
@pytest.mark.asyncio
async def test_killed_by_signal_reports_signal():
    result = await run_command(PYTHON, ["-c", "import os, signal; os.kill(os.getpid(), signal.SIGKILL)"])
    assert not result.ok
    assert result.killed
    assert result.signal == 9
    assert result.exit_code is None


@pytest.mark.asyncio
async def test_large_output_does_not_deadlock():
    result = await run_command(PYTHON, ["-c", "print('x' * 500000)"], timeout=5)
    assert result.ok
    assert len(result.stdout.strip()) == 500000
