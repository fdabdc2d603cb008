"""Bounded-time execution of a single external command.

Every invocation produces exactly one terminal outcome:

  success  : exit code 0
  failure  : nonzero exit code (or killed by a signal)
  timeout  : deadline elapsed; the process group is force-killed and reaped
  spawn    : the program could not be launched at all

The runner never retries and never raises for any of these; callers get a
``CommandResult`` they can turn into data.
"""

import asyncio
import logging
import os
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 4.0
TIMEOUT_ERROR = "timeout"

# Upper bound on reading leftover output once the process is gone. A
# grandchild that inherited the pipes can keep them open indefinitely.
_DRAIN_TIMEOUT_SECONDS = 1.0
_READ_CHUNK = 4096

_IS_WINDOWS = sys.platform == "win32"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command invocation. Never persisted."""

    ok: bool
    exit_code: int | None = None
    signal: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None
    pid: int | None = None

    @property
    def timed_out(self) -> bool:
        return self.error == TIMEOUT_ERROR

    @property
    def killed(self) -> bool:
        return self.signal is not None


async def _collect(stream: asyncio.StreamReader, chunks: list[bytes]) -> None:
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        chunks.append(chunk)


def _decode(chunks: list[bytes]) -> str:
    return b"".join(chunks).decode("utf-8", errors="replace")


def _force_kill(process: asyncio.subprocess.Process) -> None:
    """SIGKILL the whole process group so helpers spawned by the tool die too."""
    if process.returncode is not None:
        return
    try:
        if not _IS_WINDOWS:
            os.killpg(process.pid, signal.SIGKILL)
        else:
            process.kill()
    except (ProcessLookupError, PermissionError, OSError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


async def _drain(readers: list[asyncio.Task]) -> None:
    _, pending = await asyncio.wait(readers, timeout=_DRAIN_TIMEOUT_SECONDS)
    for task in pending:
        task.cancel()
    await asyncio.gather(*readers, return_exceptions=True)


async def run_command(
    command: str,
    args: Sequence[str] = (),
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CommandResult:
    """Run *command* with *args*, discarding stdin and capturing output as text.

    Args:
        command: Program name (looked up on PATH) or path to an executable.
        args: Arguments passed verbatim, without a shell.
        timeout: Deadline in seconds for the process to exit.

    Returns:
        A ``CommandResult``. ``ok`` is True only for a clean zero exit.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=not _IS_WINDOWS,
        )
    except (OSError, ValueError) as e:
        logger.debug("Could not launch %s: %s", command, e)
        return CommandResult(ok=False, error=str(e) or e.__class__.__name__)

    stdout_chunks: list[bytes] = []
    stderr_chunks: list[bytes] = []
    readers = [
        asyncio.create_task(_collect(process.stdout, stdout_chunks)),
        asyncio.create_task(_collect(process.stderr, stderr_chunks)),
    ]

    timed_out = False
    try:
        # wait_for owns the single deadline timer and cancels it as soon as
        # the process exits.
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        timed_out = True
        logger.debug("%s exceeded %.1fs, killing pid %d", command, timeout, process.pid)
        _force_kill(process)
        await process.wait()
    except asyncio.CancelledError:
        _force_kill(process)
        for task in readers:
            task.cancel()
        raise

    await _drain(readers)
    stdout = _decode(stdout_chunks)
    stderr = _decode(stderr_chunks)

    if timed_out:
        return CommandResult(
            ok=False, error=TIMEOUT_ERROR, stdout=stdout, stderr=stderr, pid=process.pid
        )

    returncode = process.returncode
    if returncode is not None and returncode < 0:
        return CommandResult(
            ok=False, signal=-returncode, stdout=stdout, stderr=stderr, pid=process.pid
        )
    return CommandResult(
        ok=returncode == 0,
        exit_code=returncode,
        stdout=stdout,
        stderr=stderr,
        pid=process.pid,
    )
