"""Toolchain diagnostics: discover optional external tools.

Three independent probe phases feed one ``CapabilityReport``:

  1. Typesetting engines: ``<engine> --version`` for a fixed engine list.
     Probes run concurrently; the report keeps the declared order.
  2. Interpreter discovery: a prioritized candidate list, tried strictly in
     order, first success wins.
  3. Package availability: an inline script run by the discovered
     interpreter. Any failure degrades to "all unavailable".

Nothing here raises and nothing is cached: every call re-probes the machine.
"""

import asyncio
import json
import logging
import os
import platform
import socket
import sys
from dataclasses import dataclass
from pathlib import Path

from app.config import settings
from app.core.command_runner import CommandResult, run_command
from app.models.diagnostics import (
    PYTHON_PACKAGES,
    CapabilityReport,
    PythonInfo,
    ToolchainEntry,
    missing_packages,
)

logger = logging.getLogger(__name__)

LATEX_ENGINES = ("pdflatex", "xelatex", "lualatex", "latexmk", "tectonic")
GENERIC_PYTHON_COMMANDS = ("python3", "python")

_EXECUTABLE_PROBE = "import sys;print(sys.executable)"
_PACKAGE_PROBE = ";".join(
    [
        "import importlib.util, json",
        "print(json.dumps({name: importlib.util.find_spec(name) is not None for name in %r}))"
        % (PYTHON_PACKAGES,),
    ]
)


@dataclass(frozen=True)
class InterpreterInfo:
    command: str
    executable: str
    version: str


def first_line(text: str | None) -> str:
    """Return the first non-blank line of *text*, stripped."""
    for line in (text or "").splitlines():
        line = line.strip()
        if line:
            return line
    return ""


def _probe_timeout() -> float:
    return settings.probe_timeout_seconds


def _describe_failure(result: CommandResult) -> str:
    message = first_line(result.stderr) or first_line(result.error)
    if message:
        return message
    if result.signal is not None:
        return f"killed by signal {result.signal}"
    return f"exited with code {result.exit_code}"


# ---------------------------------------------------------------------------
# Typesetting engines
# ---------------------------------------------------------------------------


async def check_engine(name: str) -> ToolchainEntry:
    result = await run_command(name, ["--version"], timeout=_probe_timeout())
    return ToolchainEntry(
        ok=result.ok,
        version=first_line(f"{result.stdout}\n{result.stderr}"),
        error="" if result.ok else _describe_failure(result),
    )


async def check_latex_engines(engines: tuple[str, ...] = LATEX_ENGINES) -> dict[str, ToolchainEntry]:
    """Probe every engine concurrently; keys come back in declared order."""
    # gather() buffers results by argument position, not by completion order.
    entries = await asyncio.gather(*(check_engine(name) for name in engines))
    return {name: entry for name, entry in zip(engines, entries)}


# ---------------------------------------------------------------------------
# Interpreter discovery
# ---------------------------------------------------------------------------


def _conda_python(conda_prefix: str) -> str:
    if sys.platform == "win32":
        return str(Path(conda_prefix) / "python.exe")
    return str(Path(conda_prefix) / "bin" / "python")


def python_candidates(
    override: str | None = None,
    conda_prefix: str | None = None,
) -> list[str]:
    """Ordered, deduplicated interpreter candidates.

    Explicit override first, then the active conda environment, then the
    generic commands on PATH.
    """
    if override is None:
        override = settings.python_override
    if conda_prefix is None:
        conda_prefix = os.environ.get("CONDA_PREFIX", "")

    ordered = []
    if override:
        ordered.append(override)
    if conda_prefix:
        ordered.append(_conda_python(conda_prefix))
    ordered.extend(GENERIC_PYTHON_COMMANDS)

    seen: set[str] = set()
    candidates = []
    for cmd in ordered:
        if not cmd or cmd in seen:
            continue
        seen.add(cmd)
        candidates.append(cmd)
    return candidates


def _looks_like_path(command: str) -> bool:
    return os.sep in command or (os.altsep is not None and os.altsep in command)


async def detect_python(candidates: list[str] | None = None) -> InterpreterInfo | None:
    """Return the first candidate that exists and reports its executable.

    Strictly sequential: later candidates are never launched once one wins.
    """
    if candidates is None:
        candidates = python_candidates()

    for cmd in candidates:
        if _looks_like_path(cmd) and not Path(cmd).exists():
            logger.debug("Skipping missing interpreter %s", cmd)
            continue
        probe = await run_command(cmd, ["-c", _EXECUTABLE_PROBE], timeout=_probe_timeout())
        if not probe.ok:
            logger.debug("Interpreter candidate %s failed: %s", cmd, _describe_failure(probe))
            continue
        version_probe = await run_command(cmd, ["--version"], timeout=_probe_timeout())
        return InterpreterInfo(
            command=cmd,
            executable=first_line(probe.stdout),
            version=first_line(version_probe.stdout) or first_line(version_probe.stderr),
        )
    return None


# ---------------------------------------------------------------------------
# Package availability
# ---------------------------------------------------------------------------


def _parse_packages(payload: str) -> dict[str, bool]:
    try:
        data = json.loads(payload or "{}")
    except ValueError:
        return missing_packages()
    if not isinstance(data, dict):
        return missing_packages()
    return {name: data.get(name) is True for name in PYTHON_PACKAGES}


async def detect_python_packages(python_command: str | None) -> dict[str, bool]:
    """Check the tracked packages with *python_command*; never raises."""
    if not python_command:
        return missing_packages()
    result = await run_command(python_command, ["-c", _PACKAGE_PROBE], timeout=_probe_timeout())
    if not result.ok:
        logger.debug("Package probe failed for %s: %s", python_command, _describe_failure(result))
        return missing_packages()
    return _parse_packages(first_line(result.stdout))


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------


async def collect_diagnostics() -> CapabilityReport:
    latex = await check_latex_engines()
    interpreter = await detect_python()
    packages = await detect_python_packages(interpreter.command if interpreter else None)

    return CapabilityReport(
        ok=True,
        platform=sys.platform,
        arch=platform.machine(),
        runtime_version=platform.python_version(),
        hostname=socket.gethostname(),
        data_dir=settings.data_dir,
        latex=latex,
        python=PythonInfo(
            ok=interpreter is not None,
            command=interpreter.command if interpreter else "",
            executable=interpreter.executable if interpreter else "",
            version=interpreter.version if interpreter else "",
            packages=packages,
        ),
    )
