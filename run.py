#!/usr/bin/env python3
"""
Quire Desktop - Launcher

Starts the local Quire backend on a free port, waits until it reports healthy,
hands the resolved URL to the UI and shuts the backend down gracefully when the
application exits.

Usage:
    python run.py                                  # Spawn the bundled backend
    python run.py --open                           # ...and open it in the browser
    python run.py --port 8787                      # Pin the backend port
    python run.py --external-backend http://127.0.0.1:8787
                                                   # Attach to a running backend
    python run.py --diagnostics                    # Print the toolchain report and exit
    python run.py --check-only                     # Run checks without starting anything

Environment Variables:
    - QUIRE_EXTERNAL_BACKEND=1 / QUIRE_BACKEND_URL: attach instead of spawning
    - PORT: pin the backend port
    - QUIRE_DATA_DIR: data directory handed to the backend
    - QUIRE_BACKEND_TIMEOUT: startup timeout in seconds (default 30)
    - QUIRE_RUNTIME_ROOT: directory containing backend/serve.py
    - QUIRE_DEV_URL: extra origin the UI may navigate to (dev server)

Backend environment contract:
    The backend receives PORT, QUIRE_DESKTOP=1, QUIRE_TUNNEL=false,
    QUIRE_DATA_DIR and QUIRE_REPO_ROOT. Nothing else couples the processes.

Port allocation:
    The launcher asks the OS for an ephemeral port, closes the probe socket and
    passes the number to the backend. Another process can grab that port in the
    gap before the backend binds it. When that happens the backend exits before
    it ever becomes healthy; the launcher reports BackendExitedError and, unless
    the port was pinned, retries on a fresh port (--port-retries, default 1).
"""

import asyncio
import argparse
import json
import os
import platform
import signal
import socket
import sys
import time
import webbrowser
from enum import Enum
from importlib.util import find_spec
from pathlib import Path
from typing import Optional, List, Dict, Any, Callable, Iterable, Tuple
from urllib.parse import urlsplit

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed


# ============================================================================
# Constants
# ============================================================================

PYTHON_MIN_VERSION = (3, 11)

LOOPBACK_HOST = '127.0.0.1'
DEFAULT_EXTERNAL_BACKEND_URL = 'http://127.0.0.1:8787'

HEALTH_PATH = '/api/health'
DIAGNOSTICS_PATH = '/api/desktop/diagnostics'
BACKEND_STARTUP_TIMEOUT = 30.0  # seconds (overridable via QUIRE_BACKEND_TIMEOUT or --startup-timeout)
HEALTH_CHECK_INTERVAL = 0.3  # seconds between polls
HEALTH_CHECK_REQUEST_TIMEOUT = 2.0  # seconds per HTTP request
DIAGNOSTICS_REQUEST_TIMEOUT = 60.0  # the backend probes every toolchain on each request

SHUTDOWN_GRACE_PERIOD = 2.0  # seconds between SIGTERM and SIGKILL
STREAM_DRAIN_TIMEOUT = 1.0  # seconds to flush remaining child output after exit
DEFAULT_PORT_RETRIES = 1

BACKEND_DEPENDENCIES = ('fastapi', 'uvicorn', 'pydantic_settings')

IS_WINDOWS = platform.system() == 'Windows'


# ANSI color codes
class Color:
    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'
    WHITE = '\033[37m'
    GRAY = '\033[90m'


# ============================================================================
# Exception Classes
# ============================================================================

class CheckError(Exception):
    """Critical check failure that prevents startup."""
    pass


class CheckWarning(Exception):
    """Non-critical check failure that allows startup with warning."""
    pass


class CheckSkipped(Exception):
    """Check was skipped (e.g., not applicable for current mode)."""
    pass


class LauncherError(Exception):
    """Fatal startup failure. Reported once to the user, then the launcher exits."""

    retryable = False


class AllocationError(LauncherError):
    """No local port could be obtained."""
    pass


class SpawnError(LauncherError):
    """The backend entry is missing or could not be executed."""
    pass


class HealthTimeoutError(LauncherError):
    """The backend started but never answered its health check in time."""
    pass


class BackendExitedError(LauncherError):
    """The backend exited before it became healthy (e.g. its port was taken)."""

    retryable = True

    def __init__(self, returncode: Optional[int]):
        self.returncode = returncode
        super().__init__(f"Backend exited before becoming healthy (code={returncode})")


# ============================================================================
# LogMultiplexer
# ============================================================================

class LogMultiplexer:
    """Handles colored, prefixed output streaming from the launcher and the backend."""

    def __init__(self, color_enabled: bool = True):
        self.color_enabled = color_enabled
        self.lock = asyncio.Lock()

        # Source-specific colors
        self.service_colors = {
            'system': Color.WHITE + Color.BOLD,
            'backend': Color.BLUE,
        }

    def _colorize(self, text: str, color: str) -> str:
        """Apply color to text if colors are enabled."""
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    async def read_stream(self, stream: asyncio.StreamReader, service: str, stream_type: str):
        """Read from a stream line by line and print with source prefix."""
        to_stderr = stream_type == 'stderr'
        try:
            while True:
                line = await stream.readline()
                if not line:
                    break

                message = line.decode('utf-8', errors='replace').rstrip()
                if message:  # Skip empty lines
                    await self.log(service, message, to_stderr=to_stderr)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            await self.error('system', f"Error reading {service} {stream_type}: {e}")

    async def log(self, service: str, message: str, level: str = 'info', to_stderr: bool = False):
        """Print a log message with source prefix and color."""
        async with self.lock:
            color = self.service_colors.get(service, Color.WHITE)
            prefix = self._colorize(f"[{service}]", color)

            # Apply level-specific styling
            if level == 'error':
                message = self._colorize(message, Color.RED)
            elif level == 'warning':
                message = self._colorize(message, Color.YELLOW)
            elif level == 'success':
                message = self._colorize(message, Color.GREEN)

            out = sys.stderr if to_stderr or level == 'error' else sys.stdout
            print(f"{prefix} {message}", file=out, flush=True)

    async def info(self, service: str, message: str):
        """Print an info message."""
        await self.log(service, message, 'info')

    async def success(self, service: str, message: str):
        """Print a success message."""
        await self.log(service, message, 'success')

    async def warning(self, service: str, message: str):
        """Print a warning message."""
        await self.log(service, message, 'warning')

    async def error(self, service: str, message: str):
        """Print an error message."""
        await self.log(service, message, 'error')


# ============================================================================
# PortAllocator
# ============================================================================

class PortAllocator:
    """Obtains an OS-assigned ephemeral port on the loopback interface."""

    def __init__(self, host: str = LOOPBACK_HOST):
        self.host = host

    def request(self) -> int:
        """Bind a transient listener, read its port, release it.

        The port is free when this returns but is not reserved; see the
        module docstring for how the launcher handles losing it.
        """
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((self.host, 0))
                s.listen(1)
                port = s.getsockname()[1]
        except OSError as e:
            raise AllocationError(f"Failed to allocate a local port: {e}") from e

        if not isinstance(port, int) or port <= 0:
            raise AllocationError(f"Failed to resolve a free port (got {port!r})")
        return port


# ============================================================================
# HealthMonitor
# ============================================================================

class _NotReady(Exception):
    """A single poll did not see a success status."""


class HealthMonitor:
    """Blocks until an HTTP endpoint answers with a success status."""

    def __init__(
        self,
        logger: LogMultiplexer,
        poll_interval: float = HEALTH_CHECK_INTERVAL,
        request_timeout: float = HEALTH_CHECK_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.logger = logger
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self.transport = transport

    async def wait_until_healthy(self, url: str, timeout: float = BACKEND_STARTUP_TIMEOUT) -> None:
        """
        Poll *url* until it returns 2xx.
        Raises HealthTimeoutError once *timeout* seconds have elapsed.
        Connection errors and non-2xx responses are retried silently.
        """
        await self.logger.info('system', f"Waiting for backend at {url}...")
        deadline = time.monotonic() + timeout

        async with httpx.AsyncClient(transport=self.transport, trust_env=False) as client:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_delay(timeout),
                    wait=wait_fixed(self.poll_interval),
                    retry=retry_if_exception_type((httpx.HTTPError, _NotReady)),
                ):
                    with attempt:
                        await self._poll(client, url, deadline)
            except RetryError as e:
                raise HealthTimeoutError(
                    f"Backend health check timed out after {timeout:g}s: {url}"
                ) from e

        await self.logger.success('system', "Backend is ready")

    async def _poll(self, client: httpx.AsyncClient, url: str, deadline: float) -> None:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise _NotReady("deadline elapsed")
        response = await client.get(url, timeout=min(self.request_timeout, remaining))
        if not response.is_success:
            raise _NotReady(f"HTTP {response.status_code}")


# ============================================================================
# BackendProcess / BackendEndpoint
# ============================================================================

class ProcessState(Enum):
    """Lifecycle of a spawned backend. Transitions only move forward."""
    RUNNING = 'running'
    EXITING = 'exiting'
    EXITED = 'exited'


_STATE_ORDER = {ProcessState.RUNNING: 0, ProcessState.EXITING: 1, ProcessState.EXITED: 2}


class BackendProcess:
    """Exclusive handle to a spawned backend process, owned by the supervisor."""

    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process
        self.pid = process.pid
        self.state = ProcessState.RUNNING
        self.returncode: Optional[int] = None
        self.exit_signal: Optional[int] = None
        self.stream_tasks: List[asyncio.Task] = []
        self.exit_task: Optional[asyncio.Task] = None

    def _advance(self, state: ProcessState) -> bool:
        if _STATE_ORDER[state] <= _STATE_ORDER[self.state]:
            return False
        self.state = state
        return True

    def mark_exiting(self) -> bool:
        return self._advance(ProcessState.EXITING)

    def mark_exited(self, returncode: int) -> None:
        if not self._advance(ProcessState.EXITED):
            return
        if returncode is not None and returncode < 0:
            self.exit_signal = -returncode
            self.returncode = None
        else:
            self.returncode = returncode

    @property
    def is_running(self) -> bool:
        return self.state is not ProcessState.EXITED

    def __repr__(self) -> str:
        return f"BackendProcess(pid={self.pid}, state={self.state.value})"


class BackendEndpoint:
    """Base URL of a healthy backend. Written at most once, read-only afterwards."""

    def __init__(self):
        self._url: Optional[str] = None

    @property
    def url(self) -> Optional[str]:
        return self._url

    def set(self, url: str) -> None:
        if self._url is not None:
            raise RuntimeError(f"Backend endpoint already resolved to {self._url}")
        self._url = url.rstrip('/')

    def __bool__(self) -> bool:
        return self._url is not None


def backend_environment(
    port: int,
    data_dir: Path,
    repo_root: Path,
    base: Optional[Dict[str, str]] = None,
) -> Dict[str, str]:
    """Build the backend's environment: the parent env plus the desktop contract."""
    env = dict(os.environ if base is None else base)
    env.update({
        'PORT': str(port),
        'QUIRE_DESKTOP': '1',
        'QUIRE_TUNNEL': 'false',
        'QUIRE_DATA_DIR': str(data_dir),
        'QUIRE_REPO_ROOT': str(repo_root),
        'PYTHONUNBUFFERED': '1',
    })
    return env


# ============================================================================
# BackendSupervisor
# ============================================================================

class BackendSupervisor:
    """Spawns, monitors and terminates the backend process.

    One instance lives as long as the application; it holds the only handle
    to the child and the only writable reference to the backend endpoint.
    """

    def __init__(
        self,
        logger: LogMultiplexer,
        port_allocator: Optional[PortAllocator] = None,
        health_monitor: Optional[HealthMonitor] = None,
        grace_period: float = SHUTDOWN_GRACE_PERIOD,
        python: str = sys.executable,
    ):
        self.logger = logger
        self.port_allocator = port_allocator or PortAllocator()
        self.health_monitor = health_monitor or HealthMonitor(logger)
        self.grace_period = grace_period
        self.python = python
        self.endpoint = BackendEndpoint()
        self.handle: Optional[BackendProcess] = None

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def start(self, entry_path: Path, env: Dict[str, str], cwd: Path) -> BackendProcess:
        """Spawn the backend and return immediately with its handle."""
        entry_path = Path(entry_path)
        if not entry_path.is_file():
            raise SpawnError(f"Backend entry not found: {entry_path}")
        if self.handle is not None and self.handle.is_running:
            raise SpawnError(f"Backend already running (pid {self.handle.pid})")

        try:
            process = await asyncio.create_subprocess_exec(
                self.python, str(entry_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env=env,
                start_new_session=not IS_WINDOWS,
            )
        except OSError as e:
            raise SpawnError(f"Failed to start backend {entry_path}: {e}") from e

        handle = BackendProcess(process)
        if process.stdout:
            handle.stream_tasks.append(
                asyncio.create_task(self.logger.read_stream(process.stdout, 'backend', 'stdout'))
            )
        if process.stderr:
            handle.stream_tasks.append(
                asyncio.create_task(self.logger.read_stream(process.stderr, 'backend', 'stderr'))
            )
        handle.exit_task = asyncio.create_task(self._watch_exit(handle))
        self.handle = handle

        await self.logger.info('backend', f"Started (pid {process.pid})")
        return handle

    async def _watch_exit(self, handle: BackendProcess) -> None:
        returncode = await handle.process.wait()
        deliberate = handle.state is ProcessState.EXITING
        handle.mark_exited(returncode)
        if not deliberate:
            await self.logger.error(
                'backend',
                f"exited unexpectedly (code={handle.returncode}, signal={handle.exit_signal})",
            )

    def _send_signal(self, handle: BackendProcess, sig: int) -> None:
        """Signal the backend's whole process group (POSIX) or the process (Windows)."""
        process = handle.process
        try:
            if not IS_WINDOWS:
                os.killpg(process.pid, sig)
            elif sig == signal.SIGTERM:
                process.terminate()
            else:
                process.kill()
        except (ProcessLookupError, PermissionError, OSError):
            try:
                if sig == signal.SIGTERM:
                    process.terminate()
                else:
                    process.kill()
            except ProcessLookupError:
                pass

    async def stop(self, handle: Optional[BackendProcess] = None) -> None:
        """Terminate gracefully; force-kill only after the grace period."""
        handle = handle or self.handle
        if handle is None:
            return

        if handle.mark_exiting():
            await self.logger.info('backend', "Stopping...")
            self._send_signal(handle, signal.SIGTERM)
            try:
                # shield() keeps the watcher alive when the grace timer fires
                await asyncio.wait_for(asyncio.shield(handle.exit_task), timeout=self.grace_period)
                await self.logger.success('backend', "Stopped")
            except asyncio.TimeoutError:
                await self.logger.warning('backend', "Force killing...")
                kill = signal.SIGKILL if hasattr(signal, 'SIGKILL') else signal.SIGTERM
                self._send_signal(handle, kill)
                await handle.exit_task
                await self.logger.success('backend', "Killed")
        elif handle.exit_task is not None:
            # Already exiting (concurrent stop) or exited
            await handle.exit_task

        await self._drain_streams(handle)

    async def _drain_streams(self, handle: BackendProcess) -> None:
        if not handle.stream_tasks:
            return
        _, pending = await asyncio.wait(handle.stream_tasks, timeout=STREAM_DRAIN_TIMEOUT)
        for task in pending:
            task.cancel()
        await asyncio.gather(*handle.stream_tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start_backend(
        self,
        entry_path: Path,
        cwd: Path,
        data_dir: Path,
        repo_root: Path,
        port: Optional[int] = None,
        timeout: float = BACKEND_STARTUP_TIMEOUT,
        retries: int = DEFAULT_PORT_RETRIES,
    ) -> str:
        """Spawn the backend and block until it is healthy. Returns the endpoint URL.

        A pinned *port* is never retried; an allocated one is re-allocated up
        to *retries* times if the backend dies before becoming healthy.
        """
        attempts = 1 if port is not None else max(retries, 0) + 1

        for attempt in range(1, attempts + 1):
            chosen = port if port is not None else self.port_allocator.request()
            env = backend_environment(chosen, data_dir, repo_root)
            handle = await self.start(entry_path, env, cwd)
            url = f"http://{LOOPBACK_HOST}:{chosen}"

            try:
                await self._wait_ready(handle, url, timeout)
            except BackendExitedError:
                await self._drain_streams(handle)
                if attempt < attempts:
                    await self.logger.warning(
                        'system', f"Backend died on port {chosen}, retrying on a new port..."
                    )
                    continue
                raise
            except BaseException:
                await self.stop(handle)
                raise

            self.endpoint.set(url)
            return url

        raise AssertionError("unreachable")

    async def _wait_ready(self, handle: BackendProcess, url: str, timeout: float) -> None:
        """Health check raced against the process exiting."""
        health = asyncio.create_task(
            self.health_monitor.wait_until_healthy(f"{url}{HEALTH_PATH}", timeout)
        )
        try:
            await asyncio.wait({health, handle.exit_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            health.cancel()
            raise

        if health.done():
            health.result()
            return

        health.cancel()
        await asyncio.gather(health, return_exceptions=True)
        raise BackendExitedError(handle.returncode)

    async def attach_external(self, url: str, timeout: float = BACKEND_STARTUP_TIMEOUT) -> str:
        """Use an already-running backend. It must still pass the health check."""
        url = url.rstrip('/')
        await self.health_monitor.wait_until_healthy(f"{url}{HEALTH_PATH}", timeout)
        self.endpoint.set(url)
        return url


# ============================================================================
# NavigationGuard
# ============================================================================

class NavigationDecision(Enum):
    ALLOW = 'allow'          # stay in the app window
    EXTERNAL = 'external'    # cancelled in-app, opened by the OS
    DENY = 'deny'            # cancelled, not opened anywhere


_DEFAULT_PORTS = {'http': 80, 'https': 443}
EXTERNAL_SCHEMES = ('http', 'https', 'mailto')

Origin = Tuple[str, str, int]


def url_origin(url: str) -> Optional[Origin]:
    """Return (scheme, host, port) for http(s) URLs, None otherwise."""
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in _DEFAULT_PORTS or not parts.hostname:
        return None
    return scheme, parts.hostname.lower(), port or _DEFAULT_PORTS[scheme]


class NavigationGuard:
    """Keeps the app window on trusted origins; everything else goes to the OS.

    A UI shell wires on_window_open and on_will_navigate to its window's
    new-window and will-navigate events and cancels any non-ALLOW decision.
    """

    def __init__(
        self,
        backend_url: str,
        dev_urls: Iterable[str] = (),
        open_external: Optional[Callable[[str], Any]] = None,
    ):
        self.trusted = {
            origin for origin in (url_origin(u) for u in (backend_url, *dev_urls) if u) if origin
        }
        self.open_external = open_external or webbrowser.open

    def is_trusted(self, url: str) -> bool:
        origin = url_origin(url)
        return origin is not None and origin in self.trusted

    def decide(self, url: str) -> NavigationDecision:
        if self.is_trusted(url):
            return NavigationDecision.ALLOW
        try:
            scheme = urlsplit(url).scheme.lower()
        except ValueError:
            return NavigationDecision.DENY
        if scheme in EXTERNAL_SCHEMES:
            return NavigationDecision.EXTERNAL
        return NavigationDecision.DENY

    def on_window_open(self, url: str) -> NavigationDecision:
        """A page asked for a new top-level window."""
        return self._handle(url)

    def on_will_navigate(self, url: str) -> NavigationDecision:
        """The main window is about to navigate."""
        return self._handle(url)

    def _handle(self, url: str) -> NavigationDecision:
        decision = self.decide(url)
        if decision is NavigationDecision.EXTERNAL:
            self.open_external(url)
        return decision


# ============================================================================
# PrerequisiteChecker
# ============================================================================

class PrerequisiteChecker:
    """Validates environment prerequisites before starting the backend."""

    def __init__(self, config: Dict[str, Any], color_enabled: bool = True):
        self.config = config
        self.color_enabled = color_enabled
        self.errors: List[Tuple[str, str]] = []
        self.warnings: List[Tuple[str, str]] = []
        self.external = bool(config.get('external_backend'))

    def _colorize(self, text: str, color: str) -> str:
        """Apply color to text if colors are enabled."""
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    def check_all(self) -> bool:
        """Run all applicable checks. Returns True if all critical checks pass."""
        checks = [
            ("Python version", self.check_python_version),
            ("Backend entry", self.check_backend_entry),
            ("Backend dependencies", self.check_backend_dependencies),
            ("Data directory", self.check_data_dir),
            ("Backend port availability", self.check_backend_port),
        ]

        for name, check_func in checks:
            try:
                check_func()
            except CheckError as e:
                self.errors.append((name, str(e)))
            except CheckWarning as e:
                self.warnings.append((name, str(e)))
            except CheckSkipped:
                pass

        return len(self.errors) == 0

    def check_python_version(self):
        """Verify Python version is 3.11+."""
        version = sys.version_info[:2]
        if version < PYTHON_MIN_VERSION:
            raise CheckError(
                f"Python {PYTHON_MIN_VERSION[0]}.{PYTHON_MIN_VERSION[1]}+ required, found {version[0]}.{version[1]}\n"
                f"    Fix: Install Python 3.11+: https://python.org/downloads"
            )

    def check_backend_entry(self):
        """Verify the backend server script is where the launcher will look for it."""
        if self.external:
            raise CheckSkipped()
        entry = resolve_backend_entry(Path(self.config['runtime_root']))
        if not entry.is_file():
            raise CheckError(
                f"Backend entry not found: {entry}\n"
                f"    Fix: set QUIRE_RUNTIME_ROOT to the directory containing backend/serve.py"
            )

    def check_backend_dependencies(self):
        """Verify the backend's packages are importable by this interpreter."""
        if self.external:
            raise CheckSkipped()
        missing = [name for name in BACKEND_DEPENDENCIES if find_spec(name) is None]
        if missing:
            raise CheckError(
                f"Backend dependencies missing: {', '.join(missing)}\n"
                f"    Fix: pip install -e ."
            )

    def check_data_dir(self):
        """Verify the data directory can be created and written."""
        if self.external:
            raise CheckSkipped()
        data_dir = Path(self.config['data_dir'])
        try:
            data_dir.mkdir(parents=True, exist_ok=True)
            probe = data_dir / '.write_test'
            probe.write_text('ok', encoding='utf-8')
            probe.unlink()
        except OSError as e:
            raise CheckError(
                f"Data directory {data_dir} is not writable: {e}\n"
                f"    Fix: use --data-dir <dir> or set QUIRE_DATA_DIR"
            )

    def check_backend_port(self):
        """Check that a pinned backend port is available."""
        port = self.config.get('port')
        if self.external or port is None:
            raise CheckSkipped()
        if not self._is_port_available(port):
            raise CheckError(
                f"Port {port} is already in use\n"
                f"    Fix: Stop the existing process or drop --port to pick a free port"
            )

    def _is_port_available(self, port: int) -> bool:
        """Check if a port is available for binding."""
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind((LOOPBACK_HOST, port))
                return True
        except OSError:
            return False

    def print_results(self):
        """Print check results with colored output."""
        if self.errors:
            print(f"\n{self._colorize('❌ Prerequisite checks failed:', Color.RED + Color.BOLD)}\n")
            for name, error in self.errors:
                print(f"  {self._colorize('•', Color.RED)} {error}\n")
            print(f"{self._colorize('Fix the issues above and try again.', Color.RED)}\n")

        if self.warnings:
            print(f"\n{self._colorize('⚠️  Warnings:', Color.YELLOW + Color.BOLD)}\n")
            for name, warning in self.warnings:
                print(f"  {self._colorize('•', Color.YELLOW)} {warning}\n")

        if not self.errors and not self.warnings:
            print(f"{self._colorize('✅ All checks passed', Color.GREEN + Color.BOLD)}\n")
        elif not self.errors:
            print(f"{self._colorize('✅ All critical checks passed', Color.GREEN + Color.BOLD)}\n")


# ============================================================================
# SignalHandler
# ============================================================================

class SignalHandler:
    """Handles graceful shutdown on SIGINT/SIGTERM."""

    SIGNALS = (signal.SIGINT, signal.SIGTERM)

    def __init__(self):
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous: Dict[int, Any] = {}

    def setup(self):
        """Set up signal handlers."""
        self._loop = asyncio.get_running_loop()
        for sig in self.SIGNALS:
            try:
                self._loop.add_signal_handler(sig, self.shutdown_event.set)
            except (NotImplementedError, RuntimeError):
                # Windows event loops have no add_signal_handler
                self._previous[sig] = signal.signal(sig, self._handle_signal)

    def teardown(self):
        """Restore the default signal handling."""
        for sig in self.SIGNALS:
            if sig in self._previous:
                signal.signal(sig, self._previous.pop(sig))
            elif self._loop is not None:
                self._loop.remove_signal_handler(sig)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        self._loop.call_soon_threadsafe(self.shutdown_event.set)

    async def wait_for_shutdown(self):
        """Wait for shutdown signal."""
        await self.shutdown_event.wait()


# ============================================================================
# DesktopApp
# ============================================================================

class DesktopApp:
    """Top-level lifecycle: owns the supervisor for the whole application run."""

    def __init__(self, config: Dict[str, Any], logger: Optional[LogMultiplexer] = None):
        self.config = config
        self.logger = logger or LogMultiplexer(config.get('color_enabled', True))
        self.supervisor = BackendSupervisor(self.logger)
        self.navigation_guard: Optional[NavigationGuard] = None

    @property
    def backend_url(self) -> Optional[str]:
        return self.supervisor.endpoint.url

    async def start(self) -> str:
        """Start or attach the backend; returns once it is healthy."""
        timeout = self.config.get('startup_timeout', BACKEND_STARTUP_TIMEOUT)
        external = self.config.get('external_backend')

        if external:
            await self.logger.info('system', f"Using external backend {external}")
            url = await self.supervisor.attach_external(external, timeout)
        else:
            runtime_root = Path(self.config['runtime_root'])
            data_dir = Path(self.config['data_dir'])
            data_dir.mkdir(parents=True, exist_ok=True)
            url = await self.supervisor.start_backend(
                entry_path=resolve_backend_entry(runtime_root),
                cwd=runtime_root / 'backend',
                data_dir=data_dir,
                repo_root=runtime_root,
                port=self.config.get('port'),
                timeout=timeout,
                retries=self.config.get('port_retries', DEFAULT_PORT_RETRIES),
            )

        dev_url = self.config.get('dev_url')
        self.navigation_guard = NavigationGuard(url, dev_urls=[dev_url] if dev_url else [])
        return url

    def attach_ui(self, url: str) -> None:
        """Hand the resolved endpoint to the user interface.

        With --open the page is shown in the OS browser, but only when the
        navigation guard trusts its origin.
        """
        print_ready_banner(url, self.config.get('color_enabled', True))
        if self.config.get('open_browser'):
            target = self.config.get('dev_url') or url
            if self.navigation_guard is not None and self.navigation_guard.is_trusted(target):
                self.navigation_guard.open_external(target)

    async def fetch_diagnostics(self) -> Dict[str, Any]:
        """Ask the running backend for its toolchain capability report."""
        # Loopback or an explicit user URL; proxy settings never apply
        async with httpx.AsyncClient(timeout=DIAGNOSTICS_REQUEST_TIMEOUT, trust_env=False) as client:
            response = await client.get(f"{self.backend_url}{DIAGNOSTICS_PATH}")
            response.raise_for_status()
            return response.json()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def _until_shutdown(self, coro, signal_handler: SignalHandler) -> Tuple[bool, Any]:
        """Await *coro* unless a shutdown signal arrives first.

        Returns (interrupted, result). An interrupted coroutine is cancelled.
        """
        task = asyncio.ensure_future(coro)
        shutdown = asyncio.ensure_future(signal_handler.wait_for_shutdown())
        try:
            await asyncio.wait({task, shutdown}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            shutdown.cancel()

        if task.done():
            return False, task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return True, None

    async def run(self) -> int:
        """Run until a shutdown signal arrives. Returns the process exit code.

        A signal during startup or the diagnostics fetch is a normal exit (0).
        """
        signal_handler = SignalHandler()
        signal_handler.setup()

        try:
            try:
                interrupted, url = await self._until_shutdown(self.start(), signal_handler)
            except LauncherError as e:
                show_error_box("Quire startup failed", str(e), self.config.get('color_enabled', True))
                return 1
            if interrupted:
                await self.logger.info('system', "Shutdown requested during startup")
                return 0

            if self.config.get('diagnostics'):
                try:
                    interrupted, report = await self._until_shutdown(
                        self.fetch_diagnostics(), signal_handler
                    )
                except httpx.HTTPError as e:
                    await self.logger.error('system', f"Diagnostics request failed: {e}")
                    return 1
                if interrupted:
                    return 0
                print(json.dumps(report, indent=2))
                return 0

            self.attach_ui(url)
            await signal_handler.wait_for_shutdown()
            return 0
        finally:
            await self.stop()
            signal_handler.teardown()


# ============================================================================
# Utility Functions
# ============================================================================

def load_dotenv():
    """Load environment variables from .env file if it exists."""
    env_file = Path('.env')
    if env_file.exists():
        with open(env_file) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#'):
                    if '=' in line:
                        key, value = line.split('=', 1)
                        os.environ.setdefault(key.strip(), value.strip())


def resolve_runtime_root() -> Path:
    """Directory holding backend/serve.py (the repository in development)."""
    override = os.environ.get('QUIRE_RUNTIME_ROOT')
    if override:
        return Path(override).expanduser().resolve()
    return Path(__file__).parent.resolve()


def resolve_backend_entry(runtime_root: Path) -> Path:
    return runtime_root / 'backend' / 'serve.py'


def default_data_dir() -> Path:
    """Per-user data directory, following each platform's convention."""
    system = platform.system()
    if system == 'Windows':
        base = Path(os.environ.get('APPDATA') or Path.home() / 'AppData' / 'Roaming')
        return base / 'Quire' / 'data'
    if system == 'Darwin':
        return Path.home() / 'Library' / 'Application Support' / 'Quire' / 'data'
    base = Path(os.environ.get('XDG_DATA_HOME') or Path.home() / '.local' / 'share')
    return base / 'quire' / 'data'


def print_banner(config: Dict[str, Any], color_enabled: bool = True):
    """Print startup banner."""
    def colorize(text: str, color: str) -> str:
        if not color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    mode_str = 'EXTERNAL BACKEND' if config.get('external_backend') else 'DESKTOP'
    print(f"\n{colorize('=' * 60, Color.CYAN)}")
    print(f"{colorize('  Quire - Starting in ' + mode_str + ' mode', Color.CYAN + Color.BOLD)}")
    print(f"{colorize('=' * 60, Color.CYAN)}\n")


def print_ready_banner(url: str, color_enabled: bool = True):
    """Print ready banner with the backend URL."""
    def colorize(text: str, color: str) -> str:
        if not color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    print(f"\n{colorize('=' * 60, Color.GREEN)}")
    print(f"{colorize('  Quire is ready!', Color.GREEN + Color.BOLD)}")
    print(f"{colorize('=' * 60, Color.GREEN)}")
    print(f"  {colorize('App:', Color.BOLD)} {url}")
    print(f"  {colorize('Diagnostics:', Color.BOLD)} {url}{DIAGNOSTICS_PATH}")
    print(f"\n  {colorize('Press Ctrl+C to stop', Color.GRAY)}")
    print(f"{colorize('=' * 60, Color.GREEN)}\n")


def show_error_box(title: str, message: str, color_enabled: bool = True):
    """Blocking-style error notification shown before the launcher exits."""
    def colorize(text: str, color: str) -> str:
        if not color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    lines = [title, ''] + str(message).splitlines()
    width = max(len(line) for line in lines) + 4
    print(colorize('+' + '-' * width + '+', Color.RED), file=sys.stderr)
    for line in lines:
        print(colorize(f"|  {line.ljust(width - 4)}  |", Color.RED), file=sys.stderr)
    print(colorize('+' + '-' * width + '+', Color.RED), file=sys.stderr, flush=True)


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = argparse.ArgumentParser(
        description='Quire Desktop - Launcher',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py                                   # Spawn the backend on a free port
  python run.py --open                            # ...and open it in the browser
  python run.py --port 8787                       # Pin the backend port
  python run.py --external-backend http://127.0.0.1:8787
  python run.py --diagnostics                     # Print toolchain report and exit
  python run.py --check-only                      # Run checks without starting
        """
    )

    parser.add_argument(
        '--external-backend',
        metavar='URL',
        nargs='?',
        const=DEFAULT_EXTERNAL_BACKEND_URL,
        default=None,
        help=f'Attach to a running backend instead of spawning one (default URL: {DEFAULT_EXTERNAL_BACKEND_URL})'
    )
    parser.add_argument(
        '--port',
        type=int,
        default=None,
        help='Backend port (default: a free port chosen by the OS)'
    )
    parser.add_argument(
        '--data-dir',
        type=str,
        default=None,
        help='Data directory passed to the backend'
    )
    parser.add_argument(
        '--startup-timeout',
        type=float,
        default=None,
        help='Backend startup timeout in seconds (default: 30, overrides QUIRE_BACKEND_TIMEOUT env var)'
    )
    parser.add_argument(
        '--port-retries',
        type=int,
        default=DEFAULT_PORT_RETRIES,
        help=f'Fresh ports to try if the backend dies during startup (default: {DEFAULT_PORT_RETRIES})'
    )
    parser.add_argument(
        '--open',
        dest='open_browser',
        action='store_true',
        help='Open the app in the default browser once the backend is ready'
    )
    parser.add_argument(
        '--diagnostics',
        action='store_true',
        help='Print the toolchain diagnostics report as JSON and exit'
    )
    parser.add_argument(
        '--check-only',
        action='store_true',
        help='Run prerequisite checks only, do not start the backend'
    )
    parser.add_argument(
        '--skip-checks',
        action='store_true',
        help='Skip prerequisite checks (use with caution)'
    )
    parser.add_argument(
        '--no-color',
        action='store_true',
        help='Disable colored output'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    return parser


def build_config(args: argparse.Namespace, environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Merge CLI arguments with environment fallbacks into the launcher config."""
    env = os.environ if environ is None else environ

    external = args.external_backend
    if external is None and env.get('QUIRE_EXTERNAL_BACKEND') == '1':
        external = env.get('QUIRE_BACKEND_URL') or DEFAULT_EXTERNAL_BACKEND_URL

    port = args.port
    if port is None and env.get('PORT'):
        try:
            port = int(env['PORT'])
        except ValueError:
            raise SystemExit(f"Invalid backend port: {env['PORT']}")
    if port is not None and not 0 < port < 65536:
        raise SystemExit(f"Invalid backend port: {port}")

    startup_timeout = BACKEND_STARTUP_TIMEOUT
    if args.startup_timeout is not None:
        startup_timeout = args.startup_timeout
    elif env.get('QUIRE_BACKEND_TIMEOUT'):
        try:
            startup_timeout = float(env['QUIRE_BACKEND_TIMEOUT'])
        except ValueError:
            pass

    data_dir = args.data_dir or env.get('QUIRE_DATA_DIR') or str(default_data_dir())

    return {
        'external_backend': external,
        'port': port,
        'data_dir': str(Path(data_dir).expanduser()),
        'startup_timeout': startup_timeout,
        'port_retries': args.port_retries,
        'runtime_root': str(resolve_runtime_root()),
        'dev_url': env.get('QUIRE_DEV_URL') or None,
        'open_browser': args.open_browser,
        'diagnostics': args.diagnostics,
        'check_only': args.check_only,
        'verbose': args.verbose,
        'color_enabled': not args.no_color and sys.stdout.isatty(),
    }


# ============================================================================
# Main Entry Point
# ============================================================================

async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    # Load environment variables from .env if present
    load_dotenv()

    parser = create_argument_parser()
    args = parser.parse_args(argv)
    config = build_config(args)

    if not args.check_only and not args.diagnostics:
        print_banner(config, config['color_enabled'])

    # Run prerequisite checks
    if not args.skip_checks:
        checker = PrerequisiteChecker(config, config['color_enabled'])
        checks_passed = checker.check_all()
        if args.check_only or not checks_passed or checker.warnings:
            checker.print_results()

        if not checks_passed:
            return 1

    if args.check_only:
        return 0

    app = DesktopApp(config)
    try:
        return await app.run()
    except Exception as e:
        await app.logger.error('system', f"Fatal error: {e}")
        if config['verbose']:
            import traceback
            traceback.print_exc()
        return 1


def cli():
    """Console-script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        # Graceful exit on Ctrl+C
        sys.exit(0)


if __name__ == '__main__':
    cli()
