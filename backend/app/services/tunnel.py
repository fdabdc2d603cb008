"""Remote tunnel collaborator.

Launches a tunnel provider's CLI pointed at the local server and scans its
output for the public URL. The provider owns the protocol; this module only
starts it, reads the URL and stops it again.
"""

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_STOP_TIMEOUT_SECONDS = 2.0


@dataclass(frozen=True)
class TunnelInfo:
    provider: str
    url: str


@dataclass(frozen=True)
class TunnelProvider:
    name: str
    executable: str
    args: tuple[str, ...]
    url_pattern: re.Pattern

    def command(self, port: int) -> list[str]:
        return [self.executable, *(arg.format(port=port) for arg in self.args)]


PROVIDERS: dict[str, TunnelProvider] = {
    "localtunnel": TunnelProvider(
        name="localtunnel",
        executable="lt",
        args=("--port", "{port}"),
        url_pattern=re.compile(r"your url is:\s*(https://\S+)", re.IGNORECASE),
    ),
    "cloudflared": TunnelProvider(
        name="cloudflared",
        executable="cloudflared",
        args=("tunnel", "--url", "http://localhost:{port}"),
        url_pattern=re.compile(r"(https://[a-z0-9-]+\.trycloudflare\.com)"),
    ),
    "ngrok": TunnelProvider(
        name="ngrok",
        executable="ngrok",
        args=("http", "{port}", "--log", "stdout"),
        url_pattern=re.compile(r"url=(https://\S+)"),
    ),
}

# A bare truthy QUIRE_TUNNEL value selects this provider.
DEFAULT_PROVIDER = "localtunnel"


def resolve_provider(mode: str) -> TunnelProvider | None:
    mode = (mode or "").strip().lower()
    if mode in PROVIDERS:
        return PROVIDERS[mode]
    if mode in ("true", "1", "yes", "on"):
        return PROVIDERS[DEFAULT_PROVIDER]
    return None


def extract_url(provider: TunnelProvider, line: str) -> str | None:
    match = provider.url_pattern.search(line)
    return match.group(1) if match else None


class TunnelService:
    """Owns at most one running tunnel process."""

    def __init__(self, start_timeout: float = 20.0):
        self.start_timeout = start_timeout
        self.info: TunnelInfo | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._drain_task: asyncio.Task | None = None

    async def start(self, port: int, mode: str) -> TunnelInfo | None:
        """Start the tunnel for *port*. Returns None when it cannot be established."""
        provider = resolve_provider(mode)
        if provider is None:
            logger.warning("Unknown tunnel provider '%s'", mode)
            return None
        if shutil.which(provider.executable) is None:
            logger.warning("Tunnel provider '%s' is not installed", provider.executable)
            return None

        try:
            process = await asyncio.create_subprocess_exec(
                *provider.command(port),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            logger.warning("Could not launch %s: %s", provider.name, e)
            return None
        self._process = process

        try:
            url = await asyncio.wait_for(self._scan_for_url(provider, process), self.start_timeout)
        except asyncio.TimeoutError:
            url = None

        if not url:
            logger.warning("Tunnel provider '%s' did not report a public URL", provider.name)
            await self.stop()
            return None

        self.info = TunnelInfo(provider=provider.name, url=url)
        self._drain_task = asyncio.create_task(self._drain_output(provider, process))
        return self.info

    async def _scan_for_url(
        self, provider: TunnelProvider, process: asyncio.subprocess.Process
    ) -> str | None:
        while True:
            line = await process.stdout.readline()
            if not line:
                return None
            url = extract_url(provider, line.decode("utf-8", errors="replace"))
            if url:
                return url

    async def _drain_output(
        self, provider: TunnelProvider, process: asyncio.subprocess.Process
    ) -> None:
        # Keep the pipe empty so a chatty provider never blocks on write.
        while True:
            line = await process.stdout.readline()
            if not line:
                break
            logger.debug("[%s] %s", provider.name, line.decode("utf-8", errors="replace").rstrip())
        if process.returncode is None:
            await process.wait()
        if self._process is process:
            logger.warning("Tunnel provider %s exited (code=%s)", provider.name, process.returncode)

    async def stop(self) -> None:
        if self._drain_task is not None:
            self._drain_task.cancel()
            self._drain_task = None
        process, self._process = self._process, None
        self.info = None
        if process is None or process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=_STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
