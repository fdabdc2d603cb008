"""Tests for tunnel provider selection, URL extraction and startup gating."""

import sys
from unittest.mock import AsyncMock, patch

import pytest

from app import main
from app.services.tunnel import (
    DEFAULT_PROVIDER,
    PROVIDERS,
    TunnelProvider,
    TunnelService,
    extract_url,
    resolve_provider,
)


class TestResolveProvider:

    @pytest.mark.parametrize("mode", ["localtunnel", "cloudflared", "ngrok"])
    def test_named_providers(self, mode):
        assert resolve_provider(mode).name == mode

    @pytest.mark.parametrize("mode", ["true", "1", "YES", " on "])
    def test_truthy_selects_default(self, mode):
        assert resolve_provider(mode).name == DEFAULT_PROVIDER

    @pytest.mark.parametrize("mode", ["false", "", "bogus"])
    def test_unknown_or_off(self, mode):
        assert resolve_provider(mode) is None

    def test_command_substitutes_port(self):
        assert PROVIDERS["cloudflared"].command(8787) == [
            "cloudflared", "tunnel", "--url", "http://localhost:8787",
        ]


class TestExtractUrl:

    def test_localtunnel(self):
        line = "your url is: https://quiet-fox-12.loca.lt\n"
        assert extract_url(PROVIDERS["localtunnel"], line) == "https://quiet-fox-12.loca.lt"

    def test_cloudflared(self):
        line = "INF |  https://bright-sun-abc.trycloudflare.com                  |"
        assert extract_url(PROVIDERS["cloudflared"], line) == "https://bright-sun-abc.trycloudflare.com"

    def test_ngrok(self):
        line = 't=2024 lvl=info msg="started tunnel" url=https://ab12.ngrok.app'
        assert extract_url(PROVIDERS["ngrok"], line) == "https://ab12.ngrok.app"

    def test_no_match(self):
        assert extract_url(PROVIDERS["ngrok"], "starting...") is None


# A provider backed by the test interpreter so no real tunnel CLI is needed.
def _fake_provider(script: str) -> TunnelProvider:
    import re
    return TunnelProvider(
        name="fake",
        executable=sys.executable,
        args=("-c", script),
        url_pattern=re.compile(r"url: (https://\S+)"),
    )


class TestTunnelService:

    @pytest.mark.asyncio
    async def test_missing_executable_returns_none(self):
        service = TunnelService(start_timeout=1)
        with patch("app.services.tunnel.shutil.which", return_value=None):
            assert await service.start(8787, "cloudflared") is None

    @pytest.mark.asyncio
    async def test_reports_url_and_stops(self):
        script = "import time; print('url: https://fake.example', flush=True); time.sleep(30)"
        service = TunnelService(start_timeout=5)
        with patch("app.services.tunnel.resolve_provider", return_value=_fake_provider(script)):
            info = await service.start(8787, "fake")
        try:
            assert info.provider == "fake"
            assert info.url == "https://fake.example"
        finally:
            await service.stop()
        assert service.info is None

    @pytest.mark.asyncio
    async def test_silent_provider_times_out(self):
        script = "import time; time.sleep(30)"
        service = TunnelService(start_timeout=0.5)
        with patch("app.services.tunnel.resolve_provider", return_value=_fake_provider(script)):
            assert await service.start(8787, "fake") is None
        assert service.info is None


class TestStartupGating:

    @pytest.mark.asyncio
    async def test_desktop_mode_never_starts_tunnel(self):
        tunnel = AsyncMock()
        with patch.object(main.settings, "desktop_mode", True), \
             patch.object(main.settings, "tunnel_mode", "cloudflared"):
            await main.start_tunnel_if_requested(tunnel)
        tunnel.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_tunnel_not_started(self):
        tunnel = AsyncMock()
        with patch.object(main.settings, "desktop_mode", False), \
             patch.object(main.settings, "tunnel_mode", "false"):
            await main.start_tunnel_if_requested(tunnel)
        tunnel.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_enabled_tunnel_started(self):
        tunnel = AsyncMock()
        tunnel.start.return_value = None
        with patch.object(main.settings, "desktop_mode", False), \
             patch.object(main.settings, "tunnel_mode", "ngrok"), \
             patch.object(main.settings, "port", 9001):
            await main.start_tunnel_if_requested(tunnel)
        tunnel.start.assert_awaited_once_with(9001, "ngrok")
