"""Tests for the health, version and desktop diagnostics endpoints."""

from unittest.mock import AsyncMock, patch

import pytest

from app.api.routes import desktop
from app.models.diagnostics import CapabilityReport, PythonInfo, ToolchainEntry


def _report() -> CapabilityReport:
    return CapabilityReport(
        platform="linux",
        arch="x86_64",
        runtime_version="3.12.1",
        hostname="builder",
        data_dir="/tmp/quire",
        latex={
            "pdflatex": ToolchainEntry(ok=True, version="pdfTeX 3.141592653"),
            "tectonic": ToolchainEntry(ok=False, error="No such file or directory"),
        },
        python=PythonInfo(ok=True, command="python3", executable="/usr/bin/python3", version="Python 3.12.1"),
    )


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    response = await client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


@pytest.mark.asyncio
async def test_version_endpoint(client):
    response = await client.get("/api/version")
    assert response.status_code == 200
    assert response.json()["title"] == "Quire API"


@pytest.mark.asyncio
async def test_diagnostics_uses_camel_case_keys(client):
    with patch.object(desktop, "collect_diagnostics", AsyncMock(return_value=_report())):
        response = await client.get("/api/desktop/diagnostics")

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["runtimeVersion"] == "3.12.1"
    assert body["dataDir"] == "/tmp/quire"
    assert list(body["latex"]) == ["pdflatex", "tectonic"]
    assert body["latex"]["tectonic"] == {"ok": False, "version": "", "error": "No such file or directory"}
    assert body["python"]["packages"] == {"matplotlib": False, "pandas": False, "seaborn": False}


@pytest.mark.asyncio
async def test_diagnostics_recomputed_per_request(client):
    collect = AsyncMock(return_value=_report())
    with patch.object(desktop, "collect_diagnostics", collect):
        await client.get("/api/desktop/diagnostics")
        await client.get("/api/desktop/diagnostics")
    assert collect.await_count == 2


@pytest.mark.asyncio
async def test_unhandled_error_returns_json_500(client):
    with patch.object(desktop, "collect_diagnostics", AsyncMock(side_effect=RuntimeError("probe crashed"))):
        response = await client.get("/api/desktop/diagnostics")
    assert response.status_code == 500
    assert response.json()["ok"] is False
