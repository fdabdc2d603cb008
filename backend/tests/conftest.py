"""Shared test fixtures for Quire backend tests."""

import httpx
import pytest_asyncio

from app.main import app


@pytest_asyncio.fixture
async def client():
    """Async HTTP client bound to the ASGI app, no network involved."""
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
