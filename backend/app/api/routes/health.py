"""Readiness endpoint polled by the desktop launcher."""

from fastapi import APIRouter

router = APIRouter()


@router.get("/health")
async def health_check() -> dict:
    """Liveness check: 200 means the server accepts requests."""
    return {"ok": True}
