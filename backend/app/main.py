"""FastAPI application entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.routes import desktop, health
from app.config import settings
from app.services.tunnel import TunnelService

logger = logging.getLogger(__name__)

# Configure logging format based on dev_mode
if not settings.dev_mode:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='{"time":"%(asctime)s","level":"%(levelname)s","name":"%(name)s","message":"%(message)s"}',
    )
else:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )


async def start_tunnel_if_requested(tunnel: TunnelService) -> None:
    """Start the remote tunnel unless desktop mode or the tunnel setting forbids it."""
    if settings.desktop_mode:
        logger.info("Desktop mode detected: tunnel disabled.")
        return
    if not settings.tunnel_enabled:
        logger.info(
            "Want remote collaboration? Start with QUIRE_TUNNEL=localtunnel|cloudflared|ngrok"
        )
        return

    logger.info("Tunnel starting (%s)...", settings.tunnel_mode)
    result = await tunnel.start(settings.port, settings.tunnel_mode)
    if result:
        logger.info("Tunnel active (%s): %s", result.provider, result.url)
    else:
        logger.warning("Tunnel failed to start. Check that the provider is installed.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    # Startup
    os.makedirs(settings.data_dir, exist_ok=True)
    logger.info("Quire backend started at http://localhost:%d", settings.port)
    logger.info("Data directory: %s", settings.data_dir)

    tunnel = TunnelService(start_timeout=settings.tunnel_start_timeout_seconds)
    app.state.tunnel = tunnel
    await start_tunnel_if_requested(tunnel)
    yield
    # Shutdown
    await tunnel.stop()


app = FastAPI(
    title="Quire API",
    description="Local backend for the Quire desktop LaTeX editor",
    version="0.1.0",
    docs_url="/docs" if settings.dev_mode else None,
    redoc_url="/redoc" if settings.dev_mode else None,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(Exception)
async def _global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=True)
    detail = str(exc) if settings.dev_mode else "Internal server error"
    return JSONResponse(status_code=500, content={"ok": False, "error": detail})


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

# The desktop shell and a dev server may both talk to the backend.
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=".*",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept"],
)


# ---------------------------------------------------------------------------
# Routers, all under /api/
# ---------------------------------------------------------------------------

app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(desktop.router, prefix="/api/desktop", tags=["desktop"])


@app.get("/api/version")
async def version() -> dict:
    """Return build / version metadata."""
    return {"version": app.version, "title": app.title}
