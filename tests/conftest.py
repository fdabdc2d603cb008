"""Shared fixtures for launcher tests.

Provides a colorless LogMultiplexer, a launcher config factory and small
stand-in backend scripts written into tmp_path.
"""

import sys
import textwrap
from pathlib import Path

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from run import LogMultiplexer


# ---------------------------------------------------------------------------
# Logger / config factories
# ---------------------------------------------------------------------------

@pytest.fixture
def logger():
    """LogMultiplexer with color disabled."""
    return LogMultiplexer(color_enabled=False)


@pytest.fixture
def make_config(tmp_path):
    """Factory for launcher config dicts rooted in tmp_path."""
    def _make(**overrides):
        config = {
            "external_backend": None,
            "port": None,
            "data_dir": str(tmp_path / "data"),
            "startup_timeout": 5.0,
            "port_retries": 1,
            "runtime_root": str(tmp_path),
            "dev_url": None,
            "open_browser": False,
            "diagnostics": False,
            "check_only": False,
            "verbose": False,
            "color_enabled": False,
        }
        config.update(overrides)
        return config
    return _make


# ---------------------------------------------------------------------------
# Stand-in backend scripts
# ---------------------------------------------------------------------------

@pytest.fixture
def write_script(tmp_path):
    """Write a Python script into tmp_path and return its path."""
    def _write(name: str, source: str) -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path
    return _write


# Serves /api/health with 200 once STARTUP_DELAY seconds have passed.
HEALTHY_BACKEND = """
    import os, sys, time
    from http.server import BaseHTTPRequestHandler, HTTPServer

    STARTUP_DELAY = float(os.environ.get("STUB_STARTUP_DELAY", "0"))
    time.sleep(STARTUP_DELAY)

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            status = 200 if self.path == "/api/health" else 404
            body = b'{"ok": true}' if status == 200 else b'{}'
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", int(os.environ["PORT"])), Handler)
    print("stub listening on", os.environ["PORT"], flush=True)
    print("stub warning line", file=sys.stderr, flush=True)
    server.serve_forever()
"""


@pytest.fixture
def healthy_backend(write_script):
    return write_script("healthy_backend.py", HEALTHY_BACKEND)


@pytest.fixture
def healthy_backend_source():
    return textwrap.dedent(HEALTHY_BACKEND)
