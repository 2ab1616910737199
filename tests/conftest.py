"""Shared fixtures: free ports and throwaway backend executables."""

from __future__ import annotations

import os
import socket
import stat
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

# Parses --port=<n> like the real backend and answers GET /api/health.
_HEALTH_SERVER = """
import sys
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

port = int(next(a for a in sys.argv if a.startswith("--port=")).split("=", 1)[1])


class Handler(BaseHTTPRequestHandler):
    def do_GET(self):
        code = 200 if self.path == "/api/health" else 404
        body = b'{"status": "ok", "dataStatus": "empty"}'
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, *args):
        pass


print(f"listening on {port}", flush=True)
server = HTTPServer(("127.0.0.1", port), Handler)
"""

HEALTHY_BACKEND = _HEALTH_SERVER + "server.serve_forever()\n"

# Becomes healthy, then dies shortly after its first successful health check.
DIES_AFTER_READY_BACKEND = _HEALTH_SERVER + """
server.handle_request()
time.sleep(0.5)
sys.exit(4)
"""

CRASHING_BACKEND = """
import sys
print("fatal: could not load track data", file=sys.stderr, flush=True)
sys.exit(3)
"""

SILENT_BACKEND = """
import time
time.sleep(60)
"""

posix_only = pytest.mark.skipif(
    os.name == "nt", reason="backend scripts rely on a shebang line"
)


@pytest.fixture
def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


@pytest.fixture
def make_backend(tmp_path: Path) -> Callable[[str], Path]:
    """Write an executable backend script that runs under the current interpreter."""

    def _make(body: str, name: str = "backend") -> Path:
        script = tmp_path / name
        script.write_text(f"#!{sys.executable}\n{body}")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _make
