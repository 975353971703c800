from __future__ import annotations

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


class _ProbeHandler(BaseHTTPRequestHandler):
    alerts: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: str, content_type: str = "text/plain; charset=utf-8") -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(data)

    def _read_body(self) -> bytes:
        n = int(self.headers.get("Content-Length") or "0")
        return self.rfile.read(n) if n > 0 else b""

    def do_HEAD(self) -> None:  # noqa: N802
        self.do_GET()

    def do_GET(self) -> None:  # noqa: N802
        if self.path == "/ok":
            self._send(200, "all good")
        elif self.path == "/fail":
            self._send(500, "boom")
        elif self.path == "/json":
            self._send(200, json.dumps({"status": "ok", "items": [1, 2, 3]}), "application/json")
        elif self.path == "/badjson":
            self._send(200, "definitely not json")
        elif self.path == "/slow":
            time.sleep(2.0)
            self._send(200, "late")
        elif self.path == "/headers":
            seen = {k.lower(): self.headers.get_all(k) for k in set(self.headers.keys())}
            self._send(200, json.dumps(seen), "application/json")
        else:
            self._send(404, "Not Found")

    def do_POST(self) -> None:  # noqa: N802
        raw = self._read_body()
        if self.path == "/echo":
            self._send(200, raw.decode("utf-8"))
        elif self.path == "/alerts":
            type(self).alerts.append(json.loads(raw.decode("utf-8")))
            self._send(200, "queued")
        elif self.path == "/alerts-broken":
            self._send(502, "upstream down")
        else:
            self._send(404, "Not Found")


@pytest.fixture(scope="module")
def probe_server() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _ProbeHandler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def received_alerts() -> list[dict]:
    _ProbeHandler.alerts.clear()
    yield _ProbeHandler.alerts
    _ProbeHandler.alerts.clear()
