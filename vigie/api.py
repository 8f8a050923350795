from hmac import compare_digest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from json import dumps
from logging import getLogger
from select import select
from socket import MSG_PEEK
from threading import Thread
from time import monotonic
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from .config import Settings
from .report import Report
from .utils import format_duration, now_utc

LOG = getLogger(__name__)

API_VERSION = "v1"
RETRY_AFTER_SECONDS = 30
BUSY_MESSAGE = "another update is already running"


def _timestamp() -> str:
    return now_utc().strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_images(query: str) -> list[str]:
    images: list[str] = []
    for value in parse_qs(query, keep_blank_values=True).get("image", []):
        images.extend(part.strip() for part in value.split(",") if part.strip())
    return images


def update_response(report: Report, duration: float) -> dict:
    return {
        "summary": report.summary(),
        "timing": {
            "duration_ms": int(duration * 1000),
            "duration": format_duration(duration),
        },
        "timestamp": _timestamp(),
        "api_version": API_VERSION,
    }


class ApiHandler(BaseHTTPRequestHandler):
    server: "ApiServer"
    server_version = "vigie"

    def log_message(self, format: str, *args) -> None:
        LOG.debug("%s - %s", self.address_string(), format % args)

    def _send(self, code: int, body: bytes, content_type: str, headers: Optional[dict] = None) -> None:
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        for key, value in (headers or {}).items():
            self.send_header(key, str(value))
        self.end_headers()
        self.wfile.write(body)

    def _json(self, code: int, data: dict, headers: Optional[dict] = None) -> None:
        self._send(code, dumps(data).encode("utf-8"), "application/json", headers)

    def _text(self, code: int, text: str) -> None:
        self._send(code, text.encode("utf-8"), "text/plain; charset=utf-8")

    def _error(self, code: int, message: str, headers: Optional[dict] = None) -> None:
        self._json(code, {"error": message, "api_version": API_VERSION, "timestamp": _timestamp()}, headers)

    def _authorised(self) -> bool:
        token = self.server.settings.http_api_token
        if not token:
            return True
        header = self.headers.get("Authorization", "")
        scheme, _, supplied = header.partition(" ")
        if scheme.lower() != "bearer" or not supplied:
            return False
        return compare_digest(supplied.strip().encode("utf-8"), token.encode("utf-8"))

    def _drain_body(self) -> None:
        length = int(self.headers.get("Content-Length") or 0)
        remaining = length
        while remaining > 0:
            chunk = self.rfile.read(min(remaining, 65536))
            if not chunk:
                raise OSError(f"request body ended {remaining} bytes early")
            remaining -= len(chunk)

    def _client_gone(self) -> bool:
        try:
            readable, _, _ = select([self.connection], [], [], 0)
            if not readable:
                return False
            return self.connection.recv(1, MSG_PEEK) == b""
        except (OSError, ValueError):
            return True

    def do_GET(self) -> None:
        path = urlsplit(self.path).path
        if path == "/health":
            self._text(200, "OK")
            return
        if path == "/v1/metrics" and self.server.settings.http_api_metrics:
            if not self._authorised():
                self._error(401, "unauthorized")
                return
            metrics = self.server.supervisor.metrics
            self._send(200, metrics.render(), metrics.content_type)
            return
        self._error(404, "not found")

    def do_POST(self) -> None:
        parts = urlsplit(self.path)
        if parts.path != "/v1/update" or not self.server.settings.http_api_update:
            self._error(404, "not found")
            return
        if not self._authorised():
            LOG.warning("Rejected update request from %s: bad token", self.address_string())
            self._error(401, "unauthorized")
            return
        try:
            self._drain_body()
        except (OSError, ValueError) as error:
            LOG.debug("Failed to read request body: %s", error)
            self._error(500, "failed to read request body")
            return

        images = parse_images(parts.query)
        supervisor = self.server.supervisor
        started = monotonic()
        if images:
            LOG.info("Executing targeted update for %s", ", ".join(images))
            timeout = self.server.settings.http_api_queue_timeout or None
            report = supervisor.run_when_free(images, timeout=timeout, abort=self._client_gone)
            if report is None:
                LOG.info("Abandoned targeted update for %s while waiting", ", ".join(images))
                self._error(503, "update request abandoned while waiting for the running update")
                return
        else:
            LOG.info("Executing full update")
            report = supervisor.try_run()
            if report is None:
                self._error(429, BUSY_MESSAGE, {"Retry-After": RETRY_AFTER_SECONDS})
                return
        self._json(200, update_response(report, monotonic() - started))


class ApiServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, supervisor, settings: Settings, address: Optional[tuple[str, int]] = None):
        self.supervisor = supervisor
        self.settings = settings
        super().__init__(address or (settings.http_api_host, settings.http_api_port), ApiHandler)
        self._thread: Optional[Thread] = None

    def start(self) -> None:
        host, port = self.server_address[:2]
        LOG.info("Serving HTTP API on %s:%s", host or "0.0.0.0", port)
        self._thread = Thread(target=self.serve_forever, name="vigie-api", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self.shutdown()
        self.server_close()
        if self._thread is not None:
            self._thread.join()
