from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

StatusProvider = Callable[[], list[dict[str, Any]]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, per-task status and Prometheus metrics."""

    ready_event: threading.Event
    status_provider: StatusProvider

    def _respond(self, status: int, body: bytes = b"", content_type: str = "text/plain") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready")
            else:
                self._respond(503, b"not ready")
        elif self.path == "/statusz":
            tasks = type(self).status_provider()
            body = json.dumps({"tasks": tasks}, sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("ares.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, status_provider: StatusProvider
) -> type[_HealthHandler]:
    """Return a handler class bound to *ready* and *status_provider*.

    ``status_provider`` is stored as a staticmethod so it is not bound to
    handler instances.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    _BoundHealthHandler.status_provider = staticmethod(status_provider)  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    status_provider: StatusProvider = list,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, status_provider)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
