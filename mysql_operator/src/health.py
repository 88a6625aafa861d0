from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_events: Mapping[str, threading.Event]

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            states = {name: event.is_set() for name, event in sorted(self.ready_events.items())}
            body = " ".join(
                f"{name}={'true' if ready else 'false'}" for name, ready in states.items()
            ).encode()
            if states and all(states.values()):
                self._respond(200, body)
            else:
                self._respond(503, body or b"no controllers")
        elif self.path == "/metrics":
            from prometheus_client import generate_latest

            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("mysql_operator.health").debug(fmt, *args)


def make_health_handler(ready_events: Mapping[str, threading.Event]) -> type[_HealthHandler]:
    """Return a handler class bound to the per-controller readiness events.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.ready_events = dict(ready_events)
    return _BoundHealthHandler


def start_health_server(
    ready_events: Mapping[str, threading.Event], port: int
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it.

    ``/readyz`` answers 200 only while every controller in *ready_events*
    has synced its caches and started its workers.
    """
    handler_class = make_health_handler(ready_events)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
