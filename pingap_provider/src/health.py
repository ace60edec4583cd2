from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, and Prometheus metrics endpoints."""

    ready_event: threading.Event
    engine_check: Callable[[], bool] | None

    def _engine_alive(self) -> bool:
        if self.engine_check is None:
            return True
        try:
            return bool(self.engine_check())
        except Exception:
            logging.getLogger("pingap_provider.health").debug(
                "Engine liveness check failed", exc_info=True
            )
            return False

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
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
            ready = self.ready_event.is_set()
            engine_alive = self._engine_alive()
            if ready and engine_alive:
                self._respond(200, b"ready=true engine=true")
            else:
                ready_text = "true" if ready else "false"
                engine_text = "true" if engine_alive else "false"
                self._respond(503, f"ready={ready_text} engine={engine_text}".encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), "text/plain; version=0.0.4; charset=utf-8")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("pingap_provider.health").debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, engine_alive: Callable[[], bool] | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness event and engine check.

    The stdlib server instantiates handlers without arguments, so both are
    bound as class attributes.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready
        engine_check = staticmethod(engine_alive) if engine_alive is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: threading.Event, port: int, engine_alive: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, engine_alive=engine_alive)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
