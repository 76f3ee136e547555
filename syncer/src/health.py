from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

_Reply = tuple[int, bytes, str]


class _SyncerProbeHandler(BaseHTTPRequestHandler):
    """Liveness, readiness and metrics for the syncer.

    Readiness follows the watch source: it flips to true once both the
    namespace and ``AthenzDomain`` lists have been seeded and back to false
    when the controller shuts down.
    """

    ready_event: threading.Event
    server_version = "athenz-syncer"

    def _liveness(self) -> _Reply:
        return 200, b"ok", "text/plain; charset=utf-8"

    def _readiness(self) -> _Reply:
        ready = self.ready_event.is_set()
        body = b"ready=true" if ready else b"ready=false"
        return (200 if ready else 503), body, "text/plain; charset=utf-8"

    def _metrics(self) -> _Reply:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def _route(self) -> Callable[[], _Reply] | None:
        routes: dict[str, Callable[[], _Reply]] = {
            "/healthz": self._liveness,
            "/readyz": self._readiness,
            "/metrics": self._metrics,
        }
        return routes.get(self.path.split("?", 1)[0])

    def do_GET(self) -> None:
        route = self._route()
        status, body, content_type = route() if route is not None else (404, b"", "")
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_SyncerProbeHandler]:
    """Bind ``ready`` to a handler class; the server instantiates handlers itself."""
    return type("_BoundSyncerProbeHandler", (_SyncerProbeHandler,), {"ready_event": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve the probe endpoints on ``port`` from a daemon thread."""
    server = ThreadingHTTPServer(("", port), make_health_handler(ready))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
