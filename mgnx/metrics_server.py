"""HTTP endpoint that exposes the metrics registry in text form."""

from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlsplit

from .recorder import Registry

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


class MetricsServer:
    """Serves ``/metrics`` for a registry until told to stop."""

    def __init__(self, port: int, registry: Registry) -> None:
        self._port = port
        self._registry = registry
        self._server: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        """The bound port once listening, otherwise the configured one."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._port

    def bind(self) -> int:
        """Bind the listener (if not yet bound) and return the bound port."""
        if self._server is None:
            try:
                self._server = ThreadingHTTPServer(("", self._port), self._handler_class())
            except OSError as exc:
                raise OSError(
                    exc.errno, f"metrics server: bind :{self._port}: {exc.strerror or exc}"
                ) from exc
        return self.port

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        registry = self._registry

        class _Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                if urlsplit(self.path).path != "/metrics":
                    self.send_error(404, "page not found")
                    return
                body = registry.render().encode("utf-8")
                self.send_response(200)
                self.send_header("Content-Type", CONTENT_TYPE)
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: object) -> None:
                pass

        return _Handler

    def serve(self, stop: threading.Event) -> None:
        """Serve requests until ``stop`` is set, then shut down."""
        self.bind()
        server = self._server
        assert server is not None

        def shutdown_on_stop() -> None:
            stop.wait()
            server.shutdown()

        threading.Thread(target=shutdown_on_stop, daemon=True).start()
        try:
            server.serve_forever(poll_interval=0.1)
        finally:
            server.server_close()
            self._server = None

    def start(self, stop: threading.Event) -> None:
        """Bind (raising at once if the port is taken) and serve until ``stop`` is set."""
        self.bind()
        self.serve(stop)