"""Liveness and readiness HTTP endpoints."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Protocol
from urllib.parse import urlsplit

_PING_TIMEOUT = 2.0


class _Pinger(Protocol):
    def ping(self, timeout: float) -> None: ...


class _NodeCounter(Protocol):
    def node_count(self) -> int: ...


@dataclass(frozen=True)
class HealthCheck:
    """Outcome of a readiness check."""

    ok: bool
    reasons: list[str] = field(default_factory=list)


def _encode(check: HealthCheck) -> bytes:
    body: dict[str, object] = {"ok": check.ok}
    if check.reasons:
        body["reasons"] = list(check.reasons)
    return (json.dumps(body, separators=(",", ":")) + "\n").encode("utf-8")


class HealthServer:
    """Serves ``/liveness`` and ``/readiness`` until told to stop."""

    def __init__(
        self, port: int, pool: _Pinger | None = None, crawler: _NodeCounter | None = None
    ) -> None:
        self._port = port
        self._pool = pool
        self._crawler = crawler
        self._server: ThreadingHTTPServer | None = None

    @property
    def port(self) -> int:
        """The bound port once listening, otherwise the configured one."""
        if self._server is not None:
            return self._server.server_address[1]
        return self._port

    def set_crawler(self, crawler: _NodeCounter | None) -> None:
        self._crawler = crawler

    def check(self) -> HealthCheck:
        """Evaluate every readiness gate and collect the reasons for failure."""
        reasons: list[str] = []
        if self._pool is None:
            reasons.append("db not initialized")
        else:
            try:
                self._pool.ping(_PING_TIMEOUT)
            except Exception:
                reasons.append("db ping failed")

        crawler = self._crawler
        if crawler is None:
            reasons.append("crawler not initialized")
        elif crawler.node_count() == 0:
            reasons.append("routing table node count is 0")

        return HealthCheck(ok=not reasons, reasons=reasons)

    def _handler_class(self) -> type[BaseHTTPRequestHandler]:
        health = self

        class _Handler(BaseHTTPRequestHandler):
            def _handle(self) -> None:
                path = urlsplit(self.path).path
                if path == "/liveness":
                    self.send_response(200)
                    self.send_header("Content-Length", "0")
                    self.end_headers()
                elif path == "/readiness":
                    result = health.check()
                    body = _encode(result)
                    self.send_response(200 if result.ok else 503)
                    self.send_header("Content-Type", "application/json")
                    self.send_header("Content-Length", str(len(body)))
                    self.end_headers()
                    self.wfile.write(body)
                else:
                    self.send_error(404, "page not found")

            do_GET = _handle
            do_POST = _handle

            def log_message(self, format: str, *args: object) -> None:
                pass

        return _Handler

    def bind(self) -> int:
        """Bind the listener (if not yet bound) and return the bound port."""
        if self._server is None:
            try:
                self._server = ThreadingHTTPServer(("", self._port), self._handler_class())
            except OSError as exc:
                raise OSError(
                    exc.errno, f"health server: bind :{self._port}: {exc.strerror or exc}"
                ) from exc
        return self.port

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