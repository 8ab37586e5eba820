"""
Proximity listener
==================
Threaded HTTP listener that hands every inbound request, whatever its method
or path, to the ``ProxyExecutor`` and writes back what it relays.

Architecture:
  ``http.server.BaseHTTPRequestHandler`` on a ``ThreadingTCPServer`` (one
  thread per connection). The TLS transport, client session, executor and
  metrics are built once by ``ProximityProxy`` and shared by all handlers.
"""

from __future__ import annotations

import logging
import threading
import time
from http.server import BaseHTTPRequestHandler
from socketserver import ThreadingTCPServer
from typing import Any, Dict, Optional

from proximity import __version__
from proximity.config import ProxyConfig
from proximity.core.client import ProxySession, create_session
from proximity.core.diagnostics import DiagnosticRecorder
from proximity.core.executor import Headers, InboundRequest, ProxyExecutor, ProxyState, Responder
from proximity.core.metrics import MetricsReporter, ProxyMetrics
from proximity.core.redirects import RedirectPolicy
from proximity.core.tls import build_transport

logger = logging.getLogger(__name__)

# Statuses that never carry a body, so no Content-Length is synthesized.
_NO_BODY_STATUSES = (204, 304)


# ── Proxy Handler ────────────────────────────────────────────────────────────

class _HandlerResponder(Responder):
    """Writes a relayed response on the handler's connection."""

    def __init__(self, handler: "_ProxyHandler"):
        self.handler = handler

    def send(self, status: int, reason: str = "", headers: Optional[Headers] = None, body: bytes = b"") -> None:
        h = self.handler
        headers = list(headers or [])
        # send_response_only: no Server/Date of our own on a relayed response
        h.send_response_only(status, reason or None)
        has_length = False
        for key, val in headers:
            if key.lower() == "content-length":
                has_length = True
            h.send_header(key, val)
        if not has_length and h.command != "HEAD" and status >= 200 and status not in _NO_BODY_STATUSES:
            h.send_header("Content-Length", str(len(body)))
        h.end_headers()
        if body and h.command != "HEAD":
            h.wfile.write(body)


class _ProxyHandler(BaseHTTPRequestHandler):
    """Accepts any method and forwards it."""

    protocol_version = "HTTP/1.1"
    server_version = f"proximity/{__version__}"

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} {format % args}")

    def __getattr__(self, name: str):
        # BaseHTTPRequestHandler dispatches on do_<METHOD>; every method proxies.
        if name.startswith("do_"):
            return self._proxy_request
        raise AttributeError(name)

    def _proxy_request(self) -> None:
        executor: ProxyExecutor = self.server.executor  # type: ignore[attr-defined]
        logger.info(f"--> {self.command} {self.path}")

        inbound = InboundRequest(
            method=self.command,
            target=self.path,
            headers=list(self.headers.items()),
            body=self.rfile,
        )
        try:
            outcome = executor.execute(inbound, _HandlerResponder(self))
        except OSError as e:
            # Caller went away while the response was being written.
            logger.debug(f"Error sending response to client: {e}")
            self.close_connection = True
            return

        if outcome.state is ProxyState.ABORTED:
            # The inbound body may be only partly consumed.
            self.close_connection = True
        logger.info(f"<-- {outcome.status} {outcome.url}")


# ── Proxy Server ─────────────────────────────────────────────────────────────

class ProxyServer(ThreadingTCPServer):
    """Threaded TCP server carrying the shared executor."""
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, addr, handler, executor: ProxyExecutor):
        self.executor = executor
        super().__init__(addr, handler)


# ── Proxy Lifecycle ──────────────────────────────────────────────────────────

class ProximityProxy:
    """
    Builds the shared proxy components from a ``ProxyConfig`` and runs the
    listener.

    Construction loads the TLS material, so a bad certificate fails here,
    before any connection is accepted.
    """

    def __init__(self, config: ProxyConfig, metrics: Optional[ProxyMetrics] = None):
        self.config = config
        self.metrics = metrics or ProxyMetrics()
        self.recorder = DiagnosticRecorder(config.verbosity)
        self.redirect_policy = RedirectPolicy(self.recorder, config.max_redirects)
        self.session: ProxySession = create_session(build_transport(config), self.redirect_policy)
        self.executor = ProxyExecutor(config, self.session, self.metrics, self.recorder)
        self.reporter = MetricsReporter(self.metrics, config.metrics_interval)
        self._server: Optional[ProxyServer] = None
        self._thread: Optional[threading.Thread] = None
        self.is_running: bool = False
        self._start_time: float = 0

    @property
    def address(self) -> Optional[tuple]:
        """Bound ``(host, port)``; the real port when configured with port 0."""
        if self._server is None:
            return None
        return self._server.server_address[:2]

    # ── Lifecycle ────────────────────────────────────────────────────────

    def start(self, background: bool = True) -> Dict[str, Any]:
        """Bind the listener and start serving.

        Args:
            background: serve from a daemon thread and return immediately;
                otherwise block until ``stop()`` is called from elsewhere.

        Returns:
            Status dict with the bound address, or an error.
        """
        if self.is_running:
            return {"ok": False, "error": f"Proxy already running on {self.config.listen}"}

        host, port = self.config.listen_address
        try:
            self._server = ProxyServer((host, port), _ProxyHandler, self.executor)
        except OSError as e:
            return {"ok": False, "error": f"Cannot bind {self.config.listen}: {e}"}

        self.is_running = True
        self._start_time = time.time()
        self.reporter.start()
        bound_host, bound_port = self.address
        logger.info(f"Proxying from {bound_host or '*'}:{bound_port} to {self.config.remote}")
        result = {
            "ok": True,
            "host": bound_host,
            "port": bound_port,
            "message": f"Proxying from {bound_host or '*'}:{bound_port} to {self.config.remote}",
        }

        if background:
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                daemon=True,
                name=f"proximity-{bound_port}",
            )
            self._thread.start()
        else:
            self._server.serve_forever()
        return result

    def stop(self) -> Dict[str, Any]:
        """Stop the listener and the metrics reporter.

        Returns:
            Status dict with final counters.
        """
        if not self.is_running:
            return {"ok": False, "error": "Proxy is not running"}

        try:
            self._server.shutdown()
            self._server.server_close()
        except Exception as e:
            logger.debug(f"Error during proxy shutdown: {e}")

        if self._thread is not None:
            self._thread.join()
            self._thread = None
        self.reporter.stop()
        self.session.close()
        self.is_running = False
        uptime = time.time() - self._start_time

        stats = self.get_stats()
        stats["ok"] = True
        stats["uptime_seconds"] = round(uptime, 1)
        stats["message"] = "Proxy stopped"
        logger.info("Proxy stopped")
        return stats

    # ── Statistics ────────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "is_running": self.is_running,
            "listen": self.config.listen,
            "remote": self.config.remote,
        }
        stats.update(self.metrics.snapshot())
        return stats
