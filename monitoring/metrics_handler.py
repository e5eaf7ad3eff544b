"""
MetricsHandler - HTTP routes for the execution-core exporter.

SRP: HTTP routing and response formatting only.

  GET /metrics  Prometheus text format
  GET /health   JSON liveness plus whatever the installed probe reports
"""
import json
import urllib.parse
from http.server import BaseHTTPRequestHandler
from typing import Any, Callable, Dict, Optional

from loguru import logger
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest


class MetricsHandler(BaseHTTPRequestHandler):
    """Request handler; MetricsServer sets `probe` on a per-server subclass."""

    probe: Optional[Callable[[], Dict[str, Any]]] = None

    def _reply(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def _health(self) -> None:
        payload: Dict[str, Any] = {"status": "healthy"}
        probe = type(self).probe
        if probe is not None:
            try:
                payload.update(probe())
            except Exception as e:
                logger.error(f"Health probe failed: {e}")
                payload = {"status": "degraded", "error": str(e)}
        status = 200 if payload["status"] == "healthy" else 503
        self._reply(status, json.dumps(payload, default=str).encode(), 'application/json')

    def _metrics(self) -> None:
        self._reply(200, generate_latest(REGISTRY), CONTENT_TYPE_LATEST)

    def do_GET(self):
        path = urllib.parse.urlparse(self.path).path
        if path == '/health':
            self._health()
        elif path == '/metrics':
            self._metrics()
        else:
            self._reply(404, b"Not Found", 'text/plain')

    def log_message(self, format, *args):
        logger.debug(f"Metrics server: {format % args}")
