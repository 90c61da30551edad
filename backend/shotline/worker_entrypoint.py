"""Worker entrypoint for container platforms.

Runs a health check server in the background and the Celery worker in the
main thread, so signal handling stays with the worker process.
"""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

from shotline import bootstrap
from shotline.bootstrap import Engine
from shotline.config import get_settings

logger = logging.getLogger(__name__)


def health_status(engine: Engine) -> tuple[int, dict]:
    """503 once shutdown has begun so the platform stops routing to us."""
    if engine.coordinator.is_shutting_down:
        return 503, {"status": "shutting_down"}
    return 200, {"status": "ok", "queues": engine.queue_names}


def make_health_handler(engine: Engine) -> type[BaseHTTPRequestHandler]:
    class HealthHandler(BaseHTTPRequestHandler):
        def do_GET(self):
            if self.path not in ("/health", "/"):
                self.send_response(404)
                self.end_headers()
                return
            code, body = health_status(engine)
            self.send_response(code)
            self.send_header("Content-type", "application/json")
            self.end_headers()
            self.wfile.write(json.dumps(body).encode("utf-8"))

        def log_message(self, format, *args):
            # Probes hit this every few seconds
            return

    return HealthHandler


def run_health_server(engine: Engine, port: int) -> HTTPServer:
    server = HTTPServer(("0.0.0.0", port), make_health_handler(engine))
    thread = threading.Thread(target=server.serve_forever, name="health", daemon=True)
    thread.start()
    logger.info(f"Health server running on port {port}")
    return server


def main() -> None:
    settings = get_settings()
    bootstrap.configure_logging(settings)
    engine = bootstrap.prepare_engine(settings)
    server = run_health_server(engine, settings.health_port)
    try:
        bootstrap.run(engine)
    finally:
        server.shutdown()


if __name__ == "__main__":
    main()
