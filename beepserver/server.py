"""The HTTP server: probes, Prometheus metrics and the /api/v1 routes."""

from __future__ import annotations

import argparse
import logging
import signal
import socketserver
import threading
from pathlib import Path
from typing import Optional, Sequence
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from flask import Flask, Response, current_app

from .config import ConfigError, get_config, parse_config
from .database import setup
from .responses import handle_result, probe_error, response_ok
from .services import Services, create_blueprint
from .task_metrics import CONTENT_TYPE, TaskMetricsExporter, default_node_name

log = logging.getLogger(__name__)

_READY_KEY = "BEEPSERVER_INIT_COMPLETED"
_SHUTDOWN_TIMEOUT = 5.0


def _ping():
    return response_ok({"message": "pong"})


def create_app(
    services: Optional[Services] = None,
    exporter: Optional[TaskMetricsExporter] = None,
) -> Flask:
    """Build the Flask application with every route the server answers."""
    app = Flask(__name__)
    app.config[_READY_KEY] = False
    metrics = exporter if exporter is not None else TaskMetricsExporter()
    node_name = default_node_name()

    app.add_url_rule("/ping", "ping", _ping)

    @app.get("/readiness")
    def readiness():
        if current_app.config.get(_READY_KEY):
            return handle_result(None)
        return probe_error("server not ready")

    @app.get("/liveness")
    def liveness():
        return handle_result(None)

    @app.get("/metrics")
    def prometheus_metrics():
        return Response(metrics.exposition(node_name), mimetype=None, content_type=CONTENT_TYPE)

    blueprint = create_blueprint(services)
    blueprint.add_url_rule("/ping", "ping", _ping)
    app.register_blueprint(blueprint)
    return app


class _ThreadingWSGIServer(socketserver.ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        log.debug("%s - %s", self.address_string(), format % args)


def _split_listen(listen: str) -> tuple[str, int]:
    host, sep, port = listen.rpartition(":")
    if not sep:
        host, port = "", listen
    try:
        number = int(port)
    except ValueError as exc:
        raise ValueError(f"invalid listen address {listen!r}") from exc
    return host or "0.0.0.0", number


class Server:
    """Serves the application on a listen address such as ':8080'."""

    def __init__(
        self,
        listen: str,
        services: Optional[Services] = None,
        exporter: Optional[TaskMetricsExporter] = None,
    ) -> None:
        self.host, self.port = _split_listen(listen)
        self.app = create_app(services, exporter)
        self._httpd: Optional[WSGIServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def ready(self) -> bool:
        return bool(self.app.config.get(_READY_KEY))

    def start(self) -> None:
        """Bind the listen address and serve requests in a background thread."""
        if self._httpd is not None:
            return
        self._httpd = make_server(
            self.host,
            self.port,
            self.app,
            server_class=_ThreadingWSGIServer,
            handler_class=_QuietHandler,
        )
        self.port = self._httpd.server_port
        self._thread = threading.Thread(
            target=self._httpd.serve_forever, name="http-server", daemon=True
        )
        self._thread.start()
        self.app.config[_READY_KEY] = True
        log.info("listening on %s:%d", self.host, self.port)

    def shutdown(self) -> None:
        """Stop accepting requests and wait for the serving thread to end."""
        self._stop.set()
        if self._httpd is None:
            return
        self._httpd.shutdown()
        self._httpd.server_close()
        if self._thread is not None:
            self._thread.join(timeout=_SHUTDOWN_TIMEOUT)
        self._httpd = None
        self._thread = None

    def serve_forever(self) -> None:
        """Serve until SIGINT or SIGTERM arrives (or shutdown() is called), then stop."""
        self.start()
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGINT, signal.SIGTERM):
                signal.signal(signum, lambda *_: self._stop.set())
        self._stop.wait()
        log.info("Shutting down server...")
        self.shutdown()
        log.info("Server exiting")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Start the server from a configuration file."""
    parser = argparse.ArgumentParser(prog="beepserver")
    parser.add_argument("--config", default="", help="configuration file")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG)

    if not args.config:
        log.error("configuration file is nil")
        return 1
    if not Path(args.config).exists():
        log.error("config file: %s is not existent", args.config)
        return 1
    try:
        parse_config(args.config, True)
    except ConfigError as exc:
        log.error("%s", exc)
        return 1
    config = get_config()
    if config is None or config.http is None:
        log.error("configuration is incomplete")
        return 1

    setup(config.database)
    server = Server(config.http.listen)
    server.serve_forever()
    return 0