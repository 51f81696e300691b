"""Pull-mode HTTP server exposing the reporter on ``GET /metrics``.

This module provides a small FastAPI application and helpers to run it in a
background thread next to the Portmaster plugin. The listener socket is bound
synchronously so that bind failures abort plugin initialization; the server
itself runs on a daemon thread for the rest of the process lifetime.

A threaded http.server fallback serves the same route when asyncio is
disabled or cannot be used in the current environment.
"""

from __future__ import annotations

import http.server
import logging
import socket
import threading
import time
from contextlib import asynccontextmanager
from typing import Any, List, Optional, Tuple

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST

from ..config.config_parser import parse_listen_address
from ..errors import BindError, ServeError
from ..reporter import PrometheusReporter

logger = logging.getLogger("portmaster_prometheus.metrics_server")

METRICS_PATH = "/metrics"

# Best-effort window in which an immediate serve failure is reported to the
# caller; failures after it are only logged.
STARTUP_WAIT_SECONDS = 0.5


class _Suppress2xxAccessFilter(logging.Filter):
    """Logging filter that drops uvicorn access records for HTTP 2xx responses.

    Inputs:
      - record: logging.LogRecord from the uvicorn.access logger.

    Outputs:
      - bool: False for records of 2xx responses, True otherwise (including
        when no status code can be determined).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        status = getattr(record, "status_code", None)
        if status is None:
            args = getattr(record, "args", None)
            if isinstance(args, dict):
                status = args.get("status_code") or args.get("status")
            elif isinstance(args, (tuple, list)) and args:
                # uvicorn passes the status code as the last positional arg
                status = args[-1]

        try:
            code = int(status)
        except (TypeError, ValueError):
            return True
        return not (200 <= code <= 299)


def install_uvicorn_2xx_suppression() -> None:
    """Attach _Suppress2xxAccessFilter to the uvicorn.access logger once.

    Every scrape produces an access record; only non-2xx ones are kept.
    """

    access_logger = logging.getLogger("uvicorn.access")
    if not any(isinstance(f, _Suppress2xxAccessFilter) for f in access_logger.filters):
        access_logger.addFilter(_Suppress2xxAccessFilter())


def create_app(reporter: PrometheusReporter) -> FastAPI:
    """Create the FastAPI app serving the reporter's exposition.

    Inputs:
      - reporter: PrometheusReporter whose registry is rendered per request.

    Outputs:
      - FastAPI application with a single ``GET /metrics`` route.

    Example:
      >>> from prometheus_client import CollectorRegistry
      >>> app = create_app(PrometheusReporter(registry=CollectorRegistry()))
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        install_uvicorn_2xx_suppression()
        yield

    app = FastAPI(title="Portmaster Prometheus exporter", lifespan=lifespan)
    app.state.reporter = reporter

    @app.get(METRICS_PATH)
    def metrics() -> Response:
        return Response(content=reporter.render(), media_type=CONTENT_TYPE_LATEST)

    return app


def _bind_socket(host: str, port: int) -> socket.socket:
    """Bind a listening TCP socket, raising BindError on failure."""

    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(128)
    except OSError as exc:
        sock.close()
        raise BindError(f"failed to bind metrics listener on {host}:{port}: {exc}") from exc
    return sock


def _can_use_asyncio() -> bool:
    import asyncio

    try:
        loop = asyncio.new_event_loop()
        loop.close()
    except PermissionError as exc:  # pragma: no cover - restricted containers only
        logger.warning(
            "Asyncio loop creation failed for metrics server: %s; falling back to threaded HTTP server.",
            exc,
        )
        return False
    return True


class MetricsServerHandle:
    """Handle for the background metrics server thread.

    Inputs (constructor):
      - thread: Thread running the HTTP server loop.
      - server: uvicorn.Server or _MetricsHTTPServer instance.
      - address: (host, port) actually bound.

    Outputs:
      - MetricsServerHandle with is_running() and stop().
    """

    def __init__(self, thread: threading.Thread, server: Any, address: Tuple[str, int]) -> None:
        self._thread = thread
        self._server = server
        self.address = address

    @property
    def port(self) -> int:
        return self.address[1]

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def stop(self, timeout: float = 5.0) -> None:
        """Best-effort stop of the server loop; waits up to timeout for the thread."""

        try:
            if hasattr(self._server, "should_exit"):
                self._server.should_exit = True
            else:
                # shutdown() blocks until serve_forever returns; skip it once the loop is gone
                if self._thread.is_alive():
                    self._server.shutdown()
                self._server.server_close()
        except Exception:
            logger.exception("Error while shutting down metrics server")
        self._thread.join(timeout=timeout)


class _MetricsHTTPServer(http.server.ThreadingHTTPServer):
    """ThreadingHTTPServer wrapping a pre-bound socket and the reporter."""

    daemon_threads = True

    def __init__(self, sock: socket.socket, reporter: PrometheusReporter) -> None:
        self.address_family = sock.family
        super().__init__(
            sock.getsockname()[:2], _MetricsRequestHandler, bind_and_activate=False
        )
        self.socket.close()
        self.socket = sock
        self.reporter = reporter


class _MetricsRequestHandler(http.server.BaseHTTPRequestHandler):
    server: _MetricsHTTPServer

    def do_GET(self) -> None:  # noqa: N802 - http.server naming
        path = self.path.split("?", 1)[0]
        if path != METRICS_PATH:
            self._send(404, b"404 page not found\n", "text/plain; charset=utf-8")
            return
        self._send(200, self.server.reporter.render(), CONTENT_TYPE_LATEST)

    def _send(self, status: int, body: bytes, content_type: str) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("metrics HTTP: %s", format % args)


def _wait_for_startup(
    finished: threading.Event,
    failures: List[BaseException],
    timeout: float,
    started: Any = None,
) -> None:
    """Block until the server starts, fails, or timeout elapses.

    Raises ServeError when the server loop ended inside the window.
    """

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if finished.wait(0.01):
            break
        if started is not None and getattr(started, "started", False):
            return

    if finished.is_set():
        cause = failures[0] if failures else None
        raise ServeError(f"metrics server exited during startup: {cause}") from cause


def _start_uvicorn(
    sock: socket.socket, reporter: PrometheusReporter
) -> Tuple[threading.Thread, Any, threading.Event, List[BaseException]]:
    import uvicorn

    app = create_app(reporter)
    server = uvicorn.Server(uvicorn.Config(app, log_level="info"))
    finished = threading.Event()
    failures: List[BaseException] = []

    def _runner() -> None:
        try:
            server.run(sockets=[sock])
        except (Exception, SystemExit) as exc:
            failures.append(exc)
            logger.exception("Unhandled exception in metrics server thread")
        finally:
            finished.set()

    thread = threading.Thread(target=_runner, name="portmaster-prometheus-http", daemon=True)
    thread.start()
    return thread, server, finished, failures


def _start_threaded(
    sock: socket.socket, reporter: PrometheusReporter
) -> Tuple[threading.Thread, Any, threading.Event, List[BaseException]]:
    httpd = _MetricsHTTPServer(sock, reporter)
    httpd.server_activate()
    finished = threading.Event()
    failures: List[BaseException] = []

    def _serve() -> None:
        try:
            httpd.serve_forever()
        except Exception as exc:
            failures.append(exc)
            logger.exception("Unhandled exception in threaded metrics server")
        finally:
            finished.set()

    thread = threading.Thread(target=_serve, name="portmaster-prometheus-http-threaded", daemon=True)
    thread.start()
    return thread, httpd, finished, failures


def start_metrics_server(
    reporter: PrometheusReporter,
    address: str,
    *,
    use_asyncio: bool = True,
    startup_timeout: float = STARTUP_WAIT_SECONDS,
) -> MetricsServerHandle:
    """Start the pull-mode metrics server.

    Inputs:
      - reporter: PrometheusReporter to expose.
      - address: Listen address ("host:port"; port 0 picks a free port).
      - use_asyncio: Prefer uvicorn; False forces the threaded fallback.
      - startup_timeout: Seconds to wait for an immediate serve failure.

    Outputs:
      - MetricsServerHandle for the running server.

    Raises:
      - ConfigError: address is malformed.
      - BindError: the address cannot be bound.
      - ServeError: the server loop ended within startup_timeout.

    Example:
      >>> handle = start_metrics_server(reporter, "127.0.0.1:0")
      >>> handle.is_running()
      True
    """

    host, port = parse_listen_address(address)
    sock = _bind_socket(host, port)
    bound = sock.getsockname()[:2]

    if use_asyncio and _can_use_asyncio():
        thread, server, finished, failures = _start_uvicorn(sock, reporter)
        started: Optional[Any] = server
    else:
        thread, server, finished, failures = _start_threaded(sock, reporter)
        started = None

    try:
        _wait_for_startup(finished, failures, startup_timeout, started)
    except ServeError:
        sock.close()
        raise

    logger.info("Serving metrics on http://%s:%d%s", bound[0], bound[1], METRICS_PATH)
    return MetricsServerHandle(thread, server, (bound[0], bound[1]))
