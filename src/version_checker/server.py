import logging
import socket
import threading
import time
from socketserver import ThreadingMixIn
from typing import Final
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import CollectorRegistry, make_wsgi_app

METRICS_PATH: Final = "/metrics"

# read and write timeout of a scrape connection
REQUEST_TIMEOUT: Final = 8.0
MAX_HEADER_BYTES: Final = 1 << 15

logger = logging.getLogger("metrics")


def metrics_app(registry: CollectorRegistry):
    """WSGI application exposing the registry on /metrics only"""
    exposition = make_wsgi_app(registry)

    def _app(environ, start_response):
        if environ.get("PATH_INFO") != METRICS_PATH:
            start_response("404 Not Found", [("Content-Type", "text/plain; charset=utf-8")])
            return [b"404 page not found\n"]
        return exposition(environ, start_response)

    return _app


class ScrapeRequestHandler(WSGIRequestHandler):
    timeout = REQUEST_TIMEOUT

    def parse_request(self) -> bool:
        if not super().parse_request():
            return False
        size = sum(len(name) + len(value) + 4 for name, value in self.headers.items())
        if size > MAX_HEADER_BYTES:
            self.send_error(431, "Request Header Fields Too Large")
            return False
        return True

    def log_message(self, format, *args):
        """Scrapes are not logged"""


class DrainingWSGIServer(ThreadingMixIn, WSGIServer):
    """Threading WSGI server that counts requests in progress

    Request threads are daemons so a stuck scrape never blocks interpreter exit.
    :meth:`drain` waits for the requests in progress instead.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self, *args, **kwargs):
        self._active = 0
        self._idle = threading.Condition()
        super().__init__(*args, **kwargs)

    def process_request(self, request, client_address):
        with self._idle:
            self._active += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._request_done()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._request_done()

    def _request_done(self) -> None:
        with self._idle:
            self._active -= 1
            self._idle.notify_all()

    def drain(self, timeout: float) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: self._active == 0, timeout=max(timeout, 0))


def _address_family(host: str, port: int) -> socket.AddressFamily:
    infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)
    return infos[0][0]


class MetricsHTTPServer:
    """Serve a prometheus registry over HTTP from a background thread"""

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry
        self._httpd: DrainingWSGIServer | None = None
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._httpd is not None

    @property
    def address(self) -> tuple[str, int] | None:
        if self._httpd is None:
            return None
        host, port = self._httpd.server_address[:2]
        return host, port

    def start(self, host: str, port: int) -> None:
        """Bind the listener and serve in a background thread

        :raises OSError: if the address cannot be bound.
        """

        class Server(DrainingWSGIServer):
            address_family = _address_family(host, port)

        httpd = make_server(
            host,
            port,
            metrics_app(self.registry),
            server_class=Server,
            handler_class=ScrapeRequestHandler,
        )
        thread = threading.Thread(target=self._serve, args=(httpd,), daemon=True)
        self._httpd, self._thread = httpd, thread
        thread.start()

    @staticmethod
    def _serve(httpd: DrainingWSGIServer) -> None:
        try:
            httpd.serve_forever()
        except Exception as e:
            logger.error("failed to serve prometheus metrics: %s", e)

    def stop(self, timeout: float) -> bool:
        """Stop accepting scrapes and wait for the ones in progress

        :return: True if everything stopped within timeout, otherwise False.
        """
        httpd, thread = self._httpd, self._thread
        if httpd is None:
            return True
        deadline = time.monotonic() + timeout

        stopper = threading.Thread(target=httpd.shutdown, daemon=True)
        stopper.start()
        stopper.join(timeout)
        stopped = not stopper.is_alive()
        if stopped:
            stopped = httpd.drain(deadline - time.monotonic())
        httpd.server_close()
        if thread is not None:
            thread.join(max(deadline - time.monotonic(), 0))
        self._httpd = None
        self._thread = None
        return stopped
