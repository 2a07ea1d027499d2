import errno
import logging
import select
import socket
import threading
import time
from contextlib import suppress
from typing import Any, Final

import requests
from requests.adapters import HTTPAdapter
from urllib3.connectionpool import HTTPConnectionPool, HTTPSConnectionPool
from urllib3.exceptions import ConnectTimeoutError, NewConnectionError

from version_checker.cancellation import CancellationToken

DEFAULT_TIMEOUT: Final = 5.0

# how often a pending connect looks at the cancellation token
CONNECT_POLL_INTERVAL: Final = 0.05

logger = logging.getLogger("transport")


def _wait_connected(
    cancel: CancellationToken, sock: socket.socket, address: Any, deadline: float | None
) -> None:
    err = sock.connect_ex(address)
    if err not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EAGAIN):
        raise OSError(err, errno.errorcode.get(err, "connect failed"))
    while err != 0:
        if cancel.is_cancelled:
            raise OSError(errno.ECANCELED, "connect is cancelled")
        wait = CONNECT_POLL_INTERVAL
        if deadline is not None:
            left = deadline - time.monotonic()
            if left <= 0:
                raise socket.timeout("timed out")
            wait = min(wait, left)
        _, writable, _ = select.select([], [sock], [], wait)
        if writable:
            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
            if err:
                raise OSError(err, errno.errorcode.get(err, "connect failed"))
            return


def create_connection(
    cancel: CancellationToken,
    address: tuple[str, int],
    timeout: float | None,
    track,
    source_address: Any = None,
    socket_options: Any = None,
) -> socket.socket:
    """Open a TCP connection which gives up as soon as the token is cancelled

    Every created socket is passed to ``track`` before connecting, so a cancellation
    arriving after the connection is established can still shut it down.
    """
    host, port = address
    deadline = None if timeout is None else time.monotonic() + timeout
    last_error: OSError | None = None
    for family, socktype, proto, _, sa in socket.getaddrinfo(host, port, 0, socket.SOCK_STREAM):
        if cancel.is_cancelled:
            raise OSError(errno.ECANCELED, "connect is cancelled")
        sock = socket.socket(family, socktype, proto)
        try:
            track(sock)
            for option in socket_options or ():
                sock.setsockopt(*option)
            if source_address:
                sock.bind(source_address)
            sock.setblocking(False)
            _wait_connected(cancel, sock, sa, deadline)
            sock.settimeout(timeout)
            if cancel.is_cancelled:
                raise OSError(errno.ECANCELED, "connect is cancelled")
            return sock
        except socket.timeout:
            sock.close()
            raise
        except OSError as e:
            sock.close()
            last_error = e
    if last_error is not None:
        raise last_error
    raise OSError(f"getaddrinfo returns an empty list for {host}")


def _cancellable_pool(
    pool_cls: type[HTTPConnectionPool], cancel: CancellationToken, track
) -> type[HTTPConnectionPool]:

    class CancellableConnection(pool_cls.ConnectionCls):  # type: ignore[name-defined,misc]
        def _new_conn(self):
            timeout = self.timeout if isinstance(self.timeout, (int, float)) else None
            try:
                return create_connection(
                    cancel,
                    (self._dns_host, self.port),
                    timeout,
                    track,
                    source_address=self.source_address,
                    socket_options=self.socket_options,
                )
            except socket.timeout as e:
                raise ConnectTimeoutError(
                    self, f"Connection to {self.host} timed out. (connect timeout={timeout})"
                ) from e
            except OSError as e:
                raise NewConnectionError(self, f"Failed to establish a new connection: {e}") from e

    class CancellableConnectionPool(pool_cls):  # type: ignore[valid-type,misc]
        ConnectionCls = CancellableConnection

    return CancellableConnectionPool


class CancellableAdapter(HTTPAdapter):
    """HTTP adapter whose connections follow a cancellation token

    Connecting gives up once the token is cancelled. Every socket opened through this
    adapter is remembered, and :meth:`abort` shuts them down so that a blocked read or
    write returns with an error.
    """

    def __init__(self, cancel: CancellationToken, *args, **kwargs):
        self._cancel = cancel
        self._sockets: list[socket.socket] = []
        self._sockets_lock = threading.Lock()
        super().__init__(*args, **kwargs)

    def _track(self, sock: socket.socket) -> None:
        with self._sockets_lock:
            self._sockets.append(sock)

    def init_poolmanager(self, *args, **kwargs) -> None:
        super().init_poolmanager(*args, **kwargs)
        self.poolmanager.pool_classes_by_scheme = {
            "http": _cancellable_pool(HTTPConnectionPool, self._cancel, self._track),
            "https": _cancellable_pool(HTTPSConnectionPool, self._cancel, self._track),
        }

    def abort(self) -> None:
        with self._sockets_lock:
            sockets = list(self._sockets)
        for sock in sockets:
            # not connected yet or closed already
            with suppress(OSError):
                sock.shutdown(socket.SHUT_RDWR)


class HTTPTransport:
    """Send single HTTP requests bounded by a timeout and a cancellation token

    No state is shared between requests. Each request is sent through its own session.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT) -> None:
        self.timeout = timeout

    def _effective_timeout(self, cancel: CancellationToken) -> float:
        remaining = cancel.remaining()
        if remaining is None:
            return self.timeout
        # urllib3 rejects a zero timeout
        return max(min(self.timeout, remaining), 0.001)

    def request(
        self, cancel: CancellationToken, method: str, url: str, **kwargs: Any
    ) -> requests.Response:
        """Send a request

        The response body is read before returning, so cancellation can interrupt the
        whole exchange.

        :param cancel: aborts the request when cancelled or expired.
        :type cancel: CancellationToken
        :raises Cancelled: if the token is cancelled before, during or right after the request.
        :raises requests.RequestException: on transport failures.
        """
        cancel.raise_if_cancelled()
        with requests.Session() as session:
            adapter = CancellableAdapter(cancel)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
            unregister = cancel.register(adapter.abort)
            try:
                resp = session.request(
                    method, url, timeout=self._effective_timeout(cancel), **kwargs
                )
                resp.content
            except (requests.RequestException, OSError) as e:
                if (error := cancel.new_error()) is not None:
                    logger.debug("Request %s %s is aborted: %s", method, url, error)
                    raise error from e
                raise
            finally:
                unregister()
        cancel.raise_if_cancelled()
        return resp
