import threading
import time
from collections.abc import Callable

from version_checker.exceptions import Cancelled, DeadlineExceeded

CancelCallback = Callable[[], None]


class CancellationToken:
    """Cancellation and deadline carried into every blocking operation

    A token is cancelled either explicitly by :meth:`cancel` or when its deadline
    passes. Callbacks registered with :meth:`register` run once on cancellation, which
    lets I/O in progress be aborted rather than abandoned.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error: Cancelled | None = None
        self._callbacks: list[CancelCallback] = []
        self._deadline: float | None = None
        self._timer: threading.Timer | None = None

    @classmethod
    def with_timeout(cls, seconds: float) -> "CancellationToken":
        token = cls()
        token._deadline = time.monotonic() + seconds
        token._timer = threading.Timer(seconds, token._expire)
        token._timer.daemon = True
        token._timer.start()
        return token

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._expire()

    @property
    def is_cancelled(self) -> bool:
        self._check_deadline()
        return self._event.is_set()

    @property
    def error(self) -> Cancelled | None:
        self._check_deadline()
        return self._error

    def remaining(self) -> float | None:
        """Seconds left before the deadline, None if the token has no deadline"""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def cancel(self) -> None:
        self._finish(Cancelled("context canceled"))

    def _expire(self) -> None:
        self._finish(DeadlineExceeded("context deadline exceeded"))

    def _finish(self, error: Cancelled) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._error = error
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        if self._timer is not None:
            self._timer.cancel()
        for callback in callbacks:
            callback()

    def new_error(self) -> Cancelled | None:
        """A fresh exception describing the cancellation, None if not cancelled

        Callers sharing one token each raise their own instance, so tracebacks and
        causes do not overwrite each other.
        """
        if (error := self.error) is None:
            return None
        return type(error)(*error.args)

    def raise_if_cancelled(self) -> None:
        if (error := self.new_error()) is not None:
            raise error

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    def register(self, callback: CancelCallback) -> CancelCallback:
        """Run callback on cancellation

        If the token is cancelled already, callback runs immediately.

        :param callback: a callable without arguments.
        :return: a callable that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _unregister
        callback()
        return lambda: None
