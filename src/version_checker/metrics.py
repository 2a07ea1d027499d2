import logging
import threading
from dataclasses import dataclass
from typing import Final

from prometheus_client import CollectorRegistry, Gauge

from version_checker.server import METRICS_PATH, MetricsHTTPServer
from version_checker.types import LabelsT

METRIC_NAMESPACE: Final = "version_checker"
METRIC_NAME: Final = "is_latest_version"

LABEL_NAMES: Final = (
    "namespace",
    "pod",
    "container",
    "image",
    "current_version",
    "latest_version",
    "architecture",
    "os",
)

SHUTDOWN_TIMEOUT: Final = 5.0

logger = logging.getLogger("metrics")


class MetricsServerError(Exception):
    pass


@dataclass(frozen=True)
class Entry:
    """A single metrics label set and whether the container runs the latest version"""

    namespace: str
    pod: str
    container: str
    image_url: str
    is_latest: bool
    current_version: str
    latest_version: str
    os: str = ""
    arch: str = ""

    @property
    def identity(self) -> tuple[str, str, str]:
        return self.namespace, self.pod, self.container

    @property
    def labels(self) -> LabelsT:
        return {
            "namespace": self.namespace,
            "pod": self.pod,
            "container": self.container,
            "image": self.image_url,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "architecture": self.arch,
            "os": self.os,
        }


@dataclass(frozen=True)
class CacheItem:
    image: str
    current_version: str
    latest_version: str
    os: str
    arch: str

    @classmethod
    def from_entry(cls, entry: Entry) -> "CacheItem":
        return cls(
            image=entry.image_url,
            current_version=entry.current_version,
            latest_version=entry.latest_version,
            os=entry.os,
            arch=entry.arch,
        )

    def to_entry(self, namespace: str, pod: str, container: str) -> Entry:
        return Entry(
            namespace=namespace,
            pod=pod,
            container=container,
            image_url=self.image,
            is_latest=False,
            current_version=self.current_version,
            latest_version=self.latest_version,
            os=self.os,
            arch=self.arch,
        )


def parse_serving_address(address: str) -> tuple[str, int]:
    """Split a serving address into host and port

    :param address: ``host:port``. An empty host, e.g. ``:8080``, means all interfaces.
    :type address: str
    :return: a tuple of host and port.
    :raises ValueError: if the address has no valid port.
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"Serving address {address} does not include a valid port.")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


class Metrics:
    """Expose container image version checks as prometheus metrics

    One gauge series is kept per monitored container, identified by namespace, pod and
    container name. The label values of the current series are cached per container so
    that the series can be deleted when the container is updated or removed.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        self.container_image_version = Gauge(
            METRIC_NAME,
            "Where the container in use is using the latest upstream registry version",
            labelnames=LABEL_NAMES,
            namespace=METRIC_NAMESPACE,
            registry=self.registry,
        )
        self._container_cache: dict[tuple[str, str, str], CacheItem] = {}
        self._lock = threading.Lock()
        self._server = MetricsHTTPServer(self.registry)

    @property
    def address(self) -> tuple[str, int] | None:
        return self._server.address

    def run(self, serving_address: str) -> None:
        """Start serving metrics

        The listener is bound before this method returns, then requests are served from
        a background thread.

        :param serving_address: ``host:port`` to listen on.
        :raises OSError: if the address cannot be bound.
        """
        if self._server.is_running:
            raise MetricsServerError("Metrics server is running already.")
        host, port = parse_serving_address(serving_address)
        self._server.start(host, port)
        bound_host, bound_port = self._server.address
        logger.info("serving metrics on %s:%s%s", bound_host, bound_port, METRICS_PATH)

    def add_image(self, entry: Entry) -> None:
        is_latest = 1.0 if entry.is_latest else 0.0
        with self._lock:
            self._remove_image(*entry.identity)
            self.container_image_version.labels(**entry.labels).set(is_latest)
            self._container_cache[entry.identity] = CacheItem.from_entry(entry)

    def remove_image(self, namespace: str, pod: str, container: str) -> None:
        with self._lock:
            self._remove_image(namespace, pod, container)

    def _remove_image(self, namespace: str, pod: str, container: str) -> None:
        item = self._container_cache.pop((namespace, pod, container), None)
        if item is None:
            return
        labels = item.to_entry(namespace, pod, container).labels
        self.container_image_version.remove(*(labels[name] for name in LABEL_NAMES))

    def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Stop the metrics server gracefully

        New scrapes are refused and the ones in progress are waited for, all within
        timeout. It does nothing if the server is not running.

        :raises MetricsServerError: if the server does not stop within the timeout.
        """
        if not self._server.is_running:
            return

        logger.info("shutting down prometheus metrics server...")

        if not self._server.stop(timeout):
            raise MetricsServerError(
                f"prometheus metrics server shutdown failed: not drained within {timeout}s"
            )

        logger.info("prometheus metrics server gracefully stopped")
