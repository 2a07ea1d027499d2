import pytest
from prometheus_client import CollectorRegistry

from version_checker.cancellation import CancellationToken
from version_checker.docker import ManifestClient, Options
from version_checker.metrics import Entry, Metrics


@pytest.fixture
def cancel() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def manifest_client() -> ManifestClient:
    return ManifestClient(Options())


@pytest.fixture
def metrics():
    m = Metrics(CollectorRegistry())
    yield m
    m.shutdown()


@pytest.fixture
def entry() -> Entry:
    """Example entry that tests can customize for themselves"""
    return Entry(
        namespace="default",
        pod="mosquitto-7d9c8b6f5-x2x4z",
        container="broker",
        image_url="docker.io/library/eclipse-mosquitto",
        is_latest=True,
        current_version="2.0.14",
        latest_version="2.0.14",
        os="linux",
        arch="amd64",
    )
