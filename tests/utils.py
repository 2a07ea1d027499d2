import random
import string
from collections.abc import Iterable

from prometheus_client import CollectorRegistry

from version_checker.metrics import METRIC_NAME, METRIC_NAMESPACE

SERIES_NAME = f"{METRIC_NAMESPACE}_{METRIC_NAME}"


def select_random_chars(n=64):
    return (random.choice(string.hexdigits) for _ in range(n))


def generate_digest() -> str:
    random_choices = select_random_chars()
    return "sha256:" + "".join(random_choices).lower()


def generate_token() -> str:
    return "".join(select_random_chars(32)).lower()


def exported_series(registry: CollectorRegistry) -> list[dict[str, str]]:
    """Label sets of the exported is-latest-version series"""
    series: Iterable = (
        sample.labels
        for metric in registry.collect()
        for sample in metric.samples
        if sample.name == SERIES_NAME
    )
    return list(series)
