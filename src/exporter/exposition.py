"""Prometheus text exposition of the metric store.

A custom ``prometheus_client`` collector reads one store snapshot per scrape
and emits a gauge family per metric name.  Sample timestamps are only
attached on request: Prometheus rejects scraped samples whose timestamps fall
outside its ingestion window, so they are meant for file dumps fed to
``promtool tsdb create-blocks-from openmetrics``.
"""

from __future__ import annotations

import logging
from itertools import groupby
from typing import Iterator

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from prometheus_client.openmetrics.exposition import generate_latest as generate_openmetrics
from prometheus_client.registry import Collector

from src.exporter.mapper import METRIC_HELP
from src.exporter.store import MetricStore

logger = logging.getLogger("fitbit_exporter.exposition")

__all__ = ["CONTENT_TYPE_LATEST", "StoreCollector", "build_registry", "render"]


class StoreCollector(Collector):
    """Collector exposing every series held by a ``MetricStore``."""

    def __init__(self, store: MetricStore, include_timestamps: bool = False) -> None:
        self._store = store
        self._include_timestamps = include_timestamps

    def collect(self) -> Iterator[Metric]:
        snapshot = self._store.snapshot()
        for name, samples in groupby(snapshot, key=lambda s: s.name):
            family = Metric(name, METRIC_HELP.get(name, name), "gauge")
            for sample in samples:
                family.add_sample(
                    name,
                    sample.label_dict,
                    sample.value,
                    timestamp=sample.observed_at.timestamp() if self._include_timestamps else None,
                )
            yield family

    def describe(self) -> list[Metric]:
        # Series come and go with the store; skip registry-time collection.
        return []


def build_registry(store: MetricStore, include_timestamps: bool = False) -> CollectorRegistry:
    """A dedicated registry holding only the store collector."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(StoreCollector(store, include_timestamps=include_timestamps))
    return registry


def render(
    store: MetricStore,
    include_timestamps: bool = False,
    openmetrics: bool = False,
) -> bytes:
    """Render the current snapshot.

    The Prometheus text format serves scrapes; OpenMetrics (terminated by
    ``# EOF``) is what ``promtool tsdb create-blocks-from openmetrics`` reads.
    """
    registry = build_registry(store, include_timestamps)
    if openmetrics:
        return generate_openmetrics(registry)
    return generate_latest(registry)
