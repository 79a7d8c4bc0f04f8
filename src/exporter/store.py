"""In-memory metric store.

Holds the latest sample per ``(name, labels)`` identity.  Writers build a new
mapping under a lock and swap the reference; readers grab whatever reference
is current without locking, so a scrape sees either all of a batch or none of
it.  Nothing is persisted: a restart starts empty and the next poll cycle or
backfill repopulates it.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import Iterable, Mapping

from src.exporter.base import LabelSet, MetricSample, SampleKey
from src.exporter.errors import StoreError

logger = logging.getLogger("fitbit_exporter.store")


def _check(sample: object) -> MetricSample:
    if not isinstance(sample, MetricSample):
        raise StoreError(f"Expected MetricSample, got {type(sample).__name__}")
    keys = [k for k, _ in sample.labels]
    if len(keys) != len(set(keys)):
        raise StoreError(f"{sample.name}: duplicate label keys {keys}")
    return sample


class MetricStore:
    """Latest-value store keyed by metric identity.

    Usage::

        store = MetricStore()
        store.upsert_batch(samples)
        for sample in store.snapshot():
            ...
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Mapping[SampleKey, MetricSample] = MappingProxyType({})

    def upsert_batch(self, samples: Iterable[MetricSample]) -> int:
        """Merge ``samples`` atomically; returns the number applied.

        Identities absent from the batch are left alone.  If the batch
        contains the same identity twice, the later sample wins.

        Raises:
            StoreError: A batch item is not a valid ``MetricSample``.  The
                store is left unchanged.
        """
        # Validate before touching the lock so a bad batch leaves no trace.
        batch = [_check(s) for s in samples]
        if not batch:
            return 0

        with self._lock:
            updated = dict(self._data)
            for sample in batch:
                updated[sample.key] = sample
            self._data = MappingProxyType(updated)

        logger.debug("Merged %d samples (%d series held)", len(batch), len(updated))
        return len(batch)

    def snapshot(self) -> list[MetricSample]:
        """All current samples, ordered by (name, labels)."""
        data = self._data
        return [data[key] for key in sorted(data)]

    def get(self, name: str, labels: Mapping[str, str] | LabelSet) -> MetricSample | None:
        """Look up one series; ``labels`` must be in the stored order."""
        if isinstance(labels, Mapping):
            labels = tuple((str(k), str(v)) for k, v in labels.items())
        return self._data.get((name, tuple(labels)))

    def __len__(self) -> int:
        return len(self._data)
