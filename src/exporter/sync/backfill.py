"""Historical backfill driver.

Imports a date range into the metric store:
- Splits the range into chunks of ``min(chunk_days, resource.max_range_days)``
  days, anchored at ``start_date`` so re-runs issue identical requests
- Processes chunks oldest to newest, pausing ``rate_limit`` seconds between them
- Merges each chunk into the store (never deletes)
- Skips and records chunks that still fail after the client's retries
- Aborts on an unrecoverable credential

Re-running the same range leaves the store identical: mapping is pure and the
store upserts by identity.

Usage::

    driver = BackfillDriver(client, mapper, store, config.date_scoped_resources)
    report = await driver.run(date(2024, 1, 1), date(2024, 3, 31))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Awaitable, Callable

from src.exporter.base import BackfillReport, RawRecord, SkippedRange, utcnow
from src.exporter.client import FitbitClient
from src.exporter.errors import (
    AuthTransientError,
    AuthUnrecoverableError,
    BackfillInProgressError,
    FetchError,
)
from src.exporter.mapper import MetricMapper
from src.exporter.resources import get_resource
from src.exporter.store import MetricStore

logger = logging.getLogger("fitbit_exporter.sync.backfill")


@dataclass(frozen=True)
class Chunk:
    """One upstream request window for one resource."""

    resource: str
    start_date: date
    end_date: date


def plan_chunks(
    resources: list[str],
    start_date: date,
    end_date: date,
    chunk_days: int,
) -> list[Chunk]:
    """Split ``[start_date, end_date]`` into per-resource chunks, oldest first.

    Resources that are not date-scoped are left out.  Chunks that start on
    the same day keep the order of ``resources``.
    """
    if start_date > end_date:
        raise ValueError(f"start_date {start_date} is after end_date {end_date}")
    if chunk_days < 1:
        raise ValueError("chunk_days must be >= 1")

    chunks: list[Chunk] = []
    for order, resource in enumerate(resources):
        kind = get_resource(resource)
        if not kind.date_scoped:
            continue
        span = min(chunk_days, kind.max_range_days)
        current = start_date
        while current <= end_date:
            chunk_end = min(current + timedelta(days=span - 1), end_date)
            chunks.append(Chunk(resource, current, chunk_end))
            current = chunk_end + timedelta(days=1)

    position = {name: i for i, name in enumerate(resources)}
    chunks.sort(key=lambda c: (c.start_date, position[c.resource]))
    return chunks


class BackfillDriver:
    """Run historical imports, one at a time.

    Shares the client (and so the credential manager) with the poll
    scheduler; both may run concurrently.
    """

    def __init__(
        self,
        client: FitbitClient,
        mapper: MetricMapper,
        store: MetricStore,
        resources: list[str],
        chunk_days: int = 30,
        rate_limit: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the driver.

        Args:
            client:     Upstream client.
            mapper:     Record → sample mapper.
            store:      Store to merge into.
            resources:  Enabled resource names; non date-scoped ones are ignored.
            chunk_days: Preferred chunk width, capped per resource.
            rate_limit: Seconds to pause between chunks.
            sleep:      Awaitable used for the pause.
        """
        self._client = client
        self._mapper = mapper
        self._store = store
        self._resources = list(resources)
        self._chunk_days = chunk_days
        self._rate_limit = rate_limit
        self._sleep = sleep
        self._running = False
        self.last_report: BackfillReport | None = None

    @property
    def running(self) -> bool:
        return self._running

    async def run(self, start_date: date, end_date: date) -> BackfillReport:
        """Import ``[start_date, end_date]`` and return the run's report.

        Raises:
            ValueError:              ``start_date`` is after ``end_date``.
            BackfillInProgressError: Another run has not finished.
        """
        if self._running:
            raise BackfillInProgressError("A backfill is already running")
        chunks = plan_chunks(self._resources, start_date, end_date, self._chunk_days)

        self._running = True
        report = BackfillReport(start_date=start_date, end_date=end_date)
        self.last_report = report
        logger.info(
            "Backfill %s → %s: %d chunks across %d resources",
            start_date, end_date, len(chunks), len(self._resources),
        )
        try:
            for index, chunk in enumerate(chunks):
                if index and self._rate_limit > 0:
                    await self._sleep(self._rate_limit)
                report.chunks_total += 1
                try:
                    merged = await self._run_chunk(chunk)
                except AuthUnrecoverableError as exc:
                    report.aborted = f"credential unrecoverable: {exc}"
                    logger.error("Backfill aborted at %s: %s", self._describe(chunk), exc)
                    break
                except (AuthTransientError, FetchError) as exc:
                    report.skipped.append(
                        SkippedRange(chunk.resource, chunk.start_date, chunk.end_date, str(exc))
                    )
                    logger.warning("Backfill skipped %s: %s", self._describe(chunk), exc)
                    continue

                report.chunks_succeeded += 1
                report.samples_merged += merged
                report.cursor.advance(chunk.start_date, chunk.end_date)
        finally:
            report.finished_at = utcnow()
            self._running = False

        logger.info(
            "Backfill finished: %d/%d chunks, %d samples, %d skipped%s",
            report.chunks_succeeded, report.chunks_total, report.samples_merged,
            len(report.skipped), f", aborted ({report.aborted})" if report.aborted else "",
        )
        return report

    async def _run_chunk(self, chunk: Chunk) -> int:
        records: list[RawRecord] = []
        async for record in self._client.fetch_all(chunk.resource, chunk.start_date, chunk.end_date):
            records.append(record)
        samples = self._mapper.map_records(records)
        merged = self._store.upsert_batch(samples)
        logger.debug("%s: %d samples merged", self._describe(chunk), merged)
        return merged

    @staticmethod
    def _describe(chunk: Chunk) -> str:
        return f"{chunk.resource}[{chunk.start_date}..{chunk.end_date}]"
