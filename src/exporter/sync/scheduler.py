"""Poll scheduler for current Fitbit data.

Every ``poll_interval`` seconds a tick fires and runs one cycle:

1. Fetch every enabled resource for the poll window
   (``[today - lookback_days, today]``)
2. Map every page to metric samples (bad records are logged and skipped)
3. Publish all samples to the store with a single ``upsert_batch``

Ticks are scheduled from the previous tick's start, so a slow or failed
cycle does not shift the cadence.  A tick that fires while a cycle is still
running is skipped.  A request the upstream rejects outright (4xx) skips
that resource only; the others are still published.  Any other fetch failure
(rate limit or server error after retries, credential failure) abandons the
cycle before publishing, leaving the store exactly as it was.

Repeated ``AuthUnrecoverableError`` (a revoked or spent refresh token) stops
the scheduler and marks it unhealthy; the store keeps serving its last
snapshot.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable

from src.exporter.base import RawRecord, utcnow
from src.exporter.client import FitbitClient
from src.exporter.errors import (
    AuthTransientError,
    AuthUnrecoverableError,
    BadRequestError,
    FetchError,
    StoreError,
    UnauthorizedError,
)
from src.exporter.mapper import MetricMapper
from src.exporter.resources import get_resource
from src.exporter.store import MetricStore

logger = logging.getLogger("fitbit_exporter.sync.scheduler")

# Cycle results kept for /health.
_HISTORY_SIZE = 20


class SchedulerState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    MAPPING = "mapping"
    PUBLISHING = "publishing"
    STOPPED = "stopped"


@dataclass
class CycleResult:
    """Outcome of one poll cycle.

    Attributes:
        started_at:        UTC time the cycle began.
        finished_at:       UTC time the cycle ended.
        status:            'running', 'success', 'failed', 'auth_failed',
                           'crashed', 'cancelled' or 'skipped'.
        records_fetched:   Upstream pages fetched.
        samples_published: Samples merged into the store.
        error:             Failure description when status != 'success'.
        skipped_resources: Resources dropped from this cycle after a 4xx.
    """

    started_at: datetime
    finished_at: datetime | None = None
    status: str = "running"
    records_fetched: int = 0
    samples_published: int = 0
    error: str | None = None
    skipped_resources: list[str] = field(default_factory=list)

    def to_json(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status,
            "records_fetched": self.records_fetched,
            "samples_published": self.samples_published,
            "error": self.error,
            "skipped_resources": list(self.skipped_resources),
        }


@dataclass
class _Window:
    start: date
    end: date


class PollScheduler:
    """Run non-overlapping poll cycles at a fixed rate.

    Usage::

        scheduler = PollScheduler(client, mapper, store, resources, poll_interval=900)
        scheduler.start()
        ...
        await scheduler.stop(grace=10)
    """

    def __init__(
        self,
        client: FitbitClient,
        mapper: MetricMapper,
        store: MetricStore,
        resources: list[str],
        poll_interval: float,
        lookback_days: int = 1,
        auth_failure_limit: int = 2,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the scheduler.

        Args:
            client:             Upstream client shared with the backfill.
            mapper:             Record → sample mapper.
            store:              Store to publish into.
            resources:          Enabled resource names, fetched in order.
            poll_interval:      Seconds between tick starts.
            lookback_days:      Days before today included in each window.
            auth_failure_limit: Consecutive unrecoverable auth failures
                                that stop the scheduler.
            clock:              Returns the current UTC time (window, results).
            monotonic:          Tick timing source.
            sleep:              Awaitable used to wait between ticks.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        self._client = client
        self._mapper = mapper
        self._store = store
        self._resources = list(resources)
        self._poll_interval = poll_interval
        self._lookback_days = lookback_days
        self._auth_failure_limit = auth_failure_limit
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep

        self._state = SchedulerState.IDLE
        self._loop_task: asyncio.Task | None = None
        self._cycle_task: asyncio.Task | None = None
        self._auth_failures = 0
        self._halt_reason: str | None = None
        self.history: deque[CycleResult] = deque(maxlen=_HISTORY_SIZE)
        self.skipped_ticks = 0
        self.next_tick_at: float | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def stopped(self) -> bool:
        return self._state is SchedulerState.STOPPED

    @property
    def healthy(self) -> bool:
        """False once the scheduler halted on an unrecoverable failure."""
        return self._halt_reason is None

    @property
    def halt_reason(self) -> str | None:
        return self._halt_reason

    @property
    def last_result(self) -> CycleResult | None:
        return self.history[-1] if self.history else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start the tick loop on the running event loop."""
        if self.stopped:
            raise RuntimeError("Scheduler has been stopped")
        if self.running:
            return self._loop_task
        logger.info(
            "Poll scheduler starting: %d resources every %ss",
            len(self._resources), self._poll_interval,
        )
        self._loop_task = asyncio.create_task(self._tick_loop(), name="fitbit-poll")
        return self._loop_task

    async def stop(self, grace: float = 10.0) -> None:
        """Stop ticking and wait up to ``grace`` seconds for a running cycle."""
        self._state = SchedulerState.STOPPED

        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None and not loop_task.done():
            loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await loop_task

        cycle = self._cycle_task
        if cycle is not None and not cycle.done():
            logger.info("Waiting up to %.1fs for the running poll cycle", grace)
            _, pending = await asyncio.wait({cycle}, timeout=grace)
            if pending:
                logger.warning("Poll cycle still running after %.1fs; cancelling", grace)
                cycle.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cycle
        logger.info("Poll scheduler stopped")

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    async def _tick_loop(self) -> None:
        while not self.stopped:
            tick_start = self._monotonic()
            if self._cycle_task is not None and not self._cycle_task.done():
                self.skipped_ticks += 1
                logger.warning("Previous poll cycle still running; skipping this tick")
            else:
                self._cycle_task = asyncio.create_task(self.run_cycle(), name="fitbit-poll-cycle")
                self._cycle_task.add_done_callback(self._on_cycle_done)

            self.next_tick_at = tick_start + self._poll_interval
            await self._sleep(max(self.next_tick_at - self._monotonic(), 0.0))

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            # Anything escaping run_cycle is a broken invariant (e.g. StoreError).
            logger.error("Poll cycle crashed: %r", exc, exc_info=exc)
            self._halt(f"poll cycle crashed: {exc}")

    def _halt(self, reason: str) -> None:
        self._halt_reason = reason
        self._state = SchedulerState.STOPPED
        if self._loop_task is not None and not self._loop_task.done():
            self._loop_task.cancel()
        logger.error("Poll scheduler halted: %s. Serving last known metrics.", reason)

    # ------------------------------------------------------------------
    # One cycle
    # ------------------------------------------------------------------

    def _window_for(self, resource: str, today: date) -> _Window | None:
        kind = get_resource(resource)
        if not kind.date_scoped:
            return None
        days = min(self._lookback_days, kind.max_range_days - 1)
        return _Window(start=today - timedelta(days=days), end=today)

    async def _fetch_all(self, today: date, result: CycleResult) -> list[RawRecord]:
        records: list[RawRecord] = []
        for resource in self._resources:
            window = self._window_for(resource, today)
            start = window.start if window else None
            end = window.end if window else None
            pages: list[RawRecord] = []
            try:
                async for record in self._client.fetch_all(resource, start, end):
                    pages.append(record)
            except (BadRequestError, UnauthorizedError) as exc:
                # Rejected outright (e.g. a scope the user never granted).
                result.skipped_resources.append(resource)
                logger.warning("Skipping %s for this cycle: %s", resource, exc)
                continue
            records.extend(pages)
        return records

    async def run_cycle(self) -> CycleResult:
        """Fetch, map and publish once.

        Never raises for upstream or credential failures; those are reported
        in the returned ``CycleResult``.  ``StoreError`` propagates.
        """
        result = CycleResult(started_at=self._clock())
        if self.stopped:
            result.status = "skipped"
            result.error = self._halt_reason or "scheduler stopped"
            result.finished_at = result.started_at
            return result

        today = result.started_at.date()
        try:
            self._state = SchedulerState.FETCHING
            records = await self._fetch_all(today, result)
            result.records_fetched = len(records)

            self._state = SchedulerState.MAPPING
            samples = self._mapper.map_records(records)

            self._state = SchedulerState.PUBLISHING
            result.samples_published = self._store.upsert_batch(samples)

        except AuthUnrecoverableError as exc:
            self._auth_failures += 1
            result.status = "auth_failed"
            result.error = str(exc)
            logger.error(
                "Poll cycle failed on credentials (%d/%d): %s",
                self._auth_failures, self._auth_failure_limit, exc,
            )
            if self._auth_failures >= self._auth_failure_limit:
                self._halt(f"credential unrecoverable: {exc}")

        except (AuthTransientError, FetchError) as exc:
            result.status = "failed"
            result.error = str(exc)
            logger.warning("Poll cycle failed, store left unchanged: %s", exc)

        except StoreError as exc:
            result.status = "crashed"
            result.error = str(exc)
            raise

        except asyncio.CancelledError:
            result.status = "cancelled"
            raise

        else:
            self._auth_failures = 0
            result.status = "success"
            logger.info(
                "Poll cycle complete: %d pages, %d samples published, %d resources skipped",
                result.records_fetched, result.samples_published, len(result.skipped_resources),
            )

        finally:
            if self._state is not SchedulerState.STOPPED:
                self._state = SchedulerState.IDLE
            result.finished_at = self._clock()
            self.history.append(result)

        return result
