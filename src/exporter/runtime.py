"""Process-wide wiring of the exporter components.

One ``ExporterRuntime`` owns the shared ``httpx.AsyncClient``, the credential
manager, the upstream client, the store and both sync loops.  The FastAPI
lifespan and the CLI build one each; nothing else holds global state.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import date, timedelta

import httpx

from src.config import Settings
from src.exporter.auth import CredentialManager
from src.exporter.base import BackfillReport
from src.exporter.client import FitbitClient
from src.exporter.config_loader import ExporterConfig, get_exporter_config, load_exporter_config
from src.exporter.errors import BackfillInProgressError
from src.exporter.exposition import render
from src.exporter.mapper import MetricMapper
from src.exporter.retry import RetryPolicy
from src.exporter.store import MetricStore
from src.exporter.sync.backfill import BackfillDriver
from src.exporter.sync.scheduler import PollScheduler

logger = logging.getLogger("fitbit_exporter.runtime")

_HTTP_TIMEOUT = httpx.Timeout(30.0, connect=10.0)


class ExporterRuntime:
    """All long-lived exporter objects, wired together.

    Usage::

        runtime = ExporterRuntime.from_settings(get_settings())
        await runtime.start()
        ...
        await runtime.shutdown()
    """

    def __init__(
        self,
        settings: Settings,
        config: ExporterConfig,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.config = config
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=_HTTP_TIMEOUT)

        self.credentials = CredentialManager(
            client_id=settings.fitbit_client_id,
            client_secret=settings.fitbit_client_secret,
            refresh_token=settings.fitbit_refresh_token,
            http_client=self.http_client,
            safety_margin=timedelta(seconds=config.token.safety_margin_seconds),
        )
        self.client = FitbitClient(
            self.credentials,
            http_client=self.http_client,
            retry_policy=RetryPolicy.from_config(config.retry),
            unit_system=settings.unit_system,
        )
        self.mapper = MetricMapper(settings.unit_system)
        self.store = MetricStore()
        self.scheduler = PollScheduler(
            self.client,
            self.mapper,
            self.store,
            config.resources,
            poll_interval=settings.poll_interval_seconds,
            lookback_days=config.poll.lookback_days,
            auth_failure_limit=config.poll.auth_failure_limit,
        )
        self.backfill = BackfillDriver(
            self.client,
            self.mapper,
            self.store,
            config.date_scoped_resources,
            chunk_days=config.backfill.chunk_days,
            rate_limit=config.backfill.rate_limit_ms / 1000.0,
        )
        self._backfill_task: asyncio.Task | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: httpx.AsyncClient | None = None,
    ) -> ExporterRuntime:
        """Build a runtime, loading the YAML config the settings point at."""
        if settings.exporter_config_path:
            config = load_exporter_config(settings.exporter_config_path)
        else:
            config = get_exporter_config()
        return cls(settings, config, http_client=http_client)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start polling and, when configured, the startup backfill."""
        self.scheduler.start()
        window = self.settings.backfill_window()
        if window is not None:
            self.start_backfill(*window)

    async def shutdown(self) -> None:
        """Stop both loops within the grace period and release the HTTP pool."""
        grace = self.config.poll.shutdown_grace_seconds
        await self.scheduler.stop(grace=grace)

        task = self._backfill_task
        if task is not None and not task.done():
            logger.info("Cancelling running backfill")
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if self._owns_http_client:
            await self.http_client.aclose()

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    @property
    def backfill_running(self) -> bool:
        return self._backfill_task is not None and not self._backfill_task.done()

    @property
    def last_backfill_report(self) -> BackfillReport | None:
        return self.backfill.last_report

    def start_backfill(self, start_date: date, end_date: date) -> asyncio.Task:
        """Launch a backfill in the background.

        Raises:
            ValueError:              ``start_date`` is after ``end_date``.
            BackfillInProgressError: A backfill task is still running.
        """
        if start_date > end_date:
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")
        if self.backfill_running:
            raise BackfillInProgressError("A backfill is already running")

        task = asyncio.create_task(
            self.backfill.run(start_date, end_date), name="fitbit-backfill"
        )
        task.add_done_callback(self._on_backfill_done)
        self._backfill_task = task
        return task

    @staticmethod
    def _on_backfill_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Backfill crashed: %r", exc, exc_info=exc)

    # ------------------------------------------------------------------
    # Scrape
    # ------------------------------------------------------------------

    def render_metrics(
        self, include_timestamps: bool | None = None, openmetrics: bool = False
    ) -> bytes:
        if include_timestamps is None:
            include_timestamps = self.config.exposition.include_timestamps
        return render(self.store, include_timestamps=include_timestamps, openmetrics=openmetrics)
