"""Pydantic models for the exporter's health and backfill endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field

from src.models.base import ExporterBase, utc_now


# ---------- Health ----------

class CycleSummary(ExporterBase):
    started_at: datetime
    finished_at: datetime | None = None
    status: str
    records_fetched: int = 0
    samples_published: int = 0
    error: str | None = None
    skipped_resources: list[str] = Field(default_factory=list)


class HealthRead(ExporterBase):
    status: str  # healthy | unhealthy
    version: str
    scheduler_state: str
    halt_reason: str | None = None
    series: int = Field(ge=0)
    skipped_ticks: int = 0
    token_refreshes: int = 0
    last_cycle: CycleSummary | None = None
    backfill_running: bool = False
    timestamp: datetime = Field(default_factory=utc_now)


# ---------- Backfill ----------

class SkippedRangeRead(ExporterBase):
    resource: str
    start_date: date
    end_date: date
    reason: str


class BackfillReportRead(ExporterBase):
    start_date: date
    end_date: date
    earliest_synced_date: date | None = None
    latest_synced_date: date | None = None
    chunks_total: int = 0
    chunks_succeeded: int = 0
    samples_merged: int = 0
    skipped: list[SkippedRangeRead] = Field(default_factory=list)
    aborted: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    is_complete: bool = False


class BackfillAccepted(ExporterBase):
    status: str = "accepted"
    start_date: date
    end_date: date
