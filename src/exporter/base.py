"""Core value types for the Fitbit exporter.

These types flow through every component: the credential manager produces
``Credential``; the upstream client consumes ``UpstreamRequest`` and yields
``RawRecord``; the mapper turns records into ``MetricSample``; the store keeps
the latest sample per identity.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Mapping

logger = logging.getLogger("fitbit_exporter.base")

LabelSet = tuple[tuple[str, str], ...]
SampleKey = tuple[str, LabelSet]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth credential
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """OAuth2 token pair held by the credential manager.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Single-use token redeemed for the next pair.
        expires_at:    UTC datetime when access_token expires.
        scope:         Granted OAuth scopes, when the provider reports them.
        user_id:       Fitbit encoded user id, when reported.
    """

    access_token: str
    refresh_token: str
    expires_at: datetime
    scope: tuple[str, ...] = ()
    user_id: str | None = None

    def is_fresh(self, now: datetime, safety_margin: timedelta) -> bool:
        """Return True if the token is usable at ``now`` with the given margin."""
        return now < self.expires_at - safety_margin

    def __repr__(self) -> str:
        # Never leak secrets into logs.
        return f"Credential(expires_at={self.expires_at.isoformat()}, user_id={self.user_id!r})"


# ---------------------------------------------------------------------------
# Upstream request / raw record
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpstreamRequest:
    """One upstream API call.

    Attributes:
        resource:   Resource kind name (see ``src.exporter.resources``).
        start_date: First date covered (None for non date-scoped resources).
        end_date:   Last date covered, inclusive.
        cursor:     Absolute URL of the next page, None for the first page.
    """

    resource: str
    start_date: date | None = None
    end_date: date | None = None
    cursor: str | None = None

    def next_page(self, cursor: str) -> UpstreamRequest:
        return UpstreamRequest(self.resource, self.start_date, self.end_date, cursor)

    def describe(self) -> str:
        if self.start_date is None:
            span = "current"
        elif self.start_date == self.end_date:
            span = self.start_date.isoformat()
        else:
            span = f"{self.start_date.isoformat()}..{self.end_date.isoformat() if self.end_date else ''}"
        suffix = " (next page)" if self.cursor else ""
        return f"{self.resource}[{span}]{suffix}"


@dataclass(frozen=True)
class RawRecord:
    """One page of upstream JSON plus the request that produced it.

    Never retained after mapping.
    """

    resource: str
    request: UpstreamRequest
    payload: Any


# ---------------------------------------------------------------------------
# Metric sample
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MetricSample:
    """A single gauge value with its identity.

    Attributes:
        name:        Metric name, e.g. ``fitbit_steps``.
        labels:      Ordered ``(key, value)`` pairs with unique keys.
        value:       Numeric value.
        observed_at: UTC timestamp the value describes.
    """

    name: str
    labels: LabelSet
    value: float
    observed_at: datetime

    @classmethod
    def build(
        cls,
        name: str,
        labels: Mapping[str, object],
        value: float,
        observed_at: datetime,
    ) -> MetricSample:
        """Create a sample from a label mapping, stringifying label values."""
        return cls(
            name=name,
            labels=tuple((str(k), str(v)) for k, v in labels.items()),
            value=float(value),
            observed_at=observed_at,
        )

    @property
    def key(self) -> SampleKey:
        return (self.name, self.labels)

    @property
    def label_dict(self) -> dict[str, str]:
        return dict(self.labels)


# ---------------------------------------------------------------------------
# Sync bookkeeping
# ---------------------------------------------------------------------------


@dataclass
class SyncCursor:
    """Range synced so far by one backfill run. In memory only."""

    earliest_synced_date: date | None = None
    latest_synced_date: date | None = None

    def advance(self, start: date, end: date) -> None:
        if self.earliest_synced_date is None or start < self.earliest_synced_date:
            self.earliest_synced_date = start
        if self.latest_synced_date is None or end > self.latest_synced_date:
            self.latest_synced_date = end


@dataclass(frozen=True)
class SkippedRange:
    """A chunk the backfill gave up on."""

    resource: str
    start_date: date
    end_date: date
    reason: str


@dataclass
class BackfillReport:
    """Outcome of one backfill run.

    Attributes:
        start_date:       First requested date.
        end_date:         Last requested date, inclusive.
        cursor:           Range actually synced.
        chunks_total:     Chunks attempted.
        chunks_succeeded: Chunks fetched, mapped and merged.
        samples_merged:   Samples handed to the store.
        skipped:          Chunks abandoned after retries.
        aborted:          Set when the run stopped early (e.g. dead credential).
        started_at:       UTC start time.
        finished_at:      UTC finish time, None while running.
    """

    start_date: date
    end_date: date
    cursor: SyncCursor = field(default_factory=SyncCursor)
    chunks_total: int = 0
    chunks_succeeded: int = 0
    samples_merged: int = 0
    skipped: list[SkippedRange] = field(default_factory=list)
    aborted: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.finished_at is not None

    def to_json(self) -> dict:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "earliest_synced_date": (
                self.cursor.earliest_synced_date.isoformat()
                if self.cursor.earliest_synced_date
                else None
            ),
            "latest_synced_date": (
                self.cursor.latest_synced_date.isoformat()
                if self.cursor.latest_synced_date
                else None
            ),
            "chunks_total": self.chunks_total,
            "chunks_succeeded": self.chunks_succeeded,
            "samples_merged": self.samples_merged,
            "skipped": [
                {
                    "resource": s.resource,
                    "start_date": s.start_date.isoformat(),
                    "end_date": s.end_date.isoformat(),
                    "reason": s.reason,
                }
                for s in self.skipped
            ],
            "aborted": self.aborted,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "is_complete": self.is_complete,
        }
