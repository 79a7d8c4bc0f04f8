"""Shared fixtures, fakes and recorded Fitbit API responses for exporter tests."""

from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import httpx
import pytest

from src.config import Settings
from src.exporter.base import RawRecord, UpstreamRequest
from src.exporter.config_loader import ExporterConfig, load_exporter_config

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

TEST_DATE = date(2024, 3, 2)
TEST_NOW = datetime(2024, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


def load_fixture(name: str) -> Any:
    return json.loads((FIXTURES_DIR / name).read_text())


def make_record(
    resource: str,
    payload: Any,
    start: date | None = None,
    end: date | None = None,
) -> RawRecord:
    """A RawRecord as the client would return it."""
    return RawRecord(resource=resource, request=UpstreamRequest(resource, start, end), payload=payload)


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def exporter_config() -> ExporterConfig:
    """Load the bundled exporter config."""
    return load_exporter_config()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        fitbit_client_id="test-client",
        fitbit_client_secret="test-secret",
        fitbit_refresh_token="refresh-0",
        _env_file=None,
    )


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def steps_raw() -> dict:
    return load_fixture("steps.json")


@pytest.fixture
def heart_raw() -> dict:
    return load_fixture("heart.json")


@pytest.fixture
def sleep_raw() -> dict:
    return load_fixture("sleep.json")


@pytest.fixture
def weight_raw() -> dict:
    return load_fixture("weight.json")


@pytest.fixture
def activities_pages() -> list[dict]:
    return [load_fixture("activities_page1.json"), load_fixture("activities_page2.json")]


@pytest.fixture
def devices_raw() -> list:
    return load_fixture("devices.json")


@pytest.fixture
def token_raw() -> dict:
    return load_fixture("token.json")


# ---------------------------------------------------------------------------
# Time fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, now: datetime = TEST_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeTime:
    """Virtual time shared by a clock, a monotonic source and a sleep.

    ``sleep`` yields to the event loop (so other tasks run at the current
    virtual time) and then jumps to the end of the requested delay.  After
    ``max_sleeps`` calls it blocks until cancelled.
    """

    def __init__(self, start: datetime = TEST_NOW, max_sleeps: int = 2) -> None:
        self._start = start
        self.elapsed = 0.0
        self.max_sleeps = max_sleeps
        self.sleeps: list[float] = []

    def clock(self) -> datetime:
        return self._start + timedelta(seconds=self.elapsed)

    def monotonic(self) -> float:
        return self.elapsed

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        if len(self.sleeps) > self.max_sleeps:
            await asyncio.Event().wait()
        target = self.elapsed + delay
        for _ in range(5):
            await asyncio.sleep(0)
        self.elapsed = max(self.elapsed, target)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorded_sleeps() -> tuple[list[float], Callable]:
    """An awaitable sleep that records delays instead of waiting."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    return delays, _sleep


# ---------------------------------------------------------------------------
# Fake upstream client
# ---------------------------------------------------------------------------


class FakeFitbitClient:
    """Stands in for FitbitClient in scheduler and backfill tests.

    ``responder(resource, start, end)`` returns a payload, or raises to
    simulate a failed fetch.  Every call is recorded in ``calls``.
    """

    def __init__(self, responder: Callable[[str, date | None, date | None], Any]) -> None:
        self._responder = responder
        self.calls: list[tuple[str, date | None, date | None]] = []

    async def fetch_all(
        self, resource: str, start_date: date | None = None, end_date: date | None = None
    ) -> AsyncIterator[RawRecord]:
        self.calls.append((resource, start_date, end_date))
        payload = self._responder(resource, start_date, end_date)
        if asyncio.iscoroutine(payload):
            payload = await payload
        yield make_record(resource, payload, start_date, end_date)


def steps_payload(day: date, value: int) -> dict:
    return {"activities-steps": [{"dateTime": day.isoformat(), "value": str(value)}]}


# ---------------------------------------------------------------------------
# Mock HTTP transport
# ---------------------------------------------------------------------------


def mock_http_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    """httpx.AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
