"""Tests for the Fitbit upstream client: error mapping, retries, re-auth and paging."""

from __future__ import annotations

from datetime import date
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from src.exporter.base import UpstreamRequest
from src.exporter.client import FitbitClient
from src.exporter.errors import (
    AuthUnrecoverableError,
    BadRequestError,
    RateLimitedError,
    ServerError,
    UnauthorizedError,
)
from src.exporter.retry import RetryPolicy
from src.exporter.tests.conftest import mock_http_client

START = date(2024, 3, 1)
END = date(2024, 3, 2)

STEPS_OK = {"activities-steps": [{"dateTime": "2024-03-01", "value": "8123"}]}


@pytest.fixture
def credentials() -> MagicMock:
    manager = MagicMock()
    manager.get_valid_token = AsyncMock(return_value="token-1")
    manager.force_refresh = AsyncMock(return_value="token-2")
    manager.invalidate = MagicMock()
    return manager


class Upstream:
    """Scripted responses, served in order; the last one repeats."""

    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _client(
    credentials: MagicMock,
    upstream,
    sleep,
    unit_system: str = "metric",
    max_attempts: int = 4,
) -> FitbitClient:
    return FitbitClient(
        credentials,
        http_client=mock_http_client(upstream),
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=1.0, max_delay=60.0, jitter=False),
        unit_system=unit_system,
        sleep=sleep,
    )


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TestRequests:
    @pytest.mark.asyncio
    async def test_fetch_builds_date_range_url(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=STEPS_OK))
        client = _client(credentials, upstream, sleep)

        record = await client.fetch(UpstreamRequest("steps", START, END))

        assert record.resource == "steps"
        assert record.payload == STEPS_OK
        sent = upstream.requests[0]
        assert sent.url.path == "/1/user/-/activities/steps/date/2024-03-01/2024-03-02.json"
        assert sent.headers["Authorization"] == "Bearer token-1"

    @pytest.mark.asyncio
    async def test_metric_units_send_no_locale(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=STEPS_OK))
        await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert "Accept-Language" not in upstream.requests[0].headers

    @pytest.mark.asyncio
    async def test_us_units_send_locale(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=STEPS_OK))
        await _client(credentials, upstream, sleep, unit_system="en_US").fetch(
            UpstreamRequest("steps", START, END)
        )

        assert upstream.requests[0].headers["Accept-Language"] == "en_US"

    @pytest.mark.asyncio
    async def test_devices_request_is_not_date_scoped(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=[]))
        await _client(credentials, upstream, sleep).fetch(UpstreamRequest("devices"))

        assert upstream.requests[0].url.path == "/1/user/-/devices.json"

    def test_unknown_unit_system_rejected(self, credentials) -> None:
        with pytest.raises(ValueError):
            FitbitClient(credentials, unit_system="imperial")


# ---------------------------------------------------------------------------
# Error mapping and retries
# ---------------------------------------------------------------------------


class TestRetries:
    @pytest.mark.asyncio
    async def test_rate_limit_waits_for_retry_after(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        upstream = Upstream(
            httpx.Response(429, headers={"Retry-After": "5"}),
            httpx.Response(200, json=STEPS_OK),
        )
        record = await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert record.payload == STEPS_OK
        assert len(upstream.requests) == 2
        assert delays and delays[0] >= 5

    @pytest.mark.asyncio
    async def test_rate_limit_uses_fitbit_reset_header(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        upstream = Upstream(
            httpx.Response(429, headers={"Fitbit-Rate-Limit-Reset": "1800"}),
            httpx.Response(200, json=STEPS_OK),
        )
        await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert delays == [1800.0]

    @pytest.mark.asyncio
    async def test_server_errors_back_off_exponentially(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        upstream = Upstream(
            httpx.Response(500),
            httpx.Response(502),
            httpx.Response(503),
            httpx.Response(200, json=STEPS_OK),
        )
        await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(503))

        with pytest.raises(ServerError) as excinfo:
            await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert len(upstream.requests) == 4
        assert excinfo.value.status == 503
        assert excinfo.value.request == UpstreamRequest("steps", START, END)

    @pytest.mark.asyncio
    async def test_rate_limit_exhausts_into_rate_limited_error(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(429))

        with pytest.raises(RateLimitedError):
            await _client(credentials, upstream, sleep, max_attempts=2).fetch(
                UpstreamRequest("steps", START, END)
            )
        assert len(upstream.requests) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(404, json={"errors": [{"errorType": "not_found"}]}))

        with pytest.raises(BadRequestError):
            await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert len(upstream.requests) == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_transport_failure_is_retried(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200, json=STEPS_OK)

        record = await _client(credentials, handler, sleep).fetch(UpstreamRequest("steps", START, END))

        assert record.payload == STEPS_OK
        assert delays == [1.0]

    @pytest.mark.asyncio
    async def test_non_json_body_is_bad_request(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, text="<html>maintenance</html>"))

        with pytest.raises(BadRequestError):
            await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))


# ---------------------------------------------------------------------------
# Re-authentication
# ---------------------------------------------------------------------------


class TestReauth:
    @pytest.mark.asyncio
    async def test_401_forces_one_refresh_and_repeats(self, credentials, recorded_sleeps) -> None:
        delays, sleep = recorded_sleeps
        credentials.get_valid_token = AsyncMock(side_effect=["token-1", "token-2"])
        upstream = Upstream(
            httpx.Response(401, json={"errors": [{"errorType": "expired_token"}]}),
            httpx.Response(200, json=STEPS_OK),
        )

        record = await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert record.payload == STEPS_OK
        credentials.force_refresh.assert_awaited_once_with(rejected_token="token-1")
        assert upstream.requests[1].headers["Authorization"] == "Bearer token-2"
        assert delays == []

    @pytest.mark.asyncio
    async def test_second_401_is_fatal(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        credentials.get_valid_token = AsyncMock(side_effect=["token-1", "token-2"])
        upstream = Upstream(httpx.Response(401))

        with pytest.raises(UnauthorizedError):
            await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))

        assert len(upstream.requests) == 2
        credentials.force_refresh.assert_awaited_once()
        credentials.invalidate.assert_called_once_with("token-2")

    @pytest.mark.asyncio
    async def test_auth_errors_propagate_unchanged(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        credentials.get_valid_token = AsyncMock(side_effect=AuthUnrecoverableError("revoked"))
        upstream = Upstream(httpx.Response(200, json=STEPS_OK))

        with pytest.raises(AuthUnrecoverableError):
            await _client(credentials, upstream, sleep).fetch(UpstreamRequest("steps", START, END))
        assert upstream.requests == []


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class TestPagination:
    @staticmethod
    def _pager(pages: list[dict]):
        def handler(request: httpx.Request) -> httpx.Response:
            offset = int(request.url.params.get("offset", "0"))
            return httpx.Response(200, json=pages[offset // 2])

        return handler

    @pytest.mark.asyncio
    async def test_follows_next_links(self, credentials, recorded_sleeps, activities_pages) -> None:
        _, sleep = recorded_sleeps
        client = _client(credentials, self._pager(activities_pages), sleep)

        records = [r async for r in client.fetch_all("activities", START, date(2024, 3, 3))]

        assert len(records) == 2
        assert records[1].request.cursor is not None
        assert records[1].payload["activities"][0]["logId"] == 61003

    @pytest.mark.asyncio
    async def test_first_page_query(self, credentials, recorded_sleeps, activities_pages) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=activities_pages[1]))
        client = _client(credentials, upstream, sleep)

        _ = [r async for r in client.fetch_all("activities", START, END)]

        params = upstream.requests[0].url.params
        assert params["afterDate"] == "2024-02-29"
        assert params["sort"] == "asc"
        assert params["offset"] == "0"

    @pytest.mark.asyncio
    async def test_stops_once_page_passes_end_date(self, credentials, recorded_sleeps, activities_pages) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=activities_pages[0]))
        client = _client(credentials, upstream, sleep)

        # Page 1 already holds a 2024-03-02 entry, past the requested end.
        records = [r async for r in client.fetch_all("activities", START, START)]

        assert len(records) == 1
        assert len(upstream.requests) == 1

    @pytest.mark.asyncio
    async def test_non_paginated_resource_yields_once(self, credentials, recorded_sleeps) -> None:
        _, sleep = recorded_sleeps
        upstream = Upstream(httpx.Response(200, json=STEPS_OK))
        client = _client(credentials, upstream, sleep)

        records = [r async for r in client.fetch_all("steps", START, END)]

        assert len(records) == 1
        assert records[0].request == UpstreamRequest("steps", START, END)
