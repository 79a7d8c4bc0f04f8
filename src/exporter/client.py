"""Fitbit Web API upstream client.

Typed façade over the resource endpoints in ``src.exporter.resources``:

- every call obtains a token from the ``CredentialManager`` first,
- HTTP/JSON failures are mapped onto the ``FetchError`` family,
- rate-limited and server errors are retried per the injected ``RetryPolicy``,
- a 401 forces one token refresh and one repeat of the request,
- paginated resources are exposed as a lazy async iterator of pages.

The client never touches the metric store.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from src.exporter.auth import CredentialManager
from src.exporter.base import RawRecord, UpstreamRequest
from src.exporter.errors import (
    BadRequestError,
    FetchError,
    RateLimitedError,
    ServerError,
    UnauthorizedError,
)
from src.exporter.resources import ResourceKind, get_resource
from src.exporter.retry import RetryPolicy, parse_retry_after

logger = logging.getLogger("fitbit_exporter.client")

# Upper bound on pages followed for one fetch_all call.
MAX_PAGES = 500

# Unit system → Accept-Language header.  No header means METRIC units.
_LOCALE_HEADERS: dict[str, dict[str, str]] = {
    "metric": {},
    "en_US": {"Accept-Language": "en_US"},
    "en_GB": {"Accept-Language": "en_GB"},
}

_TOKEN_ERROR_TYPES = frozenset({"expired_token", "invalid_token"})


def _token_error_in_body(payload: Any) -> bool:
    """Fitbit reports token problems as ``errors[0].errorType`` in the body."""
    if not isinstance(payload, dict):
        return False
    errors = payload.get("errors")
    if not isinstance(errors, list) or not errors or not isinstance(errors[0], dict):
        return False
    return errors[0].get("errorType") in _TOKEN_ERROR_TYPES


def _next_page_url(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    pagination = payload.get("pagination")
    if not isinstance(pagination, dict):
        return None
    next_url = pagination.get("next")
    return next_url if isinstance(next_url, str) and next_url else None


def _passed_range(kind: ResourceKind, payload: Any, end_date: date | None) -> bool:
    """True if the page already holds entries dated after ``end_date``."""
    if end_date is None or kind.date_field is None or not isinstance(payload, dict):
        return False
    entries = payload.get(kind.collection_key or "", [])
    if not isinstance(entries, list):
        return False
    for entry in entries:
        stamp = entry.get(kind.date_field) if isinstance(entry, dict) else None
        if isinstance(stamp, str) and stamp[:10] > end_date.isoformat():
            return True
    return False


class FitbitClient:
    """Authenticated, retrying client for the Fitbit Web API.

    Usage::

        client = FitbitClient(credentials, http_client=httpx.AsyncClient())
        record = await client.fetch(UpstreamRequest("steps", today, today))
        async for page in client.fetch_all("activities", start, end):
            ...
    """

    def __init__(
        self,
        credentials: CredentialManager,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        unit_system: str = "metric",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            credentials:  Token source shared with every other caller.
            http_client:  Optional pre-configured httpx client (for pooling and tests).
            retry_policy: Backoff policy; defaults to ``RetryPolicy()``.
            unit_system:  'metric', 'en_US' or 'en_GB'; selects Accept-Language.
            sleep:        Awaitable used to wait between attempts.
        """
        if unit_system not in _LOCALE_HEADERS:
            raise ValueError(
                f"Unknown unit system '{unit_system}'. Available: {list(_LOCALE_HEADERS)}"
            )
        self._credentials = credentials
        self._http_client = http_client
        self._retry = retry_policy or RetryPolicy()
        self._unit_system = unit_system
        self._sleep = sleep

    @property
    def unit_system(self) -> str:
        return self._unit_system

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch(self, request: UpstreamRequest) -> RawRecord:
        """Fetch one page for ``request``, retrying per the policy.

        Raises:
            RateLimitedError / ServerError: Still failing after max attempts.
            BadRequestError:  The request itself was rejected.
            UnauthorizedError: Rejected again after a forced token refresh.
            AuthError:        The credential manager could not supply a token.
        """
        attempt = 0
        reauthorized = False

        while True:
            attempt += 1
            token = await self._credentials.get_valid_token()
            try:
                payload = await self._send(request, token)
            except UnauthorizedError:
                if reauthorized:
                    logger.warning(
                        "%s: token rejected again after refresh, giving up",
                        request.describe(),
                    )
                    self._credentials.invalidate(token)
                    raise
                reauthorized = True
                attempt -= 1  # a forced refresh does not consume a retry
                logger.info("%s: token rejected, forcing refresh", request.describe())
                await self._credentials.force_refresh(rejected_token=token)
                continue
            except FetchError as exc:
                if not self._retry.should_retry(exc, attempt):
                    raise
                delay = self._retry.delay_for(exc, attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    request.describe(), attempt, self._retry.max_attempts, exc, delay,
                )
                await self._sleep(delay)
                continue

            logger.debug("%s fetched", request.describe())
            return RawRecord(resource=request.resource, request=request, payload=payload)

    async def fetch_all(
        self,
        resource: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> AsyncIterator[RawRecord]:
        """Lazily yield every page for a resource and date range.

        Non-paginated resources yield exactly one record.  Paginated ones
        follow ``pagination.next`` until it is empty, the page passes
        ``end_date``, or ``MAX_PAGES`` is reached.  The sequence is finite
        and can only be restarted from the beginning.
        """
        kind = get_resource(resource)
        request = UpstreamRequest(resource, start_date, end_date)
        pages = 0

        while True:
            record = await self.fetch(request)
            pages += 1
            yield record

            if not kind.paginated:
                return
            if _passed_range(kind, record.payload, end_date):
                return
            next_url = _next_page_url(record.payload)
            if next_url is None:
                return
            if pages >= MAX_PAGES:
                logger.warning(
                    "%s: stopping after %d pages", request.describe(), pages
                )
                return
            request = request.next_page(next_url)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _build_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            **_LOCALE_HEADERS[self._unit_system],
        }

    async def _send(self, request: UpstreamRequest, access_token: str) -> Any:
        """Issue one GET and map the response onto a payload or a FetchError."""
        kind = get_resource(request.resource)
        url, params = kind.build_url(request)
        headers = self._build_headers(access_token)

        try:
            if self._http_client:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise ServerError(
                f"{request.describe()}: transport failure: {exc}", request=request
            ) from exc

        status = response.status_code
        where = request.describe()

        if status == 429:
            retry_after = parse_retry_after(response.headers)
            raise RateLimitedError(
                f"{where}: rate limited (retry after {retry_after}s)",
                request=request,
                retry_after=retry_after,
            )
        if status == 401:
            raise UnauthorizedError(f"{where}: HTTP 401", request=request, status=status)
        if status >= 500:
            raise ServerError(f"{where}: HTTP {status}", request=request, status=status)
        if status >= 400:
            raise BadRequestError(
                f"{where}: HTTP {status} {response.text[:200]}",
                request=request,
                status=status,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise BadRequestError(
                f"{where}: response is not JSON", request=request, status=status
            ) from exc

        if _token_error_in_body(payload):
            raise UnauthorizedError(
                f"{where}: token error in body", request=request, status=status
            )
        return payload
