"""Exception taxonomy for the Fitbit exporter core.

Hierarchy::

    ExporterError
    ├── AuthError
    │   ├── AuthTransientError       — retry later (network, 5xx, 429)
    │   └── AuthUnrecoverableError   — refresh token revoked/invalid; fatal
    ├── FetchError
    │   ├── RateLimitedError         — 429, retried honouring retry_after
    │   ├── ServerError              — 5xx / transport failure, retried
    │   ├── BadRequestError          — other 4xx, never retried
    │   └── UnauthorizedError        — 401 even after a forced refresh
    ├── MappingError
    │   ├── UnsupportedShapeError    — the whole record is unusable
    │   └── MalformedFieldError      — one entry/field is unusable
    ├── StoreError                   — invariant violation, fatal
    └── BackfillInProgressError      — a backfill is already running

Record-, date- and chunk-level errors are absorbed by the sync loops.
Only ``AuthUnrecoverableError`` and ``StoreError`` escape them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.exporter.base import UpstreamRequest


class ExporterError(Exception):
    """Base class for every error raised by the exporter core."""


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class AuthError(ExporterError):
    """The credential manager could not produce a valid access token."""


class AuthTransientError(AuthError):
    """Token refresh failed for a reason that may go away (network, 5xx)."""


class AuthUnrecoverableError(AuthError):
    """The refresh token was rejected; no amount of retrying will help."""


# ---------------------------------------------------------------------------
# Upstream fetches
# ---------------------------------------------------------------------------


class FetchError(ExporterError):
    """An upstream API call failed.

    Attributes:
        request: The request that failed (None when raised outside a request).
        status:  HTTP status code, or None for transport-level failures.
    """

    def __init__(
        self,
        message: str,
        request: UpstreamRequest | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.request = request
        self.status = status


class RateLimitedError(FetchError):
    """HTTP 429. ``retry_after`` is the upstream hint in seconds, if any."""

    def __init__(
        self,
        message: str,
        request: UpstreamRequest | None = None,
        status: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, request=request, status=status)
        self.retry_after = retry_after


class ServerError(FetchError):
    """HTTP 5xx, or the connection failed before a response arrived."""


class BadRequestError(FetchError):
    """The upstream rejected the request itself (4xx other than 401/429)."""


class UnauthorizedError(FetchError):
    """The upstream rejected the access token."""


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


class MappingError(ExporterError):
    """A raw record could not be turned into metric samples."""


class UnsupportedShapeError(MappingError):
    """Unknown resource kind or a payload without the expected collection."""


class MalformedFieldError(MappingError):
    """A single entry carries a value that cannot identify or describe it."""


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StoreError(ExporterError):
    """The metric store was handed something that breaks its invariants."""


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


class BackfillInProgressError(ExporterError):
    """Another backfill run has not finished yet."""
