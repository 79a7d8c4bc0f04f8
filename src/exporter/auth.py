"""OAuth2 credential manager for the Fitbit Web API.

Owns the access/refresh token pair for the single configured user.  The
process starts with only a refresh token, so the first ``get_valid_token()``
call redeems it.  Fitbit rotates refresh tokens on every redemption and
invalidates the old one, which is why refreshes are single-flight: every
concurrent caller awaits the same in-flight refresh instead of redeeming the
(already spent) token a second time.

Token endpoint: POST https://api.fitbit.com/oauth2/token
    grant_type=refresh_token, HTTP Basic client authentication.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

import httpx

from src.exporter.base import Credential, utcnow
from src.exporter.errors import AuthTransientError, AuthUnrecoverableError
from src.exporter.resources import FITBIT_TOKEN_URL

logger = logging.getLogger("fitbit_exporter.auth")

# Fitbit's default access token lifetime (8 hours).
_DEFAULT_EXPIRES_IN = 28800

_UNRECOVERABLE_STATUSES = frozenset({400, 401, 403})


def _error_type(response: httpx.Response) -> str:
    """Extract the OAuth error type from a token endpoint error body."""
    try:
        body = response.json()
    except ValueError:
        return "unknown"
    if isinstance(body, dict):
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("errorType", "unknown"))
        if "error" in body:
            return str(body["error"])
    return "unknown"


def _consume_exception(task: asyncio.Task) -> None:
    # Mark a failed refresh as retrieved when every waiter was cancelled.
    if not task.cancelled():
        task.exception()


class CredentialManager:
    """Single-user OAuth2 token holder with proactive, single-flight refresh.

    Usage::

        credentials = CredentialManager(client_id, client_secret, refresh_token)
        token = await credentials.get_valid_token()
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        http_client: httpx.AsyncClient | None = None,
        safety_margin: timedelta = timedelta(seconds=300),
        token_url: str = FITBIT_TOKEN_URL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            client_id:     Fitbit OAuth2 client ID.
            client_secret: Fitbit OAuth2 client secret.
            refresh_token: Initial refresh token; rotated on every refresh.
            http_client:   Optional shared httpx client (for pooling and tests).
            safety_margin: Refresh this long before the token actually expires.
            token_url:     Token endpoint.
            clock:         Returns the current UTC time.
        """
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._http_client = http_client
        self._safety_margin = safety_margin
        self._token_url = token_url
        self._clock = clock
        self._credential: Credential | None = None
        self._inflight: asyncio.Task | None = None
        self._refresh_count = 0

    @property
    def credential(self) -> Credential | None:
        """The current credential, or None before the first refresh."""
        return self._credential

    @property
    def refresh_count(self) -> int:
        """Token endpoint requests made so far, successful or not."""
        return self._refresh_count

    async def get_valid_token(self) -> str:
        """Return an access token that is not about to expire.

        Raises:
            AuthTransientError:     Refresh failed for a retryable reason.
            AuthUnrecoverableError: The refresh token was rejected.
        """
        credential = self._credential
        if credential is not None and credential.is_fresh(self._clock(), self._safety_margin):
            return credential.access_token
        credential = await self._refresh_single_flight()
        return credential.access_token

    async def force_refresh(self, rejected_token: str | None = None) -> str:
        """Refresh regardless of the cached expiry (e.g. after a 401).

        Args:
            rejected_token: The access token the upstream just rejected.  If
                another caller has already replaced it with a still-valid
                token, that token is returned without a new refresh.
        """
        credential = self._credential
        if (
            rejected_token is not None
            and credential is not None
            and credential.access_token != rejected_token
            and credential.expires_at > self._clock()
        ):
            logger.debug("Token already rotated by a concurrent caller; reusing it")
            return credential.access_token
        credential = await self._refresh_single_flight()
        return credential.access_token

    def invalidate(self, rejected_token: str) -> None:
        """Forget the cached access token if it is the one that was rejected.

        The next ``get_valid_token()`` call then refreshes before any request.
        """
        credential = self._credential
        if credential is not None and credential.access_token == rejected_token:
            logger.warning("Discarding access token rejected after refresh")
            self._credential = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refresh_single_flight(self) -> Credential:
        task = self._inflight
        if task is None or task.done():
            task = asyncio.create_task(self._refresh())
            task.add_done_callback(_consume_exception)
            self._inflight = task
        else:
            logger.debug("Joining in-flight token refresh")
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._inflight is task:
                self._inflight = None

    async def _refresh(self) -> Credential:
        """Redeem the current refresh token for a new token pair."""
        self._refresh_count += 1
        logger.info("Refreshing Fitbit access token")

        try:
            response = await self._post_token_request()
        except httpx.HTTPError as exc:
            raise AuthTransientError(f"Token request failed: {exc}") from exc

        if response.status_code in _UNRECOVERABLE_STATUSES:
            error_type = _error_type(response)
            logger.error(
                "Fitbit rejected the refresh token (HTTP %d, %s)",
                response.status_code, error_type,
            )
            raise AuthUnrecoverableError(
                f"Refresh token rejected: HTTP {response.status_code} {error_type}"
            )
        if response.status_code >= 300:
            raise AuthTransientError(
                f"Token endpoint returned HTTP {response.status_code}"
            )

        try:
            data = response.json()
            access_token = str(data["access_token"])
            expires_in = int(data.get("expires_in", _DEFAULT_EXPIRES_IN))
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthTransientError(f"Malformed token response: {exc}") from exc

        now = self._clock()
        expires_at = now + timedelta(seconds=expires_in)
        if expires_at <= now:
            raise AuthTransientError(f"Token endpoint issued an expired token (expires_in={expires_in})")

        # Fitbit rotates the refresh token; keep the old one if none was sent.
        new_refresh = data.get("refresh_token") or self._refresh_token
        if new_refresh != self._refresh_token:
            logger.debug("New refresh token received and stored")
        self._refresh_token = new_refresh

        scope = data.get("scope") or ""
        credential = Credential(
            access_token=access_token,
            refresh_token=new_refresh,
            expires_at=expires_at,
            scope=tuple(scope.split()) if isinstance(scope, str) else (),
            user_id=data.get("user_id"),
        )
        self._credential = credential
        logger.info("Access token refreshed, valid until %s", expires_at.isoformat())
        return credential

    async def _post_token_request(self) -> httpx.Response:
        form = {"grant_type": "refresh_token", "refresh_token": self._refresh_token}
        auth = (self._client_id, self._client_secret)
        headers = {"Content-Type": "application/x-www-form-urlencoded"}

        if self._http_client:
            return await self._http_client.post(
                self._token_url, data=form, auth=auth, headers=headers
            )
        async with httpx.AsyncClient() as client:
            return await client.post(self._token_url, data=form, auth=auth, headers=headers)
