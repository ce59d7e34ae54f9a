"""Google Calendar access: OAuth app credentials, user tokens, and the event query.

This module provides:
- ``GoogleAppCredentials``: the OAuth client loaded from a Google client-secrets JSON
- ``OAuthToken``: a per-calendar user token (refresh token plus cached access token)
- ``GoogleCalendarClient``: authenticated read-only calendar client
- ``build_authorization_url`` / ``exchange_code``: the two legs of the consent flow

Secret material (client_secret, refresh_token, access_token) is never logged and
never included in ``repr()`` output.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlencode

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_READONLY_SCOPE = "https://www.googleapis.com/auth/calendar.readonly"

PRIMARY_CALENDAR_ID = "primary"

# Retry on 429 Too Many Requests and 503 Service Unavailable with exponential backoff.
RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

# Access tokens are treated as expired this long before their real expiry.
ACCESS_TOKEN_EXPIRY_MARGIN = timedelta(seconds=60)

LIST_EVENTS_PAGE_SIZE = 250


class CalendarAuthError(RuntimeError):
    """Base error raised by Google Calendar auth/request helpers."""


class CalendarCredentialError(CalendarAuthError):
    """Raised when client-secrets JSON or a stored token is missing or invalid."""


class CalendarTokenRefreshError(CalendarAuthError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarAuthError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


class TokenExchangeError(Exception):
    """Raised when the authorization code -> token exchange fails."""


# ---------------------------------------------------------------------------
# Credential models
# ---------------------------------------------------------------------------


class GoogleAppCredentials(BaseModel):
    """OAuth client registered in Google Cloud Console."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1)
    redirect_uris: tuple[str, ...] = ()

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized

    @classmethod
    def from_json(cls, raw_value: str) -> GoogleAppCredentials:
        """Parse a client-secrets document (``installed`` or ``web`` shape, or flat)."""
        try:
            payload = json.loads(raw_value)
        except json.JSONDecodeError as exc:
            raise CalendarCredentialError(
                f"Client secrets JSON must be valid JSON: {exc.msg}"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarCredentialError("Client secrets JSON must decode to a JSON object")

        for nested_key in ("installed", "web"):
            nested = payload.get(nested_key)
            if isinstance(nested, dict):
                payload = nested
                break

        missing = sorted(
            key
            for key in ("client_id", "client_secret")
            if not isinstance(payload.get(key), str) or not payload[key].strip()
        )
        if missing:
            raise CalendarCredentialError(
                f"Client secrets JSON is missing required field(s): {', '.join(missing)}"
            )

        redirect_uris = payload.get("redirect_uris")
        if not isinstance(redirect_uris, list):
            redirect_uris = []

        return cls(
            client_id=payload["client_id"],
            client_secret=payload["client_secret"],
            redirect_uris=tuple(uri for uri in redirect_uris if isinstance(uri, str) and uri),
        )

    @classmethod
    def from_file(cls, path: Path) -> GoogleAppCredentials:
        try:
            raw_value = Path(path).read_text(encoding="utf-8")
        except OSError as exc:
            raise CalendarCredentialError(f"Cannot read client secrets file {path}: {exc}") from exc
        return cls.from_json(raw_value)

    def __repr__(self) -> str:
        return f"GoogleAppCredentials(client_id={self.client_id!r}, client_secret=<REDACTED>)"

    __str__ = __repr__


class OAuthToken(BaseModel):
    """User token for one authorized calendar."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    refresh_token: str = Field(min_length=1)
    access_token: str | None = None
    token_type: str = "Bearer"
    expiry: datetime | None = None

    @classmethod
    def from_token_response(
        cls,
        payload: dict[str, Any],
        *,
        now: datetime | None = None,
        fallback_refresh_token: str | None = None,
    ) -> OAuthToken:
        """Build a token from a Google token-endpoint response.

        Google omits ``refresh_token`` on refresh-grant responses, so the
        caller passes the one it already holds as *fallback_refresh_token*.
        """
        refresh_token = payload.get("refresh_token") or fallback_refresh_token
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            raise CalendarCredentialError("Token response did not include a refresh token")

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarCredentialError("Token response is missing a non-empty access_token")

        issued_at = now or datetime.now(UTC)
        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        token_type = payload.get("token_type")
        return cls(
            refresh_token=refresh_token.strip(),
            access_token=access_token.strip(),
            token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
            expiry=issued_at + timedelta(seconds=expires_in),
        )

    @classmethod
    def from_json(cls, raw_value: str) -> OAuthToken:
        try:
            return cls.model_validate_json(raw_value)
        except ValueError as exc:
            raise CalendarCredentialError("Stored OAuth token is malformed") from exc

    def is_fresh(self, now: datetime | None = None) -> bool:
        if self.access_token is None or self.expiry is None:
            return False
        return (now or datetime.now(UTC)) < self.expiry - ACCESS_TOKEN_EXPIRY_MARGIN

    def __repr__(self) -> str:
        return (
            f"OAuthToken(refresh_token=<REDACTED>, access_token=<REDACTED>, "
            f"token_type={self.token_type!r}, expiry={self.expiry!r})"
        )

    __str__ = __repr__


# ---------------------------------------------------------------------------
# Consent flow
# ---------------------------------------------------------------------------


def build_authorization_url(
    app_credentials: GoogleAppCredentials,
    *,
    redirect_uri: str,
    state: str,
) -> str:
    """Return the Google consent URL for read-only calendar access."""
    params = {
        "client_id": app_credentials.client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": CALENDAR_READONLY_SCOPE,
        "access_type": "offline",
        "prompt": "consent",  # Force refresh token to be returned
        "state": state,
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code(
    http_client: httpx.AsyncClient,
    app_credentials: GoogleAppCredentials,
    *,
    code: str,
    redirect_uri: str,
) -> OAuthToken:
    """Exchange an authorization code for a user token.

    Raises
    ------
    TokenExchangeError
        If the exchange fails for any reason (HTTP error, invalid code,
        network error, or a response without a refresh token).
    """
    try:
        response = await http_client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": app_credentials.client_id,
                "client_secret": app_credentials.client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
    except httpx.TransportError as exc:
        raise TokenExchangeError(f"Network error during token exchange: {exc}") from exc

    if response.status_code != 200:
        # Log status code but not the raw body (may contain sensitive details)
        raise TokenExchangeError(f"Token endpoint returned HTTP {response.status_code}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenExchangeError(f"Invalid JSON in token response: {exc}") from exc

    if not isinstance(payload, dict):
        raise TokenExchangeError("Token endpoint returned an unexpected JSON payload shape")

    try:
        return OAuthToken.from_token_response(payload)
    except CalendarCredentialError as exc:
        raise TokenExchangeError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Calendar client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Read-only Google Calendar client bound to one user token."""

    def __init__(
        self,
        app_credentials: GoogleAppCredentials,
        token: OAuthToken,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._app = app_credentials
        self._token = token
        self._http_client = http_client
        self._refresh_lock = asyncio.Lock()

    @property
    def token(self) -> OAuthToken:
        """Current token, including any access token obtained by a refresh."""
        return self._token

    async def list_events(
        self,
        *,
        start_at: datetime,
        end_at: datetime,
        calendar_id: str = PRIMARY_CALENDAR_ID,
    ) -> list[dict[str, Any]]:
        """Return raw Google event resources starting within ``[start_at, end_at]``.

        Recurring events are expanded into single instances and results are
        ordered by start time. All pages are followed.
        """
        normalized_calendar_id = quote(calendar_id, safe="")
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": LIST_EVENTS_PAGE_SIZE,
            "timeMin": google_rfc3339(start_at),
            "timeMax": google_rfc3339(end_at),
        }

        items: list[dict[str, Any]] = []
        while True:
            payload = await self._request_google_json(
                "GET",
                f"/calendars/{normalized_calendar_id}/events",
                params=params,
            )
            page_items = payload.get("items")
            if not isinstance(page_items, list):
                raise CalendarAuthError("Google Calendar list_events response missing items array")
            items.extend(item for item in page_items if isinstance(item, dict))

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return items
            params = {**params, "pageToken": next_page_token}

    async def get_primary_calendar_id(self) -> str:
        """Return the id (usually the owner's email) of the user's primary calendar."""
        payload = await self._request_google_json("GET", f"/calendars/{PRIMARY_CALENDAR_ID}")
        calendar_id = payload.get("id")
        if not isinstance(calendar_id, str) or not calendar_id.strip():
            raise CalendarAuthError("Google Calendar response is missing the calendar id")
        return calendar_id.strip()

    # ------------------------------------------------------------------
    # Auth + transport helpers
    # ------------------------------------------------------------------

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token.is_fresh():
            assert self._token.access_token is not None
            return self._token.access_token

        async with self._refresh_lock:
            if not force_refresh and self._token.is_fresh():
                assert self._token.access_token is not None
                return self._token.access_token

            await self._refresh_access_token()
            assert self._token.access_token is not None
            return self._token.access_token

    async def _refresh_access_token(self) -> None:
        try:
            response = await self._http_client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": self._app.client_id,
                    "client_secret": self._app.client_secret,
                    "refresh_token": self._token.refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {_safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError(
                "Google OAuth token endpoint returned invalid JSON"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarTokenRefreshError("Google OAuth token endpoint returned a non-object")

        try:
            self._token = OAuthToken.from_token_response(
                payload, fallback_refresh_token=self._token.refresh_token
            )
        except CalendarCredentialError as exc:
            raise CalendarTokenRefreshError(str(exc)) from exc

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(method=method, path=path, params=params)

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=_safe_google_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarAuthError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise CalendarAuthError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{path}"

        response = await self._request_once(method, url, params=params, force_refresh=False)

        if response.status_code == 401:
            response = await self._request_once(method, url, params=params, force_refresh=True)

        # Honour Retry-After on 429, exponential backoff otherwise.
        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(method, url, params=params, force_refresh=False)
            retry += 1

        return response

    async def _request_once(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarAuthError(f"Google Calendar request failed: {exc}") from exc

    def __repr__(self) -> str:
        return f"GoogleCalendarClient(client_id={self._app.client_id!r})"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_google_datetime(value: str) -> datetime:
    """Parse an RFC 3339 ``dateTime`` into an aware datetime.

    Raises ``ValueError`` for unparsable input.
    """
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return 3600
    if isinstance(value, int | float):
        return int(value) if value > 0 else 3600
    return 3600


def _safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(redact_credential_values(message).split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(redact_credential_values(error_payload).split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(redact_credential_values(raw_text).split())[:200]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Redact token-like values from an error message before it is logged."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted
