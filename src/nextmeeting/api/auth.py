"""Google OAuth consent endpoint for adding a calendar.

``GET /auth`` serves both legs of the authorization-code flow:

  1. Without ``code``: generate a one-time CSRF state token (TTL 10 min) and
     redirect (307) to the Google consent page.
  2. With ``code`` (Google's callback): validate and consume the state,
     exchange the code, resolve the primary calendar id, store the token,
     and queue a manual refresh so the calendar shows up without waiting
     for the timer.

Security notes:
  - State tokens are one-time-use and process-local.
  - Provider error strings are mapped to fixed messages.
  - Tokens never appear in responses or logs.
"""

from __future__ import annotations

import logging
import secrets
import time

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from nextmeeting.api.models import AuthSuccess, ErrorDetail, ErrorResponse
from nextmeeting.google import CalendarAuthError, TokenExchangeError, build_authorization_url
from nextmeeting.service import NextMeetingService

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600  # 10 minutes
MAX_PENDING_STATES = 1000

_KNOWN_PROVIDER_ERRORS: dict[str, str] = {
    "access_denied": "The user denied access. OAuth flow cancelled.",
    "invalid_request": "The OAuth request was malformed. Please restart the flow.",
    "invalid_scope": "The requested calendar scope is not permitted for this OAuth app.",
    "server_error": "Google encountered an internal error. Please try again.",
    "temporarily_unavailable": "Google OAuth is temporarily unavailable. Please try again later.",
}


class OAuthStateStore:
    """One-time CSRF state tokens with a monotonic-clock expiry.

    At most ``max_states`` tokens are live; issuing past the cap evicts the
    oldest, so unauthenticated ``GET /auth`` calls cannot grow it unbounded.
    """

    def __init__(
        self,
        ttl_seconds: float = STATE_TTL_SECONDS,
        max_states: int = MAX_PENDING_STATES,
    ) -> None:
        if max_states < 1:
            raise ValueError(f"max_states must be >= 1, got {max_states}")
        self._ttl_seconds = ttl_seconds
        self._max_states = max_states
        # Insertion order is expiry order: every token gets the same TTL.
        self._states: dict[str, float] = {}

    def issue(self) -> str:
        self._evict_expired()
        while len(self._states) >= self._max_states:
            del self._states[next(iter(self._states))]
            logger.warning("OAuth state store full; evicted the oldest pending state")
        state = secrets.token_urlsafe(32)
        self._states[state] = time.monotonic() + self._ttl_seconds
        return state

    def consume(self, state: str) -> bool:
        """Return True if *state* was issued and unexpired; it is removed either way."""
        self._evict_expired()
        expiry = self._states.pop(state, None)
        if expiry is None:
            return False
        return time.monotonic() < expiry

    def _evict_expired(self) -> None:
        now = time.monotonic()
        expired = [k for k, exp in self._states.items() if now >= exp]
        for k in expired:
            del self._states[k]

    def __len__(self) -> int:
        return len(self._states)


def get_service(request: Request) -> NextMeetingService:
    return request.app.state.service


def get_state_store(request: Request) -> OAuthStateStore:
    return request.app.state.oauth_states


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    payload = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=payload.model_dump())


router = APIRouter(tags=["auth"])


@router.get("/auth")
async def authorize(
    code: str | None = Query(default=None, description="Authorization code from Google."),
    state: str | None = Query(default=None, description="CSRF state token."),
    error: str | None = Query(default=None, description="OAuth error code from Google."),
    service: NextMeetingService = Depends(get_service),
    states: OAuthStateStore = Depends(get_state_store),
) -> Response:
    """Start the consent flow, or finish it when Google calls back."""
    if error:
        logger.warning("Google OAuth provider error: %s", error)
        if state:
            states.consume(state)
        return _error(
            400,
            "provider_error",
            _KNOWN_PROVIDER_ERRORS.get(
                error, "The OAuth authorization failed. Please restart the flow."
            ),
        )

    if not code:
        new_state = states.issue()
        url = build_authorization_url(
            service.app_credentials,
            redirect_uri=service.redirect_uri,
            state=new_state,
        )
        logger.info("Google OAuth consent started (state=%s...)", new_state[:8])
        return RedirectResponse(url=url, status_code=307)

    if not state:
        return _error(
            400,
            "missing_state",
            "State parameter is missing from the callback. Possible CSRF attempt.",
        )

    if not states.consume(state):
        logger.warning("OAuth callback received invalid or expired state token")
        return _error(
            400,
            "invalid_state",
            "State parameter is invalid or expired. Please restart the OAuth flow.",
        )

    try:
        calendar_id = await service.authorize_calendar(code)
    except TokenExchangeError as exc:
        logger.warning("Google OAuth token exchange failed: %s", exc)
        return _error(
            502,
            "token_exchange_failed",
            "Failed to exchange authorization code for tokens. "
            "The code may have expired or already been used. Please restart the OAuth flow.",
        )
    except CalendarAuthError as exc:
        logger.warning("Primary calendar lookup failed after OAuth exchange: %s", exc)
        return _error(
            502,
            "calendar_lookup_failed",
            "Authorized, but the primary calendar could not be read. Please try again.",
        )

    return JSONResponse(content=AuthSuccess(calendar_id=calendar_id).model_dump())
