"""Tests for service wiring: start/stop, authorization and health."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest

from nextmeeting.config import ExporterConfig
from nextmeeting.google import CalendarRequestError, GoogleAppCredentials, TokenExchangeError
from nextmeeting.scheduler import StartupRefreshError
from nextmeeting.service import NextMeetingService, resolve_redirect_uri
from tests.conftest import FakeEventSource, FakeTokenStore, raw_event

pytestmark = pytest.mark.unit

APP = GoogleAppCredentials(client_id="client-id", client_secret="client-secret")

SECONDS = "calendar_next_meeting_seconds"


def _google_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/token":
        return httpx.Response(
            200,
            json={"access_token": "ya29.a", "refresh_token": "1//r", "expires_in": 3600},
        )
    if request.url.path == "/calendar/v3/calendars/primary":
        return httpx.Response(200, json={"id": "me@example.com"})
    return httpx.Response(404)


def _service(store: FakeTokenStore, handler=_google_handler, **config) -> NextMeetingService:
    return NextMeetingService(
        ExporterConfig(**config),
        token_store=store,  # type: ignore[arg-type]
        app_credentials=APP,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestRedirectUri:
    def test_explicit_config_wins(self):
        app = GoogleAppCredentials(
            client_id="id", client_secret="s", redirect_uris=("http://file/auth",)
        )
        config = ExporterConfig(redirect_uri="http://config/auth")
        assert resolve_redirect_uri(config, app) == "http://config/auth"

    def test_falls_back_to_credentials_file(self):
        app = GoogleAppCredentials(
            client_id="id", client_secret="s", redirect_uris=("http://file/auth",)
        )
        assert resolve_redirect_uri(ExporterConfig(), app) == "http://file/auth"

    def test_localhost_default(self):
        assert resolve_redirect_uri(ExporterConfig(), APP) == "http://localhost:8080/auth"

    def test_localhost_default_uses_configured_port(self):
        config = ExporterConfig(port=9100)
        assert resolve_redirect_uri(config, APP) == "http://localhost:9100/auth"


class TestLifecycle:
    async def test_start_publishes_gauges_immediately(self):
        soon = datetime.now(UTC) + timedelta(minutes=10)
        store = FakeTokenStore(
            {"cal1": FakeEventSource([raw_event(soon, attendees=[{"email": "x@example.com"}])])}
        )
        service = _service(store)
        await service.start()
        try:
            value = service.sink.registry.get_sample_value(
                SECONDS, {"calendar": "cal1", "kind": "meeting"}
            )
            assert value == pytest.approx(600.0, abs=5.0)
        finally:
            await service.stop()

    async def test_start_fails_when_enumeration_fails(self):
        store = FakeTokenStore()
        store.error = RuntimeError("db down")
        service = _service(store)
        with pytest.raises(StartupRefreshError):
            await service.start()

    async def test_failing_calendar_does_not_fail_startup(self):
        store = FakeTokenStore(
            {
                "bad": FakeEventSource(error=CalendarRequestError(status_code=403, message="no")),
                "good": FakeEventSource([]),
            }
        )
        service = _service(store)
        await service.start()
        try:
            health = service.health()
            assert health["calendars"] == ["good"]
            assert health["failed_calendars"] == ["bad"]
            assert health["status"] == "ok"
        finally:
            await service.stop()

    async def test_health_before_start(self):
        health = _service(FakeTokenStore()).health()
        assert health["status"] == "starting"
        assert health["last_refresh_at"] is None
        assert health["pending_refreshes"] == 0

    async def test_request_refresh_respects_queue_size(self):
        service = _service(FakeTokenStore(), manual_queue_size=1)
        assert service.request_refresh() is True
        assert service.request_refresh() is False
        assert service.health()["dropped_refreshes"] == 1


class TestAuthorizeCalendar:
    async def test_stores_token_under_primary_id_and_queues_refresh(self):
        store = FakeTokenStore()
        service = _service(store)

        calendar_id = await service.authorize_calendar("auth-code")

        assert calendar_id == "me@example.com"
        assert len(store.upserts) == 1
        stored_id, token = store.upserts[0]
        assert stored_id == "me@example.com"
        assert token.refresh_token == "1//r"
        assert service.scheduler.pending_triggers == 1

    async def test_exchange_failure_propagates(self):
        store = FakeTokenStore()
        service = _service(store, handler=lambda request: httpx.Response(400))

        with pytest.raises(TokenExchangeError):
            await service.authorize_calendar("bad-code")
        assert store.upserts == []
