"""FastAPI application factory for the exporter's HTTP surface."""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from nextmeeting import __version__
from nextmeeting.api.auth import OAuthStateStore, get_service
from nextmeeting.api.auth import router as auth_router
from nextmeeting.api.models import ErrorDetail, ErrorResponse, HealthResponse
from nextmeeting.service import NextMeetingService

logger = logging.getLogger(__name__)


def create_app(
    service: NextMeetingService,
    *,
    state_store: OAuthStateStore | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    service:
        The running exporter service. Routes read its snapshot, gauge
        registry and refresh queue; nothing here blocks on a refresh.
    state_store:
        CSRF state store for ``/auth``. A fresh one is created when omitted.
    """
    app = FastAPI(title="Next Meeting Exporter", version=__version__)
    app.state.service = service
    app.state.oauth_states = state_store if state_store is not None else OAuthStateStore()

    app.include_router(auth_router)

    @app.get("/metrics")
    async def metrics(svc: NextMeetingService = Depends(get_service)) -> Response:
        """Prometheus exposition of the calendar gauges."""
        return Response(content=generate_latest(svc.sink.registry), media_type=CONTENT_TYPE_LATEST)

    @app.api_route("/update", methods=["GET", "POST"], status_code=204)
    async def update(svc: NextMeetingService = Depends(get_service)) -> Response:
        """Queue a manual refresh; returns immediately."""
        if not svc.request_refresh():
            payload = ErrorResponse(
                error=ErrorDetail(
                    code="refresh_queue_full",
                    message="Too many pending refresh requests. Try again later.",
                )
            )
            return JSONResponse(status_code=429, content=payload.model_dump())
        return Response(status_code=204)

    @app.get("/health", response_model=HealthResponse)
    async def health(svc: NextMeetingService = Depends(get_service)) -> HealthResponse:
        return HealthResponse(**svc.health())

    return app
