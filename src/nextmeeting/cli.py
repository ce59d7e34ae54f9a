"""CLI for the next-meeting exporter."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import click
import httpx
import uvicorn
from pydantic import ValidationError

from nextmeeting import __version__
from nextmeeting.api import create_app
from nextmeeting.config import ExporterConfig
from nextmeeting.core.logging import configure_logging
from nextmeeting.core.telemetry import init_telemetry
from nextmeeting.db import Database
from nextmeeting.google import CalendarCredentialError, GoogleAppCredentials
from nextmeeting.scheduler import StartupRefreshError
from nextmeeting.service import NextMeetingService
from nextmeeting.token_store import TokenStore

logger = logging.getLogger(__name__)

SERVICE_NAME = "nextmeeting"
HTTP_TIMEOUT_S = 30.0


def _load_config(**overrides: Any) -> ExporterConfig:
    """Environment first, explicit CLI options on top."""
    try:
        config = ExporterConfig.from_env()
        updates = {key: value for key, value in overrides.items() if value is not None}
        if updates:
            config = ExporterConfig.model_validate({**config.model_dump(), **updates})
    except (ValueError, ValidationError) as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(1)
    return config


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Next-meeting exporter: Prometheus gauges for upcoming calendar events."""


@cli.command()
@click.option("--host", default=None, help="HTTP bind host (NEXTMEETING_HOST)")
@click.option("--port", type=int, default=None, help="HTTP bind port (NEXTMEETING_PORT)")
@click.option(
    "--credentials-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Google client-secrets JSON (GOOGLE_OAUTH_CREDENTIALS_FILE)",
)
@click.option("--log-level", default=None, help="Log level (NEXTMEETING_LOG_LEVEL)")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Log output format (NEXTMEETING_LOG_FORMAT)",
)
@click.option(
    "--log-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Additional JSON-lines log file",
)
def serve(
    host: str | None,
    port: int | None,
    credentials_file: Path | None,
    log_level: str | None,
    log_format: str | None,
    log_file: Path | None,
) -> None:
    """Run the exporter: refresh loop, gauge loop and HTTP server."""
    config = _load_config(
        host=host,
        port=port,
        credentials_file=credentials_file,
        log_level=log_level.upper() if log_level else None,
        log_format=log_format,
    )
    configure_logging(level=config.log_level, fmt=config.log_format, log_file=log_file)
    init_telemetry(SERVICE_NAME)

    try:
        asyncio.run(_serve(config))
    except StartupRefreshError as exc:
        logger.error("Startup failed: %s", exc)
        sys.exit(1)
    except CalendarCredentialError as exc:
        logger.error("Cannot load Google OAuth client credentials: %s", exc)
        sys.exit(1)


@cli.command("calendars")
def list_calendars() -> None:
    """List the calendar ids that have a stored token."""
    config = _load_config()
    try:
        calendar_ids = asyncio.run(_list_calendar_ids(config))
    except CalendarCredentialError as exc:
        click.echo(f"Cannot load Google OAuth client credentials: {exc}", err=True)
        sys.exit(1)
    if not calendar_ids:
        click.echo("No calendars authorized yet. Visit /auth on the running exporter.")
        return
    for calendar_id in calendar_ids:
        click.echo(calendar_id)


@cli.command("remove")
@click.argument("calendar_id")
def remove_calendar(calendar_id: str) -> None:
    """Delete the stored token for CALENDAR_ID.

    A running exporter stops exporting the calendar after its next refresh.
    """
    config = _load_config()
    try:
        removed = asyncio.run(_remove_calendar(config, calendar_id))
    except CalendarCredentialError as exc:
        click.echo(f"Cannot load Google OAuth client credentials: {exc}", err=True)
        sys.exit(1)
    if not removed:
        click.echo(f"No stored token for calendar {calendar_id!r}", err=True)
        sys.exit(1)
    click.echo(f"Removed calendar {calendar_id}")


async def _serve(config: ExporterConfig) -> None:
    app_credentials = GoogleAppCredentials.from_file(config.credentials_file)

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    db = Database.from_env(config.db_name)
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_S) as http_client:
            store = TokenStore(pool, app_credentials, http_client)
            await store.ensure_schema()

            service = NextMeetingService(
                config,
                token_store=store,
                app_credentials=app_credentials,
                http_client=http_client,
            )
            await service.start()
            try:
                await _run_http_server(service, config, shutdown_event)
            finally:
                await service.stop()
    finally:
        await db.close()


async def _run_http_server(
    service: NextMeetingService,
    config: ExporterConfig,
    shutdown_event: asyncio.Event,
) -> None:
    server = uvicorn.Server(
        uvicorn.Config(
            create_app(service),
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            log_config=None,
            timeout_graceful_shutdown=0,
        )
    )
    server_task = asyncio.create_task(server.serve())
    shutdown_task = asyncio.create_task(shutdown_event.wait())
    logger.info("Exporter listening on %s:%d", config.host, config.port)

    await asyncio.wait({server_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    server.should_exit = True
    shutdown_task.cancel()
    await server_task


@asynccontextmanager
async def _open_token_store(config: ExporterConfig) -> AsyncIterator[TokenStore]:
    app_credentials = GoogleAppCredentials.from_file(config.credentials_file)
    db = Database.from_env(config.db_name)
    pool = await db.connect()
    try:
        async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_S) as http_client:
            store = TokenStore(pool, app_credentials, http_client)
            await store.ensure_schema()
            yield store
    finally:
        await db.close()


async def _list_calendar_ids(config: ExporterConfig) -> list[str]:
    async with _open_token_store(config) as store:
        return await store.list_calendar_ids()


async def _remove_calendar(config: ExporterConfig, calendar_id: str) -> bool:
    async with _open_token_store(config) as store:
        return await store.delete(calendar_id)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
