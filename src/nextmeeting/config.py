"""Runtime configuration for the next-meeting exporter.

All settings come from environment variables (see ``ExporterConfig.from_env``);
the CLI re-validates the merged values with its explicit options on top
(``ExporterConfig.model_validate``), so overrides get the same checks.

Environment variables:
- NEXTMEETING_HOST (optional, default 0.0.0.0)
- NEXTMEETING_PORT (optional, default 8080)
- GOOGLE_OAUTH_CREDENTIALS_FILE (optional, default ./data/google.json)
- GOOGLE_OAUTH_REDIRECT_URI (optional; defaults to the credentials file's first redirect URI)
- NEXTMEETING_DB_NAME (optional, default nextmeeting)
- NEXTMEETING_REFRESH_INTERVAL_S (optional, default 600)
- NEXTMEETING_RECOMPUTE_INTERVAL_S (optional, default 1.0)
- NEXTMEETING_MANUAL_QUEUE_SIZE (optional, default 100)
- NEXTMEETING_GRACE_WINDOW_S (optional, default 180)
- NEXTMEETING_LOOKAHEAD_DAYS (optional, default 7)
- NEXTMEETING_LOG_LEVEL (optional, default INFO)
- NEXTMEETING_LOG_FORMAT (optional, default text)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8080
DEFAULT_CREDENTIALS_FILE = Path("./data/google.json")
DEFAULT_DB_NAME = "nextmeeting"

DEFAULT_REFRESH_INTERVAL_S = 600
MIN_REFRESH_INTERVAL_S = 10
DEFAULT_RECOMPUTE_INTERVAL_S = 1.0
DEFAULT_MANUAL_QUEUE_SIZE = 100
DEFAULT_GRACE_WINDOW_S = 180
DEFAULT_LOOKAHEAD_DAYS = 7


class ExporterConfig(BaseModel):
    """Validated exporter settings."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # HTTP surface
    host: str = DEFAULT_HOST
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)

    # Google OAuth
    credentials_file: Path = DEFAULT_CREDENTIALS_FILE
    redirect_uri: str | None = None

    # Token storage
    db_name: str = DEFAULT_DB_NAME

    # Refresh / derive cadence
    refresh_interval_s: int = Field(default=DEFAULT_REFRESH_INTERVAL_S, ge=MIN_REFRESH_INTERVAL_S)
    recompute_interval_s: float = Field(default=DEFAULT_RECOMPUTE_INTERVAL_S, gt=0)
    manual_queue_size: int = Field(default=DEFAULT_MANUAL_QUEUE_SIZE, ge=1)
    grace_window_s: int = Field(default=DEFAULT_GRACE_WINDOW_S, ge=0)
    lookahead_days: int = Field(default=DEFAULT_LOOKAHEAD_DAYS, ge=1)

    # Logging
    log_level: str = "INFO"
    log_format: Literal["text", "json"] = "text"

    @classmethod
    def from_env(cls) -> ExporterConfig:
        """Load exporter configuration from environment variables.

        Raises
        ------
        ValueError
            If a numeric variable cannot be parsed or a value is out of range.
        """
        redirect_uri = os.environ.get("GOOGLE_OAUTH_REDIRECT_URI", "").strip() or None
        log_format = os.environ.get("NEXTMEETING_LOG_FORMAT", "text").strip().lower()
        if log_format not in ("text", "json"):
            raise ValueError(f"NEXTMEETING_LOG_FORMAT must be 'text' or 'json', got: {log_format}")

        return cls(
            host=os.environ.get("NEXTMEETING_HOST", DEFAULT_HOST),
            port=_int_env("NEXTMEETING_PORT", DEFAULT_PORT),
            credentials_file=Path(
                os.environ.get("GOOGLE_OAUTH_CREDENTIALS_FILE", str(DEFAULT_CREDENTIALS_FILE))
            ),
            redirect_uri=redirect_uri,
            db_name=os.environ.get("NEXTMEETING_DB_NAME", DEFAULT_DB_NAME).strip()
            or DEFAULT_DB_NAME,
            refresh_interval_s=_int_env(
                "NEXTMEETING_REFRESH_INTERVAL_S", DEFAULT_REFRESH_INTERVAL_S
            ),
            recompute_interval_s=_float_env(
                "NEXTMEETING_RECOMPUTE_INTERVAL_S", DEFAULT_RECOMPUTE_INTERVAL_S
            ),
            manual_queue_size=_int_env("NEXTMEETING_MANUAL_QUEUE_SIZE", DEFAULT_MANUAL_QUEUE_SIZE),
            grace_window_s=_int_env("NEXTMEETING_GRACE_WINDOW_S", DEFAULT_GRACE_WINDOW_S),
            lookahead_days=_int_env("NEXTMEETING_LOOKAHEAD_DAYS", DEFAULT_LOOKAHEAD_DAYS),
            log_level=os.environ.get("NEXTMEETING_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            log_format=log_format,  # type: ignore[arg-type]
        )


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw}") from exc


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw}") from exc
