"""Tests for ExporterConfig.from_env()."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from nextmeeting.config import (
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_GRACE_WINDOW_S,
    DEFAULT_MANUAL_QUEUE_SIZE,
    DEFAULT_REFRESH_INTERVAL_S,
    MIN_REFRESH_INTERVAL_S,
    ExporterConfig,
)

pytestmark = pytest.mark.unit


class TestFromEnv:
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            config = ExporterConfig.from_env()

        assert config.host == "0.0.0.0"
        assert config.port == 8080
        assert config.credentials_file == DEFAULT_CREDENTIALS_FILE
        assert config.redirect_uri is None
        assert config.refresh_interval_s == DEFAULT_REFRESH_INTERVAL_S
        assert config.recompute_interval_s == 1.0
        assert config.manual_queue_size == DEFAULT_MANUAL_QUEUE_SIZE
        assert config.grace_window_s == DEFAULT_GRACE_WINDOW_S
        assert config.lookahead_days == 7
        assert config.log_level == "INFO"
        assert config.log_format == "text"

    def test_custom_values(self):
        env = {
            "NEXTMEETING_HOST": "127.0.0.1",
            "NEXTMEETING_PORT": "9100",
            "GOOGLE_OAUTH_CREDENTIALS_FILE": "/etc/nextmeeting/google.json",
            "GOOGLE_OAUTH_REDIRECT_URI": "https://meet.example.com/auth",
            "NEXTMEETING_REFRESH_INTERVAL_S": "300",
            "NEXTMEETING_RECOMPUTE_INTERVAL_S": "0.5",
            "NEXTMEETING_MANUAL_QUEUE_SIZE": "10",
            "NEXTMEETING_GRACE_WINDOW_S": "60",
            "NEXTMEETING_LOOKAHEAD_DAYS": "3",
            "NEXTMEETING_LOG_LEVEL": "debug",
            "NEXTMEETING_LOG_FORMAT": "JSON",
        }
        with patch.dict(os.environ, env, clear=True):
            config = ExporterConfig.from_env()

        assert config.host == "127.0.0.1"
        assert config.port == 9100
        assert config.credentials_file == Path("/etc/nextmeeting/google.json")
        assert config.redirect_uri == "https://meet.example.com/auth"
        assert config.refresh_interval_s == 300
        assert config.recompute_interval_s == 0.5
        assert config.manual_queue_size == 10
        assert config.grace_window_s == 60
        assert config.lookahead_days == 3
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"

    def test_blank_redirect_uri_is_none(self):
        with patch.dict(os.environ, {"GOOGLE_OAUTH_REDIRECT_URI": "  "}, clear=True):
            assert ExporterConfig.from_env().redirect_uri is None

    def test_non_integer(self):
        with patch.dict(os.environ, {"NEXTMEETING_PORT": "eighty"}, clear=True):
            with pytest.raises(ValueError, match="NEXTMEETING_PORT must be an integer"):
                ExporterConfig.from_env()

    def test_non_number(self):
        with patch.dict(os.environ, {"NEXTMEETING_RECOMPUTE_INTERVAL_S": "fast"}, clear=True):
            with pytest.raises(ValueError, match="must be a number"):
                ExporterConfig.from_env()

    def test_refresh_interval_below_minimum(self):
        value = str(MIN_REFRESH_INTERVAL_S - 1)
        with patch.dict(os.environ, {"NEXTMEETING_REFRESH_INTERVAL_S": value}, clear=True):
            with pytest.raises(ValidationError):
                ExporterConfig.from_env()

    def test_zero_queue_size(self):
        with patch.dict(os.environ, {"NEXTMEETING_MANUAL_QUEUE_SIZE": "0"}, clear=True):
            with pytest.raises(ValidationError):
                ExporterConfig.from_env()

    def test_bad_log_format(self):
        with patch.dict(os.environ, {"NEXTMEETING_LOG_FORMAT": "xml"}, clear=True):
            with pytest.raises(ValueError, match="NEXTMEETING_LOG_FORMAT"):
                ExporterConfig.from_env()


class TestModel:
    def test_frozen(self):
        config = ExporterConfig()
        with pytest.raises(ValidationError):
            config.port = 1  # type: ignore[misc]

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            ExporterConfig(unknown=True)  # type: ignore[call-arg]

    def test_port_range(self):
        with pytest.raises(ValidationError):
            ExporterConfig(port=70000)
