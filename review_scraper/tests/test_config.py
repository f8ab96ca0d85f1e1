"""
Unit tests for environment-based configuration.
"""

from __future__ import annotations

import pytest

from shared.config import AppConfig


def test_defaults(monkeypatch):
    for name in (
        "APP_ENV",
        "LOG_LEVEL",
        "LOG_FILE",
        "LOG_STDOUT",
        "RUN_TIMEOUT_SECONDS",
        "DEADLINE_SAFETY_MARGIN_SECONDS",
        "HTTP_TIMEOUT_SECONDS",
        "BROWSER_HEADLESS",
    ):
        monkeypatch.delenv(name, raising=False)

    config = AppConfig.from_env()

    assert config.environment == "local"
    assert config.log_level == "INFO"
    assert config.log_file is None
    assert config.log_stdout is True
    assert config.run_timeout_seconds == 3600
    assert config.deadline_safety_margin_seconds == 30
    assert config.http_timeout_seconds == 30.0
    assert config.browser_headless is True


def test_overrides_and_invalid_numbers(monkeypatch):
    monkeypatch.setenv("RUN_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "oops")
    monkeypatch.setenv("BROWSER_HEADLESS", "false")
    monkeypatch.setenv("LOG_STDOUT", "0")

    config = AppConfig.from_env()

    assert config.run_timeout_seconds == 120
    assert config.http_timeout_seconds == 30.0
    assert config.browser_headless is False
    assert config.log_stdout is False


def test_unknown_environment_rejected(monkeypatch):
    monkeypatch.setenv("APP_ENV", "moon")
    with pytest.raises(ValueError):
        AppConfig.from_env()
