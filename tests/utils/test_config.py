"""Tests for application settings."""

import pydantic
import pytest

from feeledger.utils.config import (
    DEFAULT_UPCOMING_TEMPLATE,
    Settings,
    get_settings,
    reload_settings,
)


def test_settings_defaults(tmp_path):
    settings = Settings(data_dir=tmp_path)

    assert settings.max_batch_size == 500
    assert settings.reminder_days_threshold == 7
    assert settings.reminder_include_overdue is True
    assert settings.reminder_send_all is False
    assert settings.reminder_upcoming_template == DEFAULT_UPCOMING_TEMPLATE
    assert settings.database_url == f"sqlite:///{tmp_path / 'feeledger.db'}"
    assert settings.is_sqlite


def test_data_dir_is_absolute():
    assert Settings().data_dir.is_absolute()


def test_settings_env_override(monkeypatch):
    monkeypatch.setenv("MAX_BATCH_SIZE", "100")
    monkeypatch.setenv("REMINDER_DAYS_THRESHOLD", "3")
    monkeypatch.setenv("DEBUG", "true")

    settings = reload_settings()

    assert settings.max_batch_size == 100
    assert settings.reminder_days_threshold == 3
    assert settings.debug is True


def test_get_settings_is_cached():
    assert get_settings() is get_settings()


def test_payment_methods_list():
    settings = Settings(payment_methods=" GCash, maya ,,Cash ")
    assert settings.payment_methods_list == ["gcash", "maya", "cash"]
    assert Settings(payment_methods="").payment_methods_list == []


def test_event_listeners_list():
    settings = Settings(event_listeners="a.b, c.d ,")
    assert settings.event_listeners_list == ["a.b", "c.d"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_batch_size": 0},
        {"reminder_days_threshold": -1},
        {"log_level": "LOUD"},
        {"database_busy_timeout": 0},
    ],
)
def test_invalid_values_rejected(overrides):
    with pytest.raises(pydantic.ValidationError):
        Settings(**overrides)


def test_log_level_normalized():
    assert Settings(log_level="debug").log_level == "DEBUG"
