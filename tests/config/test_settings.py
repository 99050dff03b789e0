from __future__ import annotations

import pytest
from pydantic import ValidationError

from config.settings import Settings, get_settings


def _settings(**overrides):
    return Settings(_env_file=None, **overrides)


def test_defaults(monkeypatch):
    monkeypatch.delenv("PIPELINE_QUEUE_NAME", raising=False)
    monkeypatch.delenv("STAGE_JOB_ATTEMPTS", raising=False)
    monkeypatch.delenv("DEFAULT_QUOTE_CURRENCY", raising=False)

    settings = _settings()

    assert settings.pipeline_queue_name == "backtest_pipeline"
    assert settings.stage_job_attempts == 3
    assert settings.stage_job_backoff_seconds == 5
    assert settings.default_quote_currency == "USDT"
    assert settings.storage_access_key_id.get_secret_value() == ""


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("STAGE_JOB_ATTEMPTS", "5")
    monkeypatch.setenv("EXCHANGE_PRIORITY", '["kraken", "coinbase"]')
    monkeypatch.setenv("storage_secret_access_key", "s3cret")

    settings = _settings()

    assert settings.stage_job_attempts == 5
    assert settings.exchange_priority == ["kraken", "coinbase"]
    assert settings.storage_secret_access_key.get_secret_value() == "s3cret"
    assert "s3cret" not in repr(settings)


@pytest.mark.parametrize(
    "field, value",
    [
        ("stage_job_attempts", 0),
        ("stage_job_timeout_seconds", 30),
        ("circuit_failure_window_seconds", 0),
        ("max_market_data_file_bytes", 0),
    ],
)
def test_rejects_out_of_range_values(field, value):
    with pytest.raises(ValidationError):
        _settings(**{field: value})


def test_unknown_env_vars_ignored(monkeypatch):
    monkeypatch.setenv("WEB_CONSOLE_PORT", "8080")
    assert not hasattr(_settings(), "web_console_port")


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("PIPELINE_QUEUE_NAME", "first")
    first = get_settings()
    monkeypatch.setenv("PIPELINE_QUEUE_NAME", "second")

    assert get_settings() is first
    assert get_settings().pipeline_queue_name == "first"

    get_settings.cache_clear()
    assert get_settings().pipeline_queue_name == "second"
