from __future__ import annotations


import pytest

from uplink.config import (
    DEFAULT_API_HOST,
    RetentionPolicy,
    UplinkConfigError,
    endpoint_credentials,
    integration_settings,
    load_uplink_config_from_env,
)

_ENV_NAMES = (
    "UPLINK_WRITE_KEY",
    "UPLINK_API_HOST",
    "UPLINK_FLUSH_INTERVAL_S",
    "UPLINK_FLUSH_AT",
    "UPLINK_MAX_BATCH_EVENTS",
    "UPLINK_UPLOAD_TIMEOUT_S",
    "UPLINK_UPLOAD_WORKERS",
    "UPLINK_BUFFER_PATH",
    "UPLINK_MAX_EVENTS",
    "UPLINK_MAX_AGE_S",
    "UPLINK_LOG_LEVEL",
    "UPLINK_LOG_FORMAT",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_load_config_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPLINK_WRITE_KEY", " wk-1 ")

    cfg = load_uplink_config_from_env()

    assert cfg.write_key == "wk-1"
    assert cfg.api_host == DEFAULT_API_HOST
    assert cfg.flush_interval_s == 30.0
    assert cfg.flush_at == 20
    assert cfg.max_batch_events == 100
    assert cfg.upload_timeout_s == 15.0
    assert cfg.upload_workers == 4
    assert cfg.log_level == "INFO"
    assert cfg.log_format == "text"
    assert cfg.flush_settings.write_key == "wk-1"
    assert cfg.flush_settings.flush_at == 20
    assert cfg.retention == RetentionPolicy(max_events=5000, max_age_s=7 * 24 * 3600)


def test_load_config_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("UPLINK_WRITE_KEY", "wk-1")
    monkeypatch.setenv("UPLINK_API_HOST", "collector.example.test/v2")
    monkeypatch.setenv("UPLINK_FLUSH_INTERVAL_S", "0")
    monkeypatch.setenv("UPLINK_FLUSH_AT", "5")
    monkeypatch.setenv("UPLINK_LOG_LEVEL", "debug")
    monkeypatch.setenv("UPLINK_LOG_FORMAT", "JSON")
    monkeypatch.setenv("UPLINK_MAX_EVENTS", "250")
    monkeypatch.setenv("UPLINK_MAX_AGE_S", "3600")

    cfg = load_uplink_config_from_env()

    assert cfg.api_host == "collector.example.test/v2"
    assert cfg.flush_interval_s == 0.0
    assert cfg.flush_at == 5
    assert cfg.log_level == "DEBUG"
    assert cfg.log_format == "json"
    assert cfg.retention == RetentionPolicy(max_events=250, max_age_s=3600)


def test_load_config_requires_write_key() -> None:
    with pytest.raises(UplinkConfigError) as exc:
        load_uplink_config_from_env()

    assert "UPLINK_WRITE_KEY" in str(exc.value)


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("UPLINK_FLUSH_INTERVAL_S", "-1", "must be >= 0"),
        ("UPLINK_FLUSH_INTERVAL_S", "soon", "must be numeric"),
        ("UPLINK_UPLOAD_TIMEOUT_S", "0", "must be > 0"),
        ("UPLINK_FLUSH_AT", "0", "must be > 0"),
        ("UPLINK_UPLOAD_WORKERS", "two", "must be an integer"),
        ("UPLINK_LOG_FORMAT", "xml", "must be 'text' or 'json'"),
        ("UPLINK_LOG_LEVEL", "chatty", "logging level"),
        ("UPLINK_API_HOST", "   ", "must be non-empty"),
        ("UPLINK_MAX_EVENTS", "0", "must be > 0"),
        ("UPLINK_MAX_AGE_S", "a week", "must be an integer"),
    ],
)
def test_load_config_rejects_invalid_values(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv("UPLINK_WRITE_KEY", "wk-1")
    monkeypatch.setenv(name, value)

    with pytest.raises(UplinkConfigError) as exc:
        load_uplink_config_from_env()

    assert name in str(exc.value)
    assert message in str(exc.value)


def test_integration_settings_returns_named_block() -> None:
    settings = {"integrations": {"Uplink": {"apiKey": "ak"}, "Other": {"x": 1}}}

    assert integration_settings(settings, "Uplink") == {"apiKey": "ak"}
    assert integration_settings(settings, "Missing") is None
    assert integration_settings({"integrations": []}, "Uplink") is None
    assert integration_settings(None, "Uplink") is None


def test_endpoint_credentials_require_both_values() -> None:
    full = {"integrations": {"Uplink": {"apiKey": " ak-1 ", "apiHost": "collector.example.test/v1"}}}

    creds = endpoint_credentials(full)

    assert creds is not None
    assert creds.api_key == "ak-1"
    assert creds.api_host == "collector.example.test/v1"

    assert endpoint_credentials({"integrations": {"Uplink": {"apiKey": "ak-1"}}}) is None
    assert endpoint_credentials({"integrations": {"Uplink": {"apiKey": "ak-1", "apiHost": 42}}}) is None
    assert endpoint_credentials({"integrations": {"Uplink": {"apiKey": "", "apiHost": "h"}}}) is None
    assert endpoint_credentials(full, "Other") is None
