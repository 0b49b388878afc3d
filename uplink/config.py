from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping

INTEGRATION_KEY = "Uplink"
API_KEY_FIELD = "apiKey"
API_HOST_FIELD = "apiHost"

DEFAULT_API_HOST = "api.uplink.local/v1"
DEFAULT_FLUSH_INTERVAL_S = 30.0
DEFAULT_FLUSH_AT = 20
DEFAULT_MAX_BUFFERED_EVENTS = 5000
DEFAULT_MAX_EVENT_AGE_S = 7 * 24 * 3600

_LOG_FORMATS = {"text", "json"}


class UplinkConfigError(ValueError):
    """Invalid uplink configuration."""


@dataclass(frozen=True)
class FlushSettings:
    """Runtime-replaceable flush configuration."""

    write_key: str
    flush_interval_s: float = DEFAULT_FLUSH_INTERVAL_S
    flush_at: int = DEFAULT_FLUSH_AT


@dataclass(frozen=True)
class RetentionPolicy:
    """Bounds on what the event store may hold while uploads are failing."""

    max_events: int = DEFAULT_MAX_BUFFERED_EVENTS
    max_age_s: int = DEFAULT_MAX_EVENT_AGE_S


@dataclass(frozen=True)
class EndpointCredentials:
    api_key: str
    api_host: str


@dataclass(frozen=True)
class UplinkConfig:
    write_key: str
    api_host: str
    flush_interval_s: float
    flush_at: int
    max_batch_events: int
    upload_timeout_s: float
    upload_workers: int
    buffer_path: str
    max_buffered_events: int
    max_event_age_s: int
    log_level: str
    log_format: str

    @property
    def flush_settings(self) -> FlushSettings:
        return FlushSettings(
            write_key=self.write_key,
            flush_interval_s=self.flush_interval_s,
            flush_at=self.flush_at,
        )

    @property
    def retention(self) -> RetentionPolicy:
        return RetentionPolicy(max_events=self.max_buffered_events, max_age_s=self.max_event_age_s)


def _parse_float_env(name: str, *, default: float, allow_zero: bool = False) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = float(default)
    else:
        try:
            value = float(raw)
        except ValueError as exc:
            raise UplinkConfigError(f"{name} must be numeric") from exc
    if allow_zero and value < 0:
        raise UplinkConfigError(f"{name} must be >= 0")
    if not allow_zero and value <= 0:
        raise UplinkConfigError(f"{name} must be > 0")
    return value


def _parse_int_env(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = int(default)
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise UplinkConfigError(f"{name} must be an integer") from exc
    if value <= 0:
        raise UplinkConfigError(f"{name} must be > 0")
    return value


def _parse_log_level(raw: str) -> str:
    level = raw.strip().upper()
    if not isinstance(logging.getLevelName(level), int):
        raise UplinkConfigError(f"UPLINK_LOG_LEVEL must be a logging level name (got {raw!r})")
    return level


def load_uplink_config_from_env() -> UplinkConfig:
    write_key = os.getenv("UPLINK_WRITE_KEY", "").strip()
    if not write_key:
        raise UplinkConfigError("UPLINK_WRITE_KEY is required")

    api_host = os.getenv("UPLINK_API_HOST", DEFAULT_API_HOST).strip()
    if not api_host:
        raise UplinkConfigError("UPLINK_API_HOST must be non-empty")

    buffer_path = os.getenv("UPLINK_BUFFER_PATH", "./uplink_events.sqlite").strip()
    if not buffer_path:
        raise UplinkConfigError("UPLINK_BUFFER_PATH must be non-empty")

    log_format = os.getenv("UPLINK_LOG_FORMAT", "text").strip().lower()
    if log_format not in _LOG_FORMATS:
        raise UplinkConfigError("UPLINK_LOG_FORMAT must be 'text' or 'json'")

    return UplinkConfig(
        write_key=write_key,
        api_host=api_host,
        flush_interval_s=_parse_float_env(
            "UPLINK_FLUSH_INTERVAL_S",
            default=DEFAULT_FLUSH_INTERVAL_S,
            allow_zero=True,
        ),
        flush_at=_parse_int_env("UPLINK_FLUSH_AT", default=DEFAULT_FLUSH_AT),
        max_batch_events=_parse_int_env("UPLINK_MAX_BATCH_EVENTS", default=100),
        upload_timeout_s=_parse_float_env("UPLINK_UPLOAD_TIMEOUT_S", default=15.0),
        upload_workers=_parse_int_env("UPLINK_UPLOAD_WORKERS", default=4),
        buffer_path=buffer_path,
        max_buffered_events=_parse_int_env("UPLINK_MAX_EVENTS", default=DEFAULT_MAX_BUFFERED_EVENTS),
        max_event_age_s=_parse_int_env("UPLINK_MAX_AGE_S", default=DEFAULT_MAX_EVENT_AGE_S),
        log_level=_parse_log_level(os.getenv("UPLINK_LOG_LEVEL", "INFO")),
        log_format=log_format,
    )


def integration_settings(settings: Mapping[str, Any] | None, key: str) -> Mapping[str, Any] | None:
    """Return the per-destination block of a remote settings payload."""

    if not isinstance(settings, Mapping):
        return None
    integrations = settings.get("integrations")
    if not isinstance(integrations, Mapping):
        return None
    block = integrations.get(key)
    if not isinstance(block, Mapping):
        return None
    return block


def endpoint_credentials(
    settings: Mapping[str, Any] | None,
    key: str = INTEGRATION_KEY,
) -> EndpointCredentials | None:
    """Extract apiKey/apiHost for ``key``; None unless both are non-empty strings."""

    block = integration_settings(settings, key)
    if block is None:
        return None

    api_key = block.get(API_KEY_FIELD)
    api_host = block.get(API_HOST_FIELD)
    if not isinstance(api_key, str) or not api_key.strip():
        return None
    if not isinstance(api_host, str) or not api_host.strip():
        return None
    return EndpointCredentials(api_key=api_key.strip(), api_host=api_host.strip())
