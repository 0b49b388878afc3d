from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import IO, Any

# Loggers that are too chatty at INFO/DEBUG while upload workers are busy.
_NOISY_LOGGERS = ("urllib3", "urllib3.connectionpool")


def _utc_iso(ts: float | None = None) -> str:
    return datetime.fromtimestamp(ts or time.time(), tz=timezone.utc).isoformat()


@dataclass
class JsonLogConfig:
    service_name: str = "uplink"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    - `extra={"batch": label}` is lifted to a top-level "batch" key so upload
      logs for one batch can be grepped together.
    - `extra={"fields": {...}}` is kept under "fields".
    """

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        out: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
            "thread": record.threadName,
        }

        batch = getattr(record, "batch", None)
        if batch:
            out["batch"] = str(batch)

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            out["fields"] = fields

        if record.exc_info:
            out["exc_info"] = self.formatException(record.exc_info)

        # Event payload fragments may carry non-JSON values (datetimes, UUIDs).
        return json.dumps(out, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(
    *,
    level: int | str,
    log_format: str,
    service_name: str = "uplink",
    stream: IO[str] | None = None,
) -> logging.Handler:
    """Install the process-wide log handler.

    - log_format="json": one JSON object per line
    - log_format="text": human-readable, includes the thread name since
      flushes run on the caller, the timer thread and upload workers
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler(stream)
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig(service_name=service_name)))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s [%(threadName)s] - %(message)s"))
    root.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
