from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Protocol

from .registry import CleanupFn, UploadHandle, UploadRegistry, UploadTask
from .storage import BatchHandle

logger = logging.getLogger("uplink.upload")

UploadStatus = Literal["success", "bad_url", "cannot_connect", "timeout", "http_error", "io_error"]
BatchAction = Literal["remove", "retain"]

# Retrying these can never succeed under current network conditions (DNS or
# firewall blocking, bad host), so the batch is dropped instead of spinning.
PERMANENT_FAILURES: frozenset[str] = frozenset({"bad_url", "cannot_connect"})


@dataclass(frozen=True)
class UploadOutcome:
    status: UploadStatus
    status_code: int | None = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def succeeded(cls, status_code: int | None = None) -> UploadOutcome:
        return cls(status="success", status_code=status_code)

    @classmethod
    def failed(cls, status: UploadStatus, *, status_code: int | None = None, detail: str = "") -> UploadOutcome:
        if status == "success":
            raise ValueError("failed() needs a failure status")
        return cls(status=status, status_code=status_code, detail=detail)


CompletionFn = Callable[[UploadOutcome], None]


class EventStorage(Protocol):
    def write(self, category: str, event: Mapping[str, Any]) -> bool: ...

    def read(self, category: str) -> List[BatchHandle]: ...

    def batches(self, category: str) -> List[BatchHandle]: ...

    def load(self, batch: BatchHandle) -> Optional[List[Dict[str, Any]]]: ...

    def remove(self, batch: BatchHandle) -> None: ...


class BatchTransport(Protocol):
    def start_batch_upload(
        self,
        *,
        write_key: str,
        batch: BatchHandle,
        events: List[Dict[str, Any]],
        on_complete: CompletionFn,
    ) -> Optional[UploadHandle]: ...


def classify_outcome(outcome: UploadOutcome) -> BatchAction:
    """Map an upload outcome to what happens to its batch."""

    if outcome.ok or outcome.status in PERMANENT_FAILURES:
        return "remove"
    return "retain"


class BatchUploader:
    """Uploads one batch at a time and reconciles storage with the outcome."""

    def __init__(
        self,
        *,
        storage: EventStorage,
        registry: UploadRegistry,
        transport: BatchTransport | None = None,
        write_key: str = "",
        log: logging.Logger | None = None,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.transport = transport
        self.write_key = write_key
        self.log = log or logger
        self._counters_lock = threading.Lock()
        self._sent = 0
        self._discarded = 0
        self._retained = 0

    def upload(self, batch: BatchHandle, *, cleanup: CleanupFn | None = None) -> UploadTask | None:
        transport = self.transport
        if transport is None:
            self.log.debug("no transport configured; not uploading %s", batch.label)
            return None

        events = self.storage.load(batch)
        if events is None:
            self.log.warning("could not read batch %s from storage; keeping it for the next flush", batch.label)
            return None
        if not events:
            self.log.warning("batch %s has no readable events; removing", batch.label)
            self.storage.remove(batch)
            return None

        def _on_complete(outcome: UploadOutcome) -> None:
            self.handle_outcome(batch, outcome)

        handle = transport.start_batch_upload(
            write_key=self.write_key,
            batch=batch,
            events=events,
            on_complete=_on_complete,
        )
        if handle is None:
            self.log.debug("transport declined to start upload of %s", batch.label)
            return None

        return UploadTask(batch=batch, handle=handle, cleanup=cleanup)

    def handle_outcome(self, batch: BatchHandle, outcome: UploadOutcome) -> None:
        try:
            action = classify_outcome(outcome)
            if outcome.ok:
                self.storage.remove(batch)
                self._bump("sent")
                self.log.info(
                    "uploaded %s",
                    batch.label,
                    extra={
                        "batch": batch.label,
                        "fields": {"events": batch.event_count, "status_code": outcome.status_code},
                    },
                )
            elif action == "remove":
                self.storage.remove(batch)
                self._bump("discarded")
                self.log.warning(
                    "discarded %s after permanent failure (%s): %s",
                    batch.label,
                    outcome.status,
                    outcome.detail,
                    extra={"batch": batch.label, "fields": {"events_lost": batch.event_count}},
                )
            else:
                self._bump("retained")
                self.log.warning(
                    "upload of %s failed (%s %s); kept for next flush",
                    batch.label,
                    outcome.status,
                    outcome.status_code if outcome.status_code is not None else outcome.detail,
                    extra={"batch": batch.label},
                )
        finally:
            # Reclaim the finished task now rather than on the next flush.
            self.registry.sweep()

    def _bump(self, name: str) -> None:
        with self._counters_lock:
            if name == "sent":
                self._sent += 1
            elif name == "discarded":
                self._discarded += 1
            else:
                self._retained += 1

    def metrics(self) -> Dict[str, int]:
        with self._counters_lock:
            return {
                "batches_sent_total": self._sent,
                "batches_discarded_total": self._discarded,
                "batches_retained_total": self._retained,
            }
