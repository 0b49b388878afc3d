from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Mapping, Optional

from .config import INTEGRATION_KEY, FlushSettings, RetentionPolicy, endpoint_credentials
from .registry import CleanupFn, UploadRegistry
from .scheduler import FlushScheduler, TimerFactory
from .storage import EVENTS_CATEGORY, BatchHandle
from .uploader import BatchTransport, BatchUploader, EventStorage

logger = logging.getLogger("uplink.flush")

TransportFactory = Callable[[str, str], BatchTransport]
TaskCleanupFactory = Callable[[BatchHandle], Optional[CleanupFn]]


class FlushCoordinator:
    """Queues events into storage and turns flushes into batch uploads.

    Entry points for the hosting SDK: `queue`, `flush`, `enter_foreground`,
    `enter_background`, `apply_settings`. None of them raise on delivery or
    storage problems; failures are logged and degrade to drop, retry or skip.

    `flush` is not atomic as a whole. A completion callback may sweep the
    registry between the admission check and the dispatch loop, so two
    back-to-back flushes can occasionally put more than one round of uploads
    in flight.
    """

    def __init__(
        self,
        *,
        storage: EventStorage | None,
        settings: FlushSettings,
        transport: BatchTransport | None = None,
        transport_factory: TransportFactory | None = None,
        registry: UploadRegistry | None = None,
        timer_factory: TimerFactory | None = None,
        task_cleanup: TaskCleanupFactory | None = None,
        retention: RetentionPolicy | None = None,
        integration_key: str = INTEGRATION_KEY,
        category: str = EVENTS_CATEGORY,
        log: logging.Logger | None = None,
    ) -> None:
        self.log = log or logger
        self.storage = storage
        self.settings = settings
        self.category = category
        self.integration_key = integration_key
        self.registry = registry or UploadRegistry()
        self.scheduler = FlushScheduler(self.flush, timer_factory=timer_factory)
        self.transport_factory = transport_factory
        self.task_cleanup = task_cleanup
        self.retention = retention
        self.uploader: BatchUploader | None = None
        if storage is not None:
            self.uploader = BatchUploader(
                storage=storage,
                registry=self.registry,
                transport=transport,
                write_key=settings.write_key,
            )

    @property
    def transport(self) -> BatchTransport | None:
        return self.uploader.transport if self.uploader is not None else None

    def start(self) -> None:
        self.scheduler.configure(self.settings.flush_interval_s, self.settings.flush_at)

    def configure(self, settings: FlushSettings) -> None:
        """Apply a new interval, threshold and write key; re-arms the timer."""

        self.settings = settings
        if self.uploader is not None:
            self.uploader.write_key = settings.write_key
        self.scheduler.configure(settings.flush_interval_s, settings.flush_at)

    def queue(self, event: Mapping[str, Any]) -> None:
        storage = self.storage
        if storage is None:
            self.log.debug("no storage available; dropping event")
            return

        if not storage.write(self.category, event):
            self.log.warning("event was not persisted; dropping")
            return
        self.scheduler.on_event_queued()

    def flush(self) -> None:
        storage = self.storage
        uploader = self.uploader
        if storage is None or uploader is None:
            return
        self._maybe_prune(storage)
        if uploader.transport is None:
            self.log.debug("no transport configured; skipping flush")
            return

        # While uploads are still running the flush will be skipped, so list
        # open batches without sealing; pending events then keep accumulating
        # into one batch instead of a new fragment per skipped flush.
        if self.registry.running() > 0:
            batches = storage.batches(self.category)
        else:
            batches = storage.read(self.category)
        if not batches:
            return

        self.scheduler.reset_count()
        self.registry.sweep()

        in_flight = self.registry.count()
        self.log.debug("uploads in progress: %s", in_flight)
        if in_flight > 0:
            self.log.info("skipping flush; %s uploads still in progress", in_flight)
            return

        for batch in batches:
            self.log.debug("processing batch %s", batch.label)
            cleanup = self.task_cleanup(batch) if self.task_cleanup is not None else None
            task = uploader.upload(batch, cleanup=cleanup)
            if task is not None:
                self.registry.add(task)

    def _maybe_prune(self, storage: EventStorage) -> None:
        retention = self.retention
        prune = getattr(storage, "prune", None)
        if retention is None or not callable(prune):
            return
        deleted = prune(max_events=retention.max_events, max_age_s=retention.max_age_s)
        if deleted:
            self.log.warning(
                "pruned %s buffered events to stay within retention",
                deleted,
                extra={"fields": {"max_events": retention.max_events, "max_age_s": retention.max_age_s}},
            )

    def enter_foreground(self) -> None:
        self.scheduler.resume()

    def enter_background(self) -> None:
        self.scheduler.pause()
        self.flush()

    def apply_settings(self, settings: Mapping[str, Any] | None) -> None:
        """Reconfigure the transport from remote settings.

        Both apiKey and apiHost must be present; otherwise the current
        transport stays in place. The replaced transport is not closed so
        uploads already running on it can still complete.
        """

        creds = endpoint_credentials(settings, self.integration_key)
        if creds is None:
            self.log.debug("settings for %s lack apiKey/apiHost; keeping transport", self.integration_key)
            return
        if self.uploader is None or self.transport_factory is None:
            self.log.debug("no storage or transport factory; ignoring settings for %s", self.integration_key)
            return

        self.uploader.transport = self.transport_factory(creds.api_key, creds.api_host)
        self.log.info("transport reconfigured for host %s", creds.api_host)

    def close(self) -> None:
        self.scheduler.cancel()
        transport = self.transport
        if transport is not None:
            _close_quietly(transport, self.log)

    def metrics(self) -> Dict[str, int]:
        out: Dict[str, int] = {
            "uploads_in_flight": self.registry.count(),
            "events_since_flush": self.scheduler.count,
        }
        if self.uploader is not None:
            out.update(self.uploader.metrics())
        storage_metrics = getattr(self.storage, "metrics", None)
        if callable(storage_metrics):
            out.update(storage_metrics())
        return out


def _close_quietly(transport: object, log: logging.Logger) -> None:
    close = getattr(transport, "close", None)
    if not callable(close):
        return
    try:
        close()
    except Exception:
        log.exception("transport close failed")
