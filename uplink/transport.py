from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import requests

from .storage import BatchHandle
from .uploader import CompletionFn, UploadOutcome, UploadStatus

logger = logging.getLogger("uplink.transport")

_BAD_URL_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.URLRequired,
)


class HTTPSession(Protocol):
    def post(
        self,
        url: str,
        *,
        headers: Mapping[str, str],
        json: Mapping[str, object],
        timeout: float,
    ) -> Any:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def classify_request_error(exc: BaseException) -> UploadStatus:
    """Bucket a `requests` failure into an upload status."""

    if isinstance(exc, _BAD_URL_ERRORS):
        return "bad_url"
    # ConnectTimeout is both a Timeout and a ConnectionError; timeouts are transient.
    if isinstance(exc, requests.exceptions.Timeout):
        return "timeout"
    # A TLS failure means the host was reached.
    if isinstance(exc, requests.exceptions.SSLError):
        return "io_error"
    if isinstance(exc, requests.exceptions.ConnectionError):
        return "cannot_connect"
    return "io_error"


def batch_url(api_host: str) -> str:
    host = api_host.strip()
    if "://" not in host:
        host = f"https://{host}"
    return f"{host.rstrip('/')}/batch"


class FutureUploadHandle:
    """Upload handle backed by an executor future."""

    def __init__(self, future: Future) -> None:
        self.future = future

    def is_running(self) -> bool:
        return not self.future.done()


class HttpTransport:
    """Posts batches to the collection endpoint from a small worker pool."""

    def __init__(
        self,
        *,
        api_host: str,
        api_key: str | None = None,
        session: HTTPSession | None = None,
        timeout_s: float = 15.0,
        max_workers: int = 4,
        log: logging.Logger | None = None,
    ) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.api_host = api_host
        self.api_key = api_key
        self.session: HTTPSession = session if session is not None else requests.Session()
        self.timeout_s = float(timeout_s)
        self.log = log or logger
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="uplink-upload")
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def start_batch_upload(
        self,
        *,
        write_key: str,
        batch: BatchHandle,
        events: List[Dict[str, Any]],
        on_complete: CompletionFn,
    ) -> Optional[FutureUploadHandle]:
        if not self.api_host.strip():
            self.log.debug("no api host configured; cannot upload %s", batch.label)
            return None

        credential = self.api_key or write_key
        payload = {
            "batch": events,
            "sentAt": datetime.now(timezone.utc).isoformat(),
            "writeKey": write_key,
        }

        with self._close_lock:
            if self._closed:
                self.log.debug("transport closed; cannot upload %s", batch.label)
                return None
            try:
                future = self._executor.submit(self._post, batch, payload, credential)
            except RuntimeError:
                # Executor shut down underneath us (interpreter exit).
                return None

        def _deliver(done: Future) -> None:
            try:
                outcome = done.result()
            except Exception as exc:
                outcome = UploadOutcome.failed("io_error", detail=repr(exc))
            try:
                on_complete(outcome)
            except Exception:
                self.log.exception("completion handler failed for %s", batch.label)

        # Done-callbacks run once the future is finished, so the handle
        # already reports not-running when completion is observed.
        future.add_done_callback(_deliver)
        return FutureUploadHandle(future)

    def _post(self, batch: BatchHandle, payload: Dict[str, Any], credential: str) -> UploadOutcome:
        url = batch_url(self.api_host)
        try:
            resp = self.session.post(
                url,
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                json=payload,
                timeout=self.timeout_s,
            )
        except requests.exceptions.RequestException as exc:
            return UploadOutcome.failed(classify_request_error(exc), detail=repr(exc))

        status_code = int(resp.status_code)
        if 200 <= status_code < 300:
            return UploadOutcome.succeeded(status_code)
        return UploadOutcome.failed("http_error", status_code=status_code, detail=str(resp.text)[:200])

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=False)
        try:
            self.session.close()
        except Exception as exc:
            self.log.debug("session close failed: %r", exc)
