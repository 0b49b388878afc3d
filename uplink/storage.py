from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, TypeVar


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS events (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  category TEXT NOT NULL,
  message_id TEXT NOT NULL,
  payload_json TEXT NOT NULL,
  created_at TEXT NOT NULL,
  batch_id TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS events_category_message_id ON events(category, message_id);
CREATE INDEX IF NOT EXISTS events_batch_id ON events(batch_id);
CREATE TABLE IF NOT EXISTS batches (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  batch_id TEXT NOT NULL UNIQUE,
  category TEXT NOT NULL,
  created_at TEXT NOT NULL,
  event_count INTEGER NOT NULL
);
"""

EVENTS_CATEGORY = "events"

_T = TypeVar("_T")

_CORRUPTION_MARKERS = (
    "database disk image is malformed",
    "malformed database schema",
    "file is not a database",
    "not a database",
    "database corrupt",
)

_ALLOWED_JOURNAL_MODES = {"DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF"}
_ALLOWED_SYNCHRONOUS = {"OFF", "NORMAL", "FULL", "EXTRA"}
_ALLOWED_TEMP_STORE = {"DEFAULT", "FILE", "MEMORY"}

logger = logging.getLogger("uplink.storage")


def _looks_corrupt(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(marker in text for marker in _CORRUPTION_MARKERS)


def _looks_full(exc: BaseException) -> bool:
    return "database or disk is full" in str(exc).lower()


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_batch_id() -> str:
    ts = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{ts}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class BatchHandle:
    """Reference to a sealed, persisted group of events."""

    batch_id: str
    category: str
    created_at: str
    event_count: int

    @property
    def label(self) -> str:
        return f"{self.category}/{self.batch_id}"


class SqliteEventStorage:
    """Append-only SQLite event log that seals pending events into upload batches.

    Every operation opens its own connection, so the storage can be shared by
    the caller thread, the flush timer and upload completion callbacks.
    SQLite errors never propagate; each operation logs and returns a fallback.
    """

    def __init__(
        self,
        path: str,
        *,
        max_batch_events: int = 100,
        journal_mode: str = "WAL",
        synchronous: str = "NORMAL",
        temp_store: str = "MEMORY",
        eviction_batch_size: int = 100,
        recover_corruption: bool = True,
        busy_timeout_s: float = 5.0,
        log: logging.Logger | None = None,
    ) -> None:
        self.path = Path(path)
        self.log = log or logger
        self.max_batch_events = max(1, int(max_batch_events))
        self.journal_mode = self._normalize_pragma(
            "journal_mode",
            journal_mode,
            allowed=_ALLOWED_JOURNAL_MODES,
            default="WAL",
        )
        self.synchronous = self._normalize_pragma(
            "synchronous",
            synchronous,
            allowed=_ALLOWED_SYNCHRONOUS,
            default="NORMAL",
        )
        self.temp_store = self._normalize_pragma(
            "temp_store",
            temp_store,
            allowed=_ALLOWED_TEMP_STORE,
            default="MEMORY",
        )
        self.eviction_batch_size = max(1, int(eviction_batch_size))
        self.recover_corruption = bool(recover_corruption)
        self.busy_timeout_s = max(0.0, float(busy_timeout_s))
        self.evictions_total = 0

        self._init_db()

    def _normalize_pragma(self, name: str, value: str, *, allowed: set[str], default: str) -> str:
        candidate = (value or "").strip().upper()
        if candidate in allowed:
            return candidate
        self.log.warning("invalid %s=%r; using %s", name, value, default)
        return default

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), timeout=self.busy_timeout_s)
        try:
            self._apply_pragmas(conn)
            yield conn
        finally:
            conn.close()

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        conn.execute(f"PRAGMA synchronous={self.synchronous}")
        conn.execute(f"PRAGMA temp_store={self.temp_store}")

    def _create_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA_SQL)
            conn.commit()

    def _init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create_schema()
        except sqlite3.DatabaseError as exc:
            if not (_looks_corrupt(exc) and self._reset_after_corruption()):
                raise

    def _quarantine(self) -> bool:
        """Move the database file and its WAL/SHM side files out of the way."""

        if not self.recover_corruption:
            return False

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        moved: list[str] = []
        for suffix in ("", "-wal", "-shm"):
            source = self.path.with_name(self.path.name + suffix)
            if not source.exists():
                continue
            target = source.with_name(f"{source.name}.corrupt-{stamp}")
            n = 0
            while target.exists():
                n += 1
                target = source.with_name(f"{source.name}.corrupt-{stamp}-{n}")
            try:
                source.replace(target)
            except OSError as exc:
                self.log.error("cannot quarantine %s: %r", source, exc)
                return False
            moved.append(target.name)

        if moved:
            self.log.warning("event storage was corrupt; quarantined %s", ", ".join(moved))
        return True

    def _reset_after_corruption(self) -> bool:
        if not self._quarantine():
            return False
        try:
            self._create_schema()
        except sqlite3.Error as exc:
            self.log.error("could not recreate event storage: %r", exc)
            return False
        return True

    def _run_db(self, fn: Callable[[sqlite3.Connection], _T], *, fallback: _T) -> _T:
        # One retry, and only after a corrupt file was replaced by a fresh one.
        for attempt in (1, 2):
            try:
                with self._conn() as conn:
                    return fn(conn)
            except sqlite3.Error as exc:
                if attempt == 1 and _looks_corrupt(exc) and self._reset_after_corruption():
                    continue
                self.log.error("event storage operation failed: %r", exc)
                return fallback
        return fallback

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        *,
        category: str,
        message_id: str,
        payload_json: str,
        created_at: str,
    ) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO events(category, message_id, payload_json, created_at) VALUES(?,?,?,?)",
            (category, message_id, payload_json, created_at),
        )

    def _evict_oldest(self, conn: sqlite3.Connection, *, count: int) -> int:
        rows = conn.execute(
            "SELECT seq FROM events ORDER BY seq ASC LIMIT ?",
            (max(1, int(count)),),
        ).fetchall()
        if not rows:
            return 0
        conn.executemany("DELETE FROM events WHERE seq = ?", rows)
        self._drop_empty_batches(conn)
        return len(rows)

    @staticmethod
    def _drop_empty_batches(conn: sqlite3.Connection) -> None:
        conn.execute(
            "DELETE FROM batches WHERE batch_id NOT IN "
            "(SELECT DISTINCT batch_id FROM events WHERE batch_id IS NOT NULL)"
        )

    def write(self, category: str, event: Mapping[str, Any]) -> bool:
        """Append one event; returns False when the event was dropped."""

        payload = dict(event)
        message_id = str(payload.get("message_id") or uuid.uuid4().hex)
        payload["message_id"] = message_id
        created_at = utcnow_iso()
        try:
            payload_json = json.dumps(payload, separators=(",", ":"), default=str)
        except (TypeError, ValueError) as exc:
            self.log.warning("dropping unserializable event message_id=%s: %r", message_id, exc)
            return False

        def _op(conn: sqlite3.Connection) -> bool:
            try:
                self._insert_event(
                    conn,
                    category=category,
                    message_id=message_id,
                    payload_json=payload_json,
                    created_at=created_at,
                )
            except sqlite3.OperationalError as exc:
                if not _looks_full(exc):
                    raise

                conn.rollback()
                evicted = self._evict_oldest(conn, count=self.eviction_batch_size)
                conn.commit()
                if evicted <= 0:
                    self.log.warning(
                        "disk full and no stored events to evict; dropping message_id=%s",
                        message_id,
                    )
                    return False
                self.evictions_total += evicted

                try:
                    self._insert_event(
                        conn,
                        category=category,
                        message_id=message_id,
                        payload_json=payload_json,
                        created_at=created_at,
                    )
                except sqlite3.OperationalError as retry_exc:
                    if _looks_full(retry_exc):
                        self.log.warning(
                            "disk still full after evicting %s events; dropping message_id=%s",
                            evicted,
                            message_id,
                        )
                        return False
                    raise
                self.log.warning("disk full; evicted %s oldest stored events", evicted)

            conn.commit()
            return True

        return bool(self._run_db(_op, fallback=False))

    @staticmethod
    def _open_batches(conn: sqlite3.Connection, category: str) -> List[BatchHandle]:
        rows = conn.execute(
            "SELECT batch_id, category, created_at, event_count FROM batches "
            "WHERE category = ? ORDER BY seq ASC",
            (category,),
        ).fetchall()
        return [
            BatchHandle(
                batch_id=batch_id,
                category=row_category,
                created_at=created_at,
                event_count=int(event_count),
            )
            for batch_id, row_category, created_at, event_count in rows
        ]

    def batches(self, category: str) -> List[BatchHandle]:
        """Open batches of ``category``, oldest first, without sealing pending events."""

        return self._run_db(lambda conn: self._open_batches(conn, category), fallback=[])

    def read(self, category: str) -> List[BatchHandle]:
        """Seal pending events into batches and return every open batch, oldest first."""

        def _op(conn: sqlite3.Connection) -> List[BatchHandle]:
            conn.execute("BEGIN IMMEDIATE")
            pending = conn.execute(
                "SELECT seq FROM events WHERE category = ? AND batch_id IS NULL ORDER BY seq ASC",
                (category,),
            ).fetchall()
            for start in range(0, len(pending), self.max_batch_events):
                chunk = pending[start : start + self.max_batch_events]
                batch_id = _new_batch_id()
                conn.execute(
                    "INSERT INTO batches(batch_id, category, created_at, event_count) VALUES(?,?,?,?)",
                    (batch_id, category, utcnow_iso(), len(chunk)),
                )
                conn.executemany(
                    "UPDATE events SET batch_id = ? WHERE seq = ?",
                    [(batch_id, seq) for (seq,) in chunk],
                )
            conn.commit()
            return self._open_batches(conn, category)

        return self._run_db(_op, fallback=[])

    def load(self, batch: BatchHandle) -> Optional[List[Dict[str, Any]]]:
        """Return the decoded events of ``batch`` in write order.

        None means the batch could not be read right now (SQLite error); an
        empty list means the query ran and nothing decodable was stored.
        """

        def _op(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
            rows = conn.execute(
                "SELECT message_id, payload_json FROM events WHERE batch_id = ? ORDER BY seq ASC",
                (batch.batch_id,),
            ).fetchall()
            out: List[Dict[str, Any]] = []
            for message_id, payload_json in rows:
                try:
                    payload = json.loads(payload_json)
                except json.JSONDecodeError:
                    self.log.warning("skipping undecodable event message_id=%s in %s", message_id, batch.label)
                    continue
                if isinstance(payload, dict):
                    out.append(payload)
            return out

        return self._run_db(_op, fallback=None)

    def remove(self, batch: BatchHandle) -> None:
        def _op(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM events WHERE batch_id = ?", (batch.batch_id,))
            conn.execute("DELETE FROM batches WHERE batch_id = ?", (batch.batch_id,))
            conn.commit()

        self._run_db(_op, fallback=None)

    def count(self, category: str | None = None) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            if category is None:
                (n,) = conn.execute("SELECT COUNT(*) FROM events").fetchone()
            else:
                (n,) = conn.execute("SELECT COUNT(*) FROM events WHERE category = ?", (category,)).fetchone()
            return int(n)

        return int(self._run_db(_op, fallback=0))

    def batch_count(self) -> int:
        def _op(conn: sqlite3.Connection) -> int:
            (n,) = conn.execute("SELECT COUNT(*) FROM batches").fetchone()
            return int(n)

        return int(self._run_db(_op, fallback=0))

    def db_bytes(self) -> int:
        total = 0
        for candidate in (self.path, self.path.with_name(f"{self.path.name}-wal")):
            try:
                if candidate.exists():
                    total += int(candidate.stat().st_size)
            except OSError:
                continue
        return total

    def metrics(self) -> Dict[str, int]:
        return {
            "buffer_db_bytes": int(self.db_bytes()),
            "buffer_queue_depth": int(self.count()),
            "buffer_batches_open": int(self.batch_count()),
            "buffer_evictions_total": int(self.evictions_total),
        }

    def prune(self, *, max_events: int, max_age_s: int) -> int:
        """Prune stored events to protect device storage.

        Strategy
        - Delete events older than `max_age_s`.
        - If still above `max_events`, delete oldest until under the limit.

        Batches left without events are dropped. Returns the number of events deleted.
        """

        cutoff = datetime.now(timezone.utc).timestamp() - float(max_age_s)

        def _to_ts(created_at: str) -> float | None:
            try:
                dt = datetime.fromisoformat(created_at)
            except ValueError:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()

        def _op(conn: sqlite3.Connection) -> int:
            deleted = 0
            rows = conn.execute("SELECT seq, created_at FROM events ORDER BY seq ASC").fetchall()

            # 1) Age-based pruning
            for seq, created_at in rows:
                ts = _to_ts(created_at)
                if ts is not None and ts < cutoff:
                    conn.execute("DELETE FROM events WHERE seq = ?", (seq,))
                    deleted += 1

            # 2) Size-based pruning
            (n,) = conn.execute("SELECT COUNT(*) FROM events").fetchone()
            if int(n) > max_events:
                drop = conn.execute(
                    "SELECT seq FROM events ORDER BY seq ASC LIMIT ?",
                    (int(n) - max_events,),
                ).fetchall()
                conn.executemany("DELETE FROM events WHERE seq = ?", drop)
                deleted += len(drop)

            self._drop_empty_batches(conn)
            conn.commit()
            return deleted

        return int(self._run_db(_op, fallback=0))
