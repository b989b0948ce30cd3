"""
Record Store

SQLite-backed durable storage for listings, trades and accounts.
Guarantees single-record atomicity only: every write touches exactly one
row and there is no cross-kind transaction API. Conditional writes are
compare-and-swap on a per-row version counter.
"""

import asyncio
import itertools
import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

from ..config import Config
from ..errors import TransientError
from ..models import RecordKind

logger = logging.getLogger(__name__)

TABLES = {
    RecordKind.LISTING: "listings",
    RecordKind.TRADE: "trades",
    RecordKind.ACCOUNT: "accounts",
}


class WriteOutcome(Enum):
    SUCCESS = "success"
    GUARD_FAILED = "guard_failed"
    NOT_FOUND = "not_found"


class ChangeOp(Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class WriteResult:
    """Outcome of a single-record write."""
    outcome: WriteOutcome
    record: Optional[Dict[str, Any]] = None
    previous: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.outcome == WriteOutcome.SUCCESS


@dataclass
class ChangeEvent:
    """One committed write, delivered to change-feed subscribers."""
    kind: RecordKind
    op: ChangeOp
    record_id: str
    record: Optional[Dict[str, Any]]
    previous: Optional[Dict[str, Any]]
    committed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


ChangeCallback = Callable[[ChangeEvent], Union[None, Awaitable[None]]]


class SubscriptionHandle:
    """Returned by RecordStore.subscribe; cancel() stops delivery."""

    def __init__(self, store: "RecordStore", kind: RecordKind, handle_id: int):
        self._store = store
        self.kind = kind
        self.handle_id = handle_id

    @property
    def active(self) -> bool:
        return self.handle_id in self._store._subscribers[self.kind]

    def cancel(self):
        self._store._subscribers[self.kind].pop(self.handle_id, None)


class RecordStore:
    """
    SQLite record store with a change feed.

    Tables (one per record kind):
    - listings, trades, accounts: id, JSON body, version, updated_at

    Blocking sqlite calls run in a worker thread under a bounded timeout.
    A timeout or an OperationalError is reported as TransientError; the
    outcome of the underlying write is then unknown to the caller.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        timeout: Optional[float] = None,
        busy_timeout: float = 5.0,
    ):
        self.db_path = db_path or Config.DB_PATH
        self.timeout = timeout if timeout is not None else Config.STORE_TIMEOUT_SECONDS
        self.busy_timeout = busy_timeout
        os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)

        self._subscribers: Dict[RecordKind, Dict[int, ChangeCallback]] = {
            kind: {} for kind in RecordKind
        }
        self._handle_ids = itertools.count(1)
        self._deliveries: Set[asyncio.Future] = set()

        self.stats = {
            "reads": 0,
            "writes": 0,
            "guard_failures": 0,
            "events_dispatched": 0,
            "callback_errors": 0,
        }

        self._init_db()
        logger.info(f"Record store initialized: {self.db_path}")

    @contextmanager
    def _get_conn(self):
        """Get database connection with context management."""
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_conn() as conn:
            cursor = conn.cursor()
            for table in TABLES.values():
                cursor.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        id TEXT PRIMARY KEY,
                        body TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        updated_at TEXT NOT NULL
                    )
                """)

    async def _run(self, func: Callable, *args) -> Any:
        """Run a blocking store call in a worker thread with a bounded timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise TransientError(
                f"Record store call timed out after {self.timeout}s",
                {"operation": getattr(func, "__name__", str(func))},
            )
        except sqlite3.OperationalError as e:
            raise TransientError(f"Record store unavailable: {e}")

    def _notify_threadsafe(self, loop: asyncio.AbstractEventLoop, event: ChangeEvent):
        # Scheduled from the worker thread right after commit, so the event
        # is delivered even if the awaiting caller has timed out.
        loop.call_soon_threadsafe(self._dispatch, event)

    # Reads
    async def get(self, kind: RecordKind, record_id: str) -> Optional[Dict[str, Any]]:
        """Point lookup. Returns None when the record does not exist."""
        return await self._run(self._get_sync, kind, record_id)

    def _get_sync(self, kind: RecordKind, record_id: str) -> Optional[Dict[str, Any]]:
        self.stats["reads"] += 1
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT body FROM {TABLES[kind]} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row["body"]) if row else None

    async def query(
        self,
        kind: RecordKind,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> List[Dict[str, Any]]:
        """Filtered scan, returned in insertion order."""
        records = await self._run(self._scan_sync, kind)
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    def _scan_sync(self, kind: RecordKind) -> List[Dict[str, Any]]:
        self.stats["reads"] += 1
        with self._get_conn() as conn:
            rows = conn.execute(
                f"SELECT body FROM {TABLES[kind]} ORDER BY rowid"
            ).fetchall()
            return [json.loads(row["body"]) for row in rows]

    # Writes
    async def insert(self, kind: RecordKind, record: Dict[str, Any]) -> WriteResult:
        """Insert a new record; GUARD_FAILED if the id already exists."""
        loop = asyncio.get_running_loop()
        return await self._run(self._insert_sync, loop, kind, record)

    def _insert_sync(self, loop, kind: RecordKind, record: Dict[str, Any]) -> WriteResult:
        record_id = record["id"]
        try:
            with self._get_conn() as conn:
                conn.execute(
                    f"INSERT INTO {TABLES[kind]} (id, body, version, updated_at) VALUES (?, ?, 1, ?)",
                    (record_id, json.dumps(record), _now_iso()),
                )
        except sqlite3.IntegrityError:
            self.stats["guard_failures"] += 1
            return WriteResult(WriteOutcome.GUARD_FAILED)

        self.stats["writes"] += 1
        self._notify_threadsafe(loop, ChangeEvent(kind, ChangeOp.INSERT, record_id, record, None))
        return WriteResult(WriteOutcome.SUCCESS, record=record)

    async def conditional_write(
        self,
        kind: RecordKind,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> WriteResult:
        """
        Apply changes to one record only if every field in expected still
        holds its expected value.

        Returns SUCCESS, GUARD_FAILED or NOT_FOUND.
        """
        loop = asyncio.get_running_loop()
        return await self._run(self._conditional_write_sync, loop, kind, record_id, expected, changes)

    def _conditional_write_sync(
        self,
        loop,
        kind: RecordKind,
        record_id: str,
        expected: Dict[str, Any],
        changes: Dict[str, Any],
    ) -> WriteResult:
        table = TABLES[kind]
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT body, version FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return WriteResult(WriteOutcome.NOT_FOUND)

            current = json.loads(row["body"])
            if not _matches(current, expected):
                self.stats["guard_failures"] += 1
                return WriteResult(WriteOutcome.GUARD_FAILED, previous=current)

            updated = {**current, **changes}
            cursor = conn.execute(
                f"UPDATE {table} SET body = ?, version = version + 1, updated_at = ? "
                f"WHERE id = ? AND version = ?",
                (json.dumps(updated), _now_iso(), record_id, row["version"]),
            )
            if cursor.rowcount == 0:
                # Lost the compare-and-swap to a concurrent writer
                self.stats["guard_failures"] += 1
                return WriteResult(WriteOutcome.GUARD_FAILED, previous=current)

        self.stats["writes"] += 1
        self._notify_threadsafe(loop, ChangeEvent(kind, ChangeOp.UPDATE, record_id, updated, current))
        return WriteResult(WriteOutcome.SUCCESS, record=updated, previous=current)

    async def delete(
        self,
        kind: RecordKind,
        record_id: str,
        expected: Optional[Dict[str, Any]] = None,
    ) -> WriteResult:
        """Delete one record, optionally guarded by expected field values."""
        loop = asyncio.get_running_loop()
        return await self._run(self._delete_sync, loop, kind, record_id, expected or {})

    def _delete_sync(self, loop, kind: RecordKind, record_id: str, expected: Dict[str, Any]) -> WriteResult:
        table = TABLES[kind]
        with self._get_conn() as conn:
            row = conn.execute(
                f"SELECT body, version FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return WriteResult(WriteOutcome.NOT_FOUND)

            current = json.loads(row["body"])
            if not _matches(current, expected):
                self.stats["guard_failures"] += 1
                return WriteResult(WriteOutcome.GUARD_FAILED, previous=current)

            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id = ? AND version = ?",
                (record_id, row["version"]),
            )
            if cursor.rowcount == 0:
                self.stats["guard_failures"] += 1
                return WriteResult(WriteOutcome.GUARD_FAILED, previous=current)

        self.stats["writes"] += 1
        self._notify_threadsafe(loop, ChangeEvent(kind, ChangeOp.DELETE, record_id, None, current))
        return WriteResult(WriteOutcome.SUCCESS, previous=current)

    # Change feed
    def subscribe(self, kind: RecordKind, callback: ChangeCallback) -> SubscriptionHandle:
        """Register a callback invoked once per committed write on kind."""
        handle_id = next(self._handle_ids)
        self._subscribers[kind][handle_id] = callback
        return SubscriptionHandle(self, kind, handle_id)

    def _dispatch(self, event: ChangeEvent):
        """Deliver an event to every subscriber as a background task."""
        for callback in list(self._subscribers[event.kind].values()):
            task = asyncio.ensure_future(self._deliver(callback, event))
            self._deliveries.add(task)
            task.add_done_callback(self._deliveries.discard)
            self.stats["events_dispatched"] += 1

    async def _deliver(self, callback: ChangeCallback, event: ChangeEvent):
        try:
            result = callback(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.stats["callback_errors"] += 1
            logger.error(f"Error in change feed callback for {event.kind.value}/{event.record_id}: {e}")

    async def drain(self):
        """Wait until every in-flight change delivery has finished."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "subscribers": {
                kind.value: len(subs) for kind, subs in self._subscribers.items()
            },
            "pending_deliveries": len(self._deliveries),
        }


def _matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    return all(record.get(key) == value for key, value in expected.items())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
