"""SQLite implementation of the instance store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import EventKind, HistoryEvent, RunStatus, TimerTask, utcnow
from ..errors import HistoryCorruptionError, StoreFault
from .models import InstanceRecord
from .repository import InstanceStore

T = TypeVar("T")


def _ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteInstanceStore(InstanceStore):
    """Persist instance state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        # One connection is shared by worker threads; transactions must not interleave.
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                orchestration TEXT NOT NULL,
                status TEXT NOT NULL,
                generation INTEGER NOT NULL,
                input TEXT,
                error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                instance_id TEXT NOT NULL,
                generation INTEGER NOT NULL,
                sequence_number INTEGER NOT NULL,
                kind TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (instance_id, generation, sequence_number)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS timers (
                correlation_id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                generation INTEGER NOT NULL,
                fire_at TEXT NOT NULL,
                status TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS timers_due ON timers (status, fire_at)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Cursor], T]) -> T:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                result = work(cur)
                cur.execute("COMMIT")
                return result
            except sqlite3.Error as e:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise StoreFault(f"SQLite error: {e}", cause=e) from e
            except BaseException:
                if self._conn.in_transaction:
                    self._conn.rollback()
                raise

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            try:
                cur = self._conn.cursor()
                cur.execute(query, params)
                return cur.fetchall()
            except sqlite3.Error as e:
                raise StoreFault(f"SQLite error: {e}", cause=e) from e

    @staticmethod
    def _record(row: sqlite3.Row) -> InstanceRecord:
        return InstanceRecord(
            instance_id=row["instance_id"],
            orchestration=row["orchestration"],
            status=RunStatus(row["status"]),
            generation=row["generation"],
            input=json.loads(row["input"]) if row["input"] else None,
            error=row["error"],
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
        )

    @staticmethod
    def _event(row: sqlite3.Row) -> HistoryEvent:
        return HistoryEvent(
            sequence_number=row["sequence_number"],
            kind=EventKind(row["kind"]),
            timestamp=_dt(row["timestamp"]),
            payload=json.loads(row["payload"]),
        )

    @staticmethod
    def _timer(row: sqlite3.Row) -> TimerTask:
        return TimerTask(
            correlation_id=row["correlation_id"],
            instance_id=row["instance_id"],
            generation=row["generation"],
            fire_at=_dt(row["fire_at"]),
            status=row["status"],
        )

    def _running_generation(self, cur: sqlite3.Cursor, instance_id: str) -> int | None:
        cur.execute(
            "SELECT generation, status FROM instances WHERE instance_id = ?",
            (instance_id,),
        )
        row = cur.fetchone()
        if row is None or row["status"] != RunStatus.RUNNING.value:
            return None
        return row["generation"]

    def _append(
        self, cur: sqlite3.Cursor, instance_id: str, generation: int, event: HistoryEvent
    ) -> bool:
        if self._running_generation(cur, instance_id) != generation:
            return False
        cur.execute(
            "SELECT COUNT(*) FROM history WHERE instance_id = ? AND generation = ?",
            (instance_id, generation),
        )
        count = cur.fetchone()[0]
        if event.sequence_number < count:
            return False
        if event.sequence_number > count:
            raise HistoryCorruptionError(
                f"Sequence gap for {instance_id}: expected {count}, "
                f"got {event.sequence_number}"
            )
        cur.execute(
            "INSERT INTO history (instance_id, generation, sequence_number, kind, timestamp, payload) VALUES (?, ?, ?, ?, ?, ?)",
            (
                instance_id,
                generation,
                event.sequence_number,
                event.kind.value,
                _ts(event.timestamp),
                json.dumps(event.payload, default=str),
            ),
        )
        cur.execute(
            "UPDATE instances SET updated_at = ? WHERE instance_id = ?",
            (_ts(utcnow()), instance_id),
        )
        return True

    # ------------------------------------------------------------------
    # Store API
    async def try_start(
        self, instance_id: str, orchestration: str, input: Any = None
    ) -> InstanceRecord | None:
        def work(cur: sqlite3.Cursor) -> InstanceRecord | None:
            now = _ts(utcnow())
            cur.execute(
                """
                INSERT INTO instances (instance_id, orchestration, status, generation, input, error, created_at, updated_at)
                VALUES (?, ?, ?, 0, ?, NULL, ?, ?)
                ON CONFLICT (instance_id) DO UPDATE SET
                    orchestration = excluded.orchestration,
                    status = excluded.status,
                    generation = instances.generation + 1,
                    input = excluded.input,
                    error = NULL,
                    updated_at = excluded.updated_at
                WHERE instances.status != ?
                """,
                (
                    instance_id,
                    orchestration,
                    RunStatus.RUNNING.value,
                    json.dumps(input),
                    now,
                    now,
                    RunStatus.RUNNING.value,
                ),
            )
            if cur.rowcount == 0:
                return None
            cur.execute("SELECT * FROM instances WHERE instance_id = ?", (instance_id,))
            record = self._record(cur.fetchone())
            # Only the run that was just superseded stays archived.
            cur.execute(
                "DELETE FROM history WHERE instance_id = ? AND generation < ?",
                (instance_id, record.generation - 1),
            )
            cur.execute(
                "DELETE FROM timers WHERE instance_id = ? AND generation < ?",
                (instance_id, record.generation),
            )
            return record

        return await asyncio.to_thread(self._transaction, work)

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM instances WHERE instance_id = ?", instance_id
        )
        return self._record(rows[0]) if rows else None

    async def list_instances(self) -> list[InstanceRecord]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM instances ORDER BY instance_id"
        )
        return [self._record(r) for r in rows]

    async def transition(
        self,
        instance_id: str,
        generation: int,
        expected: RunStatus,
        new: RunStatus,
        error: str | None = None,
    ) -> bool:
        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                """
                UPDATE instances SET status = ?, error = ?, updated_at = ?
                WHERE instance_id = ? AND generation = ? AND status = ?
                """,
                (new.value, error, _ts(utcnow()), instance_id, generation, expected.value),
            )
            return cur.rowcount == 1

        return await asyncio.to_thread(self._transaction, work)

    async def append_event(
        self, instance_id: str, generation: int, event: HistoryEvent
    ) -> bool:
        return await asyncio.to_thread(
            self._transaction,
            lambda cur: self._append(cur, instance_id, generation, event),
        )

    async def load_history(self, instance_id: str) -> list[HistoryEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT h.* FROM history h JOIN instances i
                ON h.instance_id = i.instance_id AND h.generation = i.generation
            WHERE h.instance_id = ? ORDER BY h.sequence_number
            """,
            instance_id,
        )
        return [self._event(r) for r in rows]

    async def load_archive(self, instance_id: str) -> list[HistoryEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT h.* FROM history h JOIN instances i
                ON h.instance_id = i.instance_id AND h.generation = i.generation - 1
            WHERE h.instance_id = ? ORDER BY h.sequence_number
            """,
            instance_id,
        )
        return [self._event(r) for r in rows]

    async def continue_as_new(
        self, instance_id: str, generation: int, event: HistoryEvent, input: Any = None
    ) -> int | None:
        def work(cur: sqlite3.Cursor) -> int | None:
            if not self._append(cur, instance_id, generation, event):
                return None
            cur.execute(
                "DELETE FROM history WHERE instance_id = ? AND generation < ?",
                (instance_id, generation),
            )
            cur.execute(
                "UPDATE instances SET generation = ?, input = ?, updated_at = ? WHERE instance_id = ?",
                (generation + 1, json.dumps(input), _ts(utcnow()), instance_id),
            )
            cur.execute(
                "DELETE FROM timers WHERE instance_id = ? AND generation <= ?",
                (instance_id, generation),
            )
            return generation + 1

        return await asyncio.to_thread(self._transaction, work)

    async def add_timer(self, timer: TimerTask) -> None:
        await asyncio.to_thread(
            self._transaction,
            lambda cur: cur.execute(
                "INSERT OR IGNORE INTO timers (correlation_id, instance_id, generation, fire_at, status) VALUES (?, ?, ?, ?, ?)",
                (
                    timer.correlation_id,
                    timer.instance_id,
                    timer.generation,
                    _ts(timer.fire_at),
                    timer.status,
                ),
            ),
        )

    async def due_timers(self, now: datetime) -> list[TimerTask]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM timers WHERE status = 'pending' AND fire_at <= ? ORDER BY fire_at",
            _ts(now),
        )
        return [self._timer(r) for r in rows]

    async def list_timers(self, instance_id: str) -> list[TimerTask]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM timers WHERE instance_id = ? ORDER BY fire_at",
            instance_id,
        )
        return [self._timer(r) for r in rows]

    async def update_timer(
        self, correlation_id: str, status: str, expected: str = "pending"
    ) -> bool:
        def work(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                "UPDATE timers SET status = ? WHERE correlation_id = ? AND status = ?",
                (status, correlation_id, expected),
            )
            return cur.rowcount == 1

        return await asyncio.to_thread(self._transaction, work)
