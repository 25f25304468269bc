"""PostgreSQL implementation of the instance store."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator

import asyncpg

from ..contracts import EventKind, HistoryEvent, RunStatus, TimerTask, utcnow
from ..errors import HistoryCorruptionError, StoreFault
from .models import InstanceRecord
from .repository import InstanceStore


class PostgresInstanceStore(InstanceStore):
    """Persist instance state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                instance_id TEXT PRIMARY KEY,
                orchestration TEXT NOT NULL,
                status TEXT NOT NULL,
                generation INTEGER NOT NULL,
                input JSONB,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS history (
                instance_id TEXT NOT NULL,
                generation INTEGER NOT NULL,
                sequence_number INTEGER NOT NULL,
                kind TEXT NOT NULL,
                timestamp TIMESTAMPTZ NOT NULL,
                payload JSONB NOT NULL,
                PRIMARY KEY (instance_id, generation, sequence_number)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS timers (
                correlation_id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                generation INTEGER NOT NULL,
                fire_at TIMESTAMPTZ NOT NULL,
                status TEXT NOT NULL
            )
            """
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreFault(f"PostgreSQL connection failed: {e}", cause=e) from e
        try:
            yield conn
        except asyncpg.PostgresError as e:
            raise StoreFault(f"PostgreSQL error: {e}", cause=e) from e
        finally:
            await conn.close()

    @staticmethod
    def _record(row: asyncpg.Record) -> InstanceRecord:
        return InstanceRecord(
            instance_id=row["instance_id"],
            orchestration=row["orchestration"],
            status=RunStatus(row["status"]),
            generation=row["generation"],
            input=json.loads(row["input"]) if row["input"] else None,
            error=row["error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _event(row: asyncpg.Record) -> HistoryEvent:
        return HistoryEvent(
            sequence_number=row["sequence_number"],
            kind=EventKind(row["kind"]),
            timestamp=row["timestamp"],
            payload=json.loads(row["payload"]),
        )

    @staticmethod
    def _timer(row: asyncpg.Record) -> TimerTask:
        return TimerTask(
            correlation_id=row["correlation_id"],
            instance_id=row["instance_id"],
            generation=row["generation"],
            fire_at=row["fire_at"],
            status=row["status"],
        )

    async def _append(
        self,
        conn: asyncpg.Connection,
        instance_id: str,
        generation: int,
        event: HistoryEvent,
    ) -> bool:
        row = await conn.fetchrow(
            "SELECT generation, status FROM instances WHERE instance_id = $1 FOR UPDATE",
            instance_id,
        )
        if (
            row is None
            or row["status"] != RunStatus.RUNNING.value
            or row["generation"] != generation
        ):
            return False
        count = await conn.fetchval(
            "SELECT COUNT(*) FROM history WHERE instance_id = $1 AND generation = $2",
            instance_id,
            generation,
        )
        if event.sequence_number < count:
            return False
        if event.sequence_number > count:
            raise HistoryCorruptionError(
                f"Sequence gap for {instance_id}: expected {count}, "
                f"got {event.sequence_number}"
            )
        await conn.execute(
            "INSERT INTO history (instance_id, generation, sequence_number, kind, timestamp, payload) VALUES ($1, $2, $3, $4, $5, $6)",
            instance_id,
            generation,
            event.sequence_number,
            event.kind.value,
            event.timestamp,
            json.dumps(event.payload, default=str),
        )
        await conn.execute(
            "UPDATE instances SET updated_at = $1 WHERE instance_id = $2",
            utcnow(),
            instance_id,
        )
        return True

    # ------------------------------------------------------------------
    async def try_start(
        self, instance_id: str, orchestration: str, input: Any = None
    ) -> InstanceRecord | None:
        now = utcnow()
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO instances (instance_id, orchestration, status, generation, input, error, created_at, updated_at)
                    VALUES ($1, $2, $3, 0, $4, NULL, $5, $5)
                    ON CONFLICT (instance_id) DO UPDATE SET
                        orchestration = EXCLUDED.orchestration,
                        status = EXCLUDED.status,
                        generation = instances.generation + 1,
                        input = EXCLUDED.input,
                        error = NULL,
                        updated_at = EXCLUDED.updated_at
                    WHERE instances.status <> $3
                    RETURNING *
                    """,
                    instance_id,
                    orchestration,
                    RunStatus.RUNNING.value,
                    json.dumps(input),
                    now,
                )
                if row is None:
                    return None
                record = self._record(row)
                await conn.execute(
                    "DELETE FROM history WHERE instance_id = $1 AND generation < $2",
                    instance_id,
                    record.generation - 1,
                )
                await conn.execute(
                    "DELETE FROM timers WHERE instance_id = $1 AND generation < $2",
                    instance_id,
                    record.generation,
                )
        return record

    async def get_instance(self, instance_id: str) -> InstanceRecord | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM instances WHERE instance_id = $1", instance_id
            )
        return self._record(row) if row else None

    async def list_instances(self) -> list[InstanceRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT * FROM instances ORDER BY instance_id")
        return [self._record(r) for r in rows]

    async def transition(
        self,
        instance_id: str,
        generation: int,
        expected: RunStatus,
        new: RunStatus,
        error: str | None = None,
    ) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE instances SET status = $1, error = $2, updated_at = $3
                WHERE instance_id = $4 AND generation = $5 AND status = $6
                """,
                new.value,
                error,
                utcnow(),
                instance_id,
                generation,
                expected.value,
            )
        return result == "UPDATE 1"

    async def append_event(
        self, instance_id: str, generation: int, event: HistoryEvent
    ) -> bool:
        async with self._connection() as conn:
            async with conn.transaction():
                return await self._append(conn, instance_id, generation, event)

    async def load_history(self, instance_id: str) -> list[HistoryEvent]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT h.* FROM history h JOIN instances i
                    ON h.instance_id = i.instance_id AND h.generation = i.generation
                WHERE h.instance_id = $1 ORDER BY h.sequence_number
                """,
                instance_id,
            )
        return [self._event(r) for r in rows]

    async def load_archive(self, instance_id: str) -> list[HistoryEvent]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT h.* FROM history h JOIN instances i
                    ON h.instance_id = i.instance_id AND h.generation = i.generation - 1
                WHERE h.instance_id = $1 ORDER BY h.sequence_number
                """,
                instance_id,
            )
        return [self._event(r) for r in rows]

    async def continue_as_new(
        self, instance_id: str, generation: int, event: HistoryEvent, input: Any = None
    ) -> int | None:
        async with self._connection() as conn:
            async with conn.transaction():
                if not await self._append(conn, instance_id, generation, event):
                    return None
                await conn.execute(
                    "DELETE FROM history WHERE instance_id = $1 AND generation < $2",
                    instance_id,
                    generation,
                )
                await conn.execute(
                    "UPDATE instances SET generation = $1, input = $2, updated_at = $3 WHERE instance_id = $4",
                    generation + 1,
                    json.dumps(input),
                    utcnow(),
                    instance_id,
                )
                await conn.execute(
                    "DELETE FROM timers WHERE instance_id = $1 AND generation <= $2",
                    instance_id,
                    generation,
                )
        return generation + 1

    async def add_timer(self, timer: TimerTask) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO timers (correlation_id, instance_id, generation, fire_at, status)
                VALUES ($1, $2, $3, $4, $5) ON CONFLICT (correlation_id) DO NOTHING
                """,
                timer.correlation_id,
                timer.instance_id,
                timer.generation,
                timer.fire_at,
                timer.status,
            )

    async def due_timers(self, now: datetime) -> list[TimerTask]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM timers WHERE status = 'pending' AND fire_at <= $1 ORDER BY fire_at",
                now,
            )
        return [self._timer(r) for r in rows]

    async def list_timers(self, instance_id: str) -> list[TimerTask]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM timers WHERE instance_id = $1 ORDER BY fire_at",
                instance_id,
            )
        return [self._timer(r) for r in rows]

    async def update_timer(
        self, correlation_id: str, status: str, expected: str = "pending"
    ) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE timers SET status = $1 WHERE correlation_id = $2 AND status = $3",
                status,
                correlation_id,
                expected,
            )
        return result == "UPDATE 1"
