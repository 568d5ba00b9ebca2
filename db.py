import sqlite3
import aiosqlite
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from models import (
    RECORD_TYPES,
    MAX_RETRIES,
    QueueItem,
    RecordKind,
    Session,
    SessionExercise,
    SetRecord,
    kind_of,
    utc_now,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the offline store cannot be opened or accessed."""


class LocalStore:
    """Durable keyed storage for offline workout records backed by SQLite."""

    SCHEMA_VERSION = 1

    _TABLE_DEFINITIONS = {
        RecordKind.SESSIONS: [
            ("id", "TEXT PRIMARY KEY"),
            ("athlete_id", "TEXT NOT NULL"),
            ("workout_plan_id", "TEXT NOT NULL"),
            ("assignment_id", "TEXT"),
            ("workout_name", "TEXT"),
            ("status", "TEXT NOT NULL DEFAULT 'active'"),
            ("started_at", "TEXT NOT NULL"),
            ("paused_at", "TEXT"),
            ("completed_at", "TEXT"),
            ("total_duration_seconds", "INTEGER NOT NULL DEFAULT 0"),
            ("current_exercise_index", "INTEGER NOT NULL DEFAULT 0"),
            ("notes", "TEXT"),
            ("created_at", "TEXT NOT NULL"),
            ("updated_at", "TEXT NOT NULL"),
            ("synced", "INTEGER NOT NULL DEFAULT 0"),
        ],
        RecordKind.EXERCISES: [
            ("id", "TEXT PRIMARY KEY"),
            ("session_id", "TEXT NOT NULL"),
            ("exercise_id", "TEXT NOT NULL"),
            ("exercise_name", "TEXT NOT NULL"),
            ("order_index", "INTEGER NOT NULL DEFAULT 0"),
            ("target_sets", "INTEGER NOT NULL DEFAULT 0"),
            ("target_reps", "INTEGER NOT NULL DEFAULT 0"),
            ("target_weight", "REAL NOT NULL DEFAULT 0"),
            ("weight_type", "TEXT NOT NULL DEFAULT 'absolute'"),
            ("rest_time", "INTEGER NOT NULL DEFAULT 0"),
            ("notes", "TEXT"),
            ("is_completed", "INTEGER NOT NULL DEFAULT 0"),
            ("sets_completed", "INTEGER NOT NULL DEFAULT 0"),
            ("created_at", "TEXT NOT NULL"),
            ("synced", "INTEGER NOT NULL DEFAULT 0"),
        ],
        RecordKind.SETS: [
            ("id", "TEXT PRIMARY KEY"),
            ("session_id", "TEXT NOT NULL"),
            ("session_exercise_id", "TEXT NOT NULL"),
            ("set_number", "INTEGER NOT NULL"),
            ("reps_completed", "INTEGER NOT NULL"),
            ("weight_used", "REAL"),
            ("rpe", "REAL"),
            ("notes", "TEXT"),
            ("completed_at", "TEXT NOT NULL"),
            ("created_at", "TEXT NOT NULL"),
            ("synced", "INTEGER NOT NULL DEFAULT 0"),
        ],
        RecordKind.SYNC_QUEUE: [
            ("id", "TEXT PRIMARY KEY"),
            ("operation_type", "TEXT NOT NULL"),
            ("entity_type", "TEXT NOT NULL"),
            ("entity_id", "TEXT NOT NULL"),
            ("payload", "TEXT"),
            ("created_at", "TEXT NOT NULL"),
            ("attempts", "INTEGER NOT NULL DEFAULT 0"),
            ("last_attempt", "TEXT"),
            ("error", "TEXT"),
        ],
    }

    _INDEX_DEFINITIONS = {
        RecordKind.SESSIONS: ["athlete_id", "status", "synced", "created_at"],
        RecordKind.EXERCISES: ["session_id", "synced"],
        RecordKind.SETS: ["session_id", "session_exercise_id", "synced", "completed_at"],
        RecordKind.SYNC_QUEUE: ["created_at", "attempts"],
    }

    _BOOL_COLUMNS = {"synced", "is_completed"}
    _JSON_COLUMNS = {"payload"}

    def __init__(self, db_path: str = "offline.db") -> None:
        self._db_path = db_path
        self._opened = False

    @property
    def db_path(self) -> str:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._opened

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()

    async def open(self) -> None:
        """Create or additively migrate the schema. Safe to call repeatedly."""
        if self._opened:
            return
        try:
            async with self._async_connection() as conn:
                cursor = await conn.execute("PRAGMA user_version;")
                row = await cursor.fetchone()
                version = row[0] if row else 0
                if version < self.SCHEMA_VERSION:
                    await self._migrate(conn, version)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(
                f"failed to open offline store at {self._db_path}: {e}"
            ) from e
        self._opened = True

    async def _migrate(self, conn: aiosqlite.Connection, from_version: int) -> None:
        for kind, columns in self._TABLE_DEFINITIONS.items():
            await self._ensure_table(conn, kind.value, columns)
        for kind, indexed in self._INDEX_DEFINITIONS.items():
            for column in indexed:
                await conn.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{kind.value}_{column} "
                    f"ON {kind.value} ({column});"
                )
        await conn.execute(f"PRAGMA user_version = {self.SCHEMA_VERSION};")
        logger.info(
            "Offline store %s migrated from schema v%d to v%d",
            self._db_path,
            from_version,
            self.SCHEMA_VERSION,
        )

    async def _ensure_table(
        self, conn: aiosqlite.Connection, table: str, columns: List[Tuple[str, str]]
    ) -> None:
        cursor = await conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in await cursor.fetchall()]
        if not existing_cols:
            body = ", ".join(f"{name} {decl}" for name, decl in columns)
            await conn.execute(f"CREATE TABLE IF NOT EXISTS {table} ({body});")
            return

        for name, decl in columns:
            if name in existing_cols:
                continue

            def with_default(decl: str) -> str:
                if "NOT NULL" not in decl or "DEFAULT" in decl:
                    return decl
                if decl.startswith("TEXT"):
                    return f"{decl} DEFAULT ''"
                return f"{decl} DEFAULT 0"

            await conn.execute(
                f"ALTER TABLE {table} ADD COLUMN {name} {with_default(decl)};"
            )
            logger.debug("Added column %s.%s", table, name)

    async def execute(self, query: str, params: Tuple = ()) -> int:
        await self.open()
        try:
            async with self._async_connection() as conn:
                cursor = await conn.execute(query, params)
                await conn.commit()
                return cursor.rowcount
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[aiosqlite.Row]:
        await self.open()
        try:
            async with self._async_connection() as conn:
                cursor = await conn.execute(query, params)
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _to_row(self, record: BaseModel) -> Dict[str, Any]:
        row = record.model_dump()
        for key, value in row.items():
            if key in self._BOOL_COLUMNS:
                row[key] = int(bool(value))
            elif key in self._JSON_COLUMNS and value is not None:
                row[key] = json.dumps(value)
        return row

    def _from_row(self, kind: RecordKind, row: aiosqlite.Row) -> BaseModel:
        data = dict(row)
        for key in self._JSON_COLUMNS:
            if data.get(key) is not None:
                data[key] = json.loads(data[key])
        for key in self._BOOL_COLUMNS:
            if key in data:
                data[key] = bool(data[key])
        return RECORD_TYPES[kind](**data)

    async def get(self, kind: RecordKind, record_id: str) -> Optional[BaseModel]:
        kind = RecordKind(kind)
        rows = await self.fetch_all(
            f"SELECT * FROM {kind.value} WHERE id = ?;", (record_id,)
        )
        if not rows:
            return None
        return self._from_row(kind, rows[0])

    async def get_all(self, kind: RecordKind) -> List[BaseModel]:
        kind = RecordKind(kind)
        rows = await self.fetch_all(f"SELECT * FROM {kind.value} ORDER BY rowid;")
        return [self._from_row(kind, r) for r in rows]

    async def get_by_index(
        self, kind: RecordKind, index: str, value: Any
    ) -> List[BaseModel]:
        kind = RecordKind(kind)
        if index not in self._INDEX_DEFINITIONS[kind]:
            raise ValueError(f"unknown index {index!r} for {kind.value}")
        if isinstance(value, bool):
            value = int(value)
        rows = await self.fetch_all(
            f"SELECT * FROM {kind.value} WHERE {index} = ? ORDER BY rowid;",
            (value,),
        )
        return [self._from_row(kind, r) for r in rows]

    async def put(self, record: BaseModel) -> None:
        kind = kind_of(record)
        row = self._to_row(record)
        cols = list(row)
        updates = ", ".join(f"{c} = excluded.{c}" for c in cols if c != "id")
        await self.execute(
            f"INSERT INTO {kind.value} ({', '.join(cols)}) "
            f"VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates};",
            tuple(row.values()),
        )

    async def delete(self, kind: RecordKind, record_id: str) -> None:
        kind = RecordKind(kind)
        await self.execute(f"DELETE FROM {kind.value} WHERE id = ?;", (record_id,))

    async def clear(self) -> None:
        """Remove every record of every kind."""
        for kind in RecordKind:
            await self.execute(f"DELETE FROM {kind.value};")
        logger.info("Offline store %s cleared", self._db_path)


class SessionRepository:
    """Workout sessions stored offline."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    async def save(self, session: Session) -> Session:
        """Persist a local change; the session becomes unsynced."""
        dirty = session.model_copy(update={"synced": False, "updated_at": utc_now()})
        await self.store.put(dirty)
        return dirty

    async def mark_synced(self, uploaded: Session) -> bool:
        """Flag the session synced if the stored copy still matches ``uploaded``."""
        current = await self.store.get(RecordKind.SESSIONS, uploaded.id)
        if current is None:
            return False
        if current.model_dump(exclude={"synced"}) != uploaded.model_dump(exclude={"synced"}):
            return False
        await self.store.put(current.model_copy(update={"synced": True}))
        return True

    async def get(self, session_id: str) -> Optional[Session]:
        return await self.store.get(RecordKind.SESSIONS, session_id)

    async def require(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise ValueError("session not found")
        return session

    async def list_for_athlete(self, athlete_id: str) -> List[Session]:
        sessions = await self.store.get_by_index(
            RecordKind.SESSIONS, "athlete_id", athlete_id
        )
        return sorted(sessions, key=lambda s: s.created_at)

    async def list_unsynced(self) -> List[Session]:
        sessions = await self.store.get_by_index(RecordKind.SESSIONS, "synced", False)
        return sorted(sessions, key=lambda s: s.created_at)

    async def delete(self, session_id: str) -> None:
        await self.store.delete(RecordKind.SESSIONS, session_id)


class SessionExerciseRepository:
    """Exercises belonging to an offline session."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    async def save(self, exercise: SessionExercise) -> SessionExercise:
        dirty = exercise.model_copy(update={"synced": False})
        await self.store.put(dirty)
        return dirty

    async def save_many(self, exercises: List[SessionExercise]) -> List[SessionExercise]:
        return [await self.save(e) for e in exercises]

    async def get(self, exercise_id: str) -> Optional[SessionExercise]:
        return await self.store.get(RecordKind.EXERCISES, exercise_id)

    async def list_for_session(self, session_id: str) -> List[SessionExercise]:
        exercises = await self.store.get_by_index(
            RecordKind.EXERCISES, "session_id", session_id
        )
        return sorted(exercises, key=lambda e: e.order_index)

    async def list_unsynced(self) -> List[SessionExercise]:
        return await self.store.get_by_index(RecordKind.EXERCISES, "synced", False)

    async def mark_synced(
        self, exercise_id: str, uploaded: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Flag the exercise synced if it still matches the ``uploaded`` body."""
        current = await self.get(exercise_id)
        if current is None:
            return False
        if uploaded is not None and current.to_remote() != uploaded:
            return False
        await self.store.put(current.model_copy(update={"synced": True}))
        return True


class SetRecordRepository:
    """Completed sets; immutable apart from the synced flag."""

    def __init__(self, store: LocalStore) -> None:
        self.store = store

    async def add(self, record: SetRecord) -> SetRecord:
        if record.reps_completed < 0:
            raise ValueError("reps must be non-negative")
        if record.weight_used is not None and record.weight_used < 0:
            raise ValueError("weight must be non-negative")
        if record.rpe is not None and not 0 <= record.rpe <= 10:
            raise ValueError("rpe must be between 0 and 10")
        if await self.get(record.id) is not None:
            raise ValueError("set already recorded")
        record = record.model_copy(update={"synced": False})
        await self.store.put(record)
        return record

    async def get(self, set_id: str) -> Optional[SetRecord]:
        return await self.store.get(RecordKind.SETS, set_id)

    async def list_for_session(self, session_id: str) -> List[SetRecord]:
        sets = await self.store.get_by_index(RecordKind.SETS, "session_id", session_id)
        return sorted(sets, key=lambda s: s.completed_at)

    async def list_for_exercise(self, session_exercise_id: str) -> List[SetRecord]:
        sets = await self.store.get_by_index(
            RecordKind.SETS, "session_exercise_id", session_exercise_id
        )
        return sorted(sets, key=lambda s: s.set_number)

    async def list_unsynced(self) -> List[SetRecord]:
        sets = await self.store.get_by_index(RecordKind.SETS, "synced", False)
        return sorted(sets, key=lambda s: s.completed_at)

    async def mark_one_synced(self, set_id: str) -> bool:
        """Flag a stored set synced. False if it was deleted meanwhile."""
        updated = await self.store.execute(
            f"UPDATE {RecordKind.SETS.value} SET synced = 1 WHERE id = ?;", (set_id,)
        )
        return updated > 0

    async def mark_synced(self, records: List[SetRecord]) -> List[str]:
        """Flag ``records`` synced and return the ids no longer stored."""
        missing = []
        for record in records:
            if not await self.mark_one_synced(record.id):
                missing.append(record.id)
        return missing

    async def delete(self, set_id: str) -> None:
        await self.store.delete(RecordKind.SETS, set_id)

    async def delete_unsynced(self, set_id: str) -> bool:
        """Delete the set only while it is still unsynced."""
        deleted = await self.store.execute(
            f"DELETE FROM {RecordKind.SETS.value} WHERE id = ? AND synced = 0;",
            (set_id,),
        )
        return deleted > 0


class SyncQueueRepository:
    """Pending generic operations awaiting the queue phase."""

    def __init__(self, store: LocalStore, max_retries: int = MAX_RETRIES) -> None:
        self.store = store
        self.max_retries = max_retries

    async def enqueue(
        self,
        operation_type: str,
        entity_type: str,
        entity_id: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> QueueItem:
        item = QueueItem(
            operation_type=operation_type,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=payload,
        )
        await self.store.put(item)
        logger.debug(
            "Queued %s %s %s", item.operation_type, item.entity_type, item.entity_id
        )
        return item

    async def list_pending(self) -> List[QueueItem]:
        items = await self.store.get_all(RecordKind.SYNC_QUEUE)
        return sorted(items, key=lambda i: i.created_at)

    async def list_stale(self) -> List[QueueItem]:
        return [i for i in await self.list_pending() if i.is_stale(self.max_retries)]

    async def record_failure(self, item: QueueItem, error: str) -> QueueItem:
        failed = item.model_copy(
            update={
                "attempts": item.attempts + 1,
                "last_attempt": utc_now(),
                "error": error,
            }
        )
        await self.store.put(failed)
        return failed

    async def remove(self, item_id: str) -> None:
        await self.store.delete(RecordKind.SYNC_QUEUE, item_id)
