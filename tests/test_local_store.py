import os
import sys
import sqlite3

import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from db import LocalStore, StorageError
from models import QueueItem, RecordKind, Session, SetRecord


def _session(**kw) -> Session:
    data = {"athlete_id": "athlete-1", "workout_plan_id": "plan-1"}
    data.update(kw)
    return Session(**data)


@pytest.mark.asyncio
async def test_open_creates_schema_and_indices(tmp_path):
    db_file = str(tmp_path / "offline.db")
    store = LocalStore(db_file)
    await store.open()
    await store.open()
    assert store.is_open

    conn = sqlite3.connect(db_file)
    tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    indices = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
    version = conn.execute("PRAGMA user_version").fetchone()[0]
    conn.close()

    assert {"sessions", "exercises", "sets", "sync_queue"} <= tables
    assert "idx_sessions_athlete_id" in indices
    assert "idx_sets_session_exercise_id" in indices
    assert "idx_sync_queue_attempts" in indices
    assert version == LocalStore.SCHEMA_VERSION


@pytest.mark.asyncio
async def test_open_failure_raises_storage_error(tmp_path):
    store = LocalStore(str(tmp_path / "missing" / "dir" / "offline.db"))
    with pytest.raises(StorageError):
        await store.open()
    assert not store.is_open


@pytest.mark.asyncio
async def test_migration_is_additive(tmp_path):
    db_file = str(tmp_path / "old.db")
    conn = sqlite3.connect(db_file)
    conn.execute(
        "CREATE TABLE sessions (id TEXT PRIMARY KEY, athlete_id TEXT NOT NULL, "
        "workout_plan_id TEXT NOT NULL, status TEXT NOT NULL, started_at TEXT NOT NULL, "
        "created_at TEXT NOT NULL, updated_at TEXT NOT NULL, synced INTEGER NOT NULL DEFAULT 0)"
    )
    conn.execute("CREATE INDEX legacy_idx ON sessions (status)")
    conn.execute("CREATE TABLE scratch (id INTEGER)")
    conn.execute(
        "INSERT INTO sessions VALUES ('s1', 'a1', 'p1', 'completed', "
        "'2024-01-01T10:00:00+00:00', '2024-01-01T10:00:00+00:00', "
        "'2024-01-01T11:00:00+00:00', 1)"
    )
    conn.commit()
    conn.close()

    store = LocalStore(db_file)
    await store.open()

    session = await store.get(RecordKind.SESSIONS, "s1")
    assert session.status == "completed"
    assert session.synced is True
    assert session.workout_name is None
    assert session.total_duration_seconds == 0

    conn = sqlite3.connect(db_file)
    cols = [r[1] for r in conn.execute("PRAGMA table_info(sessions)")]
    names = {r[0] for r in conn.execute("SELECT name FROM sqlite_master")}
    conn.close()
    assert "current_exercise_index" in cols
    assert "scratch" in names
    assert "legacy_idx" in names


@pytest.mark.asyncio
async def test_put_get_upsert_delete(tmp_path):
    store = LocalStore(str(tmp_path / "offline.db"))
    await store.open()
    session = _session(id="s1")
    await store.put(session)
    assert await store.get(RecordKind.SESSIONS, "s1") == session

    await store.put(session.model_copy(update={"status": "paused"}))
    rows = await store.get_all(RecordKind.SESSIONS)
    assert len(rows) == 1
    assert rows[0].status == "paused"

    await store.delete(RecordKind.SESSIONS, "s1")
    assert await store.get(RecordKind.SESSIONS, "s1") is None
    assert await store.get_all("sessions") == []


@pytest.mark.asyncio
async def test_get_by_index(tmp_path):
    store = LocalStore(str(tmp_path / "offline.db"))
    await store.open()
    await store.put(_session(id="s1", synced=True))
    await store.put(_session(id="s2"))
    await store.put(_session(id="s3", athlete_id="athlete-2"))
    await store.put(
        SetRecord(session_id="s1", session_exercise_id="e1", set_number=1, reps_completed=5)
    )

    unsynced = await store.get_by_index(RecordKind.SESSIONS, "synced", False)
    assert [s.id for s in unsynced] == ["s2", "s3"]
    mine = await store.get_by_index(RecordKind.SESSIONS, "athlete_id", "athlete-1")
    assert [s.id for s in mine] == ["s1", "s2"]
    sets = await store.get_by_index(RecordKind.SETS, "session_exercise_id", "e1")
    assert sets[0].reps_completed == 5

    with pytest.raises(ValueError):
        await store.get_by_index(RecordKind.SESSIONS, "notes", "x")


@pytest.mark.asyncio
async def test_queue_payload_is_stored_as_json(tmp_path):
    store = LocalStore(str(tmp_path / "offline.db"))
    item = QueueItem(
        operation_type="update",
        entity_type="exercise",
        entity_id="e1",
        payload={"is_completed": True, "sets_completed": 3},
    )
    await store.put(item)
    loaded = await store.get(RecordKind.SYNC_QUEUE, item.id)
    assert loaded.payload == {"is_completed": True, "sets_completed": 3}
    assert loaded.attempts == 0


@pytest.mark.asyncio
async def test_clear(tmp_path):
    store = LocalStore(str(tmp_path / "offline.db"))
    await store.put(_session())
    await store.put(QueueItem(operation_type="delete", entity_type="set", entity_id="x"))
    await store.clear()
    for kind in RecordKind:
        assert await store.get_all(kind) == []
