from __future__ import annotations

import json
from pathlib import Path

import pytest
from memchain.errors import FormatError
from memchain.persistence.migrations import run_migrations
from memchain.persistence.sqlite_state_store import SQLiteStateStore
from memchain.persistence.state_store import JsonStateStore

from tests.fakes import FakeClock


async def test_unknown_stream_returns_empty_state(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    state = await store.get("alice:bot")
    assert state.stream_id == "alice:bot"
    assert state.last_pointer is None
    assert state.last_content_hash is None
    assert state.last_anchor_date is None


async def test_set_persists_before_returning(tmp_path: Path, clock: FakeClock) -> None:
    path = tmp_path / "state.json"
    store = JsonStateStore(path, clock=clock)
    await store.set("alice:bot", last_pointer="bafy1", last_content_hash="h1")

    document = json.loads(path.read_text())
    assert document["version"] == 1
    assert document["streams"]["alice:bot"]["last_pointer"] == "bafy1"

    reopened = JsonStateStore(path)
    state = await reopened.get("alice:bot")
    assert state.last_content_hash == "h1"
    assert state.updated_at == clock.now


async def test_set_merges_partial_updates(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    await store.set("alice:bot", last_pointer="bafy1", last_content_hash="h1")
    state = await store.set("alice:bot", last_anchor_date="2026-03-14")
    assert state.last_pointer == "bafy1"
    assert state.last_anchor_date == "2026-03-14"


async def test_unknown_field_is_rejected(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    with pytest.raises(ValueError, match="unknown"):
        await store.set("alice:bot", pointer="bafy1")


async def test_list_streams(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    await store.set("alice:a", last_pointer="p1")
    await store.set("alice:b", last_pointer="p2")
    assert sorted(await store.list_streams()) == ["alice:a", "alice:b"]


def test_corrupt_file_raises_instead_of_resetting(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text("{not json")
    with pytest.raises(FormatError):
        JsonStateStore(path)


def test_non_mapping_stream_entry_raises_format_error(tmp_path: Path) -> None:
    path = tmp_path / "state.json"
    path.write_text('{"version": 1, "streams": {"alice:bot": ["p1"]}}')
    with pytest.raises(FormatError, match="not a mapping"):
        JsonStateStore(path)


async def test_no_temp_file_left_behind(tmp_path: Path) -> None:
    store = JsonStateStore(tmp_path / "state.json")
    await store.set("alice:bot", last_pointer="p1")
    assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]


async def test_sqlite_store_round_trip(tmp_path: Path, clock: FakeClock) -> None:
    store = SQLiteStateStore(tmp_path / "state.db", clock=clock)
    await store.initialize()

    empty = await store.get("alice:bot")
    assert empty.last_pointer is None

    await store.set("alice:bot", last_pointer="bafy1", last_content_hash="h1")
    await store.set("alice:bot", last_anchor_date="2026-03-14", last_anchor_receipt="r1")

    reopened = SQLiteStateStore(tmp_path / "state.db")
    await reopened.initialize()
    state = await reopened.get("alice:bot")
    assert state.last_pointer == "bafy1"
    assert state.last_anchor_receipt == "r1"
    assert state.updated_at == clock.now
    assert await reopened.list_streams() == ["alice:bot"]


async def test_sqlite_migrations_are_idempotent(tmp_path: Path) -> None:
    store = SQLiteStateStore(tmp_path / "state.db")
    await store.initialize()
    await store.initialize()
    await store.set("alice:bot", last_pointer="p1")
    assert (await store.get("alice:bot")).last_pointer == "p1"


async def test_migrations_apply_once_and_reject_edits(tmp_path: Path) -> None:
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    (migrations / "001_init.sql").write_text("CREATE TABLE t (id INTEGER PRIMARY KEY);")
    db_path = tmp_path / "m.db"

    assert await run_migrations(db_path, migrations) == ["001_init.sql"]
    assert await run_migrations(db_path, migrations) == []

    (migrations / "001_init.sql").write_text("CREATE TABLE t (id TEXT);")
    with pytest.raises(FormatError, match="edited after it was applied"):
        await run_migrations(db_path, migrations)
