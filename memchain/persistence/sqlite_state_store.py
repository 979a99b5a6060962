"""SQLite-backed stream state store.

Same contract as :class:`JsonStateStore`; each ``set()`` is one committed
upsert, so durability comes from SQLite's journal instead of file renames.
Call :meth:`initialize` once before use.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import aiosqlite

from memchain.models.records import StreamState, utc_now
from memchain.persistence.migrations import run_migrations
from memchain.persistence.state_store import merge_state


def _row_to_state(row: aiosqlite.Row) -> StreamState:
    return StreamState.model_validate(
        {
            "stream_id": row["stream_id"],
            "last_pointer": row["last_pointer"],
            "last_content_hash": row["last_content_hash"],
            "last_anchor_date": row["last_anchor_date"],
            "last_anchor_receipt": row["last_anchor_receipt"],
            "last_anchor_pointer": row["last_anchor_pointer"],
            "updated_at": row["updated_at"],
        }
    )


class SQLiteStateStore:
    def __init__(self, db_path: str | Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.db_path = str(db_path)
        self._clock = clock

    async def initialize(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        await run_migrations(self.db_path)

    async def get(self, stream_id: str) -> StreamState:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM stream_state WHERE stream_id = ?", (stream_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return StreamState(stream_id=stream_id)
        return _row_to_state(row)

    async def set(self, stream_id: str, **updates: object) -> StreamState:
        merged = merge_state(await self.get(stream_id), updates, self._clock())
        data = merged.model_dump(mode="json")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """INSERT INTO stream_state (
                    stream_id, last_pointer, last_content_hash,
                    last_anchor_date, last_anchor_receipt, last_anchor_pointer, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(stream_id) DO UPDATE SET
                    last_pointer = excluded.last_pointer,
                    last_content_hash = excluded.last_content_hash,
                    last_anchor_date = excluded.last_anchor_date,
                    last_anchor_receipt = excluded.last_anchor_receipt,
                    last_anchor_pointer = excluded.last_anchor_pointer,
                    updated_at = excluded.updated_at""",
                (
                    data["stream_id"],
                    data["last_pointer"],
                    data["last_content_hash"],
                    data["last_anchor_date"],
                    data["last_anchor_receipt"],
                    data["last_anchor_pointer"],
                    data["updated_at"],
                ),
            )
            await db.commit()
        return merged

    async def list_streams(self) -> list[str]:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("SELECT stream_id FROM stream_state ORDER BY stream_id")
            rows = await cursor.fetchall()
        return [row[0] for row in rows]


__all__ = ["SQLiteStateStore"]
