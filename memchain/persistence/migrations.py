"""Schema migrations for the SQLite state backend.

``migrations/NNN_name.sql`` files apply in name order, once each. The
``schema_migrations`` table remembers every applied file with its SHA-256;
an applied file whose content later changes stops startup instead of leaving
the schema and the migration history out of step.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite

from memchain.errors import FormatError

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_HISTORY_DDL = """CREATE TABLE IF NOT EXISTS schema_migrations (
    name TEXT PRIMARY KEY,
    sha256 TEXT NOT NULL,
    applied_at TEXT NOT NULL
)"""


def pending_migrations(applied: dict[str, str], migrations_dir: Path) -> list[Path]:
    """Migration files not yet in ``applied``; raises on an edited applied file."""
    pending: list[Path] = []
    for sql_file in sorted(migrations_dir.glob("*.sql")):
        digest = hashlib.sha256(sql_file.read_bytes()).hexdigest()
        recorded = applied.get(sql_file.name)
        if recorded is None:
            pending.append(sql_file)
        elif recorded != digest:
            raise FormatError(
                f"migration {sql_file.name} was edited after it was applied "
                f"(recorded {recorded[:12]}, now {digest[:12]})"
            )
    return pending


async def run_migrations(db_path: str | Path, migrations_dir: Path | None = None) -> list[str]:
    """Apply pending migrations in order and return the names applied."""
    directory = migrations_dir or MIGRATIONS_DIR
    async with aiosqlite.connect(str(db_path)) as db:
        await db.execute(_HISTORY_DDL)
        await db.commit()
        cursor = await db.execute("SELECT name, sha256 FROM schema_migrations")
        applied = {name: digest for name, digest in await cursor.fetchall()}

        names: list[str] = []
        for sql_file in pending_migrations(applied, directory):
            await db.executescript(sql_file.read_text(encoding="utf-8"))
            await db.execute(
                "INSERT INTO schema_migrations (name, sha256, applied_at) VALUES (?, ?, ?)",
                (
                    sql_file.name,
                    hashlib.sha256(sql_file.read_bytes()).hexdigest(),
                    datetime.now(UTC).isoformat(),
                ),
            )
            await db.commit()
            names.append(sql_file.name)
            logger.info("Applied migration %s to %s", sql_file.name, db_path)
    return names


__all__ = ["MIGRATIONS_DIR", "pending_migrations", "run_migrations"]
