from __future__ import annotations

from memchain.persistence.sqlite_state_store import SQLiteStateStore
from memchain.persistence.state_store import JsonStateStore

__all__ = ["JsonStateStore", "SQLiteStateStore"]
