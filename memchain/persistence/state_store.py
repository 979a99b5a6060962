"""JSON-file stream state store.

One file holds every stream's chain head::

    {"version": 1, "streams": {"<owner>:<agent>": {...StreamState...}}}

Each ``set()`` rewrites the whole file before returning, so a crash right
after an upload or anchor call cannot lose the state update that followed it.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from memchain.errors import FormatError
from memchain.models.records import StreamState, utc_now
from memchain.persistence.files import atomic_write_text

logger = logging.getLogger(__name__)

STATE_FILE_VERSION = 1

MUTABLE_FIELDS: frozenset[str] = frozenset(
    {
        "last_pointer",
        "last_content_hash",
        "last_anchor_date",
        "last_anchor_receipt",
        "last_anchor_pointer",
    }
)


def merge_state(
    current: StreamState, updates: dict[str, object], now: datetime
) -> StreamState:
    unknown = set(updates) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown stream state fields: {sorted(unknown)}")
    data = current.model_dump()
    data.update(updates)
    data["updated_at"] = now
    return StreamState.model_validate(data)


class JsonStateStore:
    def __init__(self, path: str | Path, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.path = Path(path)
        self._clock = clock
        self._streams: dict[str, StreamState] = {}
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("No state file at %s, starting empty", self.path)
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            streams = raw.get("streams", {}) if isinstance(raw, dict) else None
            if not isinstance(streams, dict):
                raise FormatError(f"state file {self.path} has no streams mapping")
            for stream_id, data in streams.items():
                if not isinstance(data, dict):
                    raise FormatError(f"state file {self.path}: entry {stream_id} is not a mapping")
                self._streams[stream_id] = StreamState.model_validate(
                    {**data, "stream_id": stream_id}
                )
        except (json.JSONDecodeError, ValidationError) as exc:
            # Refuse to restart every chain at genesis on a corrupt file.
            raise FormatError(f"state file {self.path} is unreadable: {exc}") from exc
        logger.debug("Loaded %d stream states from %s", len(self._streams), self.path)

    def _save(self, streams: dict[str, StreamState]) -> None:
        document = {
            "version": STATE_FILE_VERSION,
            "streams": {
                stream_id: state.model_dump(mode="json")
                for stream_id, state in sorted(streams.items())
            },
        }
        atomic_write_text(self.path, json.dumps(document, indent=2, sort_keys=True))

    async def get(self, stream_id: str) -> StreamState:
        state = self._streams.get(stream_id)
        if state is None:
            return StreamState(stream_id=stream_id)
        return state.model_copy()

    async def set(self, stream_id: str, **updates: object) -> StreamState:
        current = self._streams.get(stream_id) or StreamState(stream_id=stream_id)
        merged = merge_state(current, updates, self._clock())
        streams = {**self._streams, stream_id: merged}
        self._save(streams)
        self._streams = streams
        return merged.model_copy()

    async def list_streams(self) -> list[str]:
        return list(self._streams)


__all__ = ["MUTABLE_FIELDS", "STATE_FILE_VERSION", "JsonStateStore", "merge_state"]
