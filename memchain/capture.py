"""Turn an agent conversation into a sanitized record payload.

Two strategies: ``last_turn`` keeps the latest user and assistant messages,
``full_session`` keeps every message and falls back to the last turn when the
caller supplied no message list. A bare ``text`` capture is stored as a
single ``note`` message.

Every message is truncated to the configured length and scrubbed of
secret-looking tokens before it can reach the hash chain.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel

from memchain.models.records import utc_now

TRUNCATION_SUFFIX = "... [truncated]"
SUMMARY_SNIPPET_CHARS = 100
DEFAULT_MAX_MESSAGE_CHARS = 50_000

# Base58 runs this long are almost always private keys.
_BASE58_SECRET = re.compile(r"[1-9A-HJ-NP-Za-km-z]{64,}")
_API_KEY = re.compile(r"sk-[a-zA-Z0-9]{32,}")

_TAG_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("error", ("error", "failed")),
    ("success", ("success", "completed")),
    ("code", ("code", "function")),
    ("question", ("question", "?")),
)


class CaptureStrategy(StrEnum):
    LAST_TURN = "last_turn"
    FULL_SESSION = "full_session"


class CaptureMessage(BaseModel):
    role: str = "unknown"
    content: str = ""
    timestamp: datetime | None = None


class CaptureInput(BaseModel):
    """What a caller hands to ``MemoryPipeline.save``."""

    text: str | None = None
    user_message: str | None = None
    assistant_message: str | None = None
    messages: list[CaptureMessage] | None = None
    agent_id: str | None = None
    session_id: str | None = None
    timestamp: datetime | None = None


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_SUFFIX


def sanitize(text: str) -> str:
    text = _BASE58_SECRET.sub("[REDACTED_KEY]", text)
    return _API_KEY.sub("[REDACTED_API_KEY]", text)


def _message(role: str, content: str, timestamp: datetime, max_chars: int) -> dict[str, Any]:
    return {
        "role": role,
        "content": sanitize(truncate(content, max_chars)),
        "timestamp": timestamp.isoformat(),
    }


def _last_turn(capture: CaptureInput, now: datetime, max_chars: int) -> list[dict[str, Any]]:
    messages = []
    if capture.user_message:
        messages.append(_message("user", capture.user_message, now, max_chars))
    if capture.assistant_message:
        messages.append(_message("assistant", capture.assistant_message, now, max_chars))
    return messages


def summarize(messages: list[dict[str, Any]]) -> str:
    if not messages:
        return "No messages"
    parts = []
    for role, label in (("user", "User"), ("assistant", "Assistant"), ("note", "Note")):
        first = next((m for m in messages if m["role"] == role), None)
        if first is not None:
            parts.append(f"{label}: {first['content'][:SUMMARY_SNIPPET_CHARS]}")
    return " | ".join(parts)


def extract_tags(messages: list[dict[str, Any]]) -> list[str]:
    contents = [m["content"].lower() for m in messages]
    return [
        tag
        for tag, needles in _TAG_RULES
        if any(needle in content for content in contents for needle in needles)
    ]


def capture_payload(
    capture: CaptureInput,
    strategy: CaptureStrategy = CaptureStrategy.LAST_TURN,
    max_message_chars: int = DEFAULT_MAX_MESSAGE_CHARS,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Build the record payload ``{summary, messages, tags, metadata}``.

    Messages without their own timestamp get ``capture.timestamp`` (or
    ``now``), so two captures of the same conversation under the same clock
    hash identically.
    """
    captured_at = capture.timestamp or now or utc_now()
    strategy = CaptureStrategy(strategy)
    effective = strategy

    if strategy is CaptureStrategy.FULL_SESSION and capture.messages is not None:
        messages = [
            _message(m.role, m.content, m.timestamp or captured_at, max_message_chars)
            for m in capture.messages
        ]
    else:
        if strategy is CaptureStrategy.FULL_SESSION:
            effective = CaptureStrategy.LAST_TURN
        messages = _last_turn(capture, captured_at, max_message_chars)

    if capture.text:
        messages.append(_message("note", capture.text, captured_at, max_message_chars))

    return {
        "summary": summarize(messages),
        "messages": messages,
        "tags": extract_tags(messages),
        "metadata": {
            "capture_strategy": effective.value,
            "message_count": len(messages),
        },
    }


__all__ = [
    "DEFAULT_MAX_MESSAGE_CHARS",
    "TRUNCATION_SUFFIX",
    "CaptureInput",
    "CaptureMessage",
    "CaptureStrategy",
    "capture_payload",
    "extract_tags",
    "sanitize",
    "summarize",
    "truncate",
]
