"""Deterministic serialization used as the content-hash input.

Objects are emitted with keys sorted lexicographically and no insignificant
whitespace, so two structurally equal records encode to identical bytes no
matter how their fields were ordered when built.
"""

from __future__ import annotations

import json

from pydantic import BaseModel


def _to_plain(value: object) -> object:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


def encode(value: object) -> bytes:
    """Return the canonical UTF-8 encoding of *value*.

    Accepts plain JSON-compatible data or a pydantic model (dumped in JSON
    mode first). NaN and infinities are rejected because they have no JSON
    literal.
    """
    return json.dumps(
        _to_plain(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    ).encode("utf-8")


def encode_str(value: object) -> str:
    return encode(value).decode("utf-8")


__all__ = ["encode", "encode_str"]
