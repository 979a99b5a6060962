from __future__ import annotations

import math

import pytest
from memchain.canonical import encode, encode_str
from memchain.models.anchors import AnchorReceipt


def test_key_order_does_not_change_encoding() -> None:
    a = {"b": 1, "a": {"y": [1, 2], "x": None}}
    b = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert encode(a) == encode(b)


def test_no_insignificant_whitespace() -> None:
    assert encode_str({"b": [1, 2], "a": "x"}) == '{"a":"x","b":[1,2]}'


def test_unicode_is_not_escaped() -> None:
    assert encode({"msg": "héllo ✓"}) == '{"msg":"héllo ✓"}'.encode()


def test_nan_is_rejected() -> None:
    with pytest.raises(ValueError):
        encode({"value": math.nan})


def test_pydantic_model_is_dumped_in_json_mode() -> None:
    receipt = AnchorReceipt(receipt_id="r1", sequence_number=3)
    assert encode(receipt) == b'{"receipt_id":"r1","sequence_number":3,"time":null}'
