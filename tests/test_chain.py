from __future__ import annotations

from datetime import UTC, datetime, timedelta

from memchain.chain import ViolationCode, validate, verify_chain_integrity
from memchain.models.records import ChainEntry, Record

T0 = datetime(2026, 3, 14, 9, 0, tzinfo=UTC)


def _record(n: int, prev: ChainEntry | None, *, stream_id: str = "alice:bot", **overrides) -> Record:
    fields = {
        "stream_id": stream_id,
        "owner": "alice",
        "agent_id": stream_id.split(":", 1)[1],
        "created_at": T0 + timedelta(minutes=n),
        "date": "2026-03-14",
        "chain_prev": prev.pointer if prev else None,
        "chain_prev_hash": prev.record.content_hash if prev else None,
        "payload": {"n": n},
    }
    fields.update(overrides)
    return Record(**fields).seal()


def _chain(length: int) -> list[ChainEntry]:
    entries: list[ChainEntry] = []
    for n in range(length):
        prev = entries[-1] if entries else None
        entries.append(ChainEntry(pointer=f"bafy{n}", record=_record(n, prev)))
    return entries


def test_valid_chain_has_no_breaks() -> None:
    report = verify_chain_integrity(_chain(3))
    assert report.ok
    assert report.checked == 3


def test_genesis_must_not_link_backwards() -> None:
    entry = ChainEntry(pointer="p", record=_record(0, None, chain_prev="ghost"))
    result = validate(entry, None)
    assert not result.ok
    assert [v.code for v in result.violations] == [ViolationCode.GENESIS_HAS_PREV]


def test_wrong_prev_hash_is_exactly_one_break_at_its_index() -> None:
    entries = _chain(3)
    bad = entries[2].record.model_copy(update={"chain_prev_hash": "0" * 64}).seal()
    entries[2] = ChainEntry(pointer=entries[2].pointer, record=bad)

    report = verify_chain_integrity(entries)
    assert len(report.breaks) == 1
    assert report.breaks[0].index == 2
    assert report.breaks[0].pointer == "bafy2"
    assert [v.code for v in report.breaks[0].violations] == [ViolationCode.PREV_HASH_MISMATCH]


def test_reports_every_violation_without_stopping() -> None:
    entries = _chain(4)
    entries[1] = ChainEntry(
        pointer="bafy1",
        record=entries[1].record.model_copy(update={"chain_prev": "elsewhere"}),
    )
    entries[3] = ChainEntry(
        pointer="bafy3",
        record=entries[3].record.model_copy(update={"created_at": T0 - timedelta(days=1)}),
    )
    report = verify_chain_integrity(entries)
    assert [b.index for b in report.breaks] == [1, 3]
    assert report.breaks[0].violations[0].code is ViolationCode.PREV_POINTER_MISMATCH
    assert report.breaks[1].violations[0].code is ViolationCode.TIME_REGRESSION


def test_stream_mismatch_is_a_violation() -> None:
    first = ChainEntry(pointer="p0", record=_record(0, None))
    other = _record(1, first, stream_id="alice:other")
    result = validate(ChainEntry(pointer="p1", record=other), first)
    assert [v.code for v in result.violations] == [ViolationCode.STREAM_MISMATCH]


def test_partial_window_skips_genesis_check() -> None:
    window = _chain(4)[1:]
    assert not verify_chain_integrity(window).ok
    assert verify_chain_integrity(window, partial=True).ok


def test_equal_timestamps_are_allowed() -> None:
    first = ChainEntry(pointer="p0", record=_record(0, None))
    second = _record(0, first, payload={"n": "same minute"})
    assert validate(ChainEntry(pointer="p1", record=second), first).ok
