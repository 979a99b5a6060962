from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest
from memchain.models.jobs import JobKind
from memchain.queue.store import JsonlJobQueue, backoff_delay_ms

from tests.fakes import FakeClock


@pytest.fixture
def path(tmp_path: Path) -> Path:
    return tmp_path / "queue.jsonl"


def _make(path: Path, clock: FakeClock, **kwargs: object) -> JsonlJobQueue:
    return JsonlJobQueue(path, clock=clock, rng=lambda: 0.0, **kwargs)


async def test_enqueue_appends_one_line(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    assert job.attempts == 0
    assert len(path.read_text().splitlines()) == 1


async def test_dedup_returns_existing_job(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    first = await q.enqueue(JobKind.UPLOAD, {"n": 1}, dedup_key="k")
    second = await q.enqueue(JobKind.UPLOAD, {"n": 2}, dedup_key="k")

    assert second.id == first.id
    assert second.payload == {"n": 1}
    assert len(path.read_text().splitlines()) == 1


async def test_dedup_matches_abandoned_jobs(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    first = await q.enqueue(JobKind.ANCHOR, {}, dedup_key="k")
    await q.abandon(first.id, "bad request")
    again = await q.enqueue(JobKind.ANCHOR, {}, dedup_key="k")
    assert again.id == first.id
    assert again.abandoned


async def test_claim_is_fifo_and_leased(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    a = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    b = await q.enqueue(JobKind.UPLOAD, {"n": 2})

    first = await q.claim_next()
    second = await q.claim_next()
    assert first is not None and first.id == a.id
    assert second is not None and second.id == b.id
    assert await q.claim_next() is None


async def test_expired_lease_is_claimable_again(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock, lease_duration_s=30)
    job = await q.enqueue(JobKind.UPLOAD, {})
    assert (await q.claim_next()).id == job.id
    clock.advance(seconds=31)
    assert (await q.claim_next()).id == job.id


async def test_complete_removes_job_from_log(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    a = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    await q.enqueue(JobKind.UPLOAD, {"n": 2})
    await q.claim_next()
    await q.complete(a.id)

    assert await q.get(a.id) is None
    assert await q.size() == 1
    assert len(path.read_text().splitlines()) == 1


async def test_fail_backoff_doubles(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {})
    delays = []
    for _ in range(3):
        claimed = await q.claim_next()
        assert claimed is not None
        failed = await q.fail(claimed.id, RuntimeError("boom"), base_backoff_ms=1000)
        assert failed is not None and failed.next_eligible_at is not None
        delays.append(failed.next_eligible_at - clock.now)
        assert await q.claim_next() is None
        clock.now = failed.next_eligible_at

    assert delays == [timedelta(seconds=1), timedelta(seconds=2), timedelta(seconds=4)]
    stored = await q.get(job.id)
    assert stored is not None
    assert stored.attempts == 3
    assert stored.last_error == "RuntimeError: boom"


async def test_backoff_jitter_is_at_most_ten_percent() -> None:
    assert backoff_delay_ms(1000, 3, rng=lambda: 0.0) == 4000
    assert backoff_delay_ms(1000, 3, rng=lambda: 1.0) == pytest.approx(4400)


async def test_abandoned_after_max_attempts(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {}, max_attempts=2)
    for _ in range(2):
        claimed = await q.claim_next()
        assert claimed is not None
        await q.fail(claimed.id, "nope", base_backoff_ms=0)

    assert await q.claim_next() is None
    abandoned = await q.abandoned()
    assert [j.id for j in abandoned] == [job.id]
    assert await q.pending_count() == 0
    assert await q.size() == 1


async def test_requeue_resets_abandoned_job(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {})
    await q.abandon(job.id, "bad")
    await q.requeue(job.id)
    claimed = await q.claim_next()
    assert claimed is not None and claimed.id == job.id
    assert claimed.attempts == 0


async def test_replay_preserves_order_and_state(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    a = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    b = await q.enqueue(JobKind.UPLOAD, {"n": 2})
    c = await q.enqueue(JobKind.ANCHOR, {"n": 3})
    await q.claim_next()
    await q.fail(a.id, "flaky", base_backoff_ms=1000)

    # Simulated crash: a new instance replays the log; leases are gone.
    restarted = _make(path, clock)
    jobs = await restarted.jobs()
    assert [j.id for j in jobs] == [a.id, b.id, c.id]
    assert jobs[0].attempts == 1
    first = await restarted.claim_next()
    assert first is not None and first.id == b.id


async def test_claimed_job_is_redelivered_after_restart(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {})
    await q.claim_next()

    restarted = _make(path, clock)
    claimed = await restarted.claim_next()
    assert claimed is not None and claimed.id == job.id


async def test_replay_skips_malformed_lines(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    job = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    with path.open("a", encoding="utf-8") as fh:
        fh.write("{truncated\n")
        fh.write('{"kind": "teleport"}\n')

    restarted = _make(path, clock)
    assert [j.id for j in await restarted.jobs()] == [job.id]
    assert len(path.read_text().splitlines()) == 1


async def test_torn_tail_does_not_swallow_next_enqueue(path: Path, clock: FakeClock) -> None:
    q = _make(path, clock)
    first = await q.enqueue(JobKind.UPLOAD, {"n": 1})
    with path.open("a", encoding="utf-8") as fh:
        fh.write('{"id":"torn","kind":"up')

    after_crash = _make(path, clock)
    second = await after_crash.enqueue(JobKind.UPLOAD, {"n": 2})

    restarted = _make(path, clock)
    assert [j.id for j in await restarted.jobs()] == [first.id, second.id]
    assert path.read_text().endswith("\n")
