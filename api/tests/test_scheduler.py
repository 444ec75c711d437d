from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from harvester.services.errors import TransientContentionError
from harvester.services.records import JobDraft
from harvester.services.scheduler import Scheduler
from harvester.services.store import InMemoryJobStore

OWNER = "11111111-1111-1111-1111-111111111111"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class InterleavingStore(InMemoryJobStore):
    """Yields to the event loop before each claim so concurrent leases interleave."""

    async def claim_pending_job(self, job_id: int, *, lease_owner: str, lease_expires_at: datetime):
        await asyncio.sleep(0)
        return await super().claim_pending_job(job_id, lease_owner=lease_owner, lease_expires_at=lease_expires_at)


class AlwaysContendedStore(InMemoryJobStore):
    def __init__(self, clock: FakeClock) -> None:
        super().__init__(clock=clock)
        self.claim_attempts = 0

    async def claim_pending_job(self, job_id: int, *, lease_owner: str, lease_expires_at: datetime):
        self.claim_attempts += 1
        raise TransientContentionError(f"job {job_id} claimed elsewhere")


def _clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


async def _enqueue(store: InMemoryJobStore, keyword_id: int, priority: int) -> int:
    job = await store.insert_job(
        JobDraft(
            keyword_id=keyword_id,
            job_type="instagram",
            priority=priority,
            user_id=OWNER,
            created_by=OWNER,
            max_retries=3,
        )
    )
    return job.id


def test_leases_follow_priority_then_creation_order() -> None:
    clock = _clock()
    store = InMemoryJobStore(clock=clock)
    scheduler = Scheduler(store, clock=clock)
    keyword = store.add_keyword("coffee roasters", OWNER)

    async def scenario() -> list[int | None]:
        t1 = await _enqueue(store, keyword.id, 5)
        clock.advance(seconds=1)
        t2 = await _enqueue(store, keyword.id, 9)
        clock.advance(seconds=1)
        t3 = await _enqueue(store, keyword.id, 9)
        leased = []
        for _ in range(4):
            job = await scheduler.lease_next_job("worker-a")
            leased.append(job.id if job else None)
        assert leased == [t2, t3, t1, None]
        return leased

    asyncio.run(scenario())


def test_lease_marks_job_queued_with_owner_and_expiry() -> None:
    clock = _clock()
    store = InMemoryJobStore(clock=clock)
    scheduler = Scheduler(store, lease_seconds=90, clock=clock)
    keyword = store.add_keyword("coffee roasters", OWNER)
    asyncio.run(_enqueue(store, keyword.id, 5))

    job = asyncio.run(scheduler.lease_next_job("worker-a"))

    assert job is not None
    assert job.status == "queued"
    assert job.lease_owner == "worker-a"
    assert job.lease_expires_at == clock.now + timedelta(seconds=90)
    assert store.jobs[job.id] == job


def test_empty_queue_returns_none() -> None:
    store = InMemoryJobStore(clock=_clock())

    assert asyncio.run(Scheduler(store).lease_next_job()) is None


def test_concurrent_leases_never_hand_out_the_same_job() -> None:
    clock = _clock()
    store = InterleavingStore(clock=clock)
    scheduler = Scheduler(store, clock=clock)
    keyword = store.add_keyword("coffee roasters", OWNER)

    async def scenario() -> list:
        for priority in (3, 8, 8, 5, 1):
            await _enqueue(store, keyword.id, priority)
            clock.advance(seconds=1)
        return await asyncio.gather(*(scheduler.lease_next_job(f"worker-{index}") for index in range(7)))

    results = asyncio.run(scenario())
    leased_ids = [job.id for job in results if job is not None]

    assert len(leased_ids) == 5
    assert len(set(leased_ids)) == 5
    assert results.count(None) == 2
    assert {job.lease_owner for job in store.jobs.values()} == {job.lease_owner for job in results if job}


def test_contended_candidates_are_skipped_and_lease_gives_up_after_bounded_rounds() -> None:
    clock = _clock()
    store = AlwaysContendedStore(clock)
    scheduler = Scheduler(store, claim_rounds=2, candidate_batch_size=10, clock=clock)
    keyword = store.add_keyword("coffee roasters", OWNER)

    async def scenario():
        for _ in range(3):
            await _enqueue(store, keyword.id, 5)
        return await scheduler.lease_next_job("worker-a")

    assert asyncio.run(scenario()) is None
    assert store.claim_attempts == 6


def test_expired_leases_return_to_pending_without_counting_a_retry() -> None:
    clock = _clock()
    store = InMemoryJobStore(clock=clock)
    scheduler = Scheduler(store, lease_seconds=60, clock=clock)
    keyword = store.add_keyword("coffee roasters", OWNER)

    async def scenario() -> None:
        first = await _enqueue(store, keyword.id, 5)
        second = await _enqueue(store, keyword.id, 4)
        await scheduler.lease_next_job("worker-a")
        await scheduler.lease_next_job("worker-b")
        store.jobs[second] = replace(store.jobs[second], status="running", started_at=clock())

        clock.advance(seconds=30)
        assert await scheduler.reap_expired_leases() == 0

        clock.advance(seconds=31)
        assert await scheduler.reap_expired_leases() == 2
        assert await scheduler.reap_expired_leases() == 0

        for job_id in (first, second):
            job = store.jobs[job_id]
            assert job.status == "pending"
            assert job.lease_owner is None
            assert job.lease_expires_at is None
            assert job.started_at is None
            assert job.retry_count == 0

    asyncio.run(scenario())
