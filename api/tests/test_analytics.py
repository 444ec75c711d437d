from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone

import pytest

from harvester.services.analytics import AnalyticsAggregator, aggregate_period
from harvester.services.errors import NotFoundError, ValidationError
from harvester.services.records import JobDraft, PeriodActivity
from harvester.services.store import InMemoryJobStore

OWNER = "11111111-1111-1111-1111-111111111111"
DAY = date(2026, 3, 1)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _at(hour: int, day: date = DAY) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


async def _add_job(store: InMemoryJobStore, clock: FakeClock, keyword_id: int, *, status: str, duration: int | None) -> None:
    job = await store.insert_job(
        JobDraft(
            keyword_id=keyword_id,
            job_type="google_maps",
            priority=5,
            user_id=OWNER,
            created_by=OWNER,
            max_retries=3,
        )
    )
    if status in {"completed", "failed"}:
        started_at = clock.now
        completed_at = started_at + timedelta(seconds=duration or 0)
        store.jobs[job.id] = replace(
            job,
            status=status,
            started_at=started_at,
            completed_at=completed_at,
            actual_duration=duration,
        )


def _seed(store: InMemoryJobStore, clock: FakeClock) -> int:
    keyword = store.add_keyword("coffee roasters", OWNER)

    store.add_post(keyword.id, likes_count=10, comments_count=2, created_at=_at(9))
    store.add_post(keyword.id, likes_count=21, comments_count=5, created_at=_at(23))
    store.add_post(keyword.id, likes_count=900, comments_count=90, created_at=_at(23, DAY - timedelta(days=1)))

    store.add_place(keyword.id, rating=4.5, review_count=10, created_at=_at(8))
    store.add_place(keyword.id, rating=4.0, review_count=20, created_at=_at(12))
    store.add_place(keyword.id, rating=None, review_count=None, created_at=_at(13))
    store.add_place(keyword.id, rating=1.0, review_count=99, created_at=_at(0, DAY + timedelta(days=1)))

    async def add_jobs() -> None:
        clock.now = _at(10)
        await _add_job(store, clock, keyword.id, status="completed", duration=30)
        await _add_job(store, clock, keyword.id, status="completed", duration=45)
        await _add_job(store, clock, keyword.id, status="failed", duration=None)
        clock.now = _at(10, DAY + timedelta(days=1))
        await _add_job(store, clock, keyword.id, status="completed", duration=600)

    asyncio.run(add_jobs())
    return keyword.id


def test_aggregate_period_of_no_activity_is_all_zero() -> None:
    metrics = aggregate_period(PeriodActivity())

    assert metrics.instagram_posts_count == 0
    assert metrics.instagram_avg_likes == 0.0
    assert metrics.instagram_total_engagement == 0
    assert metrics.google_maps_avg_rating is None
    assert metrics.total_jobs_run == 0
    assert metrics.avg_job_duration is None
    assert metrics.job_success_rate is None


def test_compute_period_rolls_up_activity_inside_the_period() -> None:
    clock = FakeClock(_at(6, DAY + timedelta(days=2)))
    store = InMemoryJobStore(clock=clock)
    keyword_id = _seed(store, clock)
    aggregator = AnalyticsAggregator(store, clock=clock)

    period = asyncio.run(aggregator.compute_period(keyword_id, DAY, DAY, "daily"))
    metrics = period.metrics

    assert period.user_id == OWNER
    assert metrics.instagram_posts_count == 2
    assert metrics.instagram_avg_likes == 15.5
    assert metrics.instagram_avg_comments == 3.5
    assert metrics.instagram_total_engagement == 38
    assert metrics.google_maps_places_count == 3
    assert metrics.google_maps_avg_rating == 4.25
    assert metrics.google_maps_total_reviews == 30
    assert metrics.total_jobs_run == 3
    assert metrics.successful_jobs == 2
    assert metrics.failed_jobs == 1
    assert metrics.avg_job_duration == 37.5
    assert metrics.job_success_rate == 66.67


def test_compute_period_twice_yields_identical_row() -> None:
    clock = FakeClock(_at(6, DAY + timedelta(days=2)))
    store = InMemoryJobStore(clock=clock)
    keyword_id = _seed(store, clock)
    aggregator = AnalyticsAggregator(store, clock=clock)

    first = asyncio.run(aggregator.compute_period(keyword_id, DAY, DAY, "daily"))
    second = asyncio.run(aggregator.compute_period(keyword_id, DAY, DAY, "daily"))

    assert first.metrics.as_dict() == second.metrics.as_dict()
    assert repr(first.metrics) == repr(second.metrics)
    assert first.id == second.id
    assert len(store.analytics) == 1


def test_compute_period_over_a_wider_range_includes_boundary_days() -> None:
    clock = FakeClock(_at(6, DAY + timedelta(days=2)))
    store = InMemoryJobStore(clock=clock)
    keyword_id = _seed(store, clock)
    aggregator = AnalyticsAggregator(store, clock=clock)

    period = asyncio.run(
        aggregator.compute_period(keyword_id, DAY - timedelta(days=1), DAY + timedelta(days=1), "weekly")
    )

    assert period.metrics.instagram_posts_count == 3
    assert period.metrics.google_maps_places_count == 4
    assert period.metrics.total_jobs_run == 4
    assert len(store.analytics) == 1


def test_compute_period_validates_inputs() -> None:
    store = InMemoryJobStore()
    keyword = store.add_keyword("coffee roasters", OWNER)
    aggregator = AnalyticsAggregator(store)

    with pytest.raises(NotFoundError):
        asyncio.run(aggregator.compute_period(999, DAY, DAY, "daily"))
    with pytest.raises(ValidationError):
        asyncio.run(aggregator.compute_period(keyword.id, DAY, DAY - timedelta(days=1), "daily"))
    with pytest.raises(ValidationError):
        asyncio.run(aggregator.compute_period(keyword.id, DAY, DAY, "hourly"))


class FlakyStore(InMemoryJobStore):
    def __init__(self, clock: FakeClock, failing_keyword_id: int) -> None:
        super().__init__(clock=clock)
        self.failing_keyword_id = failing_keyword_id

    async def fetch_period_activity(self, keyword_id: int, period_start: date, period_end: date) -> PeriodActivity:
        if keyword_id == self.failing_keyword_id:
            raise RuntimeError("assignment table unavailable")
        return await super().fetch_period_activity(keyword_id, period_start, period_end)


def test_batch_compute_daily_isolates_failing_keywords() -> None:
    clock = FakeClock(_at(1, DAY + timedelta(days=1)))
    store = FlakyStore(clock, failing_keyword_id=2)
    healthy = store.add_keyword("coffee roasters", OWNER)
    broken = store.add_keyword("bakeries", OWNER)
    store.add_keyword("tea rooms", OWNER, status="inactive")
    store.add_keyword("juice bars", OWNER, deleted_at=clock())
    third = store.add_keyword("ice cream", OWNER)
    store.add_post(healthy.id, likes_count=4, comments_count=1, created_at=_at(12))

    result = asyncio.run(AnalyticsAggregator(store, clock=clock).batch_compute_daily())

    assert result.period_date == DAY
    assert result.processed == 2
    assert result.failed == 1
    assert list(result.failures) == [broken.id]
    assert "assignment table unavailable" in result.failures[broken.id]
    assert result.elapsed_seconds >= 0
    assert sorted(key[0] for key in store.analytics) == [healthy.id, third.id]
    assert store.analytics[(healthy.id, DAY, DAY, "daily")].metrics.instagram_total_engagement == 5
