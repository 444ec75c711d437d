from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone

import pytest

from harvester.services.errors import NotFoundError
from harvester.services.records import AnalyticsPeriod, PeriodMetrics
from harvester.services.refresher import CATEGORY_PERFORMANCE, TRENDING_KEYWORDS, ViewRefresher
from harvester.services.rollups import CategoryRollupComputer
from harvester.services.store import InMemoryJobStore
from harvester.services.trends import TrendComputer

OWNER = "11111111-1111-1111-1111-111111111111"


def test_failing_dataset_does_not_block_the_others() -> None:
    async def broken() -> int:
        raise RuntimeError("relation is locked")

    async def healthy() -> int:
        return 12

    report = asyncio.run(ViewRefresher({"a": broken, "b": healthy}).refresh_all())

    assert report.failed == ["a"]
    failed = report.outcome("a")
    assert failed is not None
    assert failed.status == "failed"
    assert failed.error == "relation is locked"
    assert failed.rows is None
    succeeded = report.outcome("b")
    assert succeeded is not None
    assert succeeded.succeeded
    assert succeeded.rows == 12
    assert succeeded.duration_seconds >= 0
    assert report.outcome("missing") is None


def test_concurrent_refreshes_of_one_dataset_share_a_single_execution() -> None:
    calls = 0

    async def scenario() -> list:
        release = asyncio.Event()

        async def slow_refresh() -> int:
            nonlocal calls
            calls += 1
            await release.wait()
            return calls

        refresher = ViewRefresher({"trending_keywords": slow_refresh})
        waiters = [asyncio.ensure_future(refresher.refresh("trending_keywords")) for _ in range(3)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        release.set()
        outcomes = await asyncio.gather(*waiters)

        rerun = await refresher.refresh("trending_keywords")
        return [*outcomes, rerun]

    first, second, third, rerun = asyncio.run(scenario())

    assert first is second is third
    assert first.rows == 1
    assert rerun.rows == 2
    assert calls == 2


def test_unknown_dataset_is_rejected() -> None:
    refresher = ViewRefresher({})

    with pytest.raises(NotFoundError):
        asyncio.run(refresher.refresh("keyword_exports"))


def test_refresher_for_computers_replaces_both_datasets() -> None:
    now = datetime(2026, 3, 15, 2, 0, tzinfo=timezone.utc)
    store = InMemoryJobStore(clock=lambda: now)
    keyword = store.add_keyword("cold brew", OWNER, category="drinks", search_volume=500)
    asyncio.run(
        store.upsert_analytics_period(
            AnalyticsPeriod(
                keyword_id=keyword.id,
                period_start=date(2026, 3, 14),
                period_end=date(2026, 3, 14),
                period_type="daily",
                metrics=PeriodMetrics(instagram_total_engagement=80, total_jobs_run=2, successful_jobs=2),
                user_id=OWNER,
            )
        )
    )
    refresher = ViewRefresher.for_computers(
        TrendComputer(store, clock=lambda: now),
        CategoryRollupComputer(store, clock=lambda: now),
    )

    report = asyncio.run(refresher.refresh_all())

    assert report.failed == []
    assert {outcome.name for outcome in report.outcomes} == {TRENDING_KEYWORDS, CATEGORY_PERFORMANCE}
    assert report.outcome(TRENDING_KEYWORDS).rows == 1
    assert report.outcome(CATEGORY_PERFORMANCE).rows == 1
    assert store.trend_records[0].recent_engagement == 80
    assert store.category_rollups[0].success_rate == 100.0
