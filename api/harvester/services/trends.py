from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from harvester.services.records import AnalyticsPeriod, Keyword, TrendRecord
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)

ENGAGEMENT_WEIGHT = 0.7
JOB_SUCCESS_WEIGHT = 0.3
TREND_PERIOD_TYPE = "daily"


@dataclass(slots=True)
class WindowTotals:
    engagement: int = 0
    successful_jobs: int = 0

    def add(self, period: AnalyticsPeriod) -> None:
        self.engagement += period.metrics.instagram_total_engagement
        self.successful_jobs += period.metrics.successful_jobs


def relative_delta(recent: float, previous: float) -> float:
    """Percent change from ``previous`` to ``recent``.

    Growth from nothing counts as 100; no activity in either window is 0.
    """
    if previous > 0:
        return (recent - previous) / previous * 100
    if recent > 0:
        return 100.0
    return 0.0


def build_trend_record(
    keyword: Keyword,
    recent: WindowTotals,
    previous: WindowTotals,
    computed_at: datetime,
) -> TrendRecord:
    engagement_delta = relative_delta(recent.engagement, previous.engagement)
    job_success_delta = relative_delta(recent.successful_jobs, previous.successful_jobs)
    return TrendRecord(
        keyword_id=keyword.id,
        keyword=keyword.keyword,
        category=keyword.category,
        user_id=keyword.user_id,
        recent_engagement=recent.engagement,
        previous_engagement=previous.engagement,
        engagement_trend_percent=round(engagement_delta, 4),
        recent_successful_jobs=recent.successful_jobs,
        previous_successful_jobs=previous.successful_jobs,
        job_success_trend_percent=round(job_success_delta, 4),
        trend_score=round(ENGAGEMENT_WEIGHT * engagement_delta + JOB_SUCCESS_WEIGHT * job_success_delta, 4),
        computed_at=computed_at,
    )


class TrendComputer:
    """Trend scores from two adjacent windows of daily analytics.

    With the default 7-day window the recent window covers periods starting
    within the last 7 days and the previous window the 7 days before that.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        window_days: int = 7,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.window_days = max(1, window_days)
        self.clock = clock or utcnow

    async def compute(self, today: date | None = None) -> list[TrendRecord]:
        now = self.clock()
        today = today or now.date()
        recent_start = today - timedelta(days=self.window_days)
        previous_start = today - timedelta(days=self.window_days * 2)

        recent: dict[int, WindowTotals] = defaultdict(WindowTotals)
        previous: dict[int, WindowTotals] = defaultdict(WindowTotals)
        periods = await self.store.list_analytics_periods(period_type=TREND_PERIOD_TYPE, start_from=previous_start)
        for period in periods:
            window = recent if period.period_start >= recent_start else previous
            window[period.keyword_id].add(period)

        records: list[TrendRecord] = []
        for keyword in await self.store.list_active_keywords():
            try:
                records.append(build_trend_record(keyword, recent[keyword.id], previous[keyword.id], now))
            except (ArithmeticError, TypeError, ValueError):
                logger.exception("trend computation failed keyword_id=%s", keyword.id)
        records.sort(key=lambda record: (-record.trend_score, record.keyword_id))
        return records

    async def refresh(self, today: date | None = None) -> int:
        records = await self.compute(today)
        written = await self.store.replace_trend_records(records)
        logger.info("trend dataset replaced rows=%s", written)
        return written
