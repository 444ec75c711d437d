from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import date, datetime, timedelta

from harvester.services.records import AnalyticsPeriod, CategoryRollup, Keyword
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)

ROLLUP_PERIOD_TYPE = "daily"


def _mean(values: list[float], digits: int) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), digits)


def performance_score(
    *,
    avg_search_volume: float | None,
    avg_competition: float | None,
    total_engagement: int,
    success_rate: float | None,
) -> float:
    score = (
        (avg_search_volume or 0.0) * 0.3
        + (2 - (1.0 if avg_competition is None else avg_competition)) * 50 * 0.2
        + total_engagement * 0.001 * 0.3
        + (success_rate or 0.0) * 0.2
    )
    return round(score, 4)


def build_category_rollup(
    user_id: str,
    category: str,
    keywords: list[Keyword],
    periods: list[AnalyticsPeriod],
    computed_at: datetime,
) -> CategoryRollup:
    total_jobs = sum(period.metrics.total_jobs_run for period in periods)
    successful_jobs = sum(period.metrics.successful_jobs for period in periods)
    total_engagement = sum(period.metrics.instagram_total_engagement for period in periods)
    success_rate = round(successful_jobs / total_jobs * 100, 2) if total_jobs else None
    avg_search_volume = _mean([kw.search_volume for kw in keywords if kw.search_volume is not None], 2)
    avg_competition = _mean([kw.competition_score for kw in keywords if kw.competition_score is not None], 4)

    return CategoryRollup(
        user_id=user_id,
        category=category,
        total_keywords=len(keywords),
        avg_search_volume=avg_search_volume,
        avg_competition=avg_competition,
        total_instagram_engagement=total_engagement,
        avg_google_maps_rating=_mean(
            [period.metrics.google_maps_avg_rating for period in periods if period.metrics.google_maps_avg_rating is not None],
            2,
        ),
        total_google_maps_places=sum(period.metrics.google_maps_places_count for period in periods),
        total_jobs=total_jobs,
        successful_jobs=successful_jobs,
        success_rate=success_rate,
        performance_score=performance_score(
            avg_search_volume=avg_search_volume,
            avg_competition=avg_competition,
            total_engagement=total_engagement,
            success_rate=success_rate,
        ),
        computed_at=computed_at,
    )


class CategoryRollupComputer:
    """Per owner and category performance over the trailing window of daily analytics."""

    def __init__(
        self,
        store: JobStore,
        *,
        window_days: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.window_days = max(1, window_days)
        self.clock = clock or utcnow

    async def compute(self, today: date | None = None) -> list[CategoryRollup]:
        now = self.clock()
        today = today or now.date()
        start_from = today - timedelta(days=self.window_days)

        periods_by_keyword: dict[int, list[AnalyticsPeriod]] = defaultdict(list)
        for period in await self.store.list_analytics_periods(period_type=ROLLUP_PERIOD_TYPE, start_from=start_from):
            periods_by_keyword[period.keyword_id].append(period)

        groups: dict[tuple[str, str], list[Keyword]] = defaultdict(list)
        # Inactive and archived keywords still count towards their category.
        for keyword in await self.store.list_live_keywords():
            groups[(keyword.user_id, keyword.category)].append(keyword)

        rollups = [
            build_category_rollup(
                user_id,
                category,
                keywords,
                [period for keyword in keywords for period in periods_by_keyword.get(keyword.id, [])],
                now,
            )
            for (user_id, category), keywords in groups.items()
        ]
        rollups.sort(key=lambda rollup: (-rollup.performance_score, rollup.user_id, rollup.category))
        return rollups

    async def refresh(self, today: date | None = None) -> int:
        rollups = await self.compute(today)
        written = await self.store.replace_category_rollups(rollups)
        logger.info("category performance dataset replaced rows=%s", written)
        return written
