from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from opentelemetry import trace

from harvester.services.errors import ComputationError, NotFoundError, ValidationError
from harvester.services.records import PERIOD_TYPES, AnalyticsPeriod, PeriodActivity, PeriodMetrics
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class BatchComputeResult:
    period_date: date
    processed: int = 0
    failures: dict[int, str] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> int:
        return len(self.failures)


def _average(values: list[float]) -> float | None:
    if not values:
        return None
    return round(sum(values) / len(values), 2)


def aggregate_period(activity: PeriodActivity) -> PeriodMetrics:
    """Roll one keyword's activity inside a period up into metrics.

    Averages are rounded to two decimals so a recomputation over the same
    rows always yields identical values.
    """
    likes = [post.likes_count for post in activity.posts]
    comments = [post.comments_count for post in activity.posts]
    ratings = [place.rating for place in activity.places if place.rating is not None]
    durations = [job.actual_duration for job in activity.jobs if job.actual_duration is not None]

    total_jobs = len(activity.jobs)
    successful_jobs = sum(1 for job in activity.jobs if job.status == "completed")
    failed_jobs = sum(1 for job in activity.jobs if job.status == "failed")

    return PeriodMetrics(
        instagram_posts_count=len(activity.posts),
        instagram_avg_likes=_average(likes) or 0.0,
        instagram_avg_comments=_average(comments) or 0.0,
        instagram_total_engagement=sum(likes) + sum(comments),
        google_maps_places_count=len(activity.places),
        google_maps_avg_rating=_average(ratings),
        google_maps_total_reviews=sum(place.review_count or 0 for place in activity.places),
        total_jobs_run=total_jobs,
        successful_jobs=successful_jobs,
        failed_jobs=failed_jobs,
        avg_job_duration=_average(durations),
        job_success_rate=round(successful_jobs / total_jobs * 100, 2) if total_jobs else None,
    )


class AnalyticsAggregator:
    def __init__(self, store: JobStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self.store = store
        self.clock = clock or utcnow

    async def compute_period(
        self,
        keyword_id: int,
        period_start: date,
        period_end: date,
        period_type: str,
    ) -> AnalyticsPeriod:
        if period_type not in PERIOD_TYPES:
            raise ValidationError(f"unknown period type: {period_type}")
        if period_end < period_start:
            raise ValidationError("period_end must not be before period_start")

        keyword = await self.store.get_keyword(keyword_id)
        if keyword is None:
            raise NotFoundError("keyword not found or has been deleted")

        activity = await self.store.fetch_period_activity(keyword_id, period_start, period_end)
        metrics = aggregate_period(activity)
        stored = await self.store.upsert_analytics_period(
            AnalyticsPeriod(
                keyword_id=keyword_id,
                period_start=period_start,
                period_end=period_end,
                period_type=period_type,
                metrics=metrics,
                user_id=keyword.user_id,
                created_by=keyword.user_id,
                updated_by=keyword.user_id,
            )
        )
        logger.debug(
            "analytics period computed keyword_id=%s period=%s..%s type=%s jobs=%s engagement=%s",
            keyword_id,
            period_start,
            period_end,
            period_type,
            metrics.total_jobs_run,
            metrics.instagram_total_engagement,
        )
        return stored

    async def batch_compute_daily(self, today: date | None = None) -> BatchComputeResult:
        """Compute yesterday's daily period for every active keyword.

        One keyword failing is logged and recorded in the result; the batch
        carries on with the next keyword.
        """
        today = today or self.clock().date()
        yesterday = today - timedelta(days=1)
        result = BatchComputeResult(period_date=yesterday)
        started_at = time.perf_counter()

        with tracer.start_as_current_span("analytics.batch_compute_daily") as span:
            span.set_attribute("analytics.period_date", yesterday.isoformat())
            keywords = await self.store.list_active_keywords()
            for keyword in keywords:
                try:
                    await self._compute_for_batch(keyword.id, yesterday)
                except ComputationError as exc:
                    logger.exception("daily analytics failed keyword_id=%s period_date=%s", keyword.id, yesterday)
                    result.failures[keyword.id] = str(exc)
                    continue
                result.processed += 1

            result.elapsed_seconds = round(time.perf_counter() - started_at, 6)
            span.set_attribute("analytics.processed", result.processed)
            span.set_attribute("analytics.failed", result.failed)

        logger.info(
            "daily analytics batch finished period_date=%s processed=%s failed=%s elapsed_s=%.3f",
            yesterday,
            result.processed,
            result.failed,
            result.elapsed_seconds,
        )
        return result

    async def _compute_for_batch(self, keyword_id: int, day: date) -> None:
        try:
            await self.compute_period(keyword_id, day, day, "daily")
        except Exception as exc:
            raise ComputationError(f"keyword {keyword_id}: {exc}") from exc
