from __future__ import annotations

from functools import lru_cache

from harvester.core.config import get_settings
from harvester.services.analytics import AnalyticsAggregator
from harvester.services.keywords import KeywordMetricsService
from harvester.services.lifecycle import JobLifecycleManager
from harvester.services.rate_limiter import RateLimiter
from harvester.services.refresher import ViewRefresher
from harvester.services.rollups import CategoryRollupComputer
from harvester.services.scheduler import Scheduler
from harvester.services.store import get_store
from harvester.services.trends import TrendComputer


@lru_cache
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    return RateLimiter(
        get_store(),
        quotas=settings.rate_limit_quotas(),
        default_quota=settings.rate_limit_default_per_hour,
    )


@lru_cache
def get_lifecycle_manager() -> JobLifecycleManager:
    settings = get_settings()
    return JobLifecycleManager(
        get_store(),
        get_rate_limiter(),
        default_priority=settings.job_default_priority,
        default_max_retries=settings.job_default_max_retries,
        lease_seconds=settings.job_lease_seconds,
    )


@lru_cache
def get_scheduler() -> Scheduler:
    settings = get_settings()
    return Scheduler(
        get_store(),
        lease_seconds=settings.job_lease_seconds,
        claim_rounds=settings.lease_claim_rounds,
        candidate_batch_size=settings.lease_candidate_batch_size,
    )


@lru_cache
def get_aggregator() -> AnalyticsAggregator:
    return AnalyticsAggregator(get_store())


@lru_cache
def get_trend_computer() -> TrendComputer:
    return TrendComputer(get_store(), window_days=get_settings().trend_window_days)


@lru_cache
def get_refresher() -> ViewRefresher:
    settings = get_settings()
    store = get_store()
    return ViewRefresher.for_computers(
        get_trend_computer(),
        CategoryRollupComputer(store, window_days=settings.category_rollup_days),
    )


@lru_cache
def get_keyword_metrics_service() -> KeywordMetricsService:
    return KeywordMetricsService(get_store())


def reset_service_caches() -> None:
    for factory in (
        get_rate_limiter,
        get_lifecycle_manager,
        get_scheduler,
        get_aggregator,
        get_trend_computer,
        get_refresher,
        get_keyword_metrics_service,
    ):
        factory.cache_clear()
    get_store.cache_clear()
