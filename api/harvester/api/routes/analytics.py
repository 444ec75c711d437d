from dataclasses import asdict

from fastapi import APIRouter, Depends, Query

from harvester.api.errors import http_error, require_scopes
from harvester.core.auth import ANALYTICS_READ, ANALYTICS_WRITE
from harvester.core.security import get_human_principal, get_machine_principal
from harvester.schemas.analytics import (
    AnalyticsPeriodOut,
    CategoryPerformanceOut,
    DailyBatchRequest,
    DailyBatchResponse,
    DatasetRefreshOut,
    PeriodComputeRequest,
    PeriodMetricsOut,
    RefreshResponse,
    TrendOut,
)
from harvester.services.dependencies import get_aggregator, get_refresher
from harvester.services.errors import HarvesterError
from harvester.services.store import get_store

router = APIRouter()


@router.post("/periods", response_model=AnalyticsPeriodOut)
async def compute_period(
    payload: PeriodComputeRequest,
    principal=Depends(get_machine_principal),
    aggregator=Depends(get_aggregator),
) -> AnalyticsPeriodOut:
    require_scopes(principal, {ANALYTICS_WRITE})

    try:
        period = await aggregator.compute_period(
            payload.keyword_id,
            payload.period_start,
            payload.period_end,
            payload.period_type,
        )
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return AnalyticsPeriodOut(
        id=period.id,
        keyword_id=period.keyword_id,
        period_start=period.period_start,
        period_end=period.period_end,
        period_type=period.period_type,
        user_id=period.user_id,
        metrics=PeriodMetricsOut(**period.metrics.as_dict()),
        updated_at=period.updated_at,
    )


@router.post("/daily", response_model=DailyBatchResponse)
async def compute_daily(
    payload: DailyBatchRequest | None = None,
    principal=Depends(get_machine_principal),
    aggregator=Depends(get_aggregator),
) -> DailyBatchResponse:
    require_scopes(principal, {ANALYTICS_WRITE})

    try:
        result = await aggregator.batch_compute_daily(payload.today if payload else None)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return DailyBatchResponse(
        period_date=result.period_date,
        processed=result.processed,
        failed=result.failed,
        failures=result.failures,
        elapsed_seconds=result.elapsed_seconds,
    )


@router.post("/refresh", response_model=RefreshResponse)
async def refresh_datasets(
    principal=Depends(get_machine_principal),
    refresher=Depends(get_refresher),
) -> RefreshResponse:
    require_scopes(principal, {ANALYTICS_WRITE})

    report = await refresher.refresh_all()
    return RefreshResponse(
        datasets=[DatasetRefreshOut(**asdict(outcome)) for outcome in report.outcomes],
        failed=report.failed,
        elapsed_seconds=report.elapsed_seconds,
    )


@router.get("/trends", response_model=list[TrendOut])
async def list_trends(
    principal=Depends(get_human_principal),
    store=Depends(get_store),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[TrendOut]:
    require_scopes(principal, {ANALYTICS_READ})

    try:
        records = await store.list_trend_records(user_id=principal.subject)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return [TrendOut(**asdict(record)) for record in records[:limit]]


@router.get("/categories", response_model=list[CategoryPerformanceOut])
async def list_category_performance(
    principal=Depends(get_human_principal),
    store=Depends(get_store),
) -> list[CategoryPerformanceOut]:
    require_scopes(principal, {ANALYTICS_READ})

    try:
        rollups = await store.list_category_rollups(user_id=principal.subject)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return [CategoryPerformanceOut(**asdict(rollup)) for rollup in rollups]
