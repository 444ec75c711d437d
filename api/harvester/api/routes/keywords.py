from fastapi import APIRouter, Depends

from harvester.api.errors import http_error, require_scopes
from harvester.core.auth import KEYWORDS_WRITE
from harvester.core.security import get_human_principal
from harvester.schemas.keywords import KeywordOut, PerformanceMetricsRequest
from harvester.services.dependencies import get_keyword_metrics_service
from harvester.services.errors import HarvesterError

router = APIRouter()


@router.put("/{keyword_id}/performance-metrics", response_model=KeywordOut)
async def update_performance_metrics(
    keyword_id: int,
    payload: PerformanceMetricsRequest,
    principal=Depends(get_human_principal),
    service=Depends(get_keyword_metrics_service),
) -> KeywordOut:
    require_scopes(principal, {KEYWORDS_WRITE})

    try:
        keyword = await service.update_performance_metrics(keyword_id, payload.performance_metrics, principal.subject)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return KeywordOut(
        id=keyword.id,
        keyword=keyword.keyword,
        category=keyword.category,
        status=keyword.status,
        priority=keyword.priority,
        user_id=keyword.user_id,
        search_volume=keyword.search_volume,
        competition_score=keyword.competition_score,
        performance_metrics=keyword.performance_metrics,
        updated_by=keyword.updated_by,
        created_at=keyword.created_at,
        updated_at=keyword.updated_at,
    )
