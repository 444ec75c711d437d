from __future__ import annotations

import logging
from typing import Any

from harvester.services.errors import AuthorizationError, NotFoundError, ValidationError
from harvester.services.records import Keyword
from harvester.services.store import JobStore

logger = logging.getLogger(__name__)

MIN_KEYWORD_PRIORITY = 1
MAX_KEYWORD_PRIORITY = 5


def calculate_keyword_priority_score(
    search_volume: int | None,
    competition_score: float | None,
    performance_metrics: dict[str, Any] | None,
) -> float:
    """Score a keyword between 1 and 100.

    Volume contributes up to 40 points, scaled up by low competition
    (factor 1 to 2) and by click-through rate.
    """
    volume_score = 0.0
    if search_volume is not None and search_volume > 0:
        volume_score = min(40.0, search_volume / 1000.0)

    competition_factor = 1.0
    if competition_score is not None:
        competition_factor = 2 - float(competition_score)

    performance_factor = 1.0
    if performance_metrics is not None:
        ctr = performance_metrics.get("ctr")
        performance_factor = 1 + (float(ctr) if ctr is not None else 0.0) / 100.0

    return max(1.0, min(100.0, volume_score * competition_factor * performance_factor))


def priority_from_score(score: float) -> int:
    return max(MIN_KEYWORD_PRIORITY, min(MAX_KEYWORD_PRIORITY, int(score + 0.5) // 20 + 1))


class KeywordMetricsService:
    def __init__(self, store: JobStore) -> None:
        self.store = store

    async def update_performance_metrics(self, keyword_id: int, metrics: dict[str, Any], caller: str) -> Keyword:
        """Store new performance metrics and re-derive the keyword priority when they changed."""
        if not isinstance(metrics, dict):
            raise ValidationError("performance_metrics must be a JSON object")
        ctr = metrics.get("ctr")
        if ctr is not None and (isinstance(ctr, bool) or not isinstance(ctr, (int, float))):
            raise ValidationError("performance_metrics.ctr must be a number")

        keyword = await self.store.get_keyword(keyword_id)
        if keyword is None:
            raise NotFoundError("keyword not found or has been deleted")
        if keyword.user_id != caller:
            raise AuthorizationError("cannot update a keyword owned by another user")
        if keyword.performance_metrics == metrics:
            return keyword

        changes: dict[str, Any] = {"performance_metrics": dict(metrics)}
        score = calculate_keyword_priority_score(keyword.search_volume, keyword.competition_score, metrics)
        changes["priority"] = priority_from_score(score)

        updated = await self.store.update_keyword(keyword_id, changes, actor=caller)
        if updated is None:
            raise NotFoundError("keyword not found or has been deleted")
        logger.info(
            "keyword metrics updated keyword_id=%s score=%.2f priority=%s->%s",
            keyword_id,
            score,
            keyword.priority,
            updated.priority,
        )
        return updated
