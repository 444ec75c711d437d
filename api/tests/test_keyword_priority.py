from __future__ import annotations

import asyncio

import pytest

from harvester.services.errors import AuthorizationError, NotFoundError, ValidationError
from harvester.services.keywords import (
    KeywordMetricsService,
    calculate_keyword_priority_score,
    priority_from_score,
)
from harvester.services.store import InMemoryJobStore

OWNER = "11111111-1111-1111-1111-111111111111"
STRANGER = "22222222-2222-2222-2222-222222222222"


class CountingStore(InMemoryJobStore):
    def __init__(self) -> None:
        super().__init__()
        self.keyword_writes = 0

    async def update_keyword(self, keyword_id, changes, *, actor):
        self.keyword_writes += 1
        return await super().update_keyword(keyword_id, changes, actor=actor)


@pytest.mark.parametrize(
    ("search_volume", "competition", "metrics", "expected"),
    [
        (20_000, 0.35, {}, 33.0),
        (20_000, None, {"ctr": 50}, 30.0),
        (None, 0.1, {"ctr": 10}, 1.0),
        (0, None, None, 1.0),
        (100_000, 0.0, {"ctr": 100}, 100.0),
    ],
)
def test_priority_score(search_volume, competition, metrics, expected: float) -> None:
    assert calculate_keyword_priority_score(search_volume, competition, metrics) == pytest.approx(expected)


@pytest.mark.parametrize(
    ("score", "priority"),
    [(1.0, 1), (19.4, 1), (19.5, 2), (33.0, 2), (39.5, 3), (79.9, 5), (100.0, 5)],
)
def test_priority_buckets(score: float, priority: int) -> None:
    assert priority_from_score(score) == priority


def test_changed_metrics_recompute_priority() -> None:
    store = CountingStore()
    keyword = store.add_keyword("cold brew", OWNER, search_volume=20_000, competition_score=0.35)
    service = KeywordMetricsService(store)

    updated = asyncio.run(service.update_performance_metrics(keyword.id, {"ctr": 0, "impressions": 900}, OWNER))

    assert updated.priority == 2
    assert updated.performance_metrics == {"ctr": 0, "impressions": 900}
    assert updated.updated_by == OWNER
    assert store.keywords[keyword.id] == updated
    assert store.keyword_writes == 1


def test_unchanged_metrics_leave_the_keyword_alone() -> None:
    store = CountingStore()
    keyword = store.add_keyword("cold brew", OWNER, priority=4, performance_metrics={"ctr": 2})
    service = KeywordMetricsService(store)

    result = asyncio.run(service.update_performance_metrics(keyword.id, {"ctr": 2}, OWNER))

    assert result.priority == 4
    assert store.keyword_writes == 0


def test_metrics_update_validates_caller_and_payload() -> None:
    store = CountingStore()
    keyword = store.add_keyword("cold brew", OWNER)
    service = KeywordMetricsService(store)

    with pytest.raises(AuthorizationError):
        asyncio.run(service.update_performance_metrics(keyword.id, {"ctr": 1}, STRANGER))
    with pytest.raises(NotFoundError):
        asyncio.run(service.update_performance_metrics(999, {"ctr": 1}, OWNER))
    with pytest.raises(ValidationError):
        asyncio.run(service.update_performance_metrics(keyword.id, {"ctr": "high"}, OWNER))
    with pytest.raises(ValidationError):
        asyncio.run(service.update_performance_metrics(keyword.id, ["ctr"], OWNER))
    assert store.keyword_writes == 0
