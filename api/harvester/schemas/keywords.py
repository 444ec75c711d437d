from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class KeywordOut(BaseModel):
    id: int
    keyword: str
    category: str
    status: str
    priority: int
    user_id: str
    search_volume: int | None = None
    competition_score: float | None = None
    performance_metrics: dict[str, Any] = Field(default_factory=dict)
    updated_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class PerformanceMetricsRequest(BaseModel):
    performance_metrics: dict[str, Any]
