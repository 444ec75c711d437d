from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field

PeriodType = Literal["daily", "weekly", "monthly", "quarterly"]


class PeriodComputeRequest(BaseModel):
    keyword_id: int
    period_start: date
    period_end: date
    period_type: PeriodType = "daily"


class PeriodMetricsOut(BaseModel):
    instagram_posts_count: int
    instagram_avg_likes: float
    instagram_avg_comments: float
    instagram_total_engagement: int
    google_maps_places_count: int
    google_maps_avg_rating: float | None = None
    google_maps_total_reviews: int
    total_jobs_run: int
    successful_jobs: int
    failed_jobs: int
    avg_job_duration: float | None = None
    job_success_rate: float | None = None


class AnalyticsPeriodOut(BaseModel):
    id: int | None = None
    keyword_id: int
    period_start: date
    period_end: date
    period_type: str
    user_id: str
    metrics: PeriodMetricsOut
    updated_at: datetime | None = None


class DailyBatchRequest(BaseModel):
    today: date | None = None


class DailyBatchResponse(BaseModel):
    period_date: date
    processed: int
    failed: int
    failures: dict[int, str] = Field(default_factory=dict)
    elapsed_seconds: float


class DatasetRefreshOut(BaseModel):
    name: str
    status: Literal["success", "failed"]
    duration_seconds: float
    rows: int | None = None
    error: str | None = None


class RefreshResponse(BaseModel):
    datasets: list[DatasetRefreshOut] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    elapsed_seconds: float


class TrendOut(BaseModel):
    keyword_id: int
    keyword: str
    category: str
    recent_engagement: int
    previous_engagement: int
    engagement_trend_percent: float
    recent_successful_jobs: int
    previous_successful_jobs: int
    job_success_trend_percent: float
    trend_score: float
    computed_at: datetime


class CategoryPerformanceOut(BaseModel):
    category: str
    total_keywords: int
    avg_search_volume: float | None = None
    avg_competition: float | None = None
    total_instagram_engagement: int
    avg_google_maps_rating: float | None = None
    total_google_maps_places: int
    total_jobs: int
    successful_jobs: int
    success_rate: float | None = None
    performance_score: float
    computed_at: datetime
