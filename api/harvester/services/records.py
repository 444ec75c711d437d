from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any

from harvester.services.errors import ValidationError

JOB_TYPES = ("instagram", "google_maps", "tiktok", "youtube")
JOB_STATUSES = ("pending", "queued", "running", "completed", "failed", "cancelled")
TERMINAL_JOB_STATUSES = frozenset({"completed", "failed", "cancelled"})
LEASED_JOB_STATUSES = frozenset({"queued", "running"})
KEYWORD_STATUSES = ("active", "inactive", "archived", "pending")
PERIOD_TYPES = ("daily", "weekly", "monthly", "quarterly")
MIN_JOB_PRIORITY = 1
MAX_JOB_PRIORITY = 10


@dataclass(slots=True)
class Keyword:
    id: int
    keyword: str
    user_id: str
    category: str = "general"
    status: str = "active"
    priority: int = 1
    search_volume: int | None = None
    competition_score: float | None = None
    performance_metrics: dict[str, Any] = field(default_factory=dict)
    updated_by: str | None = None
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class JobDraft:
    keyword_id: int
    job_type: str
    priority: int
    user_id: str
    created_by: str
    max_retries: int
    job_config: dict[str, Any] = field(default_factory=dict)
    expected_results: int | None = None
    estimated_duration: int | None = None


@dataclass(slots=True)
class Job:
    id: int
    keyword_id: int
    job_type: str
    priority: int
    status: str
    user_id: str
    created_at: datetime
    updated_at: datetime
    results_count: int = 0
    expected_results: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: int | None = None
    actual_duration: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    job_config: dict[str, Any] = field(default_factory=dict)
    job_results: dict[str, Any] = field(default_factory=dict)
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None
    deleted_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.status not in JOB_STATUSES:
            raise ValidationError(f"unknown job status: {self.status}")
        if not MIN_JOB_PRIORITY <= self.priority <= MAX_JOB_PRIORITY:
            raise ValidationError(f"job priority must be between {MIN_JOB_PRIORITY} and {MAX_JOB_PRIORITY}")
        if self.max_retries < 0 or not 0 <= self.retry_count <= self.max_retries:
            raise ValidationError("retry_count must stay between 0 and max_retries")
        if (self.completed_at is not None) != self.is_terminal:
            raise ValidationError("completed_at must be set exactly when the job is terminal")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    @property
    def can_retry(self) -> bool:
        return self.status == "failed" and self.retry_count < self.max_retries


@dataclass(slots=True)
class JobActivity:
    status: str
    actual_duration: int | None
    created_at: datetime


@dataclass(slots=True)
class PlaceActivity:
    rating: float | None
    review_count: int | None
    created_at: datetime


@dataclass(slots=True)
class PostActivity:
    likes_count: int
    comments_count: int
    created_at: datetime


@dataclass(slots=True)
class PeriodActivity:
    jobs: list[JobActivity] = field(default_factory=list)
    places: list[PlaceActivity] = field(default_factory=list)
    posts: list[PostActivity] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class PeriodMetrics:
    instagram_posts_count: int = 0
    instagram_avg_likes: float = 0.0
    instagram_avg_comments: float = 0.0
    instagram_total_engagement: int = 0
    google_maps_places_count: int = 0
    google_maps_avg_rating: float | None = None
    google_maps_total_reviews: int = 0
    total_jobs_run: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    avg_job_duration: float | None = None
    job_success_rate: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class AnalyticsPeriod:
    keyword_id: int
    period_start: date
    period_end: date
    period_type: str
    metrics: PeriodMetrics
    user_id: str
    created_by: str | None = None
    updated_by: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[int, date, date, str]:
        return (self.keyword_id, self.period_start, self.period_end, self.period_type)


@dataclass(slots=True)
class TrendRecord:
    keyword_id: int
    keyword: str
    category: str
    user_id: str
    recent_engagement: int
    previous_engagement: int
    engagement_trend_percent: float
    recent_successful_jobs: int
    previous_successful_jobs: int
    job_success_trend_percent: float
    trend_score: float
    computed_at: datetime


@dataclass(slots=True)
class CategoryRollup:
    user_id: str
    category: str
    total_keywords: int
    avg_search_volume: float | None
    avg_competition: float | None
    total_instagram_engagement: int
    avg_google_maps_rating: float | None
    total_google_maps_places: int
    total_jobs: int
    successful_jobs: int
    success_rate: float | None
    performance_score: float
    computed_at: datetime
