from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import date, datetime, timezone
from functools import lru_cache
from itertools import count
from typing import Any, Protocol

from harvester.core.config import get_settings
from harvester.services.errors import TransientContentionError
from harvester.services.postgres_store import PostgresJobStore
from harvester.services.records import (
    LEASED_JOB_STATUSES,
    AnalyticsPeriod,
    CategoryRollup,
    Job,
    JobActivity,
    JobDraft,
    Keyword,
    PeriodActivity,
    PlaceActivity,
    PostActivity,
    TrendRecord,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore(Protocol):
    """Durable storage for keywords, jobs and derived analytics.

    Every read path excludes soft-deleted rows; callers never filter on
    ``deleted_at`` themselves.
    """

    async def close(self) -> None: ...

    async def get_keyword(self, keyword_id: int) -> Keyword | None: ...

    async def list_active_keywords(self) -> list[Keyword]: ...

    async def list_live_keywords(self) -> list[Keyword]: ...

    async def update_keyword(self, keyword_id: int, changes: dict[str, Any], *, actor: str) -> Keyword | None: ...

    async def insert_job(self, draft: JobDraft) -> Job: ...

    async def get_job(self, job_id: int) -> Job | None: ...

    async def list_pending_jobs(self, limit: int) -> list[Job]: ...

    async def claim_pending_job(self, job_id: int, *, lease_owner: str, lease_expires_at: datetime) -> Job: ...

    async def update_job(
        self,
        job_id: int,
        changes: dict[str, Any],
        *,
        expected_status: str,
        expected_lease_owner: str | None,
    ) -> Job | None: ...

    async def soft_delete_job(self, job_id: int, *, actor: str) -> bool: ...

    async def requeue_expired_leases(self, *, now: datetime, limit: int) -> int: ...

    async def count_operations(self, user_id: str, operation_type: str, since: datetime) -> int: ...

    async def fetch_period_activity(self, keyword_id: int, period_start: date, period_end: date) -> PeriodActivity: ...

    async def upsert_analytics_period(self, period: AnalyticsPeriod) -> AnalyticsPeriod: ...

    async def list_analytics_periods(self, *, period_type: str, start_from: date) -> list[AnalyticsPeriod]: ...

    async def replace_trend_records(self, records: list[TrendRecord]) -> int: ...

    async def list_trend_records(self, user_id: str | None = None) -> list[TrendRecord]: ...

    async def replace_category_rollups(self, rollups: list[CategoryRollup]) -> int: ...

    async def list_category_rollups(self, user_id: str | None = None) -> list[CategoryRollup]: ...


class InMemoryJobStore:
    """Process-local store used for local development and tests.

    Claims are atomic because no coroutine yields between the status check
    and the write.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or utcnow
        self._keyword_ids = count(1)
        self._job_ids = count(1)
        self._analytics_ids = count(1)
        self.keywords: dict[int, Keyword] = {}
        self.jobs: dict[int, Job] = {}
        self.place_assignments: list[dict[str, Any]] = []
        self.post_assignments: list[dict[str, Any]] = []
        self.analytics: dict[tuple[int, date, date, str], AnalyticsPeriod] = {}
        self.trend_records: list[TrendRecord] = []
        self.category_rollups: list[CategoryRollup] = []

    async def close(self) -> None:
        return None

    def add_keyword(self, keyword: str, user_id: str, **fields: Any) -> Keyword:
        now = self.clock()
        record = Keyword(
            id=next(self._keyword_ids),
            keyword=keyword,
            user_id=user_id,
            created_at=now,
            updated_at=now,
            **fields,
        )
        self.keywords[record.id] = record
        return record

    def add_place(
        self,
        keyword_id: int,
        *,
        rating: float | None,
        review_count: int | None,
        created_at: datetime | None = None,
        created_by: str | None = None,
    ) -> None:
        self.place_assignments.append(
            {
                "keyword_id": keyword_id,
                "rating": rating,
                "review_count": review_count,
                "created_at": created_at or self.clock(),
                "created_by": created_by,
                "deleted_at": None,
            }
        )

    def add_post(
        self,
        keyword_id: int,
        *,
        likes_count: int,
        comments_count: int,
        created_at: datetime | None = None,
        created_by: str | None = None,
    ) -> None:
        self.post_assignments.append(
            {
                "keyword_id": keyword_id,
                "likes_count": likes_count,
                "comments_count": comments_count,
                "created_at": created_at or self.clock(),
                "created_by": created_by,
                "deleted_at": None,
            }
        )

    async def get_keyword(self, keyword_id: int) -> Keyword | None:
        keyword = self.keywords.get(keyword_id)
        if keyword is None or keyword.deleted_at is not None:
            return None
        return keyword

    async def list_active_keywords(self) -> list[Keyword]:
        return [
            keyword
            for keyword in sorted(self.keywords.values(), key=lambda item: item.id)
            if keyword.deleted_at is None and keyword.status == "active"
        ]

    async def list_live_keywords(self) -> list[Keyword]:
        return [keyword for keyword in sorted(self.keywords.values(), key=lambda item: item.id) if keyword.deleted_at is None]

    async def update_keyword(self, keyword_id: int, changes: dict[str, Any], *, actor: str) -> Keyword | None:
        keyword = await self.get_keyword(keyword_id)
        if keyword is None:
            return None
        updated = replace(keyword, **changes, updated_by=actor, updated_at=self.clock())
        self.keywords[keyword_id] = updated
        return updated

    async def insert_job(self, draft: JobDraft) -> Job:
        now = self.clock()
        job = Job(
            id=next(self._job_ids),
            keyword_id=draft.keyword_id,
            job_type=draft.job_type,
            priority=draft.priority,
            status="pending",
            user_id=draft.user_id,
            created_by=draft.created_by,
            updated_by=draft.created_by,
            max_retries=draft.max_retries,
            job_config=dict(draft.job_config),
            expected_results=draft.expected_results,
            estimated_duration=draft.estimated_duration,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        return job

    async def get_job(self, job_id: int) -> Job | None:
        return self._live_job(job_id)

    async def list_pending_jobs(self, limit: int) -> list[Job]:
        pending = [job for job in self._live_jobs() if job.status == "pending"]
        pending.sort(key=lambda job: (-job.priority, job.created_at, job.id))
        return pending[:limit]

    async def claim_pending_job(self, job_id: int, *, lease_owner: str, lease_expires_at: datetime) -> Job:
        job = self._live_job(job_id)
        if job is None or job.status != "pending":
            raise TransientContentionError(f"job {job_id} is no longer pending")
        claimed = replace(
            job,
            status="queued",
            lease_owner=lease_owner,
            lease_expires_at=lease_expires_at,
            updated_by=lease_owner,
            updated_at=self.clock(),
        )
        self.jobs[job_id] = claimed
        return claimed

    async def update_job(
        self,
        job_id: int,
        changes: dict[str, Any],
        *,
        expected_status: str,
        expected_lease_owner: str | None,
    ) -> Job | None:
        job = self._live_job(job_id)
        if job is None or job.status != expected_status or job.lease_owner != expected_lease_owner:
            return None
        updated = replace(job, **changes, updated_at=self.clock())
        self.jobs[job_id] = updated
        return updated

    async def soft_delete_job(self, job_id: int, *, actor: str) -> bool:
        job = self._live_job(job_id)
        if job is None:
            return False
        now = self.clock()
        self.jobs[job_id] = replace(job, deleted_at=now, updated_by=actor, updated_at=now)
        return True

    async def requeue_expired_leases(self, *, now: datetime, limit: int) -> int:
        expired = [
            job
            for job in self._live_jobs()
            if job.status in LEASED_JOB_STATUSES
            and job.lease_expires_at is not None
            and job.lease_expires_at <= now
        ]
        expired.sort(key=lambda job: job.lease_expires_at)
        for job in expired[:limit]:
            self.jobs[job.id] = replace(
                job,
                status="pending",
                lease_owner=None,
                lease_expires_at=None,
                started_at=None,
                updated_at=now,
            )
        return len(expired[:limit])

    async def count_operations(self, user_id: str, operation_type: str, since: datetime) -> int:
        if operation_type == "bulk_assignment":
            rows: Iterable[dict[str, Any]] = [*self.place_assignments, *self.post_assignments]
            return sum(
                1
                for row in rows
                if row["deleted_at"] is None and row["created_by"] == user_id and row["created_at"] >= since
            )
        return sum(1 for job in self._live_jobs() if job.created_by == user_id and job.created_at >= since)

    async def fetch_period_activity(self, keyword_id: int, period_start: date, period_end: date) -> PeriodActivity:
        def within(moment: datetime) -> bool:
            return period_start <= moment.astimezone(timezone.utc).date() <= period_end

        jobs = [
            JobActivity(status=job.status, actual_duration=job.actual_duration, created_at=job.created_at)
            for job in self._live_jobs()
            if job.keyword_id == keyword_id and within(job.created_at)
        ]
        places = [
            PlaceActivity(rating=row["rating"], review_count=row["review_count"], created_at=row["created_at"])
            for row in self.place_assignments
            if row["keyword_id"] == keyword_id and row["deleted_at"] is None and within(row["created_at"])
        ]
        posts = [
            PostActivity(
                likes_count=row["likes_count"],
                comments_count=row["comments_count"],
                created_at=row["created_at"],
            )
            for row in self.post_assignments
            if row["keyword_id"] == keyword_id and row["deleted_at"] is None and within(row["created_at"])
        ]
        return PeriodActivity(jobs=jobs, places=places, posts=posts)

    async def upsert_analytics_period(self, period: AnalyticsPeriod) -> AnalyticsPeriod:
        now = self.clock()
        existing = self.analytics.get(period.key)
        if existing is None:
            stored = replace(period, id=next(self._analytics_ids), created_at=now, updated_at=now)
        else:
            stored = replace(
                existing,
                metrics=period.metrics,
                updated_by=period.updated_by,
                updated_at=now,
            )
        self.analytics[period.key] = stored
        return stored

    async def list_analytics_periods(self, *, period_type: str, start_from: date) -> list[AnalyticsPeriod]:
        rows = [
            period
            for period in self.analytics.values()
            if period.period_type == period_type and period.period_start >= start_from
        ]
        return sorted(rows, key=lambda period: (period.keyword_id, period.period_start))

    async def replace_trend_records(self, records: list[TrendRecord]) -> int:
        self.trend_records = list(records)
        return len(self.trend_records)

    async def list_trend_records(self, user_id: str | None = None) -> list[TrendRecord]:
        rows = [record for record in self.trend_records if user_id is None or record.user_id == user_id]
        return sorted(rows, key=lambda record: record.trend_score, reverse=True)

    async def replace_category_rollups(self, rollups: list[CategoryRollup]) -> int:
        self.category_rollups = list(rollups)
        return len(self.category_rollups)

    async def list_category_rollups(self, user_id: str | None = None) -> list[CategoryRollup]:
        rows = [rollup for rollup in self.category_rollups if user_id is None or rollup.user_id == user_id]
        return sorted(rows, key=lambda rollup: rollup.performance_score, reverse=True)

    def _live_jobs(self) -> list[Job]:
        return [job for job in self.jobs.values() if job.deleted_at is None]

    def _live_job(self, job_id: int) -> Job | None:
        job = self.jobs.get(job_id)
        if job is None or job.deleted_at is not None:
            return None
        return job


@lru_cache
def get_store() -> JobStore:
    settings = get_settings()
    if not settings.database_url:
        return InMemoryJobStore()

    return PostgresJobStore(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
