from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from harvester.services.errors import NotFoundError, StoreUnavailableError, TransientContentionError, ValidationError
from harvester.services.records import (
    AnalyticsPeriod,
    CategoryRollup,
    Job,
    JobActivity,
    JobDraft,
    Keyword,
    PeriodActivity,
    PeriodMetrics,
    PlaceActivity,
    PostActivity,
    TrendRecord,
)

JOB_COLUMNS = """
  id,
  keyword_id,
  job_type,
  priority,
  status,
  results_count,
  expected_results,
  started_at,
  completed_at,
  estimated_duration,
  actual_duration,
  error_message,
  error_code,
  retry_count,
  max_retries,
  job_config,
  job_results,
  user_id::text as user_id,
  lease_owner,
  lease_expires_at,
  created_by,
  updated_by,
  deleted_at,
  created_at,
  updated_at
"""

KEYWORD_COLUMNS = """
  id,
  keyword,
  category,
  status,
  priority,
  user_id::text as user_id,
  search_volume,
  competition_score,
  performance_metrics,
  updated_by,
  deleted_at,
  created_at,
  updated_at
"""

ANALYTICS_COLUMNS = """
  id,
  keyword_id,
  period_start,
  period_end,
  period_type,
  instagram_posts_count,
  instagram_avg_likes,
  instagram_avg_comments,
  instagram_total_engagement,
  google_maps_places_count,
  google_maps_avg_rating,
  google_maps_total_reviews,
  total_jobs_run,
  successful_jobs,
  failed_jobs,
  avg_job_duration,
  job_success_rate,
  user_id::text as user_id,
  created_by,
  updated_by,
  created_at,
  updated_at
"""

UPDATABLE_JOB_COLUMNS = {
    "status": "text",
    "results_count": "int",
    "started_at": "timestamptz",
    "completed_at": "timestamptz",
    "actual_duration": "int",
    "error_message": "text",
    "error_code": "text",
    "retry_count": "int",
    "job_results": "jsonb",
    "lease_owner": "text",
    "lease_expires_at": "timestamptz",
    "updated_by": "text",
}
UPDATABLE_KEYWORD_COLUMNS = {
    "status": "text",
    "priority": "int",
    "search_volume": "int",
    "competition_score": "float8",
    "performance_metrics": "jsonb",
}
PERIOD_METRIC_COLUMNS = tuple(PeriodMetrics.__dataclass_fields__)


class PostgresJobStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def get_keyword(self, keyword_id: int) -> Keyword | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {KEYWORD_COLUMNS}
            from keywords
            where id = $1 and deleted_at is null
            """,
            keyword_id,
        )
        return self._keyword_row_to_record(row) if row else None

    async def list_active_keywords(self) -> list[Keyword]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {KEYWORD_COLUMNS}
            from keywords
            where status = 'active' and deleted_at is null
            order by id asc
            """
        )
        return [self._keyword_row_to_record(row) for row in rows]

    async def list_live_keywords(self) -> list[Keyword]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {KEYWORD_COLUMNS}
            from keywords
            where deleted_at is null
            order by id asc
            """
        )
        return [self._keyword_row_to_record(row) for row in rows]

    async def update_keyword(self, keyword_id: int, changes: dict[str, Any], *, actor: str) -> Keyword | None:
        assignments, params = self._build_assignments(changes, UPDATABLE_KEYWORD_COLUMNS, first_index=3)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update keywords
            set {assignments}, updated_by = $2, updated_at = now()
            where id = $1 and deleted_at is null
            returning {KEYWORD_COLUMNS}
            """,
            keyword_id,
            actor,
            *params,
        )
        return self._keyword_row_to_record(row) if row else None

    async def insert_job(self, draft: JobDraft) -> Job:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into scraping_jobs (
                  keyword_id,
                  job_type,
                  priority,
                  status,
                  max_retries,
                  job_config,
                  expected_results,
                  estimated_duration,
                  user_id,
                  created_by,
                  updated_by
                )
                values ($1, $2, $3, 'pending', $4, $5::jsonb, $6, $7, $8::uuid, $9, $9)
                returning {JOB_COLUMNS}
                """,
                draft.keyword_id,
                draft.job_type,
                draft.priority,
                draft.max_retries,
                json.dumps(draft.job_config),
                draft.expected_results,
                draft.estimated_duration,
                draft.user_id,
                draft.created_by,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise NotFoundError("keyword not found") from exc
        except (pg_exc.CheckViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise ValidationError(str(exc)) from exc
        return self._job_row_to_record(row)

    async def get_job(self, job_id: int) -> Job | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {JOB_COLUMNS}
            from scraping_jobs
            where id = $1 and deleted_at is null
            """,
            job_id,
        )
        return self._job_row_to_record(row) if row else None

    async def list_pending_jobs(self, limit: int) -> list[Job]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {JOB_COLUMNS}
            from scraping_jobs
            where status = 'pending' and deleted_at is null
            order by priority desc, created_at asc, id asc
            limit $1
            """,
            max(1, limit),
        )
        return [self._job_row_to_record(row) for row in rows]

    async def claim_pending_job(self, job_id: int, *, lease_owner: str, lease_expires_at: datetime) -> Job:
        pool = await self._get_pool()
        # A row locked by another claimer is skipped rather than waited on.
        row = await pool.fetchrow(
            f"""
            with target as (
              select id as target_id
              from scraping_jobs
              where id = $1 and status = 'pending' and deleted_at is null
              for update skip locked
            )
            update scraping_jobs
            set
              status = 'queued',
              lease_owner = $2,
              lease_expires_at = $3,
              updated_by = $2,
              updated_at = now()
            from target
            where scraping_jobs.id = target.target_id
            returning {JOB_COLUMNS}
            """,
            job_id,
            lease_owner,
            lease_expires_at,
        )
        if not row:
            raise TransientContentionError(f"job {job_id} is no longer pending")
        return self._job_row_to_record(row)

    async def update_job(
        self,
        job_id: int,
        changes: dict[str, Any],
        *,
        expected_status: str,
        expected_lease_owner: str | None,
    ) -> Job | None:
        assignments, params = self._build_assignments(changes, UPDATABLE_JOB_COLUMNS, first_index=4)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update scraping_jobs
                set {assignments}, updated_at = now()
                where id = $1 and status = $2 and lease_owner is not distinct from $3::text and deleted_at is null
                returning {JOB_COLUMNS}
                """,
                job_id,
                expected_status,
                expected_lease_owner,
                *params,
            )
        except pg_exc.CheckViolationError as exc:
            raise ValidationError(str(exc)) from exc
        return self._job_row_to_record(row) if row else None

    async def soft_delete_job(self, job_id: int, *, actor: str) -> bool:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            update scraping_jobs
            set deleted_at = now(), updated_by = $2, updated_at = now()
            where id = $1 and deleted_at is null
            returning id
            """,
            job_id,
            actor,
        )
        return row is not None

    async def requeue_expired_leases(self, *, now: datetime, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))
        rows = await pool.fetch(
            """
            with expired as (
              select id as expired_id
              from scraping_jobs
              where status in ('queued', 'running')
                and deleted_at is null
                and lease_expires_at is not null
                and lease_expires_at <= $1
              order by lease_expires_at asc
              limit $2
              for update skip locked
            )
            update scraping_jobs
            set
              status = 'pending',
              lease_owner = null,
              lease_expires_at = null,
              started_at = null,
              updated_at = now()
            from expired
            where scraping_jobs.id = expired.expired_id
            returning scraping_jobs.id
            """,
            now,
            bounded_limit,
        )
        return len(rows)

    async def count_operations(self, user_id: str, operation_type: str, since: datetime) -> int:
        pool = await self._get_pool()
        if operation_type == "bulk_assignment":
            value = await pool.fetchval(
                """
                select
                  (select count(*) from keyword_maps_assignments
                   where created_by = $1 and created_at >= $2 and deleted_at is null)
                  +
                  (select count(*) from keyword_instagram_assignments
                   where created_by = $1 and created_at >= $2 and deleted_at is null)
                """,
                user_id,
                since,
            )
        else:
            value = await pool.fetchval(
                """
                select count(*)
                from scraping_jobs
                where created_by = $1 and created_at >= $2 and deleted_at is null
                """,
                user_id,
                since,
            )
        return int(value or 0)

    async def fetch_period_activity(self, keyword_id: int, period_start: date, period_end: date) -> PeriodActivity:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            job_rows = await conn.fetch(
                """
                select status, actual_duration, created_at
                from scraping_jobs
                where keyword_id = $1
                  and deleted_at is null
                  and (created_at at time zone 'utc')::date between $2 and $3
                order by id asc
                """,
                keyword_id,
                period_start,
                period_end,
            )
            place_rows = await conn.fetch(
                """
                select gm.rating, gm.review_count, gm.created_at
                from keyword_maps_assignments kma
                join maps_places gm on gm.id = kma.place_id
                where kma.keyword_id = $1
                  and kma.deleted_at is null
                  and gm.deleted_at is null
                  and (gm.created_at at time zone 'utc')::date between $2 and $3
                order by gm.id asc
                """,
                keyword_id,
                period_start,
                period_end,
            )
            post_rows = await conn.fetch(
                """
                select ip.likes_count, ip.comments_count, ip.created_at
                from keyword_instagram_assignments kia
                join instagram_posts ip on ip.id = kia.post_id
                where kia.keyword_id = $1
                  and kia.deleted_at is null
                  and ip.deleted_at is null
                  and (ip.created_at at time zone 'utc')::date between $2 and $3
                order by ip.id asc
                """,
                keyword_id,
                period_start,
                period_end,
            )
        return PeriodActivity(
            jobs=[
                JobActivity(status=row["status"], actual_duration=row["actual_duration"], created_at=row["created_at"])
                for row in job_rows
            ],
            places=[
                PlaceActivity(
                    rating=self._coerce_float(row["rating"]),
                    review_count=row["review_count"],
                    created_at=row["created_at"],
                )
                for row in place_rows
            ],
            posts=[
                PostActivity(
                    likes_count=int(row["likes_count"] or 0),
                    comments_count=int(row["comments_count"] or 0),
                    created_at=row["created_at"],
                )
                for row in post_rows
            ],
        )

    async def upsert_analytics_period(self, period: AnalyticsPeriod) -> AnalyticsPeriod:
        metrics = period.metrics.as_dict()
        metric_columns = ",\n                  ".join(PERIOD_METRIC_COLUMNS)
        metric_params = ", ".join(f"${index}" for index in range(8, 8 + len(PERIOD_METRIC_COLUMNS)))
        metric_updates = ",\n              ".join(f"{column} = excluded.{column}" for column in PERIOD_METRIC_COLUMNS)
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into keyword_analytics (
              keyword_id,
              period_start,
              period_end,
              period_type,
              user_id,
              created_by,
              updated_by,
              {metric_columns}
            )
            values ($1, $2, $3, $4, $5::uuid, $6, $7, {metric_params})
            on conflict (keyword_id, period_start, period_end, period_type) where deleted_at is null
            do update set
              {metric_updates},
              updated_by = excluded.updated_by,
              updated_at = now()
            returning {ANALYTICS_COLUMNS}
            """,
            period.keyword_id,
            period.period_start,
            period.period_end,
            period.period_type,
            period.user_id,
            period.created_by,
            period.updated_by,
            *(metrics[column] for column in PERIOD_METRIC_COLUMNS),
        )
        return self._analytics_row_to_record(row)

    async def list_analytics_periods(self, *, period_type: str, start_from: date) -> list[AnalyticsPeriod]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {ANALYTICS_COLUMNS}
            from keyword_analytics
            where period_type = $1 and period_start >= $2 and deleted_at is null
            order by keyword_id asc, period_start asc
            """,
            period_type,
            start_from,
        )
        return [self._analytics_row_to_record(row) for row in rows]

    async def replace_trend_records(self, records: list[TrendRecord]) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Serializes concurrent replacements of this dataset across processes.
                await conn.execute("select pg_advisory_xact_lock(hashtext('trending_keywords'))")
                await conn.execute("delete from trending_keywords")
                await conn.executemany(
                    """
                    insert into trending_keywords (
                      keyword_id,
                      keyword,
                      category,
                      user_id,
                      recent_engagement,
                      previous_engagement,
                      engagement_trend_percent,
                      recent_successful_jobs,
                      previous_successful_jobs,
                      job_success_trend_percent,
                      trend_score,
                      computed_at
                    )
                    values ($1, $2, $3, $4::uuid, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    [
                        (
                            record.keyword_id,
                            record.keyword,
                            record.category,
                            record.user_id,
                            record.recent_engagement,
                            record.previous_engagement,
                            record.engagement_trend_percent,
                            record.recent_successful_jobs,
                            record.previous_successful_jobs,
                            record.job_success_trend_percent,
                            record.trend_score,
                            record.computed_at,
                        )
                        for record in records
                    ],
                )
        return len(records)

    async def list_trend_records(self, user_id: str | None = None) -> list[TrendRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              keyword_id,
              keyword,
              category,
              user_id::text as user_id,
              recent_engagement,
              previous_engagement,
              engagement_trend_percent,
              recent_successful_jobs,
              previous_successful_jobs,
              job_success_trend_percent,
              trend_score,
              computed_at
            from trending_keywords
            where $1::uuid is null or user_id = $1::uuid
            order by trend_score desc, keyword_id asc
            """,
            user_id,
        )
        return [
            TrendRecord(
                keyword_id=row["keyword_id"],
                keyword=row["keyword"],
                category=row["category"],
                user_id=row["user_id"],
                recent_engagement=int(row["recent_engagement"]),
                previous_engagement=int(row["previous_engagement"]),
                engagement_trend_percent=float(row["engagement_trend_percent"]),
                recent_successful_jobs=int(row["recent_successful_jobs"]),
                previous_successful_jobs=int(row["previous_successful_jobs"]),
                job_success_trend_percent=float(row["job_success_trend_percent"]),
                trend_score=float(row["trend_score"]),
                computed_at=row["computed_at"],
            )
            for row in rows
        ]

    async def replace_category_rollups(self, rollups: list[CategoryRollup]) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext('category_performance'))")
                await conn.execute("delete from category_performance")
                await conn.executemany(
                    """
                    insert into category_performance (
                      user_id,
                      category,
                      total_keywords,
                      avg_search_volume,
                      avg_competition,
                      total_instagram_engagement,
                      avg_google_maps_rating,
                      total_google_maps_places,
                      total_jobs,
                      successful_jobs,
                      success_rate,
                      performance_score,
                      computed_at
                    )
                    values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    [
                        (
                            rollup.user_id,
                            rollup.category,
                            rollup.total_keywords,
                            rollup.avg_search_volume,
                            rollup.avg_competition,
                            rollup.total_instagram_engagement,
                            rollup.avg_google_maps_rating,
                            rollup.total_google_maps_places,
                            rollup.total_jobs,
                            rollup.successful_jobs,
                            rollup.success_rate,
                            rollup.performance_score,
                            rollup.computed_at,
                        )
                        for rollup in rollups
                    ],
                )
        return len(rollups)

    async def list_category_rollups(self, user_id: str | None = None) -> list[CategoryRollup]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              user_id::text as user_id,
              category,
              total_keywords,
              avg_search_volume,
              avg_competition,
              total_instagram_engagement,
              avg_google_maps_rating,
              total_google_maps_places,
              total_jobs,
              successful_jobs,
              success_rate,
              performance_score,
              computed_at
            from category_performance
            where $1::uuid is null or user_id = $1::uuid
            order by performance_score desc, category asc
            """,
            user_id,
        )
        return [
            CategoryRollup(
                user_id=row["user_id"],
                category=row["category"],
                total_keywords=int(row["total_keywords"]),
                avg_search_volume=self._coerce_float(row["avg_search_volume"]),
                avg_competition=self._coerce_float(row["avg_competition"]),
                total_instagram_engagement=int(row["total_instagram_engagement"]),
                avg_google_maps_rating=self._coerce_float(row["avg_google_maps_rating"]),
                total_google_maps_places=int(row["total_google_maps_places"]),
                total_jobs=int(row["total_jobs"]),
                successful_jobs=int(row["successful_jobs"]),
                success_rate=self._coerce_float(row["success_rate"]),
                performance_score=float(row["performance_score"]),
                computed_at=row["computed_at"],
            )
            for row in rows
        ]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("HV_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _build_assignments(
        changes: dict[str, Any],
        allowed: dict[str, str],
        *,
        first_index: int,
    ) -> tuple[str, list[Any]]:
        unknown = set(changes) - set(allowed)
        if unknown:
            raise ValidationError(f"unsupported columns: {sorted(unknown)}")
        if not changes:
            raise ValidationError("no changes supplied")

        assignments: list[str] = []
        params: list[Any] = []
        for offset, (column, value) in enumerate(sorted(changes.items())):
            cast = allowed[column]
            if cast == "jsonb" and value is not None:
                value = json.dumps(value)
            assignments.append(f"{column} = ${first_index + offset}::{cast}")
            params.append(value)
        return ", ".join(assignments), params

    @classmethod
    def _job_row_to_record(cls, row: asyncpg.Record) -> Job:
        return Job(
            id=row["id"],
            keyword_id=row["keyword_id"],
            job_type=row["job_type"],
            priority=row["priority"],
            status=row["status"],
            user_id=row["user_id"],
            results_count=row["results_count"] or 0,
            expected_results=row["expected_results"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            estimated_duration=row["estimated_duration"],
            actual_duration=row["actual_duration"],
            error_message=row["error_message"],
            error_code=row["error_code"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            job_config=cls._coerce_json_dict(row["job_config"]),
            job_results=cls._coerce_json_dict(row["job_results"]),
            lease_owner=row["lease_owner"],
            lease_expires_at=row["lease_expires_at"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _keyword_row_to_record(cls, row: asyncpg.Record) -> Keyword:
        return Keyword(
            id=row["id"],
            keyword=row["keyword"],
            user_id=row["user_id"],
            category=row["category"] or "general",
            status=row["status"],
            priority=row["priority"],
            search_volume=row["search_volume"],
            competition_score=cls._coerce_float(row["competition_score"]),
            performance_metrics=cls._coerce_json_dict(row["performance_metrics"]),
            updated_by=row["updated_by"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _analytics_row_to_record(cls, row: asyncpg.Record) -> AnalyticsPeriod:
        metrics = PeriodMetrics(
            instagram_posts_count=row["instagram_posts_count"],
            instagram_avg_likes=float(row["instagram_avg_likes"]),
            instagram_avg_comments=float(row["instagram_avg_comments"]),
            instagram_total_engagement=row["instagram_total_engagement"],
            google_maps_places_count=row["google_maps_places_count"],
            google_maps_avg_rating=cls._coerce_float(row["google_maps_avg_rating"]),
            google_maps_total_reviews=row["google_maps_total_reviews"],
            total_jobs_run=row["total_jobs_run"],
            successful_jobs=row["successful_jobs"],
            failed_jobs=row["failed_jobs"],
            avg_job_duration=cls._coerce_float(row["avg_job_duration"]),
            job_success_rate=cls._coerce_float(row["job_success_rate"]),
        )
        return AnalyticsPeriod(
            id=row["id"],
            keyword_id=row["keyword_id"],
            period_start=row["period_start"],
            period_end=row["period_end"],
            period_type=row["period_type"],
            metrics=metrics,
            user_id=row["user_id"],
            created_by=row["created_by"],
            updated_by=row["updated_by"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_float(value: Any) -> float | None:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}
