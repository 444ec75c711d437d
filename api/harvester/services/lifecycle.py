from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

from harvester.services.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from harvester.services.rate_limiter import RateLimiter
from harvester.services.records import (
    JOB_STATUSES,
    JOB_TYPES,
    LEASED_JOB_STATUSES,
    MAX_JOB_PRIORITY,
    MIN_JOB_PRIORITY,
    TERMINAL_JOB_STATUSES,
    Job,
    JobDraft,
)
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)

SCRAPING_JOB_OPERATION = "scraping_job"


class JobLifecycleManager:
    """Creates scraping jobs and moves them through their status machine.

    ``pending -> queued -> running -> completed | failed | cancelled``

    Failed jobs only return to ``pending`` through :meth:`retry_job`, which is
    where a retry policy decides; nothing retries automatically.
    """

    def __init__(
        self,
        store: JobStore,
        rate_limiter: RateLimiter,
        *,
        default_priority: int = 5,
        default_max_retries: int = 3,
        lease_seconds: int = 300,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.default_priority = default_priority
        self.default_max_retries = max(0, default_max_retries)
        self.lease_seconds = max(1, lease_seconds)
        self.clock = clock or utcnow

    async def create_job(
        self,
        keyword_id: int,
        job_type: str,
        priority: int | None,
        config: dict[str, Any] | None,
        caller: str,
        *,
        expected_results: int | None = None,
        estimated_duration: int | None = None,
        max_retries: int | None = None,
    ) -> Job:
        if job_type not in JOB_TYPES:
            raise ValidationError(f"unsupported job type: {job_type}")
        resolved_priority = self.default_priority if priority is None else priority
        if (
            isinstance(resolved_priority, bool)
            or not isinstance(resolved_priority, int)
            or not MIN_JOB_PRIORITY <= resolved_priority <= MAX_JOB_PRIORITY
        ):
            raise ValidationError(f"priority must be an integer between {MIN_JOB_PRIORITY} and {MAX_JOB_PRIORITY}")
        if config is None:
            config = {}
        if not isinstance(config, dict):
            raise ValidationError("job_config must be a JSON object")
        resolved_max_retries = self.default_max_retries if max_retries is None else max_retries
        if resolved_max_retries < 0:
            raise ValidationError("max_retries must be non-negative")
        for name, value in (("expected_results", expected_results), ("estimated_duration", estimated_duration)):
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be non-negative")

        keyword = await self.store.get_keyword(keyword_id)
        if keyword is None:
            raise NotFoundError("keyword not found or has been deleted")
        if keyword.user_id != caller:
            raise AuthorizationError("cannot create a job for a keyword owned by another user")

        await self.rate_limiter.enforce(caller, SCRAPING_JOB_OPERATION)

        job = await self.store.insert_job(
            JobDraft(
                keyword_id=keyword.id,
                job_type=job_type,
                priority=resolved_priority,
                user_id=keyword.user_id,
                created_by=caller,
                max_retries=resolved_max_retries,
                job_config=config,
                expected_results=expected_results,
                estimated_duration=estimated_duration,
            )
        )
        logger.info(
            "scraping job created job_id=%s keyword_id=%s job_type=%s priority=%s caller=%s",
            job.id,
            keyword.id,
            job_type,
            resolved_priority,
            caller,
        )
        return job

    async def update_status(
        self,
        job_id: int,
        new_status: str,
        *,
        results_count: int | None = None,
        error: str | None = None,
        error_code: str | None = None,
        job_results: dict[str, Any] | None = None,
        actor: str | None = None,
        worker_id: str | None = None,
    ) -> bool:
        """Apply a status report and return whether a live job matched.

        A missing job is reported with ``False`` and a warning instead of an
        exception so the HTTP layer can decide on the response. When the job
        holds a lease, only ``worker_id`` (falling back to ``actor``) may
        report on it; internal callers passing neither skip the owner check.
        """
        if new_status not in JOB_STATUSES:
            raise ValidationError(f"unknown job status: {new_status}")
        if results_count is not None and results_count < 0:
            raise ValidationError("results_count must be non-negative")
        if job_results is not None and not isinstance(job_results, dict):
            raise ValidationError("job_results must be a JSON object")

        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning("status update ignored for missing job job_id=%s status=%s", job_id, new_status)
            return False

        reporter = worker_id or actor
        if reporter and job.lease_owner and job.lease_owner != reporter:
            logger.warning(
                "status update rejected for foreign lease job_id=%s lease_owner=%s reporter=%s status=%s",
                job_id,
                job.lease_owner,
                reporter,
                new_status,
            )
            raise ConflictError(f"job {job_id} is leased by another worker")

        self._validate_transition(from_status=job.status, to_status=new_status)
        changes = self._status_changes(job, new_status)
        if results_count is not None:
            changes["results_count"] = results_count
        if job_results is not None:
            changes["job_results"] = job_results
        if error is not None:
            changes["error_message"] = error
        if error_code is not None:
            changes["error_code"] = error_code
        if actor:
            changes["updated_by"] = actor

        # Constructing the successor checks the record invariants before the write.
        replace(job, **changes)
        updated = await self.store.update_job(
            job_id,
            changes,
            expected_status=job.status,
            expected_lease_owner=job.lease_owner,
        )
        if updated is None:
            raise ConflictError(f"job {job_id} changed concurrently; status update not applied")

        logger.info(
            "job status updated job_id=%s from=%s to=%s results_count=%s actual_duration=%s",
            job_id,
            job.status,
            updated.status,
            updated.results_count,
            updated.actual_duration,
        )
        return True

    async def retry_job(self, job_id: int, caller: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError("job not found")
        if job.user_id != caller:
            raise AuthorizationError("cannot retry a job owned by another user")
        if job.status != "failed":
            raise ConflictError(f"only failed jobs can be retried; job is {job.status}")
        if not job.can_retry:
            raise ConflictError(f"retries exhausted ({job.retry_count}/{job.max_retries})")

        changes: dict[str, Any] = {
            "status": "pending",
            "retry_count": job.retry_count + 1,
            "started_at": None,
            "completed_at": None,
            "actual_duration": None,
            "error_message": None,
            "error_code": None,
            "lease_owner": None,
            "lease_expires_at": None,
            "updated_by": caller,
        }
        updated = await self.store.update_job(
            job_id,
            changes,
            expected_status="failed",
            expected_lease_owner=job.lease_owner,
        )
        if updated is None:
            raise ConflictError(f"job {job_id} changed concurrently; retry not applied")
        logger.info("job re-enqueued job_id=%s retry_count=%s max_retries=%s", job_id, updated.retry_count, updated.max_retries)
        return updated

    async def retire_job(self, job_id: int, caller: str) -> bool:
        job = await self.store.get_job(job_id)
        if job is None:
            return False
        if job.user_id != caller:
            raise AuthorizationError("cannot delete a job owned by another user")
        deleted = await self.store.soft_delete_job(job_id, actor=caller)
        if deleted:
            logger.info("job retired job_id=%s caller=%s", job_id, caller)
        return deleted

    def _status_changes(self, job: Job, new_status: str) -> dict[str, Any]:
        changes: dict[str, Any] = {"status": new_status}
        now = self.clock()

        if new_status == job.status:
            if new_status in LEASED_JOB_STATUSES and job.lease_owner:
                changes["lease_expires_at"] = now + timedelta(seconds=self.lease_seconds)
            return changes

        if new_status == "running":
            if job.started_at is None:
                changes["started_at"] = now
            if job.lease_owner:
                changes["lease_expires_at"] = now + timedelta(seconds=self.lease_seconds)
        elif new_status == "pending":
            changes["lease_owner"] = None
            changes["lease_expires_at"] = None
        elif new_status in TERMINAL_JOB_STATUSES:
            changes["completed_at"] = now
            changes["lease_owner"] = None
            changes["lease_expires_at"] = None
            if job.started_at is not None:
                changes["actual_duration"] = max(0, int((now - job.started_at).total_seconds()))
        return changes

    @staticmethod
    def _validate_transition(*, from_status: str, to_status: str) -> None:
        allowed_transitions = {
            "pending": {"queued", "cancelled"},
            "queued": {"running", "pending", "failed", "cancelled"},
            "running": {"completed", "failed", "cancelled"},
        }
        if to_status == from_status:
            return
        allowed = allowed_transitions.get(from_status)
        if not allowed or to_status not in allowed:
            raise ConflictError(f"invalid job status transition: {from_status} -> {to_status}")
