from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from opentelemetry import trace

from harvester.services.errors import TransientContentionError
from harvester.services.records import Job
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ANONYMOUS_WORKER = "anonymous-worker"


class Scheduler:
    """Leases pending jobs to workers, highest priority first.

    Candidates are listed without locks and then claimed one at a time with a
    non-blocking conditional update. A lost claim moves on to the next
    candidate, so concurrent callers never wait on each other and never
    receive the same job.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        lease_seconds: int = 300,
        claim_rounds: int = 3,
        candidate_batch_size: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.lease_seconds = max(1, lease_seconds)
        self.claim_rounds = max(1, claim_rounds)
        self.candidate_batch_size = max(1, candidate_batch_size)
        self.clock = clock or utcnow

    async def lease_next_job(self, worker_id: str | None = None) -> Job | None:
        lease_owner = worker_id or ANONYMOUS_WORKER
        with tracer.start_as_current_span("scheduler.lease_next_job") as span:
            span.set_attribute("worker.id", lease_owner)
            for round_number in range(1, self.claim_rounds + 1):
                candidates = await self.store.list_pending_jobs(self.candidate_batch_size)
                if not candidates:
                    span.set_attribute("lease.outcome", "empty")
                    return None

                for candidate in candidates:
                    expires_at = self.clock() + timedelta(seconds=self.lease_seconds)
                    try:
                        job = await self.store.claim_pending_job(
                            candidate.id,
                            lease_owner=lease_owner,
                            lease_expires_at=expires_at,
                        )
                    except TransientContentionError:
                        logger.debug("lease contention job_id=%s worker=%s round=%s", candidate.id, lease_owner, round_number)
                        continue

                    span.set_attribute("lease.outcome", "claimed")
                    span.set_attribute("job.id", job.id)
                    logger.info(
                        "job leased job_id=%s worker=%s priority=%s lease_expires_at=%s",
                        job.id,
                        lease_owner,
                        job.priority,
                        job.lease_expires_at.isoformat() if job.lease_expires_at else None,
                    )
                    return job

            span.set_attribute("lease.outcome", "contended")
            logger.info("no job leased after contention worker=%s rounds=%s", lease_owner, self.claim_rounds)
            return None

    async def reap_expired_leases(self, limit: int = 100) -> int:
        """Return jobs whose lease ran out to ``pending``.

        Reaping is not a retry: ``retry_count`` is left untouched.
        """
        with tracer.start_as_current_span("scheduler.reap_expired_leases") as span:
            requeued = await self.store.requeue_expired_leases(now=self.clock(), limit=max(1, limit))
            span.set_attribute("lease.requeued", requeued)
        if requeued:
            logger.info("requeued expired leases count=%s", requeued)
        return requeued
