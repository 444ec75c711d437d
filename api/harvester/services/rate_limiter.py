from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from harvester.services.errors import RateLimitExceededError
from harvester.services.store import JobStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_QUOTAS: dict[str, int] = {
    "scraping_job": 100,
    "bulk_assignment": 1000,
}
FALLBACK_QUOTA = 50


def current_hour_start(now: datetime) -> datetime:
    return now.replace(minute=0, second=0, microsecond=0)


class RateLimiter:
    """Hourly per-caller quota on creation operations.

    The check counts existing rows and the insert happens afterwards, so
    concurrent creations can overshoot a quota by a few operations. This is
    accepted: the limiter guards against abuse, not exact accounting.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        quotas: dict[str, int] | None = None,
        default_quota: int = FALLBACK_QUOTA,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.quotas = {**DEFAULT_QUOTAS, **(quotas or {})}
        self.default_quota = default_quota
        self.clock = clock or utcnow

    def quota_for(self, operation_type: str) -> int:
        return self.quotas.get(operation_type, self.default_quota)

    async def check_quota(self, caller: str, operation_type: str) -> bool:
        since = current_hour_start(self.clock())
        used = await self.store.count_operations(caller, operation_type, since)
        return used < self.quota_for(operation_type)

    async def enforce(self, caller: str, operation_type: str) -> None:
        if await self.check_quota(caller, operation_type):
            return
        quota = self.quota_for(operation_type)
        logger.warning("rate limit exceeded caller=%s operation=%s quota=%s", caller, operation_type, quota)
        raise RateLimitExceededError(operation_type, quota)
