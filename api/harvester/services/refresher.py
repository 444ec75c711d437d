from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from opentelemetry import trace

from harvester.services.errors import NotFoundError
from harvester.services.rollups import CategoryRollupComputer
from harvester.services.trends import TrendComputer

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

TRENDING_KEYWORDS = "trending_keywords"
CATEGORY_PERFORMANCE = "category_performance"

DatasetRefresh = Callable[[], Awaitable[int]]


@dataclass(slots=True)
class DatasetRefreshOutcome:
    name: str
    status: str
    duration_seconds: float
    rows: int | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(slots=True)
class RefreshReport:
    outcomes: list[DatasetRefreshOutcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def failed(self) -> list[str]:
        return [outcome.name for outcome in self.outcomes if not outcome.succeeded]

    def outcome(self, name: str) -> DatasetRefreshOutcome | None:
        return next((outcome for outcome in self.outcomes if outcome.name == name), None)


class ViewRefresher:
    """Refreshes derived datasets, each isolated from the others' failures.

    Concurrent ``refresh`` calls for the same dataset join the execution
    already in flight instead of starting another one.
    """

    def __init__(self, datasets: dict[str, DatasetRefresh]) -> None:
        self.datasets = dict(datasets)
        self._in_flight: dict[str, asyncio.Task[DatasetRefreshOutcome]] = {}

    @classmethod
    def for_computers(cls, trends: TrendComputer, rollups: CategoryRollupComputer) -> ViewRefresher:
        return cls({TRENDING_KEYWORDS: trends.refresh, CATEGORY_PERFORMANCE: rollups.refresh})

    async def refresh(self, name: str) -> DatasetRefreshOutcome:
        if name not in self.datasets:
            raise NotFoundError(f"unknown dataset: {name}")

        task = self._in_flight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._run(name))
            self._in_flight[name] = task
            task.add_done_callback(lambda finished: self._release(name, finished))
        else:
            logger.debug("joining in-flight refresh dataset=%s", name)
        # A cancelled waiter leaves the shared execution running for the others.
        return await asyncio.shield(task)

    async def refresh_all(self) -> RefreshReport:
        started_at = time.perf_counter()
        with tracer.start_as_current_span("refresher.refresh_all") as span:
            outcomes = await asyncio.gather(*(self.refresh(name) for name in self.datasets))
            report = RefreshReport(outcomes=list(outcomes), elapsed_seconds=round(time.perf_counter() - started_at, 6))
            span.set_attribute("refresh.failed", len(report.failed))

        logger.info(
            "derived datasets refreshed total=%s failed=%s elapsed_s=%.3f",
            len(report.outcomes),
            ",".join(report.failed) or "-",
            report.elapsed_seconds,
        )
        return report

    async def _run(self, name: str) -> DatasetRefreshOutcome:
        started_at = time.perf_counter()
        with tracer.start_as_current_span("refresher.refresh_dataset") as span:
            span.set_attribute("dataset.name", name)
            try:
                rows = await self.datasets[name]()
            except Exception as exc:
                duration = round(time.perf_counter() - started_at, 6)
                logger.exception("dataset refresh failed dataset=%s duration_s=%.3f", name, duration)
                span.set_attribute("dataset.status", "failed")
                return DatasetRefreshOutcome(name=name, status="failed", duration_seconds=duration, error=str(exc))

            duration = round(time.perf_counter() - started_at, 6)
            span.set_attribute("dataset.status", "success")
        logger.info("dataset refreshed dataset=%s rows=%s duration_s=%.3f", name, rows, duration)
        return DatasetRefreshOutcome(name=name, status="success", duration_seconds=duration, rows=rows)

    def _release(self, name: str, finished: asyncio.Task[DatasetRefreshOutcome]) -> None:
        if self._in_flight.get(name) is finished:
            del self._in_flight[name]
