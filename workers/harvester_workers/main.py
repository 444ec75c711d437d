from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
import logging
import random
import time

from opentelemetry import trace

from harvester_workers.core.config import get_settings
from harvester_workers.core.telemetry import (
    configure_worker_logging,
    setup_worker_telemetry,
    shutdown_worker_telemetry,
)
from harvester_workers.jobs.schedule import daily_run_due, interval_elapsed, next_backoff
from harvester_workers.services.maintenance_client import MaintenanceClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def run_maintenance() -> None:
    settings = get_settings()
    configure_worker_logging(settings)
    tracer_provider = setup_worker_telemetry(settings)
    client = MaintenanceClient(
        base_url=settings.api_base_url,
        module_id=settings.module_id,
        api_key=settings.api_key,
        timeout_seconds=settings.request_timeout_seconds,
    )

    backoff = settings.tick_seconds
    last_reap_at: float | None = None
    last_refresh_at: float | None = None
    last_daily_run_on: date | None = None

    try:
        while True:
            try:
                with tracer.start_as_current_span("maintenance.tick"):
                    now = time.monotonic()
                    if interval_elapsed(last_reap_at, now, settings.lease_reaper_interval_seconds):
                        requeued = await client.reap_expired_jobs(limit=settings.lease_reaper_batch_size)
                        if requeued:
                            logger.info("requeued expired leases count=%s", requeued)
                        last_reap_at = now

                    wall_clock = datetime.now(timezone.utc)
                    if daily_run_due(
                        wall_clock,
                        run_hour_utc=settings.daily_analytics_hour_utc,
                        last_run_on=last_daily_run_on,
                    ):
                        summary = await client.compute_daily_analytics(today=wall_clock.date())
                        logger.info(
                            "daily analytics computed period_date=%s processed=%s failed=%s",
                            summary.get("period_date"),
                            summary.get("processed"),
                            summary.get("failed"),
                        )
                        last_daily_run_on = wall_clock.date()
                        # Fresh daily rows feed the derived datasets straight away.
                        last_refresh_at = None

                    if interval_elapsed(last_refresh_at, now, settings.refresh_interval_seconds):
                        report = await client.refresh_datasets()
                        failed = report.get("failed") or []
                        if failed:
                            logger.warning("dataset refresh reported failures datasets=%s", ",".join(failed))
                        else:
                            logger.info("datasets refreshed elapsed_s=%s", report.get("elapsed_seconds"))
                        last_refresh_at = now

                backoff = settings.tick_seconds
                await asyncio.sleep(settings.tick_seconds)
            except Exception as exc:  # pragma: no cover - long-running loop robustness
                sleep_for = next_backoff(
                    backoff,
                    base=settings.tick_seconds,
                    ceiling=settings.max_backoff_seconds,
                    jitter=random.uniform(0.0, 0.5),
                )
                logger.exception("maintenance tick failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        shutdown_worker_telemetry(tracer_provider)


if __name__ == "__main__":
    asyncio.run(run_maintenance())
