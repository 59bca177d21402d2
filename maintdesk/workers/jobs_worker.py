from __future__ import annotations

import logging
from typing import Any

from arq import cron
from arq.connections import RedisSettings

from maintdesk.core.config import get_settings
from maintdesk.core.logging import configure_logging
from maintdesk.services.scheduling.worker import (
    JOBS,
    run_entitlement_sweep_cycle,
    run_job_once,
    run_recurring_generation_cycle,
)


logger = logging.getLogger(__name__)


def cron_minutes(interval_s: int) -> set[int]:
    # arq cron matches wall-clock minutes; sub-minute cadences collapse to every minute.
    step = max(1, min(60, int(interval_s) // 60))
    return set(range(0, 60, step))


async def recurring_generation_tick(ctx) -> dict[str, Any]:
    return await run_recurring_generation_cycle()


async def entitlement_sweep_tick(ctx) -> dict[str, Any]:
    return await run_entitlement_sweep_cycle()


async def run_named_job(ctx, job: str) -> dict[str, Any]:
    # Enqueued one-shot runs; unknown names are rejected without retries.
    if job not in JOBS:
        logger.warning("jobs_worker_unknown_job job=%s", job)
        return {"job": job, "status": "unknown_job"}
    return await run_job_once(job)


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("jobs_worker_started")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.jobs_queue_name
    functions = [run_named_job]
    cron_jobs = [
        cron(recurring_generation_tick, minute=cron_minutes(settings.recurring_sweep_interval_s)),
        cron(entitlement_sweep_tick, minute=cron_minutes(settings.entitlement_sweep_interval_s)),
    ]
    on_startup = _startup
