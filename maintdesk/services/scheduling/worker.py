from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from redis.asyncio import Redis
from sqlalchemy.exc import SQLAlchemyError

from maintdesk.core.config import get_settings
from maintdesk.services.scheduling.generator import run_recurring_generation
from maintdesk.services.scheduling.sweeps import (
    JOB_DEMO_EXPIRY,
    JOB_FEATURE_LOSS,
    run_demo_expiry_sweep,
    run_feature_loss_sweep,
)


logger = logging.getLogger(__name__)

JOB_RECURRING_GENERATION = "recurring_generation"
JOB_ENTITLEMENT_SWEEP = "entitlement_sweep"
JOBS = (JOB_RECURRING_GENERATION, JOB_DEMO_EXPIRY, JOB_FEATURE_LOSS)

_local_locks: dict[str, asyncio.Lock] = {}
_local_lock_owners: dict[str, str] = {}

_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()
_job_pool = None
_job_pool_loop: asyncio.AbstractEventLoop | None = None
_job_pool_lock = asyncio.Lock()


def _is_missing_table_error(exc: Exception) -> bool:
    # Workers may start before migrations; treat a missing schema as a degraded tick.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


async def get_lock_redis() -> Redis | None:
    # Share one client per event loop; tests swap loops between cases.
    global _redis_client, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_client is not None and _redis_loop == current_loop:
        return _redis_client
    async with _redis_lock:
        if _redis_client is None or _redis_loop != current_loop:
            try:
                _redis_client = Redis.from_url(get_settings().redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - Redis might be unavailable in dev
                logger.warning("sweep_lock_redis_unavailable", exc_info=exc)
                return None
    return _redis_client


@dataclass(slots=True)
class TickLock:
    key: str
    token: str
    redis: Any | None
    local: bool


async def acquire_tick_lock(job: str) -> TickLock | None:
    """Skip overlapping ticks of the same job.

    Correctness never depends on this lock; every mutation is transactional.
    """
    settings = get_settings()
    key = f"{settings.sweep_lock_prefix}:{job}"
    token = uuid4().hex
    if settings.sweep_lock_backend == "redis":
        redis = await get_lock_redis()
        if redis is not None:
            ttl_s = max(5, int(settings.sweep_lock_ttl_s))
            acquired = await redis.set(key, token, nx=True, ex=ttl_s)
            if not acquired:
                return None
            return TickLock(key=key, token=token, redis=redis, local=False)

    lock = _local_locks.setdefault(key, asyncio.Lock())
    if lock.locked():
        return None
    await lock.acquire()
    _local_lock_owners[key] = token
    return TickLock(key=key, token=token, redis=None, local=True)


async def release_tick_lock(lock: TickLock) -> None:
    # Release only while still the owner so an expired lock never clobbers a newer holder.
    if lock.local:
        local = _local_locks.get(lock.key)
        if local is not None and local.locked() and _local_lock_owners.get(lock.key) == lock.token:
            _local_lock_owners.pop(lock.key, None)
            local.release()
        return
    if lock.redis is None:
        return
    current = await lock.redis.get(lock.key)
    value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
    if value == lock.token:
        await lock.redis.delete(lock.key)


async def run_job_once(job: str) -> dict[str, Any]:
    # Run a single job under its tick lock and return a summary payload.
    if job not in JOBS:
        raise ValueError(f"unknown job: {job}")
    lock = await acquire_tick_lock(job)
    if lock is None:
        logger.info("sweep_tick_skipped job=%s reason=lock_held", job)
        return {"job": job, "status": "skipped_lock"}
    try:
        try:
            if job == JOB_RECURRING_GENERATION:
                summary = (await run_recurring_generation()).as_dict()
            elif job == JOB_DEMO_EXPIRY:
                summary = (await run_demo_expiry_sweep()).as_dict()
            else:
                summary = (await run_feature_loss_sweep()).as_dict()
        except SQLAlchemyError as exc:
            if _is_missing_table_error(exc):
                return {"job": job, "status": "waiting_for_migrations"}
            raise
        return {"job": job, "status": "ok", **{k: v for k, v in summary.items() if k != "job"}}
    finally:
        await release_tick_lock(lock)


async def get_job_pool():
    # Cache the arq pool per event loop to avoid reconnecting on every enqueue.
    global _job_pool, _job_pool_loop
    current_loop = asyncio.get_running_loop()
    if _job_pool is not None and _job_pool_loop == current_loop:
        return _job_pool
    async with _job_pool_lock:
        if _job_pool is None or _job_pool_loop != current_loop:
            settings = get_settings()
            _job_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.jobs_queue_name,
            )
            _job_pool_loop = current_loop
    return _job_pool


async def enqueue_job(job: str) -> dict[str, Any]:
    # Hand a one-shot run to the arq jobs worker instead of running it in the caller.
    if job not in JOBS:
        raise ValueError(f"unknown job: {job}")
    pool = await get_job_pool()
    queued = await pool.enqueue_job("run_named_job", job)
    logger.info("job_enqueued job=%s job_id=%s", job, getattr(queued, "job_id", None))
    return {"job": job, "status": "enqueued", "job_id": getattr(queued, "job_id", None)}


async def run_recurring_generation_cycle() -> dict[str, Any]:
    return await run_job_once(JOB_RECURRING_GENERATION)


async def run_entitlement_sweep_cycle() -> dict[str, Any]:
    # Demo expiry first: a tenant failing both sweeps is recorded with the more specific reason.
    demo = await run_job_once(JOB_DEMO_EXPIRY)
    feature = await run_job_once(JOB_FEATURE_LOSS)
    return {"job": JOB_ENTITLEMENT_SWEEP, JOB_DEMO_EXPIRY: demo, JOB_FEATURE_LOSS: feature}


async def run_recurring_generation_loop() -> None:
    # A failed tick is logged; the next tick retries from stored state.
    interval = max(5, int(get_settings().recurring_sweep_interval_s))
    while True:
        try:
            await run_recurring_generation_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("recurring generation cycle failed")
        await asyncio.sleep(interval)


async def run_entitlement_sweep_loop() -> None:
    interval = max(5, int(get_settings().entitlement_sweep_interval_s))
    while True:
        try:
            await run_entitlement_sweep_cycle()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("entitlement sweep cycle failed")
        await asyncio.sleep(interval)
