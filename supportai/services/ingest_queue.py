from __future__ import annotations

import asyncio
import logging

from arq import Retry, create_pool
from arq.connections import ArqRedis, RedisSettings

from supportai.core.config import get_settings
from supportai.services.ingestion import IngestionJobPayload, run_ingestion_job


logger = logging.getLogger(__name__)

INGEST_FUNCTION = "ingest_source"

_arq_pool: ArqRedis | None = None
_arq_pool_loop: asyncio.AbstractEventLoop | None = None
_arq_lock = asyncio.Lock()


def _queue_key(queue_name: str) -> str:
    # arq keeps pending jobs in a sorted set under this name.
    return f"arq:queue:{queue_name}"


def _inline_mode() -> bool:
    return get_settings().ingest_execution_mode.lower() == "inline"


async def get_arq_pool() -> ArqRedis:
    global _arq_pool, _arq_pool_loop
    current_loop = asyncio.get_running_loop()
    if _arq_pool is not None and _arq_pool_loop == current_loop:
        return _arq_pool
    if _arq_pool is not None and _arq_pool_loop != current_loop:
        # Pools are loop-bound; tests spin up fresh loops.
        _arq_pool = None
    async with _arq_lock:
        if _arq_pool is None:
            settings = get_settings()
            _arq_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.ingest_queue_name,
            )
            _arq_pool_loop = current_loop
    return _arq_pool


def reset_arq_pool() -> None:
    global _arq_pool, _arq_pool_loop
    _arq_pool = None
    _arq_pool_loop = None


async def get_queue_depth() -> int | None:
    # None tells the health endpoint that Redis is unreachable.
    if _inline_mode():
        return 0
    try:
        pool = await get_arq_pool()
        return int(await pool.zcard(_queue_key(get_settings().ingest_queue_name)))
    except Exception:  # noqa: BLE001 - health reporting tolerates a degraded Redis
        return None


async def enqueue_ingestion_job(payload: IngestionJobPayload) -> str:
    settings = get_settings()
    job_id = payload.job_id
    if _inline_mode():
        await _run_inline_job(payload, max_retries=settings.ingest_max_retries)
        return job_id

    pool = await get_arq_pool()
    job = await pool.enqueue_job(
        INGEST_FUNCTION,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.ingest_queue_name,
    )
    logger.info("ingestion_enqueued source_id=%s job_id=%s", payload.source_id, job_id)
    # arq returns None when the job id already exists; the id still traces the same job.
    return job.job_id if job else job_id


async def _run_inline_job(payload: IngestionJobPayload, *, max_retries: int) -> None:
    # Same retry contract as the worker, without Redis or deferral.
    attempt = 1
    while True:
        try:
            await run_ingestion_job(payload, attempt=attempt, max_retries=max_retries)
            return
        except Retry:
            attempt += 1
