from __future__ import annotations

import logging

from arq.connections import RedisSettings

from supportai.core.config import get_settings
from supportai.core.logging import configure_logging
from supportai.services.audit import get_audit_logger
from supportai.services.ingestion import IngestionJobPayload, IngestionOutcome, run_ingestion_job


logger = logging.getLogger(__name__)


async def ingest_source(ctx, payload: dict) -> dict:
    # Validate in the worker so a malformed enqueue fails loudly.
    job_payload = IngestionJobPayload.model_validate(payload)
    outcome: IngestionOutcome = await run_ingestion_job(
        job_payload,
        attempt=ctx.get("job_try", 1),
        max_retries=get_settings().ingest_max_retries,
    )
    return {"source_id": outcome.source_id, "status": outcome.status, "chunks_count": outcome.chunks_count}


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("ingestion_worker_started queue=%s", get_settings().ingest_queue_name)


async def _shutdown(ctx) -> None:
    # Flush buffered audit events before the process exits.
    await get_audit_logger().close()


class WorkerSettings:
    # Class attributes are what the arq CLI reads.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.ingest_queue_name
    max_tries = settings.ingest_max_retries
    max_jobs = settings.ingest_max_jobs
    functions = [ingest_source]
    on_startup = _startup
    on_shutdown = _shutdown
