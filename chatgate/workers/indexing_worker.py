from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from chatgate.core.config import get_settings
from chatgate.core.logging import configure_logging
from chatgate.persistence.db import SessionLocal
from chatgate.services.billing import expire_lapsed_subscriptions
from chatgate.services.indexing import IndexJobPayload, process_index_job
from chatgate.services.recovery import run_recovery


logger = logging.getLogger(__name__)


async def index_document(ctx, payload: dict) -> int:
    # Validate payloads in the worker to enforce the job schema.
    job_payload = IndexJobPayload.model_validate(payload)
    logger.info(
        "index_job_started job_id=%s document_id=%s attempt=%s",
        ctx.get("job_id") or job_payload.request_id,
        job_payload.document_id,
        ctx.get("job_try", 1),
    )
    return await process_index_job(job_payload)


async def reconcile_subscriptions(ctx) -> dict:
    # Expire lapsed rows first so recovery sees current statuses.
    async with SessionLocal() as session:
        expired = await expire_lapsed_subscriptions(session)
        result = await run_recovery(session)
    summary = result.as_dict()
    summary["expired"] = expired
    return summary


def _recovery_minutes(interval: int) -> set[int]:
    interval = max(1, min(int(interval), 60))
    return set(range(0, 60, interval))


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("indexing_worker_started queue=%s", get_settings().index_queue_name)


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.index_queue_name
    max_tries = settings.index_max_retries
    functions = [index_document]
    cron_jobs = [
        cron(
            reconcile_subscriptions,
            minute=_recovery_minutes(settings.recovery_interval_minutes),
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
