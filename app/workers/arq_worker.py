from __future__ import annotations

from typing import Any

from arq import run_worker, cron
from sqlalchemy import text

from app.core.logger import logger
from app.core.db import SessionLocal, engine
from app.core.redis import arq_redis_settings
from app.domain.batch import service as batch_service
from app.domain.batch.webhook import deliver_batch_webhook as _deliver
from app.domain.reconcile.service import reconcile_stuck_tasks


def webhook_job_id(batch_id: str) -> str:
    # один job на batch: повторная постановка в очередь — no-op
    return f"batch-webhook:{batch_id}"


async def deliver_batch_webhook(ctx: dict[str, Any], batch_id: str) -> bool:
    async with SessionLocal() as session:
        delivered = await _deliver(session, batch_id)
    logger.info(f"batch webhook job done: batch={batch_id} delivered={delivered}")
    return delivered


async def process_batches(ctx: dict[str, Any]) -> int:
    redis = ctx["redis"]

    async def enqueue(batch_id: str) -> None:
        await redis.enqueue_job("deliver_batch_webhook", batch_id, _job_id=webhook_job_id(batch_id))

    return await batch_service.process_batches(SessionLocal, enqueue=enqueue)


async def reconcile_stuck(ctx: dict[str, Any]) -> int:
    """Зависшие pending/processing -> failed (timeout) с возвратом кредитов."""
    failed = await reconcile_stuck_tasks(SessionLocal)
    return len(failed)


async def startup(ctx: dict[str, Any]):
    logger.info("🚀 ARQ Worker startup: ping DB")
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
    ctx["ready"] = True


async def shutdown(ctx: dict[str, Any]):
    logger.info("🔻 ARQ Worker shutdown")
    await engine.dispose()


class WorkerSettings:
    functions = [
        deliver_batch_webhook,
        process_batches,
        reconcile_stuck,
    ]
    cron_jobs = [
        cron(process_batches, second={0, 20, 40}, unique=True),
        cron(reconcile_stuck, minute={0, 10, 20, 30, 40, 50}, unique=True),
    ]
    redis_settings = arq_redis_settings()
    on_startup = startup
    on_shutdown = shutdown
    burst = False

    # webhook: 3 попытки по 5 с + паузы — с запасом
    job_timeout = 300
    keep_result = 86400
    max_jobs = 10


if __name__ == "__main__":
    run_worker(WorkerSettings)
