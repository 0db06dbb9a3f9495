# app/domain/batch/service.py
"""
Enterprise batch: кредиты замораживаются сразу за весь batch,
дочерние задачи рендерятся без поштучного списания, после того как
все дети стали терминальными — расчёт (возврат неиспользованного)
и webhook через очередь arq.
"""
from __future__ import annotations

import uuid
from typing import Awaitable, Callable, List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logger import logger
from app.core.settings import settings
from app.domain.batch.webhook import resolve_target
from app.domain.errors import DomainError, UnknownModel
from app.domain.generation.clients.grsai import GrsaiError
from app.domain.generation.poller import poll
from app.domain.generation.service_finalize import ACTIVE, apply_poll_result, fail_task
from app.domain.generation.service_start import submit_task
from app.domain.payments.tiers import model_cost
from app.domain.wallet.service import credit_wallet, deduct_wallet
from app.models.models import BatchJob, EnterpriseApiKey, VideoTask
from app.utils.clock import utcnow

MAX_BATCH_SIZE = 100
TERMINAL_BATCH = ("completed", "partial", "failed")

Enqueue = Callable[[str], Awaitable[None]]


async def create_batch(
    session: AsyncSession,
    *,
    user_id: str,
    model_id: str,
    prompts: Sequence[str],
) -> BatchJob:
    cost = model_cost(model_id)
    if cost is None:
        raise UnknownModel(model_id)
    prompts = [p.strip() for p in prompts if p and p.strip()]
    if not prompts:
        raise DomainError("EMPTY_BATCH")
    if len(prompts) > MAX_BATCH_SIZE:
        raise DomainError("BATCH_TOO_LARGE", f"{len(prompts)} > {MAX_BATCH_SIZE}")

    key = (
        await session.execute(
            select(EnterpriseApiKey)
            .where(EnterpriseApiKey.user_id == user_id)
            .order_by(EnterpriseApiKey.created_at.desc())
        )
    ).scalars().first()

    batch_id = str(uuid.uuid4())
    frozen = cost * len(prompts)
    try:
        await deduct_wallet(
            session,
            user_id,
            frozen,
            ref_type="batch_upfront",
            ref_id=batch_id,
            reason=f"batch {model_id} x{len(prompts)}",
        )
        batch = BatchJob(
            id=batch_id,
            user_id=user_id,
            model_id=model_id,
            status="queued",
            total_count=len(prompts),
            cost_per_video=cost,
            credits_frozen=frozen,
            webhook_url=key.webhook_url if key else None,
            webhook_secret=key.webhook_secret if key else None,
        )
        session.add(batch)
        for idx, prompt in enumerate(prompts):
            session.add(VideoTask(
                user_id=user_id,
                model_id=model_id,
                prompt=prompt,
                status="pending",
                batch_job_id=batch_id,
                batch_index=idx,
            ))
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("batch created id=%s user=%s model=%s count=%s frozen=%s",
                batch_id, user_id, model_id, len(prompts), frozen)
    return batch


async def _children(session: AsyncSession, batch_id: str) -> List[VideoTask]:
    q = (
        select(VideoTask)
        .where(VideoTask.batch_job_id == batch_id)
        .order_by(VideoTask.batch_index)
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(q)).scalars().all())


async def process_batch(session: AsyncSession, batch_id: str, *, enqueue: Optional[Enqueue] = None) -> str:
    """
    Один тик: отправить не отправленных детей, опросить активных,
    при полной готовности рассчитать batch. Возвращает статус batch.
    """
    batch = (await session.execute(select(BatchJob).where(BatchJob.id == batch_id))).scalars().first()
    if batch is None:
        raise DomainError("BATCH_NOT_FOUND", batch_id)
    if batch.status in TERMINAL_BATCH:
        return batch.status

    if batch.status == "queued":
        await session.execute(
            update(BatchJob)
            .where(BatchJob.id == batch_id, BatchJob.status == "queued")
            .values(status="processing")
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    for task in await _children(session, batch_id):
        if task.status not in ACTIVE:
            continue
        if not task.grsai_task_id:
            try:
                await submit_task(session, task_id=task.id, model_id=task.model_id, prompt=task.prompt or "")
            except GrsaiError as e:
                logger.warning("batch %s child %s submit failed: %s", batch_id, task.id, e)
                await fail_task(session, task.id, error_message=e.code, failure_reason="submit_failed")
            continue
        result = await poll(task.grsai_task_id)
        await apply_poll_result(session, task.id, result)

    if any(t.status in ACTIVE for t in await _children(session, batch_id)):
        return "processing"

    settled = await settle_batch(session, batch_id)
    if settled and enqueue is not None:
        await enqueue(batch_id)
    status = (await session.execute(select(BatchJob.status).where(BatchJob.id == batch_id))).scalar_one()
    return status


async def settle_batch(session: AsyncSession, batch_id: str) -> bool:
    """
    Расчёт после того, как все дети терминальные: неиспользованные кредиты
    назад (permanent, ledger batch_refund), итоговый статус, webhook в pending.
    True — расчёт сделан сейчас, False — уже был или дети не готовы.
    """
    try:
        batch = (
            await session.execute(
                select(BatchJob)
                .where(BatchJob.id == batch_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalars().first()
        if batch is None or batch.settlement_status != "pending":
            await session.rollback()
            return False

        children = await _children(session, batch_id)
        if any(t.status in ACTIVE for t in children):
            await session.rollback()
            return False

        success = sum(1 for t in children if t.status == "succeeded")
        failed = len(children) - success
        spent = success * batch.cost_per_video
        unspent = max(0, batch.credits_frozen - spent)

        if failed == 0:
            status = "completed"
        elif success == 0:
            status = "failed"
        else:
            status = "partial"

        url, _secret = await resolve_target(session, batch)
        res = await session.execute(
            update(BatchJob)
            .where(BatchJob.id == batch_id, BatchJob.settlement_status == "pending")
            .values(
                status=status,
                success_count=success,
                failed_count=failed,
                credits_spent=spent,
                settlement_status="refunded" if unspent else "finalized",
                webhook_status="pending" if url else "unset",
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) == 0:
            await session.rollback()
            return False

        if unspent:
            await credit_wallet(
                session,
                batch.user_id,
                permanent=unspent,
                ref_type="batch_refund",
                ref_id=batch_id,
                reason=f"batch {batch_id}: {failed} of {len(children)} failed",
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("batch settled id=%s status=%s success=%s failed=%s refund=%s",
                batch_id, status, success, failed, unspent)
    return True


async def pending_webhooks(session: AsyncSession, limit: int) -> List[str]:
    """Рассчитанные batch, webhook которых ещё не отправлен (outbox)."""
    q = (
        select(BatchJob.id)
        .where(BatchJob.settlement_status != "pending", BatchJob.webhook_status == "pending")
        .order_by(BatchJob.completed_at)
        .limit(limit)
    )
    return [r[0] for r in (await session.execute(q)).all()]


async def process_batches(
    session_factory: async_sessionmaker,
    *,
    enqueue: Optional[Enqueue] = None,
    limit: Optional[int] = None,
) -> int:
    """Тик воркера по активным batch; каждый в своей сессии, ошибка одного не валит остальные."""
    limit = limit or settings.BATCH_CLAIM_LIMIT
    async with session_factory() as session:
        ids = [
            r[0] for r in (
                await session.execute(
                    select(BatchJob.id)
                    .where(BatchJob.status.in_(("queued", "processing")))
                    .order_by(BatchJob.created_at)
                    .limit(limit)
                )
            ).all()
        ]

    for batch_id in ids:
        async with session_factory() as session:
            try:
                await process_batch(session, batch_id, enqueue=enqueue)
            except Exception:
                logger.exception("process_batches: batch %s failed", batch_id)

    if enqueue is not None:
        async with session_factory() as session:
            for batch_id in await pending_webhooks(session, limit):
                await enqueue(batch_id)
    return len(ids)


def batch_view(batch: BatchJob) -> dict:
    return {
        "batch_id": batch.id,
        "model_id": batch.model_id,
        "status": batch.status,
        "total_count": batch.total_count,
        "success_count": batch.success_count,
        "failed_count": batch.failed_count,
        "credits_frozen": batch.credits_frozen,
        "credits_spent": batch.credits_spent,
        "settlement_status": batch.settlement_status,
        "webhook_status": batch.webhook_status,
    }
