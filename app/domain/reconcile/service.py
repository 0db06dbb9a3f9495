# app/domain/reconcile/service.py
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logger import logger
from app.core.settings import settings
from app.domain.generation.service_finalize import ACTIVE, fail_task
from app.models.models import User, Wallet, VideoTask
from app.utils.clock import utcnow


async def legacy_credit_mismatches(
    session: AsyncSession,
    *,
    min_abs_diff: int = 1,
    limit: int = 500,
) -> List[Dict[str, Any]]:
    """
    Только чтение: users.credits (старый баланс) против permanent + bonus
    в кошельке. Строка попадает в отчёт лишь при расхождении; исправляет человек.
    """
    wallet_total = func.coalesce(Wallet.permanent_credits, 0) + func.coalesce(Wallet.bonus_credits, 0)
    diff = User.credits - wallet_total
    q = (
        select(
            User.id,
            User.email,
            User.credits,
            Wallet.permanent_credits,
            Wallet.bonus_credits,
            wallet_total.label("wallet_total"),
            diff.label("diff"),
        )
        .outerjoin(Wallet, Wallet.user_id == User.id)
        .where(User.credits != 0, diff != 0, func.abs(diff) >= max(1, int(min_abs_diff)))
        .order_by(func.abs(diff).desc(), User.id)
        .limit(limit)
    )
    rows = (await session.execute(q)).all()
    return [
        {
            "user_id": r.id,
            "email": r.email,
            "legacy_credits": int(r.credits),
            "permanent_credits": int(r.permanent_credits or 0),
            "bonus_credits": int(r.bonus_credits or 0),
            "wallet_total": int(r.wallet_total),
            "diff": int(r.diff),
        }
        for r in rows
    ]


async def reconcile_stuck_tasks(session_factory: async_sessionmaker, *, minutes: int | None = None) -> List[str]:
    """
    Задачи, висящие в pending/processing дольше STUCK_TASK_MINUTES, -> failed (timeout)
    с возвратом кредитов. Каждая задача в своей сессии.
    """
    minutes = minutes or settings.STUCK_TASK_MINUTES
    cutoff = utcnow() - timedelta(minutes=minutes)
    async with session_factory() as session:
        rows = await session.execute(
            select(VideoTask.id).where(VideoTask.status.in_(ACTIVE), VideoTask.created_at < cutoff)
        )
        stuck_ids = [r[0] for r in rows.all()]

    failed: List[str] = []
    for task_id in stuck_ids:
        async with session_factory() as session:
            try:
                if await fail_task(session, task_id, error_message="TIMEOUT", failure_reason="timeout"):
                    failed.append(task_id)
            except Exception:
                logger.exception("reconcile_stuck: task %s failed", task_id)

    if failed:
        logger.warning("reconciled stuck tasks (set to failed): %s", failed)
    return failed
