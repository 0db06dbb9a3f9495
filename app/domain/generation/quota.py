# app/domain/generation/quota.py
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.core.settings import settings
from app.domain.errors import QuotaExceeded
from app.models.models import ConsumptionRecord, QuotaLock
from app.utils.clock import utcnow

WINDOWS = (("daily", timedelta(days=1)), ("weekly", timedelta(days=7)))


def usage_keys(
    *,
    model_id: str,
    user_id: str,
    device_id: str | None = None,
    ip_hash: str | None = None,
) -> List[str]:
    keys = [f"{model_id}:user:{user_id}"]
    if device_id:
        keys.append(f"{model_id}:device:{device_id}")
    if ip_hash:
        keys.append(f"{model_id}:ip:{ip_hash}")
    # один порядок блокировок у всех запросов
    return sorted(keys)


async def lock_usage(session: AsyncSession, keys: List[str]) -> None:
    """
    FOR UPDATE по строкам quota_locks. Два аккаунта с одного устройства или ip
    упираются в общую строку и считают использование по очереди.
    """
    for key in keys:
        row = (
            await session.execute(select(QuotaLock).where(QuotaLock.key == key).with_for_update())
        ).scalars().first()
        if row is not None:
            continue
        try:
            async with session.begin_nested():
                session.add(QuotaLock(key=key))
        except IntegrityError:
            logger.info("quota lock create race key=%s", key)
        await session.execute(select(QuotaLock).where(QuotaLock.key == key).with_for_update())


async def count_usage(
    session: AsyncSession,
    *,
    model_id: str,
    since: datetime,
    user_id: str,
    device_id: str | None = None,
    ip_hash: str | None = None,
) -> int:
    """
    Сколько раз модель запускали с этого аккаунта ИЛИ устройства ИЛИ ip
    (мультиаккаунты с одного браузера считаются вместе). Возвраты не считаем.
    """
    who = [ConsumptionRecord.user_id == user_id]
    if device_id:
        who.append(ConsumptionRecord.device_id == device_id)
    if ip_hash:
        who.append(ConsumptionRecord.ip_hash == ip_hash)

    q = select(func.count(ConsumptionRecord.id)).where(
        or_(*who),
        ConsumptionRecord.model_id == model_id,
        ConsumptionRecord.status != "refunded",
        ConsumptionRecord.created_at >= since,
    )
    return int((await session.execute(q)).scalar_one() or 0)


async def check_quota(
    session: AsyncSession,
    *,
    plan_id: str,
    model_id: str,
    user_id: str,
    device_id: str | None = None,
    ip_hash: str | None = None,
    now: datetime | None = None,
) -> None:
    """
    Бросает QuotaExceeded, если лимит плана на модель исчерпан (0 — модель закрыта).
    Блокировки quota_locks держатся до конца транзакции вызывающего.
    """
    caps = settings.PLAN_CAPS.get(plan_id or "free") or {}
    now = now or utcnow()

    limits = []
    for window, span in WINDOWS:
        limit = (caps.get(window) or {}).get(model_id)
        if limit is None:
            continue
        if limit <= 0:
            raise QuotaExceeded(f"{model_id} is not available on plan {plan_id}")
        limits.append((window, span, limit))
    if not limits:
        return

    await lock_usage(
        session,
        usage_keys(model_id=model_id, user_id=user_id, device_id=device_id, ip_hash=ip_hash),
    )
    for window, span, limit in limits:
        used = await count_usage(
            session,
            model_id=model_id,
            since=now - span,
            user_id=user_id,
            device_id=device_id,
            ip_hash=ip_hash,
        )
        if used >= limit:
            raise QuotaExceeded(f"{window} {model_id}: {used}/{limit}")
