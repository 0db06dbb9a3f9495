# app/domain/generation/refund.py
from __future__ import annotations

from typing import Any, Dict

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.domain.errors import AlreadyRefunded, NotFound
from app.domain.wallet.service import credit_wallet
from app.models.models import ConsumptionRecord
from app.utils.clock import utcnow


def _consumption_dict(c: ConsumptionRecord) -> Dict[str, Any]:
    return {
        "id": c.id,
        "user_id": c.user_id,
        "video_task_id": c.video_task_id,
        "model_id": c.model_id,
        "credits": c.credits,
        "status": c.status,
        "refunded_at": c.refunded_at.isoformat() if c.refunded_at else None,
    }


async def refund(session: AsyncSession, consumption_id: str, *, reason: str = "render refund") -> Dict[str, Any]:
    """
    Вернуть потребление ровно один раз: completed -> refunded + кредит + ledger
    в одной транзакции. Возврат всегда в permanent (у бонуса нет исходного срока).
    """
    try:
        row = await session.execute(
            select(ConsumptionRecord)
            .where(ConsumptionRecord.id == consumption_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        rec = row.scalars().first()
        if rec is None:
            raise NotFound(f"consumption {consumption_id}")
        if rec.status == "refunded":
            raise AlreadyRefunded(consumption_id)

        user_id, credits = rec.user_id, int(rec.credits)
        now = utcnow()
        res = await session.execute(
            update(ConsumptionRecord)
            .where(ConsumptionRecord.id == consumption_id, ConsumptionRecord.status == "completed")
            .values(status="refunded", refunded_at=now)
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) == 0:
            raise AlreadyRefunded(consumption_id)

        entry = await credit_wallet(
            session,
            user_id,
            permanent=credits,
            ref_type="render_refund",
            ref_id=consumption_id,
            reason=reason,
        )
        ledger = {
            "id": entry.id,
            "delta_permanent": entry.delta_permanent,
            "delta_bonus": entry.delta_bonus,
            "ref_type": entry.ref_type,
            "ref_id": entry.ref_id,
            "balance_permanent_after": entry.balance_permanent_after,
            "balance_bonus_after": entry.balance_bonus_after,
        }
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise AlreadyRefunded(consumption_id)
    except Exception:
        await session.rollback()
        raise

    logger.info("refund consumption=%s user=%s credits=%s", consumption_id, user_id, credits)
    rec = (await session.execute(
        select(ConsumptionRecord)
        .where(ConsumptionRecord.id == consumption_id)
        .execution_options(populate_existing=True)
    )).scalars().one()
    return {"consumption": _consumption_dict(rec), "ledger": ledger}


async def refund_by_video_task(session: AsyncSession, video_task_id: str, *, reason: str) -> Dict[str, Any] | None:
    """Возврат по задаче рендера. None — у задачи нет платного потребления (например, batch)."""
    row = await session.execute(
        select(ConsumptionRecord.id).where(ConsumptionRecord.video_task_id == video_task_id)
    )
    consumption_id = row.scalar_one_or_none()
    if consumption_id is None:
        return None
    return await refund(session, consumption_id, reason=reason)
