# app/domain/payments/service.py
from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.core.settings import settings
from app.domain.errors import DomainError, PaymentNotConfirmed, RecordNotFound, UnknownTier
from app.domain.payments.providers.stripe_checkout import StripeGateway
from app.domain.payments.tiers import get_tier, identify_tier, upgraded_plan
from app.domain.wallet.service import WalletSnapshot, credit_wallet, lock_wallet, wallet_snapshot
from app.models.models import RechargeRecord
from app.utils.clock import utcnow


@dataclass
class FinalizeResult:
    recharge_id: str
    already_completed: bool
    plan_id: str | None = None
    credits: int = 0
    wallet: WalletSnapshot | None = None


async def create_recharge(
    session: AsyncSession,
    *,
    user_id: str,
    plan_id: str,
    gateway: StripeGateway,
) -> dict:
    """Checkout Session в Stripe + pending-запись, ключ идемпотентности — id сессии."""
    tier = get_tier(plan_id)
    if tier is None:
        raise DomainError("UNKNOWN_PLAN", plan_id)

    base = settings.public_base()
    checkout = await gateway.create_checkout(
        amount=tier.price,
        currency="usd",
        description=f"{tier.plan_id} credits pack",
        user_id=user_id,
        metadata={"user_id": user_id, "plan_id": tier.plan_id},
        success_url=f"{base}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/pricing",
    )

    rec = RechargeRecord(
        user_id=user_id,
        amount=tier.price,
        currency="usd",
        credits=tier.total_credits,
        plan_id=tier.plan_id,
        payment_method="stripe",
        payment_id=checkout["id"],
        status="pending",
    )
    session.add(rec)
    await session.commit()
    logger.info("recharge created user=%s plan=%s session=%s", user_id, tier.plan_id, checkout["id"])
    return {"recharge_id": rec.id, "session_id": checkout["id"], "url": checkout.get("url")}


async def _load_for_update(session: AsyncSession, payment_id: str) -> RechargeRecord | None:
    q = (
        select(RechargeRecord)
        .where(RechargeRecord.payment_id == payment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(q)).scalars().first()


async def finalize(session: AsyncSession, payment_id: str, *, gateway: StripeGateway) -> FinalizeResult:
    """
    Применить оплату ровно один раз.
    Повторный вызов по завершённой записи ничего не меняет.
    Статус платежа всегда перепроверяется у Stripe, клиенту не верим.
    """
    recharge_id = ""
    try:
        rec = await _load_for_update(session, payment_id)
        if rec is None:
            raise RecordNotFound(payment_id)
        # после rollback объекты expired — нужные поля забираем заранее
        recharge_id, user_id, rec_plan = rec.id, rec.user_id, rec.plan_id
        if rec.status == "completed":
            await session.rollback()
            return FinalizeResult(recharge_id=recharge_id, already_completed=True, plan_id=rec_plan)

        verified = await gateway.retrieve_session(payment_id)
        if verified.get("payment_status") != "paid":
            raise PaymentNotConfirmed(f"session={payment_id} status={verified.get('payment_status')}")

        tier = identify_tier(verified["amount"])
        if tier is None:
            # запись остаётся pending — разбирает админ
            logger.error(
                "finalize: unknown tier payment=%s amount=%s %s user=%s",
                payment_id, verified["amount"], verified.get("currency"), user_id,
            )
            raise UnknownTier(f"amount={verified['amount']}")

        wallet = await lock_wallet(session, user_id, create=True)
        new_plan = upgraded_plan(wallet.plan_id, tier)

        await credit_wallet(
            session,
            user_id,
            permanent=tier.permanent_credits,
            bonus=tier.bonus_credits,
            bonus_ttl_days=tier.bonus_expires_days,
            ref_type="purchase",
            ref_id=recharge_id,
            reason=f"purchase {tier.plan_id} ${verified['amount']}",
            plan_id=new_plan,
        )

        res = await session.execute(
            update(RechargeRecord)
            .where(RechargeRecord.id == recharge_id, RechargeRecord.status != "completed")
            .values(
                status="completed",
                completed_at=utcnow(),
                amount=verified["amount"],
                currency=verified.get("currency") or "usd",
                credits=tier.total_credits,
                plan_id=tier.plan_id,
            )
            .execution_options(synchronize_session=False)
        )
        if (res.rowcount or 0) == 0:
            await session.rollback()
            return FinalizeResult(recharge_id=recharge_id, already_completed=True, plan_id=rec_plan)

        await session.commit()
    except IntegrityError:
        # purchase по этому recharge уже в ledger — параллельный finalize успел первым
        await session.rollback()
        logger.warning("finalize: duplicate purchase ledger payment=%s", payment_id)
        return FinalizeResult(recharge_id=recharge_id, already_completed=True)
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "finalize: payment=%s user=%s plan=%s perm=%s bonus=%s",
        payment_id, user_id, tier.plan_id, tier.permanent_credits, tier.bonus_credits,
    )
    return FinalizeResult(
        recharge_id=recharge_id,
        already_completed=False,
        plan_id=tier.plan_id,
        credits=tier.total_credits,
        wallet=await wallet_snapshot(session, user_id),
    )


async def mark_recharge_failed(session: AsyncSession, payment_id: str) -> bool:
    """Checkout истёк/отменён: pending -> failed. Завершённые не трогаем."""
    res = await session.execute(
        update(RechargeRecord)
        .where(RechargeRecord.payment_id == payment_id, RechargeRecord.status == "pending")
        .values(status="failed")
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return (res.rowcount or 0) > 0
