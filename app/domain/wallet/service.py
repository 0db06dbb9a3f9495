# app/domain/wallet/service.py
"""
Кошелёк: permanent (не сгорают) + bonus (одна корзина со сроком).

Низкоуровневые credit_wallet/deduct_wallet работают внутри транзакции
вызывающего кода и НЕ коммитят: списание, запись в ledger и смена статуса
записи (покупка, потребление, batch) должны попасть в один commit.
grant_welcome_bonus и admin_adjust — самостоятельные операции, коммитят сами.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Any, Dict

from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.core.settings import settings
from app.domain.errors import DomainError, InsufficientCredits, NotFound
from app.models.models import Wallet, LedgerEntry
from app.utils.clock import utcnow, as_utc

DEDUCT_ATTEMPTS = 3


@dataclass
class WalletSnapshot:
    user_id: str
    permanent_credits: int
    bonus_credits: int              # только действующий бонус
    bonus_expires_at: datetime | None
    plan_id: str = "free"

    @property
    def total(self) -> int:
        return self.permanent_credits + self.bonus_credits

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["bonus_expires_at"] = self.bonus_expires_at.isoformat() if self.bonus_expires_at else None
        d["total"] = self.total
        return d


@dataclass
class DeductResult:
    bonus_used: int
    permanent_used: int
    entry: LedgerEntry
    wallet: WalletSnapshot


def bonus_is_active(wallet: Wallet, now: datetime | None = None) -> bool:
    exp = as_utc(wallet.bonus_expires_at)
    return exp is None or exp > (now or utcnow())


def effective_bonus(wallet: Wallet, now: datetime | None = None) -> int:
    if not wallet.bonus_credits:
        return 0
    return int(wallet.bonus_credits) if bonus_is_active(wallet, now) else 0


def _snapshot(wallet: Wallet, now: datetime | None = None) -> WalletSnapshot:
    now = now or utcnow()
    bonus = effective_bonus(wallet, now)
    return WalletSnapshot(
        user_id=wallet.user_id,
        permanent_credits=int(wallet.permanent_credits or 0),
        bonus_credits=bonus,
        bonus_expires_at=as_utc(wallet.bonus_expires_at) if bonus else None,
        plan_id=wallet.plan_id or "free",
    )


async def get_wallet(session: AsyncSession, user_id: str, *, for_update: bool = False) -> Wallet | None:
    q = select(Wallet).where(Wallet.user_id == user_id).execution_options(populate_existing=True)
    if for_update:
        q = q.with_for_update()
    return (await session.execute(q)).scalars().first()


async def wallet_snapshot(session: AsyncSession, user_id: str) -> WalletSnapshot:
    wallet = await get_wallet(session, user_id)
    if wallet is None:
        return WalletSnapshot(user_id=user_id, permanent_credits=0, bonus_credits=0, bonus_expires_at=None)
    return _snapshot(wallet)


async def lock_wallet(session: AsyncSession, user_id: str, *, create: bool = False) -> Wallet | None:
    """
    SELECT ... FOR UPDATE по кошельку. create=True — создать пустой, если нет
    (гонку двух создателей разруливает PK, проигравший просто перечитывает).
    """
    wallet = await get_wallet(session, user_id, for_update=True)
    if wallet is not None or not create:
        return wallet

    try:
        async with session.begin_nested():
            session.add(Wallet(user_id=user_id, permanent_credits=0, bonus_credits=0, plan_id="free"))
    except IntegrityError:
        logger.info("wallet create race user=%s", user_id)

    wallet = await get_wallet(session, user_id, for_update=True)
    if wallet is None:
        raise NotFound(f"user {user_id}")
    return wallet


def _ledger(wallet_user: str, *, delta_permanent: int, delta_bonus: int, reason: str,
            ref_type: str, ref_id: str, permanent_after: int, bonus_after: int) -> LedgerEntry:
    return LedgerEntry(
        user_id=wallet_user,
        delta_permanent=delta_permanent,
        delta_bonus=delta_bonus,
        reason=reason,
        ref_type=ref_type,
        ref_id=str(ref_id),
        balance_permanent_after=permanent_after,
        balance_bonus_after=bonus_after,
        created_at=utcnow(),
    )


async def credit_wallet(
    session: AsyncSession,
    user_id: str,
    *,
    permanent: int = 0,
    bonus: int = 0,
    bonus_ttl_days: int | None = None,
    ref_type: str,
    ref_id: str,
    reason: str,
    plan_id: str | None = None,
) -> LedgerEntry:
    """
    Начисление (или ручная корректировка со знаком) + запись в ledger.
    Просроченный бонус при этом списывается в ноль и попадает в delta_bonus.
    Новый бонус продлевает срок всей корзины: now + bonus_ttl_days.
    """
    wallet = await lock_wallet(session, user_id, create=True)
    now = utcnow()

    current_bonus = int(wallet.bonus_credits or 0)
    forfeited = current_bonus if current_bonus and not bonus_is_active(wallet, now) else 0

    new_permanent = int(wallet.permanent_credits or 0) + int(permanent)
    new_bonus = current_bonus - forfeited + int(bonus)
    if new_permanent < 0 or new_bonus < 0:
        raise InsufficientCredits(f"credit would go negative: perm={new_permanent} bonus={new_bonus}")

    if bonus > 0 and bonus_ttl_days:
        wallet.bonus_expires_at = now + timedelta(days=int(bonus_ttl_days))
    elif forfeited or new_bonus == 0:
        wallet.bonus_expires_at = None

    wallet.permanent_credits = new_permanent
    wallet.bonus_credits = new_bonus
    wallet.updated_at = now
    if plan_id:
        wallet.plan_id = plan_id

    if forfeited:
        reason = f"{reason} (expired bonus forfeited: {forfeited})"

    entry = _ledger(
        user_id,
        delta_permanent=int(permanent),
        delta_bonus=int(bonus) - forfeited,
        reason=reason,
        ref_type=ref_type,
        ref_id=ref_id,
        permanent_after=new_permanent,
        bonus_after=new_bonus,
    )
    session.add(entry)
    # дубликат (ref_type, ref_id) падает здесь IntegrityError
    await session.flush()
    logger.info(
        "wallet credit user=%s ref=%s:%s perm=%+d bonus=%+d forfeited=%s",
        user_id, ref_type, ref_id, permanent, bonus, forfeited,
    )
    return entry


async def deduct_wallet(
    session: AsyncSession,
    user_id: str,
    amount: int,
    *,
    ref_type: str,
    ref_id: str,
    reason: str,
) -> DeductResult:
    """
    Списать amount: сначала действующий бонус, потом permanent. Всё или ничего.
    Кошелёк блокируется FOR UPDATE, а сам UPDATE условный (баланс >= списания),
    так что даже без блокировки (SQLite) баланс не уходит в минус.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValueError("amount must be positive")

    for attempt in range(DEDUCT_ATTEMPTS):
        wallet = await lock_wallet(session, user_id)
        if wallet is None:
            raise InsufficientCredits("no wallet")

        now = utcnow()
        bonus_avail = effective_bonus(wallet, now)
        permanent_avail = int(wallet.permanent_credits or 0)
        if permanent_avail + bonus_avail < amount:
            raise InsufficientCredits(f"need={amount} have={permanent_avail}+{bonus_avail}")

        bonus_used = min(bonus_avail, amount)
        permanent_used = amount - bonus_used

        conds = [
            Wallet.user_id == user_id,
            Wallet.permanent_credits >= permanent_used,
            Wallet.bonus_credits >= bonus_used,
        ]
        if bonus_used:
            conds.append(or_(Wallet.bonus_expires_at.is_(None), Wallet.bonus_expires_at > now))

        res = await session.execute(
            update(Wallet)
            .where(*conds)
            .values(
                permanent_credits=Wallet.permanent_credits - permanent_used,
                bonus_credits=Wallet.bonus_credits - bonus_used,
                updated_at=now,
            )
            .returning(Wallet.permanent_credits, Wallet.bonus_credits)
            .execution_options(synchronize_session=False)
        )
        row = res.first()
        if row is None:
            logger.warning("deduct retry %s/%s user=%s amount=%s", attempt + 1, DEDUCT_ATTEMPTS, user_id, amount)
            continue

        permanent_after, bonus_after = int(row[0]), int(row[1])
        entry = _ledger(
            user_id,
            delta_permanent=-permanent_used,
            delta_bonus=-bonus_used,
            reason=reason,
            ref_type=ref_type,
            ref_id=ref_id,
            permanent_after=permanent_after,
            bonus_after=bonus_after,
        )
        session.add(entry)
        await session.flush()

        snap = WalletSnapshot(
            user_id=user_id,
            permanent_credits=permanent_after,
            bonus_credits=bonus_after if bonus_after and bonus_is_active(wallet, now) else 0,
            bonus_expires_at=as_utc(wallet.bonus_expires_at) if bonus_after else None,
            plan_id=wallet.plan_id or "free",
        )
        return DeductResult(bonus_used=bonus_used, permanent_used=permanent_used, entry=entry, wallet=snap)

    raise InsufficientCredits("concurrent update")


async def grant_welcome_bonus(session: AsyncSession, user_id: str) -> bool:
    """Приветственный бонус — один раз на пользователя (ref_id = user_id)."""
    exists = await session.execute(
        select(LedgerEntry.id).where(
            LedgerEntry.ref_type == "welcome_bonus",
            LedgerEntry.ref_id == str(user_id),
        )
    )
    if exists.first() is not None:
        return False

    try:
        await credit_wallet(
            session,
            user_id,
            bonus=settings.WELCOME_BONUS_CREDITS,
            bonus_ttl_days=settings.WELCOME_BONUS_DAYS,
            ref_type="welcome_bonus",
            ref_id=str(user_id),
            reason="welcome bonus",
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("welcome bonus already granted user=%s", user_id)
        return False
    except Exception:
        await session.rollback()
        raise

    logger.info("welcome bonus granted user=%s credits=%s", user_id, settings.WELCOME_BONUS_CREDITS)
    return True


async def admin_adjust(
    session: AsyncSession,
    user_id: str,
    *,
    delta_permanent: int = 0,
    delta_bonus: int = 0,
    bonus_ttl_days: int | None = None,
    reason: str,
    admin_id: str | None = None,
) -> WalletSnapshot:
    """Ручная корректировка баланса админом. В минус не уводит."""
    if not delta_permanent and not delta_bonus:
        raise DomainError("EMPTY_ADJUSTMENT")

    try:
        await credit_wallet(
            session,
            user_id,
            permanent=delta_permanent,
            bonus=delta_bonus,
            bonus_ttl_days=bonus_ttl_days,
            ref_type="admin_adjustment",
            ref_id=str(uuid.uuid4()),
            reason=f"{reason} [admin={admin_id or '-'}]",
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.warning(
        "admin adjust user=%s perm=%+d bonus=%+d admin=%s reason=%s",
        user_id, delta_permanent, delta_bonus, admin_id, reason,
    )
    return await wallet_snapshot(session, user_id)
