# app/domain/users/service.py
from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from app.core.logger import logger
from app.models.models import User
from app.domain.wallet.service import grant_welcome_bonus


# === users.id == sub из JWT; баланс живёт в wallets, users.credits — старое поле ===

async def get_user(session: AsyncSession, user_id: str) -> User | None:
    row = await session.execute(select(User).where(User.id == user_id))
    return row.scalars().first()


async def get_or_create_user(session: AsyncSession, user_id: str, email: str | None = None) -> tuple[User, bool]:
    """Вернуть пользователя, создать если нет. Второе значение — создан ли сейчас."""
    user = await get_user(session, user_id)
    if user:
        return user, False

    user = User(id=user_id, email=email, credits=0)
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # параллельный запрос успел создать
        await session.rollback()
        user = await get_user(session, user_id)
        if user is None:
            raise
        return user, False
    await session.refresh(user)
    return user, True


async def ensure_user(session: AsyncSession, user_id: str, email: str | None = None) -> User:
    """Первый вход: создать пользователя и выдать приветственный бонус."""
    user, created = await get_or_create_user(session, user_id, email)
    if created:
        logger.info("new user %s", user_id)
        await grant_welcome_bonus(session, user_id)
    return user


async def is_admin(session: AsyncSession, user_id: str) -> bool:
    row = await session.execute(select(User.is_admin).where(User.id == user_id))
    return bool(row.scalar_one_or_none())
