# app/repo/db.py
from typing import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import declarative_base

from app.core.db import SessionLocal

# имена для безымянных ограничений (unique=True, ForeignKey); явные имена не трогаются
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

Base = declarative_base(metadata=MetaData(naming_convention=NAMING_CONVENTION))


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Сессия на запрос. Коммитит доменный код, незакоммиченное откатывается при закрытии."""
    async with SessionLocal() as session:
        yield session
