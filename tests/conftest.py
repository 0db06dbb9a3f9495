"""
Pytest configuration: SQLite file DB per test, settings from env.
Env must be set before any app import (settings are read at import time).
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("GRSAI_CALLBACK_SECRET", "test-callback-secret")
os.environ.setdefault("GRSAI_API_KEY", "test-grsai-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import event, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.core.settings import settings  # noqa: E402
from app.models import models  # noqa: E402,F401  register tables
from app.models.models import LedgerEntry, User, Wallet  # noqa: E402
from app.repo.db import Base  # noqa: E402


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    # транзакции пишущие с первого оператора: параллельные сессии
    # сериализуются как под FOR UPDATE
    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def make_user(session_factory):
    async def _make(
        user_id: str = "user-1",
        *,
        permanent: int = 0,
        bonus: int = 0,
        bonus_expires_at: datetime | None = None,
        plan_id: str = "free",
        legacy_credits: int = 0,
        is_admin: bool = False,
        with_wallet: bool = True,
    ) -> str:
        async with session_factory() as s:
            s.add(User(id=user_id, email=f"{user_id}@example.com", credits=legacy_credits, is_admin=int(is_admin)))
            if with_wallet:
                s.add(Wallet(
                    user_id=user_id,
                    permanent_credits=permanent,
                    bonus_credits=bonus,
                    bonus_expires_at=bonus_expires_at,
                    plan_id=plan_id,
                ))
            await s.commit()
        return user_id

    return _make


@pytest_asyncio.fixture
async def read_wallet(session_factory):
    async def _read(user_id: str) -> Wallet | None:
        async with session_factory() as s:
            return (await s.execute(select(Wallet).where(Wallet.user_id == user_id))).scalars().first()

    return _read


@pytest_asyncio.fixture
async def ledger_rows(session_factory):
    async def _rows(user_id: str | None = None, ref_type: str | None = None) -> list[LedgerEntry]:
        async with session_factory() as s:
            q = select(LedgerEntry).order_by(LedgerEntry.id)
            if user_id:
                q = q.where(LedgerEntry.user_id == user_id)
            if ref_type:
                q = q.where(LedgerEntry.ref_type == ref_type)
            return list((await s.execute(q)).scalars().all())

    return _rows


def as_aware(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def future(days: int = 7) -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=days)


def past(days: int = 1) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


def make_token(user_id: str, **claims) -> str:
    return jwt.encode({"sub": user_id, **claims}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class FakeGateway:
    """Stripe stand-in: sessions keyed by id, counts retrieve calls."""

    def __init__(self, sessions: dict | None = None):
        self.sessions = sessions or {}
        self.retrieve_calls = 0
        self.created: list[dict] = []

    async def retrieve_session(self, session_id: str) -> dict:
        self.retrieve_calls += 1
        return self.sessions[session_id]

    async def create_checkout(self, **kwargs) -> dict:
        sid = f"cs_test_{len(self.created) + 1}"
        self.created.append(kwargs)
        return {"id": sid, "url": f"https://checkout.stripe.test/{sid}"}

    def construct_event(self, payload: bytes, signature):
        import json

        if signature != "valid":
            raise ValueError("bad signature")
        return json.loads(payload)


def paid_session(session_id: str, amount: str, status: str = "paid") -> dict:
    return {"id": session_id, "payment_status": status, "amount": Decimal(amount), "currency": "usd", "metadata": {}}
