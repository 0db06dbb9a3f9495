"""Кошелёк: начисление, списание (бонус первым), истечение бонуса, конкурентные списания."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.domain.errors import DomainError, InsufficientCredits, QuotaExceeded
from app.domain.generation.quota import usage_keys
from app.domain.generation.service_start import reserve_render
from app.models.models import QuotaLock
from app.domain.wallet.service import (
    admin_adjust,
    credit_wallet,
    deduct_wallet,
    grant_welcome_bonus,
    wallet_snapshot,
)
from app.utils.clock import utcnow
from tests.conftest import as_aware, future, past


class TestCredit:
    @pytest.mark.asyncio
    async def test_credit_sets_bonus_expiry(self, session_factory, make_user, read_wallet, ledger_rows):
        uid = await make_user()
        before = utcnow()
        async with session_factory() as s:
            await credit_wallet(
                s, uid, permanent=600, bonus=60, bonus_ttl_days=30,
                ref_type="purchase", ref_id="r-1", reason="test",
            )
            await s.commit()

        w = await read_wallet(uid)
        assert w.permanent_credits == 600
        assert w.bonus_credits == 60
        exp = as_aware(w.bonus_expires_at)
        assert before + timedelta(days=30) - timedelta(seconds=5) <= exp <= utcnow() + timedelta(days=30)

        rows = await ledger_rows(uid)
        assert len(rows) == 1
        assert (rows[0].delta_permanent, rows[0].delta_bonus) == (600, 60)
        assert (rows[0].balance_permanent_after, rows[0].balance_bonus_after) == (600, 60)

    @pytest.mark.asyncio
    async def test_credit_creates_missing_wallet(self, session_factory, make_user, read_wallet):
        uid = await make_user(with_wallet=False)
        async with session_factory() as s:
            await credit_wallet(s, uid, permanent=5, ref_type="admin_adjustment", ref_id="a-1", reason="t")
            await s.commit()
        w = await read_wallet(uid)
        assert w.permanent_credits == 5
        assert w.plan_id == "free"

    @pytest.mark.asyncio
    async def test_expired_bonus_forfeited_on_credit(self, session_factory, make_user, read_wallet, ledger_rows):
        uid = await make_user(permanent=10, bonus=40, bonus_expires_at=past(1))
        async with session_factory() as s:
            await credit_wallet(s, uid, permanent=5, ref_type="render_refund", ref_id="c-1", reason="refund")
            await s.commit()

        w = await read_wallet(uid)
        assert w.permanent_credits == 15
        assert w.bonus_credits == 0
        assert w.bonus_expires_at is None
        (row,) = await ledger_rows(uid)
        assert row.delta_bonus == -40
        assert "forfeited" in row.reason

    @pytest.mark.asyncio
    async def test_duplicate_ref_rejected(self, session_factory, make_user):
        from sqlalchemy.exc import IntegrityError

        uid = await make_user()
        async with session_factory() as s:
            await credit_wallet(s, uid, permanent=5, ref_type="purchase", ref_id="dup", reason="t")
            await s.commit()
        async with session_factory() as s:
            with pytest.raises(IntegrityError):
                await credit_wallet(s, uid, permanent=5, ref_type="purchase", ref_id="dup", reason="t")
            await s.rollback()


class TestDeduct:
    @pytest.mark.asyncio
    async def test_bonus_spent_first(self, session_factory, make_user, read_wallet):
        uid = await make_user(permanent=100, bonus=30, bonus_expires_at=future(3))
        async with session_factory() as s:
            res = await deduct_wallet(s, uid, 50, ref_type="render_spend", ref_id="c-1", reason="t")
            await s.commit()

        assert (res.bonus_used, res.permanent_used) == (30, 20)
        assert res.wallet.total == 80
        w = await read_wallet(uid)
        assert (w.permanent_credits, w.bonus_credits) == (80, 0)

    @pytest.mark.asyncio
    async def test_expired_bonus_ignored(self, session_factory, make_user, read_wallet):
        uid = await make_user(permanent=100, bonus=500, bonus_expires_at=past(1))
        async with session_factory() as s:
            res = await deduct_wallet(s, uid, 40, ref_type="render_spend", ref_id="c-1", reason="t")
            await s.commit()

        assert (res.bonus_used, res.permanent_used) == (0, 40)
        w = await read_wallet(uid)
        assert w.permanent_credits == 60

    @pytest.mark.asyncio
    async def test_expired_bonus_not_counted_toward_balance(self, session_factory, make_user, read_wallet):
        uid = await make_user(permanent=10, bonus=500, bonus_expires_at=past(1))
        async with session_factory() as s:
            with pytest.raises(InsufficientCredits):
                await deduct_wallet(s, uid, 50, ref_type="render_spend", ref_id="c-1", reason="t")
            await s.rollback()

    @pytest.mark.asyncio
    async def test_all_or_nothing(self, session_factory, make_user, read_wallet, ledger_rows):
        uid = await make_user(permanent=20, bonus=20, bonus_expires_at=future(1))
        async with session_factory() as s:
            with pytest.raises(InsufficientCredits):
                await deduct_wallet(s, uid, 41, ref_type="render_spend", ref_id="c-1", reason="t")
            await s.rollback()

        w = await read_wallet(uid)
        assert (w.permanent_credits, w.bonus_credits) == (20, 20)
        assert await ledger_rows(uid) == []

    @pytest.mark.asyncio
    async def test_no_wallet(self, session_factory, make_user):
        uid = await make_user(with_wallet=False)
        async with session_factory() as s:
            with pytest.raises(InsufficientCredits):
                await deduct_wallet(s, uid, 1, ref_type="render_spend", ref_id="c-1", reason="t")

    @pytest.mark.asyncio
    async def test_non_positive_amount(self, session_factory, make_user):
        uid = await make_user(permanent=10)
        async with session_factory() as s:
            with pytest.raises(ValueError):
                await deduct_wallet(s, uid, 0, ref_type="render_spend", ref_id="c-1", reason="t")


class TestSnapshot:
    @pytest.mark.asyncio
    async def test_expired_bonus_reads_as_zero(self, session_factory, make_user):
        uid = await make_user(permanent=7, bonus=9, bonus_expires_at=past(2))
        async with session_factory() as s:
            snap = await wallet_snapshot(s, uid)
        assert snap.bonus_credits == 0
        assert snap.bonus_expires_at is None
        assert snap.as_dict()["total"] == 7

    @pytest.mark.asyncio
    async def test_missing_wallet_is_empty(self, session_factory):
        async with session_factory() as s:
            snap = await wallet_snapshot(s, "ghost")
        assert snap.total == 0
        assert snap.plan_id == "free"


class TestConcurrentRenders:
    @pytest.mark.asyncio
    async def test_parallel_reservations_never_overdraw(self, session_factory, make_user, read_wallet):
        # 40 кредитов, sora стоит 10: из 5 параллельных запросов проходят ровно 4
        uid = await make_user(permanent=40, plan_id="creator")

        async def one(i: int):
            async with session_factory() as s:
                return await reserve_render(s, user_id=uid, model_id="sora", prompt=f"p{i}")

        results = await asyncio.gather(*(one(i) for i in range(5)), return_exceptions=True)
        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]

        assert len(ok) == 4
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientCredits)
        w = await read_wallet(uid)
        assert w.permanent_credits == 0
        assert w.bonus_credits == 0


class TestQuota:
    @pytest.mark.asyncio
    async def test_free_plan_cannot_use_veo_pro(self, session_factory, make_user, read_wallet):
        uid = await make_user(permanent=1000)
        async with session_factory() as s:
            with pytest.raises(QuotaExceeded):
                await reserve_render(s, user_id=uid, model_id="veo_pro", prompt="p")
        assert (await read_wallet(uid)).permanent_credits == 1000

    @pytest.mark.asyncio
    async def test_starter_daily_veo_fast_cap(self, session_factory, make_user):
        uid = await make_user(permanent=1000, plan_id="starter")
        async with session_factory() as s:
            await reserve_render(s, user_id=uid, model_id="veo_fast", prompt="p")
        async with session_factory() as s:
            with pytest.raises(QuotaExceeded):
                await reserve_render(s, user_id=uid, model_id="veo_fast", prompt="p")

    @pytest.mark.asyncio
    async def test_cap_shared_by_device(self, session_factory, make_user):
        a = await make_user("user-a", permanent=1000, plan_id="starter")
        b = await make_user("user-b", permanent=1000, plan_id="starter")
        async with session_factory() as s:
            await reserve_render(s, user_id=a, model_id="veo_fast", prompt="p", device_id="dev-1")
        async with session_factory() as s:
            with pytest.raises(QuotaExceeded):
                await reserve_render(s, user_id=b, model_id="veo_fast", prompt="p", device_id="dev-1")

    @pytest.mark.asyncio
    async def test_uncapped_plan(self, session_factory, make_user):
        uid = await make_user(permanent=1000, plan_id="pro")
        for _ in range(3):
            async with session_factory() as s:
                await reserve_render(s, user_id=uid, model_id="veo_pro", prompt="p")

    @pytest.mark.asyncio
    async def test_parallel_accounts_on_one_device(self, session_factory, make_user):
        # starter: veo_fast 1 в сутки на устройство, аккаунты разные
        users = [await make_user(f"user-{i}", permanent=1000, plan_id="starter") for i in range(4)]

        async def one(uid: str):
            async with session_factory() as s:
                return await reserve_render(s, user_id=uid, model_id="veo_fast", prompt="p", device_id="dev-1")

        results = await asyncio.gather(*(one(u) for u in users), return_exceptions=True)
        ok = [r for r in results if not isinstance(r, Exception)]
        failed = [r for r in results if isinstance(r, Exception)]
        assert len(ok) == 1
        assert len(failed) == 3
        assert all(isinstance(e, QuotaExceeded) for e in failed)

        async with session_factory() as s:
            keys = set((await s.execute(select(QuotaLock.key))).scalars().all())
        assert "veo_fast:device:dev-1" in keys

    def test_usage_keys_order(self):
        keys = usage_keys(model_id="sora", user_id="u", device_id="d", ip_hash="h")
        assert keys == ["sora:device:d", "sora:ip:h", "sora:user:u"]
        assert usage_keys(model_id="sora", user_id="u") == ["sora:user:u"]

    @pytest.mark.asyncio
    async def test_cap_checked_before_missing_wallet(self, session_factory, make_user):
        uid = await make_user(with_wallet=False)
        async with session_factory() as s:
            with pytest.raises(QuotaExceeded):
                await reserve_render(s, user_id=uid, model_id="veo_pro", prompt="p")
        async with session_factory() as s:
            with pytest.raises(InsufficientCredits):
                await reserve_render(s, user_id=uid, model_id="sora", prompt="p")


class TestWelcomeBonus:
    @pytest.mark.asyncio
    async def test_granted_once(self, session_factory, make_user, read_wallet, ledger_rows):
        uid = await make_user(with_wallet=False)
        async with session_factory() as s:
            assert await grant_welcome_bonus(s, uid) is True
        async with session_factory() as s:
            assert await grant_welcome_bonus(s, uid) is False

        w = await read_wallet(uid)
        assert w.bonus_credits == 30
        assert w.bonus_expires_at is not None
        assert len(await ledger_rows(uid, "welcome_bonus")) == 1


class TestAdminAdjust:
    @pytest.mark.asyncio
    async def test_adjust_up_and_down(self, session_factory, make_user, ledger_rows):
        uid = await make_user(permanent=50)
        async with session_factory() as s:
            snap = await admin_adjust(s, uid, delta_permanent=-20, reason="chargeback", admin_id="adm")
        assert snap.permanent_credits == 30
        (row,) = await ledger_rows(uid, "admin_adjustment")
        assert row.delta_permanent == -20
        assert "adm" in row.reason

    @pytest.mark.asyncio
    async def test_cannot_go_negative(self, session_factory, make_user, read_wallet, ledger_rows):
        uid = await make_user(permanent=5)
        async with session_factory() as s:
            with pytest.raises(InsufficientCredits):
                await admin_adjust(s, uid, delta_permanent=-6, reason="oops")
        assert (await read_wallet(uid)).permanent_credits == 5
        assert await ledger_rows(uid) == []

    @pytest.mark.asyncio
    async def test_empty_adjustment(self, session_factory, make_user):
        uid = await make_user(permanent=5)
        async with session_factory() as s:
            with pytest.raises(DomainError) as ei:
                await admin_adjust(s, uid, reason="nothing")
        assert ei.value.code == "EMPTY_ADJUSTMENT"
