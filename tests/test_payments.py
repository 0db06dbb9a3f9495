"""Покупка пакетов: checkout и идемпотентное завершение оплаты."""

import asyncio

import pytest
from sqlalchemy import select

from app.domain.errors import DomainError, PaymentNotConfirmed, RecordNotFound, UnknownTier
from app.domain.payments.service import create_recharge, finalize, mark_recharge_failed
from app.models.models import RechargeRecord
from tests.conftest import FakeGateway, paid_session


async def _recharge(session_factory, payment_id):
    async with session_factory() as s:
        return (
            await s.execute(select(RechargeRecord).where(RechargeRecord.payment_id == payment_id))
        ).scalars().one()


class TestCreateRecharge:
    @pytest.mark.asyncio
    async def test_creates_pending_record(self, session_factory, make_user):
        uid = await make_user()
        gw = FakeGateway()
        async with session_factory() as s:
            out = await create_recharge(s, user_id=uid, plan_id="creator", gateway=gw)

        assert out["session_id"] == "cs_test_1"
        assert out["url"].endswith("cs_test_1")
        assert gw.created[0]["metadata"] == {"user_id": uid, "plan_id": "creator"}
        assert "{CHECKOUT_SESSION_ID}" in gw.created[0]["success_url"]

        rec = await _recharge(session_factory, "cs_test_1")
        assert rec.status == "pending"
        assert rec.credits == 660
        assert rec.plan_id == "creator"

    @pytest.mark.asyncio
    async def test_unknown_plan(self, session_factory, make_user):
        uid = await make_user()
        async with session_factory() as s:
            with pytest.raises(DomainError) as ei:
                await create_recharge(s, user_id=uid, plan_id="platinum", gateway=FakeGateway())
        assert ei.value.code == "UNKNOWN_PLAN"


class TestFinalize:
    async def _pending(self, session_factory, make_user, *, amount="39.00", plan_id="free"):
        uid = await make_user(plan_id=plan_id)
        gw = FakeGateway()
        async with session_factory() as s:
            out = await create_recharge(s, user_id=uid, plan_id="creator", gateway=gw)
        gw.sessions[out["session_id"]] = paid_session(out["session_id"], amount)
        return uid, out["session_id"], gw

    @pytest.mark.asyncio
    async def test_credits_and_upgrades_plan(self, session_factory, make_user, read_wallet, ledger_rows):
        uid, sid, gw = await self._pending(session_factory, make_user)
        async with session_factory() as s:
            res = await finalize(s, sid, gateway=gw)

        assert res.already_completed is False
        assert res.plan_id == "creator"
        assert res.credits == 660
        assert res.wallet.total == 660

        w = await read_wallet(uid)
        assert (w.permanent_credits, w.bonus_credits, w.plan_id) == (600, 60, "creator")
        assert (await _recharge(session_factory, sid)).status == "completed"
        assert len(await ledger_rows(uid, "purchase")) == 1

    @pytest.mark.asyncio
    async def test_second_call_is_noop(self, session_factory, make_user, read_wallet, ledger_rows):
        uid, sid, gw = await self._pending(session_factory, make_user)
        async with session_factory() as s:
            await finalize(s, sid, gateway=gw)
        async with session_factory() as s:
            res = await finalize(s, sid, gateway=gw)

        assert res.already_completed is True
        # завершённую запись у Stripe повторно не проверяем
        assert gw.retrieve_calls == 1
        w = await read_wallet(uid)
        assert (w.permanent_credits, w.bonus_credits) == (600, 60)
        assert len(await ledger_rows(uid)) == 1

    @pytest.mark.asyncio
    async def test_amount_within_tolerance(self, session_factory, make_user, read_wallet):
        uid, sid, gw = await self._pending(session_factory, make_user, amount="39.49")
        async with session_factory() as s:
            res = await finalize(s, sid, gateway=gw)
        assert res.plan_id == "creator"
        assert (await read_wallet(uid)).permanent_credits == 600

    @pytest.mark.asyncio
    async def test_unknown_amount_stays_pending(self, session_factory, make_user, read_wallet, ledger_rows):
        uid, sid, gw = await self._pending(session_factory, make_user, amount="45.00")
        async with session_factory() as s:
            with pytest.raises(UnknownTier):
                await finalize(s, sid, gateway=gw)

        assert (await _recharge(session_factory, sid)).status == "pending"
        assert (await read_wallet(uid)).permanent_credits == 0
        assert await ledger_rows(uid) == []

    @pytest.mark.asyncio
    async def test_unpaid_session(self, session_factory, make_user, read_wallet):
        uid, sid, gw = await self._pending(session_factory, make_user)
        gw.sessions[sid]["payment_status"] = "unpaid"
        async with session_factory() as s:
            with pytest.raises(PaymentNotConfirmed):
                await finalize(s, sid, gateway=gw)
        assert (await _recharge(session_factory, sid)).status == "pending"
        assert (await read_wallet(uid)).permanent_credits == 0

    @pytest.mark.asyncio
    async def test_unknown_record(self, session_factory):
        async with session_factory() as s:
            with pytest.raises(RecordNotFound):
                await finalize(s, "cs_missing", gateway=FakeGateway())

    @pytest.mark.asyncio
    async def test_plan_not_downgraded(self, session_factory, make_user, read_wallet):
        uid = await make_user(plan_id="studio")
        gw = FakeGateway()
        async with session_factory() as s:
            out = await create_recharge(s, user_id=uid, plan_id="starter", gateway=gw)
        gw.sessions[out["session_id"]] = paid_session(out["session_id"], "4.90")
        async with session_factory() as s:
            await finalize(s, out["session_id"], gateway=gw)

        w = await read_wallet(uid)
        assert w.plan_id == "studio"
        assert w.bonus_credits == 120

    @pytest.mark.asyncio
    async def test_parallel_calls_credit_once(self, session_factory, make_user, read_wallet, ledger_rows):
        uid, sid, gw = await self._pending(session_factory, make_user)

        async def one():
            async with session_factory() as s:
                return await finalize(s, sid, gateway=gw)

        results = await asyncio.gather(*(one() for _ in range(5)))
        assert sorted(r.already_completed for r in results) == [False, True, True, True, True]
        assert {r.plan_id for r in results} == {"creator"}

        w = await read_wallet(uid)
        assert (w.permanent_credits, w.bonus_credits) == (600, 60)
        assert len(await ledger_rows(uid, "purchase")) == 1
        assert (await _recharge(session_factory, sid)).status == "completed"


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_only_pending_records(self, session_factory, make_user):
        uid = await make_user()
        gw = FakeGateway()
        async with session_factory() as s:
            out = await create_recharge(s, user_id=uid, plan_id="starter", gateway=gw)
        async with session_factory() as s:
            assert await mark_recharge_failed(s, out["session_id"]) is True
        async with session_factory() as s:
            assert await mark_recharge_failed(s, out["session_id"]) is False
        assert (await _recharge(session_factory, out["session_id"])).status == "failed"
