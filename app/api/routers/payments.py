# app/api/routers/payments.py
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.domain.payments.providers.stripe_checkout import StripeGateway, get_stripe_gateway
from app.domain.payments.service import create_recharge, finalize
from app.repo.db import get_session

router = APIRouter()


class RechargeIn(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class FinalizeIn(BaseModel):
    session_id: str = Field(alias="sessionId", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


@router.post("/recharge")
async def recharge(
    body: RechargeIn,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    data = await create_recharge(session, user_id=user_id, plan_id=body.plan_id, gateway=gateway)
    return {"ok": True, **data}


@router.post("/finalize")
async def finalize_payment(
    body: FinalizeIn,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    # статус платежа перепроверяется у Stripe внутри finalize
    res = await finalize(session, body.session_id, gateway=gateway)
    out = {"ok": True, "already_completed": res.already_completed, "plan_id": res.plan_id}
    if res.wallet is not None:
        out["wallet"] = res.wallet.as_dict()
    return out
