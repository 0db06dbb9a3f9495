# app/api/routers/stripe_webhook.py
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.domain.errors import DomainError
from app.domain.payments.providers.stripe_checkout import StripeGateway, get_stripe_gateway
from app.domain.payments.service import finalize, mark_recharge_failed
from app.repo.db import get_session

router = APIRouter()


def _get(obj, key):
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    gateway: StripeGateway = Depends(get_stripe_gateway),
):
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, request.headers.get("stripe-signature"))
    except Exception as e:
        logger.warning("Stripe webhook: bad signature or payload: %s", e)
        raise HTTPException(400, "BAD_SIGNATURE")

    etype = _get(event, "type")
    obj = _get(_get(event, "data"), "object")
    session_id = _get(obj, "id")
    logger.info("Stripe webhook: type=%s session=%s", etype, session_id)

    if etype in ("checkout.session.completed", "checkout.session.async_payment_succeeded") and session_id:
        try:
            await finalize(session, session_id, gateway=gateway)
        except DomainError as e:
            # Stripe не должен ретраить бизнес-ошибки: фиксируем и отвечаем 200
            logger.error("Stripe webhook: finalize %s failed: %s", session_id, e)
            return {"ok": False, "error": e.code}
    elif etype in ("checkout.session.expired", "checkout.session.async_payment_failed") and session_id:
        await mark_recharge_failed(session, session_id)

    return {"ok": True}
