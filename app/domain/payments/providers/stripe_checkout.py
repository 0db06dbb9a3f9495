# app/domain/payments/providers/stripe_checkout.py
import asyncio
from decimal import Decimal
from typing import Any, Dict, Optional

import stripe

from app.core.settings import settings
from app.core.logger import logger


def _amount_from_cents(cents: Optional[int]) -> Decimal:
    return (Decimal(int(cents or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def _session_to_dict(s: Any) -> Dict[str, Any]:
    meta = getattr(s, "metadata", None) or {}
    return {
        "id": s.id,
        "payment_status": getattr(s, "payment_status", None),
        "amount": _amount_from_cents(getattr(s, "amount_total", None)),
        "currency": (getattr(s, "currency", None) or "usd").lower(),
        "client_reference_id": getattr(s, "client_reference_id", None),
        "metadata": dict(meta),
        "url": getattr(s, "url", None),
    }


class StripeGateway:
    """
    Тонкая обёртка над SDK: ключ передаётся в каждый вызов,
    синхронные запросы SDK уходят в поток.
    """

    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    async def retrieve_session(self, session_id: str) -> Dict[str, Any]:
        def _retrieve_sync():
            return stripe.checkout.Session.retrieve(session_id, api_key=self.api_key)

        try:
            s = await asyncio.to_thread(_retrieve_sync)
        except Exception as e:
            logger.error(f"❌ Stripe retrieve failed session={session_id}: {e}", exc_info=True)
            raise
        return _session_to_dict(s)

    async def create_checkout(
        self,
        *,
        amount: Decimal,
        currency: str,
        description: str,
        user_id: str,
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        payload = {
            "mode": "payment",
            "line_items": [{
                "price_data": {
                    "currency": currency,
                    "unit_amount": int((amount * 100).to_integral_value()),
                    "product_data": {"name": description},
                },
                "quantity": 1,
            }],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": user_id,
            "metadata": metadata,
        }

        def _create_sync():
            return stripe.checkout.Session.create(api_key=self.api_key, **payload)

        try:
            s = await asyncio.to_thread(_create_sync)
            logger.info(f"💳 Stripe checkout {s.id} на {amount} {currency}")
        except Exception as e:
            logger.error(f"❌ Ошибка создания checkout: {e}", exc_info=True)
            raise
        return _session_to_dict(s)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Any:
        """Проверка подписи webhook; бросает stripe.SignatureVerificationError / ValueError."""
        if not self.webhook_secret:
            raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
        return stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
