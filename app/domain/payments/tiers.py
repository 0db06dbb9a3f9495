# app/domain/payments/tiers.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

from app.core.settings import settings

# порядок планов: покупка не может понизить уже купленный
PLAN_RANK = {"free": 0, "starter": 1, "creator": 2, "studio": 3, "pro": 4}


@dataclass(frozen=True)
class Tier:
    plan_id: str
    price: Decimal
    permanent_credits: int
    bonus_credits: int
    bonus_expires_days: int
    entitlement: Optional[str] = None

    @property
    def total_credits(self) -> int:
        return self.permanent_credits + self.bonus_credits


def _to_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"bad amount: {value!r}") from e


def build_tiers(plans: Dict[str, Dict[str, Any]], tolerance: Decimal) -> Tuple[Tier, ...]:
    """
    Собрать таблицу пакетов из конфига и проверить, что окна ±tolerance
    соседних пакетов не пересекаются (иначе сумма была бы неоднозначной).
    """
    tiers = tuple(sorted(
        (
            Tier(
                plan_id=plan_id,
                price=_to_decimal(p["price"]),
                permanent_credits=int(p.get("permanent", 0)),
                bonus_credits=int(p.get("bonus", 0)),
                bonus_expires_days=int(p.get("bonus_days", 0)),
                entitlement=p.get("entitlement"),
            )
            for plan_id, p in plans.items()
        ),
        key=lambda t: t.price,
    ))
    for lo, hi in zip(tiers, tiers[1:]):
        if hi.price - lo.price <= tolerance * 2:
            raise ValueError(f"tier windows overlap: {lo.plan_id} / {hi.plan_id}")
    return tiers


TIERS = build_tiers(settings.PLANS_USD, settings.TIER_TOLERANCE)


def get_tier(plan_id: str) -> Tier | None:
    for t in TIERS:
        if t.plan_id == plan_id:
            return t
    return None


def identify_tier(amount: Any, *, tiers: Tuple[Tier, ...] | None = None,
                  tolerance: Decimal | None = None) -> Tier | None:
    """Пакет по оплаченной сумме; None — сумма не подходит ни к одному (на ручной разбор)."""
    tiers = TIERS if tiers is None else tiers
    tol = settings.TIER_TOLERANCE if tolerance is None else tolerance
    try:
        paid = _to_decimal(amount)
    except ValueError:
        return None
    for t in tiers:
        if abs(paid - t.price) <= tol:
            return t
    return None


def upgraded_plan(current: str | None, tier: Tier) -> str:
    """План после покупки: только вверх, пакеты без entitlement план не трогают."""
    current = current or "free"
    if not tier.entitlement:
        return current
    if PLAN_RANK.get(tier.entitlement, 0) > PLAN_RANK.get(current, 0):
        return tier.entitlement
    return current


def model_cost(model_id: str) -> int | None:
    return settings.MODEL_COSTS.get(model_id)
