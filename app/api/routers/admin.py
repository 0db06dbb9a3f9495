# app/api/routers/admin.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import require_admin
from app.core.logger import logger
from app.domain.generation.refund import refund
from app.domain.generation.scenes import generate_scenes_with_fallback
from app.domain.reconcile.service import legacy_credit_mismatches
from app.domain.wallet.service import admin_adjust
from app.repo.db import get_session

router = APIRouter()


class AdjustIn(BaseModel):
    delta_permanent: int = 0
    delta_bonus: int = 0
    bonus_ttl_days: int | None = Field(default=None, ge=1, le=365)
    reason: str = Field(min_length=3, max_length=500)


class ScenesIn(BaseModel):
    topic: str = Field(min_length=3, max_length=500)
    count: int = Field(default=20, ge=1, le=100)


@router.post("/consumption/{consumption_id}/refund")
async def refund_consumption(
    consumption_id: str,
    admin_id: str = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    res = await refund(session, consumption_id, reason=f"admin refund [admin={admin_id}]")
    logger.warning("admin refund consumption=%s admin=%s", consumption_id, admin_id)
    return {"ok": True, **res}


@router.post("/wallet/{user_id}/adjust")
async def adjust_wallet(
    user_id: str,
    body: AdjustIn,
    admin_id: str = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    snap = await admin_adjust(
        session,
        user_id,
        delta_permanent=body.delta_permanent,
        delta_bonus=body.delta_bonus,
        bonus_ttl_days=body.bonus_ttl_days,
        reason=body.reason,
        admin_id=admin_id,
    )
    return {"ok": True, "wallet": snap.as_dict()}


@router.get("/reconcile/legacy-credits")
async def legacy_credits(
    min_abs_diff: int = Query(1, ge=1),
    limit: int = Query(500, ge=1, le=5000),
    admin_id: str = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
):
    rows = await legacy_credit_mismatches(session, min_abs_diff=min_abs_diff, limit=limit)
    return {"ok": True, "count": len(rows), "rows": rows}


@router.post("/scenes/generate")
async def generate_scenes(body: ScenesIn, admin_id: str = Depends(require_admin)):
    res = await generate_scenes_with_fallback(body.topic, body.count)
    logger.info(
        "admin scenes topic=%s model=%s accepted=%s got=%s admin=%s",
        body.topic, res.model, res.accepted, len(res.scenes), admin_id,
    )
    return {
        "ok": True,
        "model": res.model,
        "accepted": res.accepted,
        "scenes": res.scenes,
        "attempts": [{"model": m, "issues": check.issues} for m, check in res.attempts],
    }
