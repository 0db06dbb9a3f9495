# app/api/routers/grsai.py
from __future__ import annotations

from hmac import compare_digest

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logger import logger
from app.core.settings import settings
from app.domain.generation.service_finalize import finalize_by_callback
from app.repo.db import get_session

router = APIRouter()


def _ok_token(token: str | None) -> bool:
    if not token or not settings.GRSAI_CALLBACK_SECRET:
        return False
    return compare_digest(token, settings.GRSAI_CALLBACK_SECRET)


@router.post("/grsai")
async def grsai_webhook(request: Request, session: AsyncSession = Depends(get_session)):
    if not _ok_token(request.query_params.get("token")):
        raise HTTPException(403, "FORBIDDEN")

    try:
        data = await request.json()
    except Exception:
        logger.exception("Grsai webhook: failed to parse JSON")
        return Response(status_code=204)

    logger.info("Grsai webhook: %s", data)
    try:
        await finalize_by_callback(session, data)
    except Exception:
        # провайдер ретраит по не-2xx; задачу добьёт опрос или reconcile_stuck
        logger.exception("Grsai webhook: finalize_by_callback failed")
    return Response(status_code=204)
