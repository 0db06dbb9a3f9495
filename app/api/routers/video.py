# app/api/routers/video.py
from __future__ import annotations

import hashlib

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.domain.generation.service_finalize import refresh_task, task_view
from app.domain.generation.service_start import start_render
from app.repo.db import get_session

router = APIRouter()


class RenderStartIn(BaseModel):
    model_id: str = Field(alias="modelId", min_length=1)
    prompt: str = Field(min_length=1, max_length=4000)
    aspect_ratio: str = Field(default="16:9", alias="aspectRatio", pattern=r"^(16:9|9:16)$")
    device_id: str | None = Field(default=None, alias="deviceId", max_length=128)
    ip_hash: str | None = Field(default=None, alias="ipHash", max_length=128)

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


def _client_ip_hash(request: Request) -> str | None:
    fwd = request.headers.get("x-forwarded-for")
    ip = fwd.split(",")[0].strip() if fwd else (request.client.host if request.client else None)
    if not ip:
        return None
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


@router.post("/render-start")
async def render_start(
    body: RenderStartIn,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    started = await start_render(
        session,
        user_id=user_id,
        model_id=body.model_id,
        prompt=body.prompt,
        device_id=body.device_id,
        ip_hash=body.ip_hash or _client_ip_hash(request),
        aspect_ratio=body.aspect_ratio,
    )
    return {
        "ok": True,
        "task_id": started.task_id,
        "cost": started.cost,
        "wallet": started.wallet.as_dict(),
    }


@router.get("/result/{task_id}")
async def render_result(
    task_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    task = await refresh_task(session, task_id, user_id=user_id)
    if task is None:
        raise HTTPException(404, "NOT_FOUND")
    return {"ok": True, **task_view(task)}
