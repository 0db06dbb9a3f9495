# app/api/routers/batch.py
from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_user_id
from app.domain.batch.service import batch_view, create_batch
from app.domain.generation.service_finalize import task_view
from app.models.models import BatchJob, VideoTask
from app.repo.db import get_session

router = APIRouter()


class BatchIn(BaseModel):
    model_id: str = Field(alias="modelId", min_length=1)
    prompts: List[str] = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


@router.post("/batches")
async def create(
    body: BatchIn,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    # webhook URL и секрет берутся только из enterprise-ключа на сервере
    batch = await create_batch(session, user_id=user_id, model_id=body.model_id, prompts=body.prompts)
    return {"ok": True, **batch_view(batch)}


@router.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
):
    batch = (
        await session.execute(select(BatchJob).where(BatchJob.id == batch_id, BatchJob.user_id == user_id))
    ).scalars().first()
    if batch is None:
        raise HTTPException(404, "NOT_FOUND")
    tasks = (
        await session.execute(
            select(VideoTask).where(VideoTask.batch_job_id == batch_id).order_by(VideoTask.batch_index)
        )
    ).scalars().all()
    return {"ok": True, **batch_view(batch), "tasks": [task_view(t) for t in tasks]}
