from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update, select
from sqlalchemy.engine import Result

from app.models.models import VideoTask
from app.core.logger import logger
from app.domain.errors import AlreadyRefunded
from app.domain.generation.poller import PollResult, classify_result, poll
from app.domain.generation.refund import refund
from app.utils.clock import utcnow

ACTIVE = ("pending", "processing")


async def apply_poll_result(session: AsyncSession, task_id: str, result: PollResult) -> bool:
    """
    Сохранить результат опроса. True — задача только что стала терминальной.
    Терминальные статусы дальше не меняются (условный UPDATE по status).
    При failed один раз пытаемся вернуть кредиты; ошибка возврата
    не отменяет запись статуса, только логируется для ручной сверки.
    """
    if not result.ok:
        return False

    now = utcnow()
    if result.status == "processing":
        await session.execute(
            update(VideoTask)
            .where(VideoTask.id == task_id, VideoTask.status.in_(ACTIVE))
            .values(status="processing", progress=result.progress, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return False

    succeeded = result.status == "succeeded"
    upd = (
        update(VideoTask)
        .where(VideoTask.id == task_id, VideoTask.status.in_(ACTIVE))
        .values(
            status=result.status,
            progress=100 if succeeded else result.progress,
            video_url=result.video_url if succeeded else None,
            error_message=None if succeeded else result.error_message,
            failure_reason=None if succeeded else result.failure_reason,
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    res: Result = await session.execute(upd)
    await session.commit()

    if (res.rowcount or 0) == 0:
        return False

    logger.info("task %s -> %s", task_id, result.status)
    if succeeded:
        return True

    consumption_id = (
        await session.execute(select(VideoTask.consumption_id).where(VideoTask.id == task_id))
    ).scalar_one_or_none()
    if consumption_id:
        try:
            await refund(session, consumption_id, reason=f"render failed: {result.error_message}")
        except AlreadyRefunded:
            logger.info("task %s: consumption %s already refunded", task_id, consumption_id)
        except Exception:
            logger.exception("apply_poll_result: refund on failure failed (task=%s)", task_id)
    return True


async def fail_task(
    session: AsyncSession,
    task_id: str,
    *,
    error_message: str,
    failure_reason: str | None = None,
) -> bool:
    return await apply_poll_result(
        session,
        task_id,
        PollResult(ok=True, status="failed", error_message=error_message, failure_reason=failure_reason),
    )


async def finalize_by_callback(session: AsyncSession, payload: Any) -> bool:
    """Push от Grsai: формат /v1/draw/result либо голый data-объект с id."""
    if isinstance(payload, dict) and "data" not in payload and "status" in payload:
        payload = {"code": 0, "data": payload}
    data = payload.get("data") if isinstance(payload, dict) else None
    grsai_id = None
    if isinstance(data, dict):
        grsai_id = data.get("id")
    if not grsai_id and isinstance(payload, dict):
        grsai_id = payload.get("id")
    if not grsai_id:
        logger.warning("grsai callback without task id: %s", payload)
        return False

    task_id = (
        await session.execute(select(VideoTask.id).where(VideoTask.grsai_task_id == str(grsai_id)))
    ).scalar_one_or_none()
    if task_id is None:
        logger.warning("grsai callback for unknown task %s", grsai_id)
        return False

    return await apply_poll_result(session, task_id, classify_result(payload))


def task_view(t: VideoTask) -> dict:
    return {
        "task_id": t.id,
        "model_id": t.model_id,
        "status": t.status,
        "progress": t.progress,
        "video_url": t.video_url,
        "error_message": t.error_message,
        "failure_reason": t.failure_reason,
    }


async def refresh_task(session: AsyncSession, task_id: str, *, user_id: str | None = None) -> VideoTask | None:
    """
    Статус задачи для клиента: терминальную отдаём из БД, активную
    один раз опрашиваем у провайдера и сохраняем переход.
    Сетевая ошибка опроса задачу не валит — остаётся processing.
    """
    q = select(VideoTask).where(VideoTask.id == task_id)
    if user_id is not None:
        q = q.where(VideoTask.user_id == user_id)
    task = (await session.execute(q)).scalars().first()
    if task is None:
        return None
    if task.status not in ACTIVE or not task.grsai_task_id:
        return task

    result = await poll(task.grsai_task_id)
    await apply_poll_result(session, task.id, result)
    return (
        await session.execute(
            select(VideoTask).where(VideoTask.id == task_id).execution_options(populate_existing=True)
        )
    ).scalars().first()
