from __future__ import annotations

import uuid
from dataclasses import dataclass

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.core.logger import logger
from app.domain.errors import InsufficientCredits, ProviderUnavailable, UnknownModel
from app.domain.generation.clients import grsai
from app.domain.generation.clients.grsai import GrsaiError
from app.domain.generation.quota import check_quota
from app.domain.generation.service_finalize import fail_task
from app.domain.payments.tiers import model_cost
from app.domain.wallet.service import WalletSnapshot, deduct_wallet, lock_wallet
from app.models.models import ConsumptionRecord, VideoTask


@dataclass
class RenderStart:
    task_id: str
    consumption_id: str
    cost: int
    bonus_used: int
    permanent_used: int
    wallet: WalletSnapshot


def task_callback_url() -> str | None:
    # без секрета callback не принимаем — работаем поллингом
    if not settings.GRSAI_CALLBACK_SECRET:
        return None
    return f"{settings.public_base()}/webhook/grsai?token={settings.GRSAI_CALLBACK_SECRET}"


async def reserve_render(
    session: AsyncSession,
    *,
    user_id: str,
    model_id: str,
    prompt: str | None = None,
    device_id: str | None = None,
    ip_hash: str | None = None,
) -> RenderStart:
    """
    Проверка лимитов плана + списание стоимости одной транзакцией
    под блокировкой кошелька: два параллельных запроса не пройдут
    проверку лимита оба до списания.
    """
    cost = model_cost(model_id)
    if cost is None:
        raise UnknownModel(model_id)

    task_id = str(uuid.uuid4())
    consumption_id = str(uuid.uuid4())
    try:
        wallet = await lock_wallet(session, user_id)

        # лимиты раньше баланса: без кошелька действует план free
        await check_quota(
            session,
            plan_id=wallet.plan_id if wallet is not None else "free",
            model_id=model_id,
            user_id=user_id,
            device_id=device_id,
            ip_hash=ip_hash,
        )
        if wallet is None:
            raise InsufficientCredits("no wallet")

        spent = await deduct_wallet(
            session,
            user_id,
            cost,
            ref_type="render_spend",
            ref_id=consumption_id,
            reason=f"render {model_id}",
        )

        session.add(VideoTask(
            id=task_id,
            user_id=user_id,
            model_id=model_id,
            prompt=prompt,
            status="pending",
            consumption_id=consumption_id,
        ))
        session.add(ConsumptionRecord(
            id=consumption_id,
            user_id=user_id,
            video_task_id=task_id,
            model_id=model_id,
            credits=cost,
            bonus_used=spent.bonus_used,
            permanent_used=spent.permanent_used,
            device_id=device_id,
            ip_hash=ip_hash,
            description=f"render {model_id}",
            status="completed",
        ))
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "render reserved: user=%s model=%s cost=%s bonus=%s perm=%s task=%s",
        user_id, model_id, cost, spent.bonus_used, spent.permanent_used, task_id,
    )
    return RenderStart(
        task_id=task_id,
        consumption_id=consumption_id,
        cost=cost,
        bonus_used=spent.bonus_used,
        permanent_used=spent.permanent_used,
        wallet=spent.wallet,
    )


async def submit_task(
    session: AsyncSession,
    *,
    task_id: str,
    model_id: str,
    prompt: str,
    aspect_ratio: str = "16:9",
) -> str:
    """Отправить задачу в Grsai и сохранить внешний id. pending -> processing."""
    grsai_id = await grsai.create_video_task(
        model_id=model_id,
        prompt=prompt,
        aspect_ratio=aspect_ratio,
        callback_url=task_callback_url(),
    )
    await session.execute(
        update(VideoTask)
        .where(VideoTask.id == task_id, VideoTask.status == "pending")
        .values(grsai_task_id=grsai_id, status="processing")
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return grsai_id


async def start_render(
    session: AsyncSession,
    *,
    user_id: str,
    model_id: str,
    prompt: str,
    device_id: str | None = None,
    ip_hash: str | None = None,
    aspect_ratio: str = "16:9",
) -> RenderStart:
    reserved = await reserve_render(
        session,
        user_id=user_id,
        model_id=model_id,
        prompt=prompt,
        device_id=device_id,
        ip_hash=ip_hash,
    )

    try:
        grsai_id = await submit_task(
            session,
            task_id=reserved.task_id,
            model_id=model_id,
            prompt=prompt,
            aspect_ratio=aspect_ratio,
        )
    except GrsaiError as e:
        # в работу не ушло — задача failed, кредиты назад
        logger.warning("grsai_start_failed user=%s code=%s detail=%s", user_id, e.code, e.message)
        await fail_task(session, reserved.task_id, error_message=e.code, failure_reason="submit_failed")
        raise ProviderUnavailable(e.message)

    logger.info("start_render: user=%s task=%s grsai=%s", user_id, reserved.task_id, grsai_id)
    return reserved
