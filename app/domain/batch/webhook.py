# app/domain/batch/webhook.py
"""
Webhook enterprise-клиенту о завершении batch.

Подпись: hex HMAC-SHA256 от тела запроса в заголовке x-webhook-signature.
Повторы: до ENTERPRISE_WEBHOOK_RETRIES попыток, пауза 500 + i*i*1000 мс
между ними. notify/deliver никогда не бросают исключений.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import SessionLocal
from app.core.logger import logger
from app.core.settings import settings
from app.models.models import BatchJob, EnterpriseApiKey
from app.utils.clock import utcnow

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class DeliveryReport:
    delivered: bool
    attempts: int = 0
    last_error: Optional[str] = None
    status_code: Optional[int] = None


def backoff_seconds(attempt_index: int) -> float:
    return (500 + attempt_index * attempt_index * 1000) / 1000


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def build_payload(batch: BatchJob) -> Dict[str, Any]:
    return {
        "batch_id": batch.id,
        "user_id": batch.user_id,
        "status": batch.status,
        "total_count": batch.total_count,
        "success_count": batch.success_count,
        "failed_count": batch.failed_count,
        "credits_spent": batch.credits_spent,
        "timestamp": int(time.time() * 1000),
    }


async def resolve_target(session: AsyncSession, batch: BatchJob) -> tuple[Optional[str], Optional[str]]:
    """URL и секрет только из БД: сначала batch, потом ключ enterprise-клиента, потом общий секрет."""
    url, secret = batch.webhook_url, batch.webhook_secret
    if not url or not secret:
        key = (
            await session.execute(
                select(EnterpriseApiKey)
                .where(EnterpriseApiKey.user_id == batch.user_id)
                .order_by(EnterpriseApiKey.created_at.desc())
            )
        ).scalars().first()
        if key is not None:
            url = url or key.webhook_url
            secret = secret or key.webhook_secret
    return url or None, secret or settings.ENTERPRISE_WEBHOOK_SECRET or None


async def deliver(
    batch_id: str,
    summary: Dict[str, Any],
    *,
    url: Optional[str],
    secret: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
    retries: Optional[int] = None,
    timeout_ms: Optional[int] = None,
    sleep: Sleep = asyncio.sleep,
) -> DeliveryReport:
    if not url:
        return DeliveryReport(delivered=False)

    retries = settings.ENTERPRISE_WEBHOOK_RETRIES if retries is None else retries
    timeout_ms = settings.ENTERPRISE_WEBHOOK_TIMEOUT_MS if timeout_ms is None else timeout_ms

    body = json.dumps(summary, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers = {"content-type": "application/json", "x-batch-id": str(batch_id)}
    if secret:
        headers["x-webhook-signature"] = sign(body, secret)

    report = DeliveryReport(delivered=False)
    own_client = client is None
    if own_client:
        client = httpx.AsyncClient(timeout=timeout_ms / 1000)
    try:
        for i in range(max(1, retries)):
            report.attempts = i + 1
            try:
                r = await client.post(url, content=body, headers=headers, timeout=timeout_ms / 1000)
                report.status_code = r.status_code
                if 200 <= r.status_code < 300:
                    report.delivered = True
                    report.last_error = None
                    logger.info("batch webhook sent batch=%s attempt=%s", batch_id, i + 1)
                    return report
                report.last_error = f"HTTP {r.status_code}"
            except Exception as e:
                report.last_error = f"{type(e).__name__}: {e}"

            logger.warning(
                "batch webhook attempt %s/%s failed batch=%s err=%s",
                i + 1, retries, batch_id, report.last_error,
            )
            if i < retries - 1:
                await sleep(backoff_seconds(i))
    finally:
        if own_client:
            await client.aclose()

    return report


async def _record(session: AsyncSession, batch_id: str, report: DeliveryReport) -> None:
    await session.execute(
        update(BatchJob)
        .where(BatchJob.id == batch_id)
        .values(
            webhook_status="sent" if report.delivered else "failed",
            webhook_attempts=BatchJob.webhook_attempts + report.attempts,
            webhook_last_error=report.last_error,
            webhook_last_sent_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()


async def notify(
    batch_id: str,
    summary: Optional[Dict[str, Any]] = None,
    *,
    session: Optional[AsyncSession] = None,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """
    Отправка по завершённому batch. URL и секрет ищутся в БД по batch_id,
    результат пишется в webhook_* поля. True — клиент ответил 2xx;
    нет URL или batch не рассчитан — False без единого запроса.
    """
    if session is None:
        async with SessionLocal() as own:
            return await notify(batch_id, summary, session=own, client=client, sleep=sleep)

    try:
        batch = (await session.execute(select(BatchJob).where(BatchJob.id == batch_id))).scalars().first()
        if batch is None:
            logger.warning("batch webhook: batch %s not found", batch_id)
            return False
        if batch.settlement_status == "pending":
            # дети ещё не все терминальные — рано
            logger.warning("batch webhook: batch %s is not settled", batch_id)
            return False

        url, secret = await resolve_target(session, batch)
        if not url:
            return False

        report = await deliver(
            batch_id,
            summary or build_payload(batch),
            url=url,
            secret=secret,
            client=client,
            sleep=sleep,
        )
        await _record(session, batch_id, report)
        return report.delivered
    except Exception:
        await session.rollback()
        logger.exception("batch webhook notify crashed batch=%s", batch_id)
        return False


async def deliver_batch_webhook(
    session: AsyncSession,
    batch_id: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Sleep = asyncio.sleep,
) -> bool:
    """Задача воркера: сводка строится из текущего состояния batch."""
    return await notify(batch_id, session=session, client=client, sleep=sleep)
