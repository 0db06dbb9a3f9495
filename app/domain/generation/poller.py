# app/domain/generation/poller.py
"""
Разбор ответа Grsai /v1/draw/result.

classify_result — чистая функция без побочных эффектов; сохранение
перехода статуса и возврат кредитов делает вызывающий код
(service_finalize.apply_poll_result).
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, Dict, Optional

from app.core.logger import logger
from app.domain.generation.clients import grsai

SUCCESS_STATUSES = {"succeeded", "success"}
FAILED_STATUSES = {"failed", "error"}
SUCCEEDED_WITHOUT_VIDEO_URL = "SUCCEEDED_WITHOUT_VIDEO_URL"


@dataclass
class PollResult:
    ok: bool
    status: Optional[str] = None          # processing | succeeded | failed
    progress: int = 0
    video_url: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
    error: Optional[str] = None           # ok=False: сеть/парсинг, опрос надо повторить

    @property
    def is_terminal(self) -> bool:
        return self.ok and self.status in ("succeeded", "failed")

    def as_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def _progress(data: Dict[str, Any]) -> int:
    try:
        return max(0, min(100, int(data.get("progress") or 0)))
    except (TypeError, ValueError):
        return 0


def _video_url(data: Dict[str, Any]) -> Optional[str]:
    # sora: results[0].url, veo: url
    results = data.get("results")
    if isinstance(results, list) and results:
        first = results[0] if isinstance(results[0], dict) else {}
        if first.get("url"):
            return first["url"]
    return data.get("url") or None


def classify_result(payload: Any) -> PollResult:
    if not isinstance(payload, dict):
        return PollResult(ok=False, error=f"unexpected payload: {type(payload).__name__}")

    code = payload.get("code", 0)
    if code not in (0, None):
        return PollResult(
            ok=True,
            status="failed",
            error_message=str(payload.get("msg") or f"provider code {code}"),
        )

    data = payload.get("data")
    if not isinstance(data, dict):
        return PollResult(ok=False, error="response has no data")

    status = str(data.get("status") or "").lower()
    progress = _progress(data)

    if status in SUCCESS_STATUSES:
        url = _video_url(data)
        if url:
            return PollResult(ok=True, status="succeeded", progress=100, video_url=url)
        return PollResult(ok=True, status="failed", progress=progress, error_message=SUCCEEDED_WITHOUT_VIDEO_URL)

    if status in FAILED_STATUSES:
        reason = data.get("failure_reason") or None
        return PollResult(
            ok=True,
            status="failed",
            progress=progress,
            error_message=str(reason or data.get("error") or "TASK_FAILED"),
            failure_reason=reason,
        )

    return PollResult(ok=True, status="processing", progress=progress)


Fetcher = Callable[[str], Awaitable[Dict[str, Any]]]


async def poll(external_task_id: str, *, fetch: Fetcher | None = None) -> PollResult:
    """Один опрос провайдера. Сетевые ошибки не превращаются в failed."""
    fetch = fetch or grsai.get_result
    try:
        payload = await fetch(external_task_id)
    except Exception as e:
        logger.warning("poll failed task=%s err=%s", external_task_id, e)
        return PollResult(ok=False, error=str(e))
    return classify_result(payload)
