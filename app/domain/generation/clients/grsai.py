from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from app.core.settings import settings
from app.core.logger import logger

# наш model_id -> (endpoint, модель у Grsai)
VIDEO_MODELS: Dict[str, Tuple[str, str]] = {
    "sora": ("/v1/video/sora-video", "sora-2"),
    "veo_fast": ("/v1/video/veo", "veo3.1-fast"),
    "veo_pro": ("/v1/video/veo", "veo3.1-pro"),
}

# webHook="-1" — Grsai сразу отдаёт id, результат забираем поллингом
POLLING_WEBHOOK = "-1"


class GrsaiError(Exception):
    def __init__(self, code: str, message: Optional[str] = None, http_status: Optional[int] = None):
        super().__init__(message or code)
        self.code = code
        self.http_status = http_status
        self.message = message or code

    def __str__(self) -> str:
        base = self.code
        if self.http_status:
            base += f" (HTTP {self.http_status})"
        if self.message and self.message != self.code:
            base += f": {self.message}"
        return base


def _headers() -> Dict[str, str]:
    return {"Content-Type": "application/json", "Authorization": f"Bearer {settings.GRSAI_API_KEY}"}


def _timeout(total: int) -> aiohttp.ClientTimeout:
    return aiohttp.ClientTimeout(total=total, connect=10, sock_connect=10, sock_read=max(10, total - 5))


def chat_timeout(model: str) -> int:
    if "gemini-3-pro" in model:
        return 120
    if "gemini-3-flash" in model:
        return 90
    return 60


async def _post_json_with_retries(
    session: aiohttp.ClientSession,
    url: str,
    payload: Dict[str, Any],
    *,
    attempts: int = 3,
    base_backoff: float = 1.0,
) -> Tuple[int, Dict[str, Any]]:
    """POST с повтором на 429/5xx/сетевые ошибки. 4xx отдаём вызывающему как есть."""
    backoff = base_backoff
    for i in range(attempts):
        try:
            async with session.post(url, headers=_headers(), json=payload) as r:
                try:
                    data = await r.json(content_type=None)
                except Exception:
                    data = {"msg": (await r.text())}

                if r.status == 429 or 500 <= r.status < 600:
                    raise aiohttp.ClientResponseError(r.request_info, r.history, status=r.status)

                return r.status, data if isinstance(data, dict) else {"data": data}

        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            is_last = (i == attempts - 1)
            logger.warning("grsai POST retry %s/%s url=%s err=%r", i + 1, attempts, url, e)
            if is_last:
                raise
            await asyncio.sleep(backoff + random.random())
            backoff *= 2

    raise asyncio.TimeoutError("Exhausted POST retries")


async def _call(
    host: str,
    path: str,
    payload: Dict[str, Any],
    *,
    session: Optional[aiohttp.ClientSession],
    timeout_seconds: int,
    attempts: int = 3,
) -> Tuple[int, Dict[str, Any]]:
    url = f"{host.rstrip('/')}{path}"
    close_session = False
    if session is None:
        session = aiohttp.ClientSession(timeout=_timeout(timeout_seconds))
        close_session = True
    try:
        return await _post_json_with_retries(session, url, payload, attempts=attempts)
    except (asyncio.TimeoutError, aiohttp.ClientError) as ce:
        raise GrsaiError(code="PROVIDER_UNAVAILABLE", message=str(ce)) from ce
    finally:
        if close_session:
            await session.close()


async def create_video_task(
    *,
    model_id: str,
    prompt: str,
    aspect_ratio: str = "16:9",
    callback_url: Optional[str] = None,
    session: Optional[aiohttp.ClientSession] = None,
) -> str:
    """Поставить рендер у Grsai, вернуть внешний id задачи."""
    if model_id not in VIDEO_MODELS:
        raise GrsaiError(code="UNKNOWN_MODEL", message=model_id)
    path, remote_model = VIDEO_MODELS[model_id]
    payload = {
        "model": remote_model,
        "prompt": prompt,
        "aspectRatio": aspect_ratio,
        "webHook": callback_url or POLLING_WEBHOOK,
        "shutProgress": False,
    }

    status, data = await _call(settings.GRSAI_HOST, path, payload, session=session, timeout_seconds=60)
    logger.info("grsai create: model=%s HTTP %s code=%s", remote_model, status, data.get("code"))

    task_id = (data.get("data") or {}).get("id") if isinstance(data.get("data"), dict) else None
    if status >= 400 or data.get("code") not in (0, None) or not task_id:
        logger.warning("grsai create failed: HTTP %s data=%s", status, data)
        raise GrsaiError(code="TASK_FAILED", message=str(data.get("msg") or data), http_status=status)
    return str(task_id)


async def get_result(task_id: str, *, session: Optional[aiohttp.ClientSession] = None) -> Dict[str, Any]:
    """Сырой ответ /v1/draw/result. Классификация — в poller.classify_result."""
    status, data = await _call(
        settings.GRSAI_HOST, "/v1/draw/result", {"id": task_id},
        session=session, timeout_seconds=30, attempts=2,
    )
    if status >= 400:
        raise GrsaiError(code="RESULT_HTTP_ERROR", message=str(data), http_status=status)
    return data


async def chat_completion(
    *,
    model: str,
    messages: List[Dict[str, str]],
    temperature: float = 0.7,
    session: Optional[aiohttp.ClientSession] = None,
) -> str:
    """Текст первого choice. Пустой ответ — ошибка (кредиты у Grsai уже списаны)."""
    payload = {"model": model, "messages": messages, "temperature": temperature, "stream": False}
    status, data = await _call(
        settings.GRSAI_CHAT_HOST, "/v1/chat/completions", payload,
        session=session, timeout_seconds=chat_timeout(model),
    )
    if status >= 400:
        err = data.get("error")
        msg = err.get("message") if isinstance(err, dict) else data.get("message") or data.get("msg")
        raise GrsaiError(code="CHAT_FAILED", message=str(msg or data)[:200], http_status=status)

    choices = data.get("choices") or []
    content = ((choices[0] or {}).get("message") or {}).get("content") if choices else None
    if not content:
        logger.error("grsai chat: empty content model=%s data=%s", model, data)
        raise GrsaiError(code="EMPTY_COMPLETION", message=f"model={model}")
    return content
