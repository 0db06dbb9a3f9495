# app/domain/generation/scenes.py
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from app.core.settings import settings
from app.core.logger import logger
from app.domain.generation.clients import grsai
from app.domain.generation.clients.grsai import GrsaiError
from app.domain.generation.quality import QualityCheck, check_generation_quality

SYSTEM_PROMPT = (
    "You are an expert in AI video generation use cases. Generate specific, practical, "
    "real-world scenes for AI video generation. All output must be in English. "
    "Videos are only 10 or 15 seconds long; never mention a longer duration."
)

USER_PROMPT = """Generate {count} specific, real-world scene descriptions for AI video generation.

Topic: {topic}

Requirements:
- {count} scenes, each 300-500 characters
- specific, not generic; describe the situation and a short example prompt
- output only a JSON array: [{{"id": 1, "content": "..."}}, ...]"""

_FENCE_RE = re.compile(r"```(?:json)?\s*")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")

ChatFn = Callable[..., Awaitable[str]]


@dataclass
class SceneResult:
    scenes: List[Dict[str, Any]]
    model: str
    accepted: bool
    attempts: List[Tuple[str, QualityCheck]] = field(default_factory=list)


def model_chain() -> Tuple[str, str, str]:
    return settings.SCENE_MODEL_DEFAULT, settings.SCENE_MODEL_FALLBACK, settings.SCENE_MODEL_PRO


def parse_scenes(raw: str) -> List[Dict[str, Any]]:
    """JSON-массив из ответа модели (с ```json обёрткой или текстом вокруг)."""
    text = _FENCE_RE.sub("", raw or "").strip()
    try:
        data = json.loads(text)
    except ValueError:
        m = _ARRAY_RE.search(text)
        if not m:
            return []
        try:
            data = json.loads(m.group(0))
        except ValueError:
            return []

    if not isinstance(data, list):
        return []

    scenes = []
    for idx, item in enumerate(data, start=1):
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if content is None:
            content = item.get("use_case")
        scenes.append({"id": idx, "content": content if isinstance(content, str) else ""})
    return scenes


async def generate_scenes_with_fallback(
    topic: str,
    count: int,
    *,
    chat: Optional[ChatFn] = None,
) -> SceneResult:
    """
    Дешёвая модель -> fallback -> pro. После каждой попытки — проверка качества;
    needs_pro_model перескакивает сразу на pro. Если и pro не прошла —
    отдаём лучший результат с accepted=False.
    """
    chat = chat or grsai.chat_completion
    chain = model_chain()
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": USER_PROMPT.format(count=count, topic=topic)},
    ]

    attempts: List[Tuple[str, QualityCheck]] = []
    best: Optional[Tuple[str, List[Dict[str, Any]]]] = None
    level = 0
    while level < len(chain):
        model = chain[level]
        raw = ""
        try:
            raw = await chat(model=model, messages=messages)
            scenes = parse_scenes(raw)
        except GrsaiError as e:
            logger.warning("scenes: %s failed topic=%s err=%s", model, topic, e)
            scenes = []

        check = check_generation_quality(scenes, count, raw)
        attempts.append((model, check))
        if best is None or len(scenes) > len(best[1]):
            best = (model, scenes)

        if not check.needs_fallback:
            logger.info("scenes: topic=%s model=%s got=%s", topic, model, len(scenes))
            return SceneResult(scenes=scenes[:count], model=model, accepted=True, attempts=attempts)

        logger.warning("scenes: %s rejected topic=%s issues=%s", model, topic, check.issues)
        level = len(chain) - 1 if check.needs_pro_model and level < len(chain) - 1 else level + 1

    model, scenes = best
    return SceneResult(scenes=scenes[:count], model=model, accepted=False, attempts=attempts)
