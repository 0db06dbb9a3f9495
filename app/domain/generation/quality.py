# app/domain/generation/quality.py
"""
Проверка качества пачки сгенерированных сцен: нужен ли повтор
более сильной моделью (fallback) или сразу самой сильной (pro).
Чистая функция: ничего не сохраняет, решение применяет вызывающий.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional

ERROR_PATTERNS = (
    "no data",
    "not found",
    "i don't know",
    "i cannot",
    "i am unable",
    "sorry, i",
    "无法生成",
    "没有找到",
    "不知道",
)

PREFIX_LEN = 50
MIN_CONTENT_LEN = 30

ISSUE_EMPTY_ARRAY = "empty array"


@dataclass
class QualityCheck:
    needs_fallback: bool = False
    needs_pro_model: bool = False
    reason: Optional[str] = None
    issues: List[str] = field(default_factory=list)

    def flag(self, reason: str, issue: str) -> None:
        self.needs_fallback = True
        self.reason = reason
        self.issues.append(issue)


def _content(item: Any) -> str:
    if isinstance(item, dict):
        value = item.get("content")
        if value is None:
            value = item.get("use_case")
    else:
        value = getattr(item, "content", None)
    return value if isinstance(value, str) else ""


def _duplicates_of_first(contents: List[str]) -> int:
    if not contents:
        return 0
    first = contents[0]
    head = first[:PREFIX_LEN]
    return sum(1 for c in contents if c == first or c[:PREFIX_LEN] == head)


def check_generation_quality(
    items: Iterable[Any],
    expected_count: int,
    raw_content: Optional[str] = None,
) -> QualityCheck:
    contents = [_content(i) for i in items]
    n = len(contents)
    result = QualityCheck()

    if n < expected_count * 0.5:
        result.flag(
            f"insufficient count: expected {expected_count}, got {n}",
            f"insufficient count: {n}/{expected_count}",
        )

    if n == 0:
        result.flag("empty result", ISSUE_EMPTY_ARRAY)

    empty = sum(1 for c in contents if not c.strip())
    if empty:
        result.flag(f"{empty} items with empty content", f"empty content: {empty}")

    if raw_content:
        lowered = raw_content.lower()
        if any(p in lowered for p in ERROR_PATTERNS):
            result.flag("provider returned an error or refusal", "error pattern")

    dup = _duplicates_of_first(contents)
    if n and dup > n * 0.3:
        result.flag(f"duplicate content: {dup}/{n}", f"duplicate content: {dup}")

    short = sum(1 for c in contents if c and len(c.strip()) < MIN_CONTENT_LEN)
    if short > n * 0.2:
        result.flag(f"low quality: {short} items too short", f"too short: {short}")

    # эскалация сразу на самую сильную модель
    if n and dup > n * 0.8:
        result.needs_pro_model = True
        result.flag(f"severe duplication: {dup}/{n}", f"severe duplication: {dup}")

    if n == 0 or (n < expected_count * 0.1 and expected_count >= 10):
        result.needs_pro_model = True
        result.flag(f"generation failed: {n}/{expected_count}", f"generation failed: {n}/{expected_count}")

    if not result.needs_fallback:
        result.reason = None
    return result
