from __future__ import annotations

import json
import re
import socket
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from xiaoguang_lite.domain.errors import (
    PermanentServiceError,
    TransientServiceError,
    classify_http_status,
)
from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.domain.knowledge import DAY_MS, CharacterMemory

_JSON_BLOCK = re.compile(r"\{.*\}", re.DOTALL)

# weights of the five value dimensions in the overall score
_DIMENSION_WEIGHTS = {
    "semantic_value": 0.3,
    "emotional_depth": 0.25,
    "association_value": 0.2,
    "character_development": 0.15,
    "practical_value": 0.1,
}


@dataclass(frozen=True)
class MemoryEvaluation:
    memory_id: str
    should_consolidate: bool
    confidence: float
    reason: str
    score: float | None = None


class MemoryEvaluatorProtocol(Protocol):
    name: str

    def evaluate_batch(
        self,
        *,
        character_name: str,
        memories: list[CharacterMemory],
        related_long_term: list[CharacterMemory],
    ) -> list[MemoryEvaluation]:
        ...


class ChatModelMemoryEvaluator:
    """Asks an OpenAI-compatible chat model whether short-term memories deserve long-term storage."""

    name = "chat_model"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        enabled: bool,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = str(base_url or "").strip()
        self.api_key = str(api_key or "").strip()
        self.model = str(model or "").strip()
        self.enabled = bool(enabled)
        self.timeout = float(timeout)

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.base_url and self.api_key and self.model)

    def evaluate_batch(
        self,
        *,
        character_name: str,
        memories: list[CharacterMemory],
        related_long_term: list[CharacterMemory],
    ) -> list[MemoryEvaluation]:
        if not memories:
            return []
        now = now_ms()
        payload = {
            "character": character_name,
            "candidates": [
                {
                    "id": i,
                    "content": m.content[:400],
                    "importance": m.importance,
                    "emotion_intensity": m.emotion_intensity or 0.0,
                    "access_count": m.access_count,
                    "tags": list(m.tags),
                    "days_since_creation": max(0, now - m.created_at) // DAY_MS,
                }
                for i, m in enumerate(memories)
            ],
            "related_long_term": [
                {"content": m.content[:200], "importance": m.importance, "tags": list(m.tags)}
                for m in related_long_term[:5]
            ],
        }
        messages = [
            {
                "role": "system",
                "content": (
                    "你是小光的记忆管理专家，评估短期记忆是否应升级为长期记忆。\n"
                    "为每条候选记忆给出 0~1 的五个维度评分: semantic_value, emotional_depth, "
                    "association_value, character_development, practical_value。\n"
                    "只返回严格 JSON: {\"evaluations\": [{\"id\": int, "
                    "\"should_consolidate\": bool, \"confidence\": 0~1, 五个维度评分, "
                    "\"reason\": 不超过40字}]}"
                ),
            },
            {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
        ]
        raw = self._chat_completion(messages=messages)
        return _parse_evaluations(raw, memories)

    def _chat_completion(self, *, messages: list[dict[str, str]]) -> str:
        url = self._build_completion_url(self.base_url)
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": 0.0,
            "max_tokens": 900,
            "response_format": {"type": "json_object"},
        }
        req = request.Request(
            url=url,
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            kind = classify_http_status(exc.code)
            raise kind(f"HTTP {exc.code}: {detail[:220]}", service="chat", status=exc.code) from exc
        except (error.URLError, socket.timeout, ConnectionError, TimeoutError) as exc:
            raise TransientServiceError(f"request failed: {exc}", service="chat") from exc
        try:
            body = json.loads(raw)
            content = body.get("choices", [{}])[0].get("message", {}).get("content", "")
        except (ValueError, AttributeError, IndexError) as exc:
            raise PermanentServiceError(f"invalid response: {raw[:220]}", service="chat") from exc
        if isinstance(content, list):
            text = "".join(
                str(item.get("text", "")) for item in content if isinstance(item, dict)
            ).strip()
        else:
            text = str(content or "").strip()
        if not text:
            raise PermanentServiceError("chat model returned empty content", service="chat")
        return text

    @staticmethod
    def _build_completion_url(base_url: str) -> str:
        base = base_url.strip().rstrip("/")
        if base.endswith("/chat/completions"):
            return base
        return f"{base}/chat/completions"


def _parse_evaluations(raw: str, memories: list[CharacterMemory]) -> list[MemoryEvaluation]:
    match = _JSON_BLOCK.search(raw)
    if match is None:
        raise PermanentServiceError(f"no JSON object in reply: {raw[:200]}", service="chat")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise PermanentServiceError(f"unparseable reply: {raw[:200]}", service="chat") from exc
    items = data.get("evaluations") if isinstance(data, dict) else None
    if not isinstance(items, list):
        raise PermanentServiceError("reply has no evaluations list", service="chat")
    out: list[MemoryEvaluation] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        idx = int(_to_float(item.get("id"), default=-1))
        if idx < 0 or idx >= len(memories):
            continue
        score = sum(
            max(0.0, min(1.0, _to_float(item.get(k), default=0.0))) * w
            for k, w in _DIMENSION_WEIGHTS.items()
        )
        out.append(
            MemoryEvaluation(
                memory_id=memories[idx].memory_id,
                should_consolidate=_to_bool(item.get("should_consolidate")),
                confidence=max(0.0, min(1.0, _to_float(item.get("confidence"), default=0.0))),
                reason=str(item.get("reason") or "").strip()[:80] or "chat_model",
                score=round(score, 4),
            )
        )
    return out


def _to_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"1", "true", "yes", "y"}
