"""
World Book and Character Book models.

World entries follow the Lorebook entry shape (keys, content, insertion order)
so they can be imported from and exported to SillyTavern-style lorebooks.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from xiaoguang_lite.domain.identity import now_ms

ASSISTANT_CHARACTER_ID = "xiaoguang_main"
DAY_MS = 24 * 60 * 60 * 1000


class WorldEntryCategory(str, Enum):
    SETTING = "SETTING"
    SCENE = "SCENE"
    RULE = "RULE"
    EVENT = "EVENT"
    LOCATION = "LOCATION"
    KNOWLEDGE = "KNOWLEDGE"

    @classmethod
    def parse(cls, value: Any, default: "WorldEntryCategory") -> "WorldEntryCategory":
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return default


@dataclass(frozen=True)
class WorldEntry:
    entry_id: str
    keys: tuple[str, ...]
    content: str
    category: WorldEntryCategory = WorldEntryCategory.KNOWLEDGE
    priority: int = 100
    enabled: bool = True
    insertion_order: int = 100
    case_sensitive: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def matches(self, query: str) -> bool:
        if not self.enabled:
            return False
        haystack = query if self.case_sensitive else query.lower()
        for key in self.keys:
            needle = key if self.case_sensitive else key.lower()
            if needle and needle in haystack:
                return True
        return False

    def to_lorebook_entry(self) -> dict[str, Any]:
        return {
            "uid": self.entry_id,
            "keys": list(self.keys),
            "content": self.content,
            "insertion_order": self.insertion_order,
            "enabled": self.enabled,
            "case_sensitive": self.case_sensitive,
            "priority": self.priority,
            "extensions": {
                "category": self.category.value,
                "xiaoguang_id": self.entry_id,
                "priority": self.priority,
                "metadata": dict(self.metadata),
            },
        }

    @classmethod
    def from_lorebook_entry(
        cls, entry: dict[str, Any], *, default_id: str | None = None
    ) -> "WorldEntry":
        ext = entry.get("extensions")
        extensions = ext if isinstance(ext, dict) else {}
        raw_keys = entry.get("keys")
        keys = tuple(
            str(k).strip() for k in (raw_keys if isinstance(raw_keys, list) else []) if str(k).strip()
        )
        entry_id = (
            str(extensions.get("xiaoguang_id") or entry.get("uid") or "").strip()
            or default_id
            or uuid.uuid4().hex
        )
        priority = entry.get("priority", extensions.get("priority", 100))
        meta = extensions.get("metadata")
        return cls(
            entry_id=entry_id,
            keys=keys,
            content=str(entry.get("content") or ""),
            category=WorldEntryCategory.parse(
                extensions.get("category"), WorldEntryCategory.KNOWLEDGE
            ),
            priority=_to_int(priority, 100),
            enabled=bool(entry.get("enabled", True)),
            insertion_order=_to_int(entry.get("insertion_order"), 100),
            case_sensitive=bool(entry.get("case_sensitive", False)),
            metadata=dict(meta) if isinstance(meta, dict) else {},
        )


@dataclass(frozen=True)
class WorldScene:
    scene_id: str
    name: str
    description: str
    active_rules: tuple[str, ...] = ()
    context_data: dict[str, Any] = field(default_factory=dict)
    priority: int = 50
    enabled: bool = True

    def context_string(self) -> str:
        lines = ["【当前场景】", f"场景: {self.name}", f"描述: {self.description}"]
        if self.context_data:
            lines.append("上下文:")
            lines.extend(f"- {k}: {v}" for k, v in self.context_data.items())
        return "\n".join(lines)


class MemoryCategory(str, Enum):
    CORE = "CORE"
    LONG_TERM = "LONG_TERM"
    SHORT_TERM = "SHORT_TERM"
    EPISODIC = "EPISODIC"
    SEMANTIC = "SEMANTIC"
    PREFERENCE = "PREFERENCE"

    @property
    def priority(self) -> int:
        return _MEMORY_CATEGORY_PRIORITY[self]


_MEMORY_CATEGORY_PRIORITY = {
    MemoryCategory.CORE: 100,
    MemoryCategory.LONG_TERM: 80,
    MemoryCategory.PREFERENCE: 75,
    MemoryCategory.EPISODIC: 70,
    MemoryCategory.SEMANTIC: 60,
    MemoryCategory.SHORT_TERM: 50,
}


@dataclass(frozen=True)
class CharacterMemory:
    character_id: str
    content: str
    category: MemoryCategory = MemoryCategory.SHORT_TERM
    memory_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    importance: float = 0.5
    emotional_valence: float = 0.0
    emotion_tag: str | None = None
    emotion_intensity: float | None = None
    tags: tuple[str, ...] = ()
    related_memories: tuple[str, ...] = ()
    access_count: int = 0
    last_accessed: int = field(default_factory=now_ms)
    created_at: int = field(default_factory=now_ms)
    expires_at: int | None = None

    def record_access(self, at: int | None = None) -> "CharacterMemory":
        return replace(
            self,
            access_count=self.access_count + 1,
            last_accessed=int(at if at is not None else now_ms()),
        )

    def is_expired(self, now: int | None = None) -> bool:
        current = now if now is not None else now_ms()
        return self.expires_at is not None and current > self.expires_at

    def memory_strength(self, now: int | None = None) -> float:
        """Salience of the memory: importance, recency of access and access frequency."""
        current = now if now is not None else now_ms()
        idle_sec = max(0, current - self.last_accessed) / 1000.0
        recency = math.exp(-0.001 * idle_sec)
        access = min(self.access_count / 10.0, 1.0)
        return _clamp(self.importance * 0.5 + recency * 0.3 + access * 0.2)

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "character_id": self.character_id,
            "category": self.category.value,
            "content": self.content,
            "importance": self.importance,
            "emotional_valence": self.emotional_valence,
            "emotion_tag": self.emotion_tag,
            "emotion_intensity": self.emotion_intensity,
            "tags": list(self.tags),
            "related_memories": list(self.related_memories),
            "access_count": self.access_count,
            "last_accessed": self.last_accessed,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True)
class CharacterProfile:
    character_id: str
    name: str
    aliases: tuple[str, ...] = ()
    nickname: str | None = None
    gender: str | None = None
    age: int | None = None
    platform_id: str | None = None
    bio: str | None = None
    is_master: bool = False
    voiceprint_id: str | None = None
    is_stranger: bool = False
    personality: str | None = None
    traits: dict[str, float] = field(default_factory=dict)
    interests: tuple[str, ...] = ()
    background: str | None = None
    custom_fields: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)
    last_seen_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def __post_init__(self) -> None:
        if self.is_master and not self.character_id:
            raise ValueError("master profile requires a character_id")

    def all_names(self) -> list[str]:
        names = [self.name, *self.aliases]
        if self.nickname:
            names.append(self.nickname)
        out: list[str] = []
        for n in names:
            if n and n not in out:
                out.append(n)
        return out

    def matches_name(self, query: str) -> bool:
        q = query.strip().lower()
        return any(n.lower() == q for n in self.all_names())

    def to_character_card(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.personality or "",
            "personality": ", ".join(f"{k}: {v}" for k, v in self.traits.items()),
            "scenario": self.background or "",
            "first_mes": "",
            "mes_example": "",
            "extensions": {
                "xiaoguang": {
                    "character_id": self.character_id,
                    "nickname": self.nickname,
                    "platform_id": self.platform_id,
                    "bio": self.bio,
                    "interests": list(self.interests),
                    "custom_fields": dict(self.custom_fields),
                }
            },
        }

    @classmethod
    def from_character_card(cls, card: dict[str, Any]) -> "CharacterProfile":
        ext = card.get("extensions")
        xg = ext.get("xiaoguang") if isinstance(ext, dict) else None
        xg = xg if isinstance(xg, dict) else {}
        interests = xg.get("interests")
        custom = xg.get("custom_fields")
        return cls(
            character_id=str(xg.get("character_id") or f"imported_{now_ms()}"),
            name=str(card.get("name") or "Unknown"),
            nickname=xg.get("nickname"),
            platform_id=xg.get("platform_id"),
            bio=xg.get("bio"),
            personality=str(card.get("description") or "") or None,
            background=str(card.get("scenario") or "") or None,
            interests=tuple(str(x) for x in interests) if isinstance(interests, list) else (),
            custom_fields=dict(custom) if isinstance(custom, dict) else {},
        )


class RelationType(str, Enum):
    MASTER = "MASTER"
    FAMILY = "FAMILY"
    FRIEND = "FRIEND"
    CLOSE_FRIEND = "CLOSE_FRIEND"
    ACQUAINTANCE = "ACQUAINTANCE"
    COLLEAGUE = "COLLEAGUE"
    ROMANTIC = "ROMANTIC"
    LOVER = "LOVER"
    RIVAL = "RIVAL"
    STRANGER = "STRANGER"
    DISLIKE = "DISLIKE"
    OTHER = "OTHER"


@dataclass(frozen=True)
class Relationship:
    from_character_id: str
    to_character_id: str
    relation_type: RelationType
    relationship_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    intimacy: float = 0.5
    trust: float = 0.5
    description: str | None = None
    interaction_count: int = 0
    first_met_at: int = field(default_factory=now_ms)
    last_interaction_at: int = field(default_factory=now_ms)
    is_master_relationship: bool = False

    def __post_init__(self) -> None:
        if self.is_master_relationship and self.relation_type != RelationType.MASTER:
            raise ValueError("master relationship must use RelationType.MASTER")

    @property
    def effective_intimacy(self) -> float:
        return 1.0 if self.is_master_relationship else self.intimacy

    @property
    def effective_trust(self) -> float:
        return 1.0 if self.is_master_relationship else self.trust

    def strength(self) -> float:
        if self.is_master_relationship:
            return 1.0
        frequency = min(self.interaction_count / 100.0, 1.0)
        return _clamp(self.intimacy * 0.4 + self.trust * 0.3 + frequency * 0.3)

    def record_interaction(
        self,
        *,
        emotional_impact: float = 0.0,
        trust_impact: float = 0.0,
        at: int | None = None,
    ) -> "Relationship":
        if self.is_master_relationship:
            intimacy, trust = 1.0, 1.0
        else:
            intimacy = _clamp(self.intimacy + emotional_impact * 0.01)
            trust = _clamp(self.trust + trust_impact * 0.01)
        return replace(
            self,
            intimacy=intimacy,
            trust=trust,
            interaction_count=self.interaction_count + 1,
            last_interaction_at=int(at if at is not None else now_ms()),
        )


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, float(value)))


def _to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
