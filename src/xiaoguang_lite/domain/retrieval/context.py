"""
Retrieval context types and token-budgeted assembly.

Sections are appended in a fixed order (world, characters, relationships,
memories). Within a section items are added until the next one would push the
running token count past the budget; the remaining items of that section are
dropped and the next section is tried.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from xiaoguang_lite.domain.knowledge import CharacterMemory, CharacterProfile, WorldEntry
from xiaoguang_lite.service.segmenter import estimate_tokens


class RetrievalMethod(str, Enum):
    KEYWORD = "KEYWORD"
    SEMANTIC = "SEMANTIC"
    HYBRID = "HYBRID"
    GRAPH = "GRAPH"
    TEMPORAL = "TEMPORAL"
    EMOTIONAL = "EMOTIONAL"
    TAG = "TAG"


@dataclass(frozen=True)
class WorldContext:
    triggered_entries: list[WorldEntry] = field(default_factory=list)
    scene_description: str = ""
    rules: str = ""
    background: str = ""
    formatted_context: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "triggered_entries": [e.entry_id for e in self.triggered_entries],
            "scene_description": self.scene_description,
            "rules": self.rules,
            "background": self.background,
            "formatted_context": self.formatted_context,
        }


@dataclass(frozen=True)
class CharacterContext:
    character_id: str
    character_name: str
    profile: CharacterProfile
    relevant_memories: list[CharacterMemory] = field(default_factory=list)
    relationships: list[str] = field(default_factory=list)
    formatted_context: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "character_id": self.character_id,
            "character_name": self.character_name,
            "relevant_memories": [m.memory_id for m in self.relevant_memories],
            "relationships": list(self.relationships),
            "formatted_context": self.formatted_context,
        }


@dataclass(frozen=True)
class RetrievedMemory:
    memory: CharacterMemory
    relevance: float
    method: RetrievalMethod

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory": self.memory.to_dict(),
            "relevance": round(self.relevance, 4),
            "method": self.method.value,
        }


@dataclass(frozen=True)
class RelationshipInfo:
    person_name: str
    description: str
    relation_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "person_name": self.person_name,
            "description": self.description,
            "relation_count": self.relation_count,
        }


@dataclass(frozen=True)
class RetrievalContext:
    world: WorldContext
    characters: list[CharacterContext]
    memories: list[RetrievedMemory]
    relationships: list[RelationshipInfo]
    formatted_context: str
    total_tokens: int
    max_tokens: int

    @classmethod
    def empty(cls, max_tokens: int = 0) -> "RetrievalContext":
        return cls(
            world=WorldContext(),
            characters=[],
            memories=[],
            relationships=[],
            formatted_context="",
            total_tokens=0,
            max_tokens=max_tokens,
        )

    @property
    def is_empty(self) -> bool:
        return not self.formatted_context

    def to_dict(self) -> dict[str, Any]:
        return {
            "world": self.world.to_dict(),
            "characters": [c.to_dict() for c in self.characters],
            "memories": [m.to_dict() for m in self.memories],
            "relationships": [r.to_dict() for r in self.relationships],
            "formatted_context": self.formatted_context,
            "total_tokens": self.total_tokens,
            "max_tokens": self.max_tokens,
        }


def assemble_context(
    *,
    world: WorldContext,
    characters: list[CharacterContext],
    memories: list[RetrievedMemory],
    relationships: list[RelationshipInfo],
    max_tokens: int,
) -> RetrievalContext:
    budget = max(0, int(max_tokens))
    lines: list[str] = []
    used = 0

    world_tokens = estimate_tokens(world.formatted_context)
    if world.formatted_context and world_tokens <= budget:
        lines.extend(["【世界设定】", world.formatted_context.rstrip(), ""])
        used += world_tokens

    kept_characters: list[CharacterContext] = []
    for ctx in characters:
        if not ctx.formatted_context:
            continue
        cost = estimate_tokens(ctx.formatted_context)
        if used + cost > budget:
            break
        lines.extend([ctx.formatted_context.rstrip(), ""])
        kept_characters.append(ctx)
        used += cost

    kept_relationships: list[RelationshipInfo] = []
    rel_lines: list[str] = []
    for info in relationships:
        cost = estimate_tokens(info.description)
        if used + cost > budget:
            break
        rel_lines.append(f"- {info.description}")
        kept_relationships.append(info)
        used += cost
    if rel_lines:
        lines.extend(["【人际关系网络】", *rel_lines, ""])

    kept_memories: list[RetrievedMemory] = []
    mem_lines: list[str] = []
    for item in memories:
        cost = estimate_tokens(item.memory.content)
        if used + cost > budget:
            break
        mem_lines.append(f"- {item.memory.content}")
        kept_memories.append(item)
        used += cost
    if mem_lines:
        lines.extend(["【相关记忆】", *mem_lines])

    return RetrievalContext(
        world=world,
        characters=kept_characters,
        memories=kept_memories,
        relationships=kept_relationships,
        formatted_context="\n".join(lines).strip(),
        total_tokens=used,
        max_tokens=budget,
    )
