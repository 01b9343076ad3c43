"""
Knowledge retrieval engine.

One query fans out into four concurrent sections (world knowledge, character
contexts, relevant memories, relationship network), each with a quarter of the
token budget. A section that fails is logged and left empty; the caller always
gets a ``RetrievalContext``.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Sequence

import anyio

from xiaoguang_lite.config.profiles import RetrievalConfig
from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.domain.knowledge import CharacterMemory
from xiaoguang_lite.domain.retrieval.context import (
    CharacterContext,
    RelationshipInfo,
    RetrievalContext,
    RetrievalMethod,
    RetrievedMemory,
    WorldContext,
    assemble_context,
)
from xiaoguang_lite.domain.retrieval.fusion import reciprocal_rank_fusion
from xiaoguang_lite.infra.graph.common import GraphPath
from xiaoguang_lite.service.character_book import CharacterBook
from xiaoguang_lite.service.identity_registry import IdentityRegistry
from xiaoguang_lite.service.relationship_network import RelationshipNetwork
from xiaoguang_lite.service.segmenter import (
    estimate_tokens,
    extract_keywords,
    extract_person_candidates,
)
from xiaoguang_lite.service.world_book import WorldBook

logger = logging.getLogger(__name__)


class KnowledgeRetrievalEngine:
    def __init__(
        self,
        *,
        world_book: WorldBook,
        character_book: CharacterBook,
        registry: IdentityRegistry | None = None,
        network: RelationshipNetwork | None = None,
        config: RetrievalConfig | None = None,
    ) -> None:
        self.world_book = world_book
        self.character_book = character_book
        self.registry = registry
        self.network = network
        self.config = config or RetrievalConfig()

    async def retrieve_context(
        self,
        query: str,
        character_ids: Sequence[str] = (),
        max_tokens: int | None = None,
    ) -> RetrievalContext:
        budget = self.config.max_total_tokens if max_tokens is None else max(0, int(max_tokens))
        text = str(query or "").strip()
        if not text or budget <= 0:
            return RetrievalContext.empty(budget)

        ids = await self._resolve_character_ids(character_ids)
        section = budget // 4
        results: dict[str, Any] = {}

        async def _section(
            key: str, default: Any, fn: Callable[[], Awaitable[Any]]
        ) -> None:
            try:
                results[key] = await fn()
            except Exception:
                logger.exception("[KnowledgeRetrieval] %s section failed", key)
                results[key] = default

        async with anyio.create_task_group() as tg:
            tg.start_soon(
                _section,
                "world",
                WorldContext(),
                lambda: self.world_book.build_world_context(text, max_tokens=section),
            )
            tg.start_soon(
                _section,
                "characters",
                [],
                lambda: self._character_contexts(text, ids, section),
            )
            tg.start_soon(
                _section,
                "memories",
                [],
                lambda: self._relevant_memories(text, ids, section),
            )
            tg.start_soon(
                _section,
                "relationships",
                [],
                lambda: self._relationship_network(text, ids),
            )

        context = assemble_context(
            world=results["world"],
            characters=results["characters"],
            memories=results["memories"],
            relationships=results["relationships"],
            max_tokens=budget,
        )
        logger.debug(
            "[KnowledgeRetrieval] query=%r characters=%d memories=%d relations=%d tokens=%d/%d",
            text[:40],
            len(context.characters),
            len(context.memories),
            len(context.relationships),
            context.total_tokens,
            budget,
        )
        return context

    async def retrieve_timeline_memories(
        self, character_id: str, start_time: int, end_time: int, limit: int = 20
    ) -> list[CharacterMemory]:
        memories = [
            m
            for m in await self.character_book.get_memories(character_id)
            if start_time <= m.created_at <= end_time
        ]
        memories.sort(key=lambda m: m.created_at, reverse=True)
        return memories[: max(0, int(limit))]

    async def retrieve_emotional_memories(
        self,
        character_id: str,
        min_valence: float,
        max_valence: float,
        limit: int = 20,
    ) -> list[CharacterMemory]:
        memories = [
            m
            for m in await self.character_book.get_memories(character_id)
            if min_valence <= m.emotional_valence <= max_valence
        ]
        memories.sort(key=lambda m: m.importance, reverse=True)
        return memories[: max(0, int(limit))]

    async def retrieve_memories_by_tags(
        self,
        character_id: str,
        tags: Sequence[str],
        *,
        match_all: bool = False,
        limit: int = 20,
    ) -> list[CharacterMemory]:
        wanted = [t for t in tags if t]
        if not wanted:
            return []
        check = all if match_all else any
        memories = [
            m
            for m in await self.character_book.get_memories(character_id)
            if check(t in m.tags for t in wanted)
        ]
        memories.sort(key=lambda m: m.importance, reverse=True)
        return memories[: max(0, int(limit))]

    async def find_relationship_path(
        self, from_person: str, to_person: str, max_depth: int | None = None
    ) -> GraphPath | None:
        if not self.config.enable_graph_retrieval or self.network is None:
            return None
        depth = self.config.path_max_depth if max_depth is None else max(1, int(max_depth))
        return await self.network.find_path(
            await self._person_name(from_person), await self._person_name(to_person), depth
        )

    async def _resolve_character_ids(self, identifiers: Sequence[str]) -> list[str]:
        out: list[str] = []
        for raw in identifiers:
            value = str(raw or "").strip()
            if not value:
                continue
            resolved = None
            if self.registry is not None:
                identity = await self.registry.resolve(value)
                if identity is not None:
                    resolved = identity.character_id
            character_id = resolved or value
            if character_id not in out:
                out.append(character_id)
        return out

    async def _person_name(self, identifier: str) -> str:
        if self.registry is not None:
            identity = await self.registry.resolve(identifier)
            if identity is not None:
                return identity.display_name
        return str(identifier or "").strip()

    async def _character_contexts(
        self, query: str, character_ids: list[str], max_tokens: int
    ) -> list[CharacterContext]:
        if not character_ids:
            return []
        per_character = max_tokens // len(character_ids)
        out: list[CharacterContext] = []
        for character_id in character_ids:
            ctx = await self.character_book.build_character_context(
                character_id, query, max_tokens=per_character
            )
            if ctx is not None:
                out.append(ctx)
        return out

    async def _relevant_memories(
        self, query: str, character_ids: list[str], max_tokens: int
    ) -> list[RetrievedMemory]:
        if not character_ids:
            return []
        now = now_ms()
        keywords = extract_keywords(query, top_k=20)
        ranked_lists: list[list[RetrievedMemory]] = []
        for character_id in character_ids:
            keyword_hits = [
                RetrievedMemory(
                    memory=m,
                    relevance=keyword_relevance(keywords, m, now),
                    method=RetrievalMethod.KEYWORD,
                )
                for m in await self.character_book.search_memories(character_id, query)
            ]
            keyword_hits.sort(key=lambda r: r.relevance, reverse=True)
            ranked_lists.append(keyword_hits)
            if self.config.enable_semantic_search:
                semantic = await self.character_book.semantic_search_memories(
                    character_id, query, top_k=self.config.semantic_top_k
                )
                ranked_lists.append(
                    [
                        RetrievedMemory(memory=m, relevance=score, method=RetrievalMethod.SEMANTIC)
                        for m, score in semantic
                    ]
                )

        best: dict[str, RetrievedMemory] = {}
        methods_by_id: dict[str, set[RetrievalMethod]] = {}
        for rows in ranked_lists:
            for row in rows:
                methods_by_id.setdefault(row.memory.memory_id, set()).add(row.method)
                current = best.get(row.memory.memory_id)
                if current is None or row.relevance > current.relevance:
                    best[row.memory.memory_id] = row

        out: list[RetrievedMemory] = []
        fused = reciprocal_rank_fusion(
            ranked_lists, key=lambda r: r.memory.memory_id, rrf_k=self.config.rrf_k
        )
        for item, _score, _sources in fused:
            memory_id = item.memory.memory_id
            top = best[memory_id]
            if top.relevance < self.config.min_relevance:
                continue
            if estimate_tokens(top.memory.content) > max_tokens:
                continue
            method = (
                RetrievalMethod.HYBRID if len(methods_by_id[memory_id]) > 1 else top.method
            )
            out.append(RetrievedMemory(memory=top.memory, relevance=top.relevance, method=method))
            if len(out) >= self.config.max_memories_per_retrieval:
                break
        return out

    async def _relationship_network(
        self, query: str, character_ids: list[str]
    ) -> list[RelationshipInfo]:
        if not self.config.enable_relationship_retrieval or self.network is None:
            return []
        people = list(extract_person_candidates(query))
        for character_id in character_ids:
            profile = await self.character_book.get_profile(character_id)
            if profile is not None and profile.name not in people:
                people.append(profile.name)

        out: list[RelationshipInfo] = []
        for person in people[: self.config.max_people]:
            relations = await self.network.person_relations(
                person, limit=self.config.relations_per_person
            )
            if not relations:
                continue
            parts = [f"{person} 的人际关系："]
            for relation in relations[: self.config.relations_per_person]:
                part = (
                    f"与{relation.other(person)}是{relation.relation_type}"
                    f"（置信度{relation.confidence * 100:.1f}%）"
                )
                if relation.description.strip():
                    part += f" - {relation.description[:50]}"
                parts.append(part + "；")
            out.append(
                RelationshipInfo(
                    person_name=person,
                    description="".join(parts),
                    relation_count=len(relations),
                )
            )
        return out


def keyword_relevance(keywords: list[str], memory: CharacterMemory, now: int | None = None) -> float:
    """Match ratio, importance and strength, scaled by where the keywords appear.

    Keywords found early in the memory weigh more: each match contributes
    ``1 - (position / length) * 0.3``.
    """
    if not keywords:
        return 0.0
    text = memory.content.lower()
    if not text:
        return 0.0
    matches = 0
    total_weight = 0.0
    for word in keywords:
        position = text.find(word.lower())
        if position < 0:
            continue
        matches += 1
        total_weight += 1.0 - (position / len(text)) * 0.3
    ratio = matches / len(keywords)
    relevance = ratio * 0.4 + memory.importance * 0.3 + memory.memory_strength(now) * 0.3
    return min(relevance * total_weight, 1.0)
