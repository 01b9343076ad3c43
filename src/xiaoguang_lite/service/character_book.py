"""
Character Book: profiles, memories and relationships of the people the
assistant knows, plus short-term to long-term memory consolidation.

Consolidation runs in four steps:

1. preliminary filter of SHORT_TERM memories (at least a day old, some value,
   not tagged ``temporary``/``system_generated``);
2. grouping by context (time proximity, tag overlap, emotion, content);
3. evaluation of every memory, by the chat-model evaluator when one is
   enabled and reachable, otherwise by the salience rule;
4. execution and a ``consolidation_records`` row per decision.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any

import anyio

from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.domain.knowledge import (
    ASSISTANT_CHARACTER_ID,
    DAY_MS,
    CharacterMemory,
    CharacterProfile,
    MemoryCategory,
    Relationship,
    RelationType,
)
from xiaoguang_lite.domain.retrieval.context import CharacterContext
from xiaoguang_lite.domain.retry import DEFAULT, RetryPolicy
from xiaoguang_lite.infra.sqlite.character_book_repository import CharacterBookRepository
from xiaoguang_lite.infra.vector.common import CHARACTER_MEMORY_COLLECTION
from xiaoguang_lite.service.memory_evaluator import MemoryEvaluation, MemoryEvaluatorProtocol
from xiaoguang_lite.service.segmenter import estimate_tokens, token_overlap, tokenize
from xiaoguang_lite.service.semantic_index import SemanticIndex

logger = logging.getLogger(__name__)

CONSOLIDATED = "CONSOLIDATED"
DEFERRED = "DEFERRED"
REJECTED = "REJECTED"

_SKIP_TAGS = {"temporary", "system_generated"}


@dataclass(frozen=True)
class ConsolidationSettings:
    promote_salience: float = 0.6
    access_threshold: int = 5
    reject_salience: float = 0.3
    min_age_ms: int = DAY_MS
    short_term_max_age_ms: int = 7 * DAY_MS
    min_confidence: float = 0.6
    group_relevance: float = 0.3
    max_group_size: int = 5


@dataclass(frozen=True)
class ConsolidationDetail:
    memory_id: str
    content: str
    decision: str
    reason: str
    salience: float
    evaluator: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_id": self.memory_id,
            "content": self.content,
            "decision": self.decision,
            "reason": self.reason,
            "salience": round(self.salience, 4),
            "evaluator": self.evaluator,
        }


@dataclass(frozen=True)
class ConsolidationResult:
    total_evaluated: int = 0
    consolidated: int = 0
    deferred: int = 0
    rejected: int = 0
    details: list[ConsolidationDetail] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_evaluated": self.total_evaluated,
            "consolidated": self.consolidated,
            "deferred": self.deferred,
            "rejected": self.rejected,
            "details": [d.to_dict() for d in self.details],
        }


class CharacterBook:
    def __init__(
        self,
        repository: CharacterBookRepository,
        *,
        semantic_index: SemanticIndex | None = None,
        evaluator: MemoryEvaluatorProtocol | None = None,
        retry_policy: RetryPolicy = DEFAULT,
        consolidation: ConsolidationSettings | None = None,
    ) -> None:
        self.repository = repository
        self.semantic_index = semantic_index
        self.evaluator = evaluator
        self.retry_policy = retry_policy
        self.consolidation = consolidation or ConsolidationSettings()

    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        return await anyio.to_thread.run_sync(partial(fn, *args, **kwargs))

    # profiles

    async def save_profile(self, profile: CharacterProfile) -> CharacterProfile:
        await self._run(self.repository.save_profile, profile)
        return profile

    async def get_profile(self, character_id: str) -> CharacterProfile | None:
        return await self._run(self.repository.get_profile, character_id)

    async def get_profile_by_name(self, name: str) -> CharacterProfile | None:
        for profile in await self.list_profiles():
            if profile.matches_name(name):
                return profile
        return None

    async def get_profile_by_platform_id(self, platform_id: str) -> CharacterProfile | None:
        return await self._run(self.repository.get_profile_by_platform_id, platform_id)

    async def list_profiles(self) -> list[CharacterProfile]:
        return await self._run(self.repository.list_profiles)

    async def update_last_seen(self, character_id: str) -> CharacterProfile | None:
        profile = await self.get_profile(character_id)
        if profile is None:
            return None
        stamp = now_ms()
        return await self.save_profile(replace(profile, last_seen_at=stamp, updated_at=stamp))

    async def delete_profile(self, character_id: str) -> bool:
        memories = await self.get_memories(character_id)
        deleted = await self._run(self.repository.delete_profile, character_id)
        for memory in memories:
            await self._unindex_memory(memory.memory_id)
        return bool(deleted)

    async def initialize_assistant_profile(self) -> CharacterProfile:
        existing = await self.get_profile(ASSISTANT_CHARACTER_ID)
        if existing is not None:
            return existing
        profile = CharacterProfile(
            character_id=ASSISTANT_CHARACTER_ID,
            name="小光",
            aliases=("xiaoguang",),
            bio="元气满满的AI助手，温柔体贴，略微迷糊但充满好奇心。",
            personality="温柔体贴，好奇心强，喜欢可爱的事物",
            interests=("二次元", "帮助别人"),
        )
        logger.info("[CharacterBook] created assistant profile %s", ASSISTANT_CHARACTER_ID)
        return await self.save_profile(profile)

    # memories

    async def add_memory(self, memory: CharacterMemory) -> CharacterMemory:
        if not memory.content.strip():
            raise ValueError("memory content must not be blank")
        await self._run(self.repository.save_memory, memory)
        await self._index_memory(memory)
        return memory

    async def update_memory(self, memory: CharacterMemory) -> CharacterMemory:
        await self._run(self.repository.save_memory, memory)
        await self._index_memory(memory)
        return memory

    async def delete_memory(self, memory_id: str) -> bool:
        deleted = await self._run(self.repository.delete_memory, memory_id)
        if deleted:
            await self._unindex_memory(memory_id)
        return bool(deleted)

    async def get_memory(self, memory_id: str) -> CharacterMemory | None:
        return await self._run(self.repository.get_memory, memory_id)

    async def get_memories(
        self, character_id: str, category: MemoryCategory | None = None
    ) -> list[CharacterMemory]:
        return await self._run(self.repository.list_memories, character_id, category)

    async def top_memories(
        self, character_id: str, limit: int = 10, *, now: int | None = None
    ) -> list[CharacterMemory]:
        current = now if now is not None else now_ms()
        memories = [m for m in await self.get_memories(character_id) if not m.is_expired(current)]
        memories.sort(key=lambda m: m.memory_strength(current), reverse=True)
        return memories[: max(0, int(limit))]

    async def search_memories(
        self, character_id: str, query: str, limit: int = 20
    ) -> list[CharacterMemory]:
        """Keyword search over content and tags using jieba tokens."""
        q_tokens = tokenize(query)
        needle = str(query or "").strip().lower()
        if not q_tokens and not needle:
            return []
        now = now_ms()
        scored: list[tuple[float, float, CharacterMemory]] = []
        for memory in await self.get_memories(character_id):
            if memory.is_expired(now):
                continue
            text = memory.content.lower()
            m_tokens = tokenize(memory.content) | {t.lower() for t in memory.tags}
            overlap = len(q_tokens & m_tokens)
            if overlap == 0 and not (needle and needle in text):
                continue
            scored.append((float(overlap), memory.memory_strength(now), memory))
        scored.sort(key=lambda x: (x[0], x[1]), reverse=True)
        return [m for _, _, m in scored[: max(0, int(limit))]]

    async def semantic_search_memories(
        self, character_id: str, query: str, top_k: int = 10
    ) -> list[tuple[CharacterMemory, float]]:
        """Vector search restricted to one character; empty when the index is unavailable."""
        if self.semantic_index is None:
            return []
        outcome = await self.semantic_index.search(
            CHARACTER_MEMORY_COLLECTION,
            query,
            top_k=top_k,
            where={"character_id": character_id},
        )
        if not outcome.ok:
            logger.warning("[CharacterBook] semantic memory search failed: %s", outcome.error)
            return []
        out: list[tuple[CharacterMemory, float]] = []
        for hit in outcome.value or []:
            memory = await self.get_memory(hit.id)
            if memory is not None and memory.character_id == character_id:
                out.append((memory, hit.score))
        return out

    async def record_memory_access(self, memory_id: str) -> CharacterMemory | None:
        memory = await self.get_memory(memory_id)
        if memory is None:
            return None
        updated = memory.record_access()
        await self._run(self.repository.save_memory, updated)
        return updated

    async def cleanup_expired_memories(self, *, now: int | None = None) -> int:
        ids = await self._run(
            self.repository.delete_expired_memories, now if now is not None else now_ms()
        )
        for memory_id in ids:
            await self._unindex_memory(memory_id)
        if ids:
            logger.info("[CharacterBook] removed %d expired memories", len(ids))
        return len(ids)

    async def memory_statistics(self, character_id: str) -> dict[str, Any]:
        memories = await self.get_memories(character_id)
        counts = await self._run(self.repository.memory_counts, character_id)
        avg = sum(m.importance for m in memories) / len(memories) if memories else 0.0
        return {
            "character_id": character_id,
            "total": len(memories),
            "by_category": counts,
            "avg_importance": round(avg, 4),
        }

    # relationships

    async def save_relationship(self, relationship: Relationship) -> Relationship:
        await self._run(self.repository.save_relationship, relationship)
        return relationship

    async def get_relationship(self, from_id: str, to_id: str) -> Relationship | None:
        return await self._run(self.repository.get_relationship, from_id, to_id)

    async def relationships_from(self, character_id: str) -> list[Relationship]:
        return await self._run(self.repository.list_relationships_from, character_id)

    async def master_relationship(self) -> Relationship | None:
        return await self._run(self.repository.get_master_relationship)

    async def record_interaction(
        self,
        from_id: str,
        to_id: str,
        *,
        emotional_impact: float = 0.0,
        trust_impact: float = 0.0,
    ) -> Relationship:
        current = await self.get_relationship(from_id, to_id)
        if current is None:
            current = Relationship(
                from_character_id=from_id,
                to_character_id=to_id,
                relation_type=RelationType.ACQUAINTANCE,
            )
        updated = current.record_interaction(
            emotional_impact=emotional_impact, trust_impact=trust_impact
        )
        return await self.save_relationship(updated)

    # consolidation

    async def consolidate_memories(
        self, character_id: str, *, now: int | None = None
    ) -> ConsolidationResult:
        current = now if now is not None else now_ms()
        all_memories = await self.get_memories(character_id)
        short_term = [m for m in all_memories if m.category == MemoryCategory.SHORT_TERM]
        if not short_term:
            return ConsolidationResult()

        candidates = self._preliminary_filter(short_term, current)
        logger.debug(
            "[CharacterBook] %s consolidation candidates %d -> %d",
            character_id,
            len(short_term),
            len(candidates),
        )
        groups = group_memories_by_context(
            candidates,
            threshold=self.consolidation.group_relevance,
            max_group_size=self.consolidation.max_group_size,
        )
        profile = await self.get_profile(character_id)
        long_term = [m for m in all_memories if m.category == MemoryCategory.LONG_TERM]

        details: list[ConsolidationDetail] = []
        for group in groups:
            evaluations = await self._evaluate_with_model(
                profile.name if profile else character_id, group, long_term
            )
            for memory in group:
                details.append(self._decide(memory, evaluations.get(memory.memory_id), current))

        by_id = {m.memory_id: m for m in candidates}
        for detail in details:
            memory = by_id[detail.memory_id]
            if detail.decision == CONSOLIDATED:
                await self.update_memory(
                    replace(
                        memory,
                        category=MemoryCategory.LONG_TERM,
                        last_accessed=current,
                        expires_at=None,
                    )
                )
            elif (
                detail.decision == REJECTED
                and current - memory.created_at > self.consolidation.short_term_max_age_ms
            ):
                await self.delete_memory(memory.memory_id)

        await self._run(
            self.repository.record_consolidation,
            [
                (character_id, d.memory_id, d.decision, d.salience, d.reason, d.evaluator, current)
                for d in details
            ],
        )
        result = ConsolidationResult(
            total_evaluated=len(details),
            consolidated=sum(1 for d in details if d.decision == CONSOLIDATED),
            deferred=sum(1 for d in details if d.decision == DEFERRED),
            rejected=sum(1 for d in details if d.decision == REJECTED),
            details=details,
        )
        logger.info(
            "[CharacterBook] %s consolidated=%d deferred=%d rejected=%d",
            character_id,
            result.consolidated,
            result.deferred,
            result.rejected,
        )
        return result

    async def consolidation_history(
        self, character_id: str, limit: int = 100
    ) -> list[dict[str, Any]]:
        return await self._run(self.repository.list_consolidation_records, character_id, limit)

    def _preliminary_filter(
        self, memories: list[CharacterMemory], now: int
    ) -> list[CharacterMemory]:
        cutoff = now - self.consolidation.min_age_ms
        return [
            m
            for m in memories
            if m.created_at < cutoff
            and (m.importance > 0.2 or m.access_count > 0)
            and not (_SKIP_TAGS & set(m.tags))
        ]

    async def _evaluate_with_model(
        self,
        character_name: str,
        group: list[CharacterMemory],
        long_term: list[CharacterMemory],
    ) -> dict[str, MemoryEvaluation]:
        evaluator = self.evaluator
        if evaluator is None or not getattr(evaluator, "is_enabled", lambda: True)():
            return {}
        related = [
            m
            for m in long_term
            if any(
                memory_relevance(c, m) > self.consolidation.group_relevance
                or set(c.tags) & set(m.tags)
                for c in group
            )
        ][:5]
        outcome = await self.retry_policy.execute(
            partial(
                anyio.to_thread.run_sync,
                partial(
                    evaluator.evaluate_batch,
                    character_name=character_name,
                    memories=group,
                    related_long_term=related,
                ),
            ),
            "memory_evaluator",
        )
        if not outcome.ok:
            logger.warning(
                "[CharacterBook] evaluator failed, using salience rule: %s", outcome.error
            )
            return {}
        return {e.memory_id: e for e in outcome.value or []}

    def _decide(
        self, memory: CharacterMemory, evaluation: MemoryEvaluation | None, now: int
    ) -> ConsolidationDetail:
        salience = memory.memory_strength(now)
        content = memory.content[:50]
        if evaluation is not None:
            if evaluation.should_consolidate and evaluation.confidence > self.consolidation.min_confidence:
                decision = CONSOLIDATED
            elif evaluation.should_consolidate:
                decision = DEFERRED
            else:
                decision = REJECTED
            return ConsolidationDetail(
                memory_id=memory.memory_id,
                content=content,
                decision=decision,
                reason=evaluation.reason,
                salience=salience,
                evaluator=getattr(self.evaluator, "name", "chat_model"),
            )

        cfg = self.consolidation
        age = now - memory.created_at
        if salience >= cfg.promote_salience:
            decision, reason = CONSOLIDATED, f"salience {salience:.2f} >= {cfg.promote_salience}"
        elif memory.access_count >= cfg.access_threshold:
            decision, reason = CONSOLIDATED, f"accessed {memory.access_count} times"
        elif age > cfg.short_term_max_age_ms and salience < cfg.reject_salience:
            decision, reason = REJECTED, f"stale with salience {salience:.2f}"
        else:
            decision, reason = DEFERRED, "not enough evidence yet"
        return ConsolidationDetail(
            memory_id=memory.memory_id,
            content=content,
            decision=decision,
            reason=reason,
            salience=salience,
            evaluator="rule",
        )

    # context and cards

    async def build_character_context(
        self, character_id: str, query: str, max_tokens: int = 1000
    ) -> CharacterContext | None:
        profile = await self.get_profile(character_id)
        if profile is None:
            return None
        memories = await self.search_memories(character_id, query, limit=10)
        relationships = await self.relationships_from(character_id)

        header = [f"【角色：{profile.name}】"]
        if profile.bio:
            header.append(f"描述：{profile.bio}")
        if profile.personality:
            header.append(f"性格：{profile.personality}")
        if profile.interests:
            header.append(f"兴趣：{'、'.join(profile.interests)}")
        budget = max(0, int(max_tokens))
        used = estimate_tokens("\n".join(header))
        if used > budget:
            header = header[:1]
            used = estimate_tokens(header[0])

        memory_lines: list[str] = []
        kept: list[CharacterMemory] = []
        for memory in memories[:3]:
            cost = estimate_tokens(memory.content)
            if used + cost > budget:
                break
            memory_lines.append(f"- {memory.content}")
            kept.append(memory)
            used += cost
        lines = list(header)
        if memory_lines:
            lines.extend(["相关记忆：", *memory_lines])
        return CharacterContext(
            character_id=character_id,
            character_name=profile.name,
            profile=profile,
            relevant_memories=kept,
            relationships=[r.to_character_id for r in relationships],
            formatted_context="\n".join(lines),
        )

    async def export_character_card(self, character_id: str) -> dict[str, Any] | None:
        profile = await self.get_profile(character_id)
        if profile is None:
            return None
        card = profile.to_character_card()
        card.update(
            {
                "spec": "chara_card_v2",
                "spec_version": "2.0",
                "tags": list(profile.interests),
                "data": {k: v for k, v in card.items() if k != "extensions"},
            }
        )
        card["data"]["extensions"] = card["extensions"]
        return card

    async def import_character_card(self, card: dict[str, Any]) -> CharacterProfile:
        source = card.get("data") if isinstance(card.get("data"), dict) else card
        profile = CharacterProfile.from_character_card(source)
        if not source.get("extensions"):
            # plain v1 cards carry no id; derive one from the name
            profile = replace(
                profile,
                character_id=profile.name.strip().replace(" ", "_").lower() or profile.character_id,
            )
        tags = card.get("tags")
        if isinstance(tags, list) and not profile.interests:
            profile = replace(profile, interests=tuple(str(t) for t in tags))
        return await self.save_profile(profile)

    async def _index_memory(self, memory: CharacterMemory) -> None:
        if self.semantic_index is None:
            return
        outcome = await self.semantic_index.index(
            CHARACTER_MEMORY_COLLECTION,
            memory.memory_id,
            memory.content,
            {
                "character_id": memory.character_id,
                "category": memory.category.value,
                "importance": memory.importance,
                "tags": list(memory.tags),
            },
        )
        if not outcome.ok:
            logger.warning(
                "[CharacterBook] memory %s kept without vector index: %s",
                memory.memory_id,
                outcome.error,
            )

    async def _unindex_memory(self, memory_id: str) -> None:
        if self.semantic_index is None:
            return
        outcome = await self.semantic_index.remove(CHARACTER_MEMORY_COLLECTION, memory_id)
        if not outcome.ok:
            logger.warning("[CharacterBook] vector delete for %s failed: %s", memory_id, outcome.error)


def memory_relevance(a: CharacterMemory, b: CharacterMemory) -> float:
    """Context relevance of two memories in [0, 1]."""
    days = abs(a.created_at - b.created_at) / float(DAY_MS)
    if days <= 1:
        time_score = 0.8
    elif days <= 7:
        time_score = 0.5
    elif days <= 30:
        time_score = 0.3
    else:
        time_score = 0.1

    tags_a = set(a.tags)
    tag_score = len(tags_a & set(b.tags)) / len(tags_a) if tags_a else 0.0

    if a.emotion_tag and a.emotion_tag == b.emotion_tag:
        emotion_score = 0.6
    elif a.emotion_intensity is not None and b.emotion_intensity is not None:
        diff = abs(a.emotion_intensity - b.emotion_intensity)
        emotion_score = 0.5 if diff <= 0.1 else 0.3 if diff <= 0.3 else 0.1
    else:
        emotion_score = 0.0

    score = (
        time_score * 0.2
        + tag_score * 0.3
        + emotion_score * 0.2
        + content_similarity(a.content, b.content) * 0.3
    )
    return max(0.0, min(1.0, score))


def content_similarity(a: str, b: str) -> float:
    words_a = tokenize(a)
    words_b = tokenize(b)
    if not words_a or not words_b:
        return 0.0
    length_ratio = min(len(a), len(b)) / float(max(len(a), len(b)))
    return max(0.0, min(1.0, token_overlap(words_a, words_b) * 0.7 + max(length_ratio, 0.3) * 0.3))


def group_memories_by_context(
    memories: list[CharacterMemory], *, threshold: float = 0.3, max_group_size: int = 5
) -> list[list[CharacterMemory]]:
    """Greedy grouping around the oldest ungrouped memory."""
    ungrouped = sorted(memories, key=lambda m: m.created_at)
    groups: list[list[CharacterMemory]] = []
    while ungrouped:
        anchor = ungrouped.pop(0)
        group = [anchor]
        remaining: list[CharacterMemory] = []
        for candidate in ungrouped:
            if len(group) < max_group_size and memory_relevance(anchor, candidate) > threshold:
                group.append(candidate)
            else:
                remaining.append(candidate)
        ungrouped = remaining
        groups.append(group)
    return groups
