"""
World Book: lorebook-style world entries triggered by keywords in a query.

Entries live in SQLite. When a semantic index is attached, entries are also
embedded into the ``xiaoguang_world_book`` collection and semantic hits are
merged into keyword triggers; a failing vector service only costs the
semantic half.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from functools import partial
from typing import Any

import anyio

from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.domain.knowledge import WorldEntry, WorldEntryCategory, WorldScene
from xiaoguang_lite.domain.retrieval.context import WorldContext
from xiaoguang_lite.infra.sqlite.world_book_repository import WorldBookRepository
from xiaoguang_lite.infra.vector.common import WORLD_BOOK_COLLECTION
from xiaoguang_lite.service.segmenter import estimate_tokens
from xiaoguang_lite.service.semantic_index import SemanticIndex

logger = logging.getLogger(__name__)

LOREBOOK_NAME = "小光的世界"
LOREBOOK_DESCRIPTION = "小光AI助手的世界观设定"

DEFAULT_ENTRIES = (
    WorldEntry(
        entry_id="default_xiaoguang_world",
        keys=("世界", "小光", "背景"),
        content="这是小光生活的世界，充满温暖和希望。小光是一个元气满满的AI助手，喜欢帮助别人。",
        category=WorldEntryCategory.SETTING,
        priority=100,
    ),
    WorldEntry(
        entry_id="default_xiaoguang_personality",
        keys=("小光", "性格", "特点"),
        content="小光性格温柔体贴，略微迷糊但充满好奇心。她喜欢可爱的事物，对二次元文化很感兴趣。",
        category=WorldEntryCategory.SETTING,
        priority=90,
    ),
)

_SECTION_TITLES = {
    WorldEntryCategory.RULE: "【规则】",
    WorldEntryCategory.SETTING: "【背景】",
}


def _entry_order(entry: WorldEntry) -> tuple[int, int, int]:
    return (-int(entry.priority), int(entry.insertion_order), int(entry.created_at))


class WorldBook:
    def __init__(
        self,
        repository: WorldBookRepository,
        *,
        semantic_index: SemanticIndex | None = None,
        auto_trigger: bool = True,
        max_injection_tokens: int = 2000,
        semantic_top_k: int = 20,
        min_semantic_score: float = 0.35,
    ) -> None:
        self.repository = repository
        self.semantic_index = semantic_index
        self.auto_trigger = bool(auto_trigger)
        self.max_injection_tokens = max(0, int(max_injection_tokens))
        self.semantic_top_k = max(1, int(semantic_top_k))
        self.min_semantic_score = max(0.0, min(1.0, float(min_semantic_score)))
        self._current_scene: WorldScene | None = None

    async def add_entry(self, entry: WorldEntry) -> WorldEntry:
        if not entry.keys and not entry.content.strip():
            raise ValueError("world entry needs keys or content")
        await anyio.to_thread.run_sync(partial(self.repository.upsert, entry))
        await self._index_entry(entry)
        logger.debug("[WorldBook] stored entry %s", entry.entry_id)
        return entry

    async def add_entries(self, entries: list[WorldEntry]) -> int:
        for entry in entries:
            await self.add_entry(entry)
        return len(entries)

    async def update_entry(self, entry: WorldEntry) -> WorldEntry | None:
        existing = await self.get_entry(entry.entry_id)
        if existing is None:
            return None
        updated = replace(entry, created_at=existing.created_at, updated_at=now_ms())
        await anyio.to_thread.run_sync(partial(self.repository.upsert, updated))
        await self._index_entry(updated)
        return updated

    async def delete_entry(self, entry_id: str) -> bool:
        deleted = await anyio.to_thread.run_sync(partial(self.repository.delete, entry_id))
        if deleted and self.semantic_index is not None:
            outcome = await self.semantic_index.remove(WORLD_BOOK_COLLECTION, entry_id)
            if not outcome.ok:
                logger.warning(
                    "[WorldBook] vector delete for %s failed: %s", entry_id, outcome.error
                )
        return bool(deleted)

    async def get_entry(self, entry_id: str) -> WorldEntry | None:
        return await anyio.to_thread.run_sync(partial(self.repository.get, entry_id))

    async def list_entries(self, *, enabled_only: bool = False) -> list[WorldEntry]:
        return await anyio.to_thread.run_sync(
            partial(self.repository.list_all, enabled_only=enabled_only)
        )

    async def entries_by_category(self, category: WorldEntryCategory) -> list[WorldEntry]:
        return await anyio.to_thread.run_sync(
            partial(self.repository.list_by_category, category)
        )

    async def set_entry_enabled(self, entry_id: str, enabled: bool) -> WorldEntry | None:
        entry = await self.get_entry(entry_id)
        if entry is None:
            return None
        return await self.update_entry(replace(entry, enabled=bool(enabled)))

    async def update_priority(self, entry_id: str, priority: int) -> WorldEntry | None:
        entry = await self.get_entry(entry_id)
        if entry is None:
            return None
        return await self.update_entry(replace(entry, priority=int(priority)))

    def set_current_scene(self, scene: WorldScene | None) -> None:
        self._current_scene = scene
        logger.info("[WorldBook] scene -> %s", scene.name if scene else None)

    @property
    def current_scene(self) -> WorldScene | None:
        return self._current_scene

    async def trigger_by_query(self, query: str) -> list[WorldEntry]:
        text = str(query or "")
        if not text.strip():
            return []
        entries = await self.list_entries(enabled_only=True)
        triggered = {e.entry_id: e for e in entries if e.matches(text)}
        if self.semantic_index is not None:
            by_id = {e.entry_id: e for e in entries}
            outcome = await self.semantic_index.search(
                WORLD_BOOK_COLLECTION, text, top_k=self.semantic_top_k
            )
            if outcome.ok:
                for hit in outcome.value or []:
                    entry = by_id.get(hit.id)
                    if entry is not None and hit.score >= self.min_semantic_score:
                        triggered.setdefault(entry.entry_id, entry)
            else:
                logger.warning(
                    "[WorldBook] semantic trigger unavailable: %s", outcome.error
                )
        return sorted(triggered.values(), key=_entry_order)

    async def inject_world_info(self, query: str, max_tokens: int | None = None) -> str:
        if not self.auto_trigger:
            return ""
        budget = self.max_injection_tokens if max_tokens is None else max(0, int(max_tokens))
        parts: list[str] = []
        used = 0
        for entry in await self.trigger_by_query(query):
            cost = estimate_tokens(entry.content)
            if used + cost > budget:
                break
            parts.append(entry.content.strip())
            used += cost
        if parts:
            logger.debug("[WorldBook] injected %d entries (%d tokens)", len(parts), used)
        return "\n---\n".join(parts)

    async def build_world_context(
        self, query: str, *, include_scene: bool = True, max_tokens: int = 1000
    ) -> WorldContext:
        triggered = await self.trigger_by_query(query)
        scene = self._current_scene if include_scene else None
        scene_description = scene.description if scene and scene.enabled else ""

        budget = max(0, int(max_tokens))
        used = estimate_tokens(scene_description)
        if used > budget:
            scene_description, used = "", 0

        sections: dict[str, list[str]] = {}
        kept: list[WorldEntry] = []
        for entry in triggered:
            cost = estimate_tokens(entry.content)
            if used + cost > budget:
                break
            title = _SECTION_TITLES.get(entry.category, "【相关知识】")
            sections.setdefault(title, []).append(entry.content.strip())
            kept.append(entry)
            used += cost

        lines: list[str] = []
        if scene_description:
            lines.extend(["【场景】", scene_description, ""])
        for title in ("【规则】", "【背景】", "【相关知识】"):
            if sections.get(title):
                lines.extend([title, *sections[title], ""])
        return WorldContext(
            triggered_entries=kept,
            scene_description=scene_description,
            rules="\n".join(sections.get("【规则】", [])),
            background="\n".join(sections.get("【背景】", [])),
            formatted_context="\n".join(lines).strip(),
        )

    async def statistics(self) -> dict[str, Any]:
        entries = await self.list_entries()
        distribution: dict[str, int] = {}
        for entry in entries:
            distribution[entry.category.value] = distribution.get(entry.category.value, 0) + 1
        return {
            "total_entries": len(entries),
            "enabled_entries": sum(1 for e in entries if e.enabled),
            "category_distribution": distribution,
            "current_scene": self._current_scene.scene_id if self._current_scene else None,
        }

    async def initialize_default_entries(self) -> int:
        count = await anyio.to_thread.run_sync(self.repository.count)
        if count > 0:
            return 0
        stamp = now_ms()
        added = await self.add_entries(
            [replace(e, created_at=stamp, updated_at=stamp) for e in DEFAULT_ENTRIES]
        )
        logger.info("[WorldBook] seeded %d default entries", added)
        return added

    async def export_lorebook(self) -> dict[str, Any]:
        entries = await self.list_entries()
        return {
            "name": LOREBOOK_NAME,
            "description": LOREBOOK_DESCRIPTION,
            "version": "1.0",
            "entries": [e.to_lorebook_entry() for e in entries],
        }

    async def import_lorebook(self, data: dict[str, Any]) -> int:
        raw_entries = data.get("entries") if isinstance(data, dict) else None
        # SillyTavern world files key entries by uid
        if isinstance(raw_entries, dict):
            raw_entries = list(raw_entries.values())
        if not isinstance(raw_entries, list):
            return 0
        imported = 0
        stamp = now_ms()
        for i, item in enumerate(raw_entries):
            if not isinstance(item, dict):
                continue
            entry = WorldEntry.from_lorebook_entry(item, default_id=f"imported_{stamp}_{i}")
            if not entry.keys and not entry.content.strip():
                continue
            await self.add_entry(entry)
            imported += 1
        logger.info("[WorldBook] imported %d lorebook entries", imported)
        return imported

    async def _index_entry(self, entry: WorldEntry) -> None:
        if self.semantic_index is None:
            return
        text = " ".join([*entry.keys, entry.content])
        outcome = await self.semantic_index.index(
            WORLD_BOOK_COLLECTION,
            entry.entry_id,
            text,
            {
                "category": entry.category.value,
                "priority": entry.priority,
                "enabled": entry.enabled,
            },
        )
        if not outcome.ok:
            logger.warning(
                "[WorldBook] entry %s kept without vector index: %s",
                entry.entry_id,
                outcome.error,
            )
