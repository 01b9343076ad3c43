from __future__ import annotations

import unittest
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from xiaoguang_lite.domain.errors import TransientServiceError
from xiaoguang_lite.domain.knowledge import WorldEntry, WorldEntryCategory, WorldScene
from xiaoguang_lite.domain.retry import RetryPolicy
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine
from xiaoguang_lite.infra.sqlite.init_schema import init_schema
from xiaoguang_lite.infra.sqlite.world_book_repository import WorldBookRepository
from xiaoguang_lite.infra.vector.common import WORLD_BOOK_COLLECTION, VectorHit
from xiaoguang_lite.service.embedding import HashEmbeddingProvider
from xiaoguang_lite.service.semantic_index import SemanticIndex
from xiaoguang_lite.service.world_book import WorldBook

_NO_WAIT = RetryPolicy(max_retries=1, initial_delay=0.0)


class _StubVectorStore:
    name = "stub"

    def __init__(self) -> None:
        self.hits: list[VectorHit] = []
        self.upserts: list[tuple[str, str, dict[str, Any]]] = []
        self.deleted: list[tuple[str, str]] = []
        self.fail = False

    def available(self) -> bool:
        return not self.fail

    def upsert(self, collection, doc_id, vector, document, metadata=None) -> None:
        if self.fail:
            raise TransientServiceError("down", service="stub")
        self.upserts.append((collection, doc_id, dict(metadata or {})))

    def query(self, collection, vector, top_k=10, where=None) -> list[VectorHit]:
        if self.fail:
            raise TransientServiceError("down", service="stub")
        return list(self.hits)

    def delete(self, collection, doc_id) -> None:
        self.deleted.append((collection, doc_id))

    def count(self, collection) -> int:
        return len(self.upserts)


class WorldBookTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        engine = SQLiteEngine(Path(self._tmp.name) / "xg.db")
        init_schema(engine)
        self.repository = WorldBookRepository(engine)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _book(self, **kwargs: Any) -> WorldBook:
        return WorldBook(self.repository, **kwargs)

    async def test_trigger_by_keys_in_priority_order(self) -> None:
        book = self._book()
        await book.add_entries(
            [
                WorldEntry(entry_id="school", keys=("学院",), content="星辰学院是魔法学校", priority=50),
                WorldEntry(entry_id="tower", keys=("Tower",), content="魔法塔在北方", priority=80),
                WorldEntry(entry_id="off", keys=("学院",), content="旧设定", enabled=False),
                WorldEntry(
                    entry_id="strict",
                    keys=("Tower",),
                    content="区分大小写",
                    case_sensitive=True,
                    priority=10,
                ),
            ]
        )
        triggered = await book.trigger_by_query("去学院旁边的tower看看")
        self.assertEqual(["tower", "school"], [e.entry_id for e in triggered])
        self.assertEqual([], await book.trigger_by_query("   "))

    async def test_blank_entry_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            await self._book().add_entry(WorldEntry(entry_id="x", keys=(), content="  "))

    async def test_injection_respects_token_budget(self) -> None:
        book = self._book()
        await book.add_entries(
            [
                WorldEntry(entry_id="a", keys=("小光",), content="小光" * 10, priority=100),
                WorldEntry(entry_id="b", keys=("小光",), content="元气" * 10, priority=90),
                WorldEntry(entry_id="c", keys=("小光",), content="温柔" * 10, priority=80),
            ]
        )
        # each entry costs 10 tokens
        text = await book.inject_world_info("小光在吗", max_tokens=25)
        self.assertEqual("小光" * 10 + "\n---\n" + "元气" * 10, text)
        self.assertEqual("", await self._book(auto_trigger=False).inject_world_info("小光"))

    async def test_world_context_sections_and_scene(self) -> None:
        book = self._book()
        await book.add_entries(
            [
                WorldEntry(
                    entry_id="rule",
                    keys=("魔法",),
                    content="禁止在城内使用魔法",
                    category=WorldEntryCategory.RULE,
                ),
                WorldEntry(
                    entry_id="bg",
                    keys=("魔法",),
                    content="这是一个魔法世界",
                    category=WorldEntryCategory.SETTING,
                ),
                WorldEntry(entry_id="fact", keys=("魔法",), content="魔法需要咒语"),
            ]
        )
        book.set_current_scene(WorldScene(scene_id="s1", name="城门", description="傍晚的城门口"))
        ctx = await book.build_world_context("魔法怎么用", max_tokens=1000)

        self.assertEqual("傍晚的城门口", ctx.scene_description)
        self.assertEqual("禁止在城内使用魔法", ctx.rules)
        self.assertEqual("这是一个魔法世界", ctx.background)
        text = ctx.formatted_context
        self.assertLess(text.index("【场景】"), text.index("【规则】"))
        self.assertLess(text.index("【规则】"), text.index("【背景】"))
        self.assertLess(text.index("【背景】"), text.index("【相关知识】"))

        no_scene = await book.build_world_context("魔法", include_scene=False)
        self.assertEqual("", no_scene.scene_description)
        book.set_current_scene(None)
        self.assertIsNone(book.current_scene)

    async def test_lorebook_export_and_import(self) -> None:
        book = self._book()
        await book.add_entry(
            WorldEntry(
                entry_id="city",
                keys=("王都",),
                content="王都是最大的城市",
                category=WorldEntryCategory.LOCATION,
                priority=70,
            )
        )
        exported = await book.export_lorebook()
        self.assertEqual("小光的世界", exported["name"])
        self.assertEqual("LOCATION", exported["entries"][0]["extensions"]["category"])

        with TemporaryDirectory() as tmp:
            engine = SQLiteEngine(Path(tmp) / "other.db")
            init_schema(engine)
            other = WorldBook(WorldBookRepository(engine))
            self.assertEqual(1, await other.import_lorebook(exported))
            restored = await other.get_entry("city")
            self.assertEqual(WorldEntryCategory.LOCATION, restored.category)
            self.assertEqual(70, restored.priority)

    async def test_sillytavern_entries_keyed_by_uid(self) -> None:
        book = self._book()
        imported = await book.import_lorebook(
            {
                "entries": {
                    "0": {"uid": 0, "keys": ["森林"], "content": "迷雾森林", "insertion_order": 5},
                    "1": {"uid": 1, "keys": [], "content": ""},
                    "2": "not-an-entry",
                }
            }
        )
        self.assertEqual(1, imported)
        self.assertEqual(["迷雾森林"], [e.content for e in await book.trigger_by_query("森林")])
        self.assertEqual(0, await book.import_lorebook({"entries": "bad"}))

    async def test_default_entries_are_seeded_once(self) -> None:
        book = self._book()
        self.assertEqual(2, await book.initialize_default_entries())
        self.assertEqual(0, await book.initialize_default_entries())
        stats = await book.statistics()
        self.assertEqual(2, stats["total_entries"])
        self.assertEqual({"SETTING": 2}, stats["category_distribution"])

    async def test_update_priority_and_enable_toggle(self) -> None:
        book = self._book()
        await book.add_entry(WorldEntry(entry_id="a", keys=("猫",), content="小猫"))
        updated = await book.update_priority("a", 5)
        self.assertEqual(5, updated.priority)
        await book.set_entry_enabled("a", False)
        self.assertEqual([], await book.trigger_by_query("猫"))
        self.assertIsNone(await book.update_priority("missing", 1))
        self.assertTrue(await book.delete_entry("a"))
        self.assertFalse(await book.delete_entry("a"))

    async def test_semantic_hits_are_merged_above_threshold(self) -> None:
        store = _StubVectorStore()
        index = SemanticIndex(store, HashEmbeddingProvider(dim=8), dim=8, retry_policy=_NO_WAIT)
        book = self._book(semantic_index=index, min_semantic_score=0.5)
        await book.add_entries(
            [
                WorldEntry(entry_id="sea", keys=("海洋",), content="无边的大海", priority=10),
                WorldEntry(entry_id="sky", keys=("天空",), content="漂浮的岛屿", priority=20),
            ]
        )
        self.assertEqual(
            [WORLD_BOOK_COLLECTION, WORLD_BOOK_COLLECTION], [u[0] for u in store.upserts]
        )
        store.hits = [
            VectorHit(id="sea", document="", distance=0.2),
            VectorHit(id="sky", document="", distance=0.9),
            VectorHit(id="gone", document="", distance=0.0),
        ]
        triggered = await book.trigger_by_query("去看看大海吧")
        self.assertEqual(["sea"], [e.entry_id for e in triggered])

        await book.delete_entry("sea")
        self.assertIn((WORLD_BOOK_COLLECTION, "sea"), store.deleted)

    async def test_vector_outage_keeps_keyword_triggers(self) -> None:
        store = _StubVectorStore()
        store.fail = True
        index = SemanticIndex(store, HashEmbeddingProvider(dim=8), dim=8, retry_policy=_NO_WAIT)
        book = self._book(semantic_index=index)
        await book.add_entry(WorldEntry(entry_id="sea", keys=("海洋",), content="无边的大海"))
        self.assertIsNotNone(await book.get_entry("sea"))
        triggered = await book.trigger_by_query("海洋有多深")
        self.assertEqual(["sea"], [e.entry_id for e in triggered])
        self.assertEqual(2, index.stats()["search.failed"] + index.stats()["indexed.failed"])


if __name__ == "__main__":
    unittest.main()
