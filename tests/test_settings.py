from __future__ import annotations

import os
import unittest
from pathlib import Path
from unittest.mock import patch

from xiaoguang_lite.config.profiles import PROFILE_PRESETS
from xiaoguang_lite.config.settings import LiteSettings


class SettingsTests(unittest.TestCase):
    def test_default_data_dir_uses_user_scope_location(self) -> None:
        env: dict[str, str] = {}
        if os.name == "nt":
            env["LOCALAPPDATA"] = r"C:\Users\tester\AppData\Local"
            expected = Path(r"C:\Users\tester\AppData\Local\Xiaoguang").resolve()
        else:
            env["XDG_DATA_HOME"] = "/home/tester/.local/share"
            expected = Path("/home/tester/.local/share/xiaoguang").resolve()

        with patch.dict(os.environ, env, clear=True):
            settings = LiteSettings.from_env()
        self.assertEqual(expected, settings.data_dir)
        self.assertEqual((expected / "xiaoguang.db").resolve(), settings.db_path)
        self.assertEqual((expected / "lancedb").resolve(), settings.vector_dir)
        self.assertEqual((expected / "graph").resolve(), settings.graph_dir)

    def test_defaults(self) -> None:
        with patch.dict(os.environ, {"XG_DATA_DIR": "/tmp/xg-data"}, clear=True):
            settings = LiteSettings.from_env()
        self.assertEqual(20196, settings.port)
        self.assertEqual("local", settings.vector_backend)
        self.assertEqual("local", settings.graph_backend)
        self.assertEqual("hash", settings.embedding_provider)
        self.assertEqual("default", settings.retry_preset)
        self.assertEqual("hybrid", settings.retrieval_profile)
        self.assertEqual(3000, settings.max_total_tokens)
        self.assertFalse(settings.memory_evaluator_enabled)
        self.assertTrue(settings.seed_defaults)
        self.assertAlmostEqual(0.6, settings.consolidation_promote_salience)
        self.assertEqual(5, settings.consolidation_access_threshold)

    def test_backend_env_is_parsed(self) -> None:
        env = {
            "XG_DATA_DIR": "/tmp/xg-data",
            "XG_VECTOR_BACKEND": " Chroma ",
            "XG_CHROMA_URL": "http://chroma:8000",
            "XG_GRAPH_BACKEND": "NEO4J",
            "XG_NEO4J_URL": "http://neo4j:7474",
            "XG_NEO4J_PASSWORD": "secret",
            "XG_RETRY_PRESET": "fast",
            "XG_MEMORY_EVALUATOR_ENABLED": "yes",
            "XG_VECTOR_DIM": "4",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = LiteSettings.from_env()
        self.assertEqual("chroma", settings.vector_backend)
        self.assertEqual("http://chroma:8000", settings.chroma_url)
        self.assertEqual("neo4j", settings.graph_backend)
        self.assertEqual("secret", settings.neo4j_password)
        self.assertEqual("fast", settings.retry_preset)
        self.assertTrue(settings.memory_evaluator_enabled)
        # dimension is floored to keep hashed embeddings meaningful
        self.assertEqual(8, settings.vector_dim)

    def test_unit_values_are_clamped(self) -> None:
        env = {
            "XG_DATA_DIR": "/tmp/xg-data",
            "XG_WORLD_MIN_SEMANTIC_SCORE": "1.7",
            "XG_CONSOLIDATION_REJECT_SALIENCE": "-0.2",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = LiteSettings.from_env()
        self.assertEqual(1.0, settings.world_min_semantic_score)
        self.assertEqual(0.0, settings.consolidation_reject_salience)


class RetrievalProfileTests(unittest.TestCase):
    def test_keyword_profile_disables_vector_and_graph(self) -> None:
        config = PROFILE_PRESETS["keyword"].to_config(max_total_tokens=500)
        self.assertEqual(500, config.max_total_tokens)
        self.assertFalse(config.enable_semantic_search)
        self.assertFalse(config.enable_graph_retrieval)
        self.assertFalse(config.enable_relationship_retrieval)

    def test_graph_profile_enables_everything(self) -> None:
        config = PROFILE_PRESETS["graph"].to_config()
        self.assertTrue(config.enable_semantic_search)
        self.assertTrue(config.enable_graph_retrieval)
        self.assertEqual(80, config.rrf_k)
        self.assertEqual(30, config.max_memories_per_retrieval)


if __name__ == "__main__":
    unittest.main()
