from __future__ import annotations

import asyncio
import json
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any
from urllib import parse

from xiaoguang_lite.domain.errors import PermanentServiceError, TransientServiceError
from xiaoguang_lite.domain.retry import RetryPolicy
from xiaoguang_lite.infra.vector.chroma_store import ChromaVectorStore
from xiaoguang_lite.infra.vector.common import clean_metadata
from xiaoguang_lite.infra.vector.lancedb_store import LanceVectorStore
from xiaoguang_lite.service.embedding import HashEmbeddingProvider
from xiaoguang_lite.service.semantic_index import SemanticIndex


class LanceVectorStoreLocalTests(unittest.TestCase):
    def test_local_upsert_is_persisted_and_restored_after_restart(self) -> None:
        with TemporaryDirectory() as tmp:
            base = Path(tmp)
            store = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            store.upsert("world", "entry-1", [1.0, 0.0, 0.0, 0.0], "星辰学院", {"category": "SETTING"})
            self.assertTrue((base / LanceVectorStore.LOG_FILE).exists())

            reloaded = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            hits = reloaded.query("world", [1.0, 0.0, 0.0, 0.0], top_k=5)
            self.assertEqual(1, len(hits))
            self.assertEqual("entry-1", hits[0].id)
            self.assertEqual("星辰学院", hits[0].document)
            self.assertGreater(hits[0].score, 0.99)

    def test_collections_are_isolated(self) -> None:
        with TemporaryDirectory() as tmp:
            store = LanceVectorStore(Path(tmp), vector_dim=4, use_lancedb=False)
            store.upsert("world", "same-id", [1.0, 0.0, 0.0, 0.0], "world doc")
            store.upsert("memories", "same-id", [0.0, 1.0, 0.0, 0.0], "memory doc")
            self.assertEqual(1, store.count("world"))
            self.assertEqual(1, store.count("memories"))
            hits = store.query("memories", [1.0, 0.0, 0.0, 0.0], top_k=5)
            self.assertEqual(["memory doc"], [h.document for h in hits])

    def test_where_filter_matches_metadata(self) -> None:
        with TemporaryDirectory() as tmp:
            store = LanceVectorStore(Path(tmp), vector_dim=4, use_lancedb=False)
            store.upsert("memories", "m1", [1.0, 0.0, 0.0, 0.0], "a", {"character_id": "c1"})
            store.upsert("memories", "m2", [0.9, 0.1, 0.0, 0.0], "b", {"character_id": "c2"})
            hits = store.query(
                "memories", [1.0, 0.0, 0.0, 0.0], top_k=5, where={"character_id": "c2"}
            )
            self.assertEqual(["m2"], [h.id for h in hits])

    def test_results_are_ordered_by_similarity_and_limited(self) -> None:
        with TemporaryDirectory() as tmp:
            store = LanceVectorStore(Path(tmp), vector_dim=4, use_lancedb=False)
            store.upsert("c", "far", [0.0, 0.0, 1.0, 0.0], "far")
            store.upsert("c", "near", [1.0, 0.05, 0.0, 0.0], "near")
            store.upsert("c", "mid", [0.7, 0.7, 0.0, 0.0], "mid")
            hits = store.query("c", [1.0, 0.0, 0.0, 0.0], top_k=2)
            self.assertEqual(["near", "mid"], [h.id for h in hits])

    def test_delete_survives_restart(self) -> None:
        with TemporaryDirectory() as tmp:
            base = Path(tmp)
            store = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            store.upsert("c", "m1", [1.0, 0.0, 0.0, 0.0], "a")
            store.upsert("c", "m2", [0.0, 1.0, 0.0, 0.0], "b")
            store.delete("c", "m1")
            reloaded = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            self.assertEqual(1, reloaded.count("c"))
            self.assertEqual(["m2"], [h.id for h in reloaded.query("c", [1.0, 0.0, 0.0, 0.0])])

    def test_dimension_mismatch_is_rejected(self) -> None:
        with TemporaryDirectory() as tmp:
            store = LanceVectorStore(Path(tmp), vector_dim=4, use_lancedb=False)
            with self.assertRaises(ValueError):
                store.upsert("c", "m1", [1.0, 0.0], "short")

    def test_corrupt_log_lines_are_skipped(self) -> None:
        with TemporaryDirectory() as tmp:
            base = Path(tmp)
            row = {
                "collection": "c",
                "doc_id": "ok",
                "vector": [1.0, 0.0, 0.0, 0.0],
                "document": "kept",
                "metadata": {},
            }
            (base / LanceVectorStore.LOG_FILE).write_text(
                "not-json\n"
                + json.dumps({"op": "upsert", "row": row})
                + "\n"
                + json.dumps({"op": "upsert", "row": {**row, "doc_id": "bad", "vector": [1.0]}})
                + "\n",
                encoding="utf-8",
            )
            store = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            self.assertEqual(1, store.count("c"))

    def test_compaction_writes_snapshot(self) -> None:
        with TemporaryDirectory() as tmp:
            base = Path(tmp)
            store = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            for i in range(LanceVectorStore.COMPACT_MIN_OPS):
                store.upsert("c", "m1", [1.0, float(i), 0.0, 0.0], f"v{i}")
            self.assertTrue((base / LanceVectorStore.SNAPSHOT_FILE).exists())
            reloaded = LanceVectorStore(base, vector_dim=4, use_lancedb=False)
            self.assertEqual(1, reloaded.count("c"))
            hits = reloaded.query("c", [1.0, 0.0, 0.0, 0.0])
            self.assertEqual(f"v{LanceVectorStore.COMPACT_MIN_OPS - 1}", hits[0].document)

    def test_clean_metadata_flattens_values(self) -> None:
        cleaned = clean_metadata({"tags": ["a", "b"], "none": None, "n": 2, "obj": {"k": 1}})
        self.assertEqual({"tags": "a,b", "n": 2, "obj": "{'k': 1}"}, cleaned)


class _StubChromaHandler(BaseHTTPRequestHandler):
    events: list[dict[str, Any]] = []
    events_lock = threading.Lock()
    fail_query_with: int | None = None
    docs: dict[str, dict[str, Any]] = {}
    live_cids: set[str] = set()
    cid_suffix = ""
    serve_new_collections = True

    def log_message(self, format: str, *args: Any) -> None:
        return

    @classmethod
    def reset(cls) -> None:
        with cls.events_lock:
            cls.events.clear()
            cls.docs.clear()
            cls.fail_query_with = None
            cls.live_cids.clear()
            cls.cid_suffix = ""
            cls.serve_new_collections = True

    @classmethod
    def _record(cls, method: str, path: str, body: Any) -> None:
        with cls.events_lock:
            cls.events.append({"method": method, "path": path, "body": body})

    def _stale_collection(self, path: str) -> bool:
        parts = path.rstrip("/").split("/")
        if len(parts) < 3 or parts[-3] != "collections":
            return False
        if parts[-2] in self.live_cids:
            return False
        self._send_json({"error": f"collection {parts[-2]} not found"}, code=404)
        return True

    def _send_json(self, payload: Any, *, code: int = 200) -> None:
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def do_GET(self) -> None:
        path = parse.urlparse(self.path).path
        self._record("GET", path, None)
        if path == "/api/v2/heartbeat":
            self._send_json({"nanosecond heartbeat": 1})
            return
        if self._stale_collection(path):
            return
        if path.endswith("/count"):
            self._send_json(len(self.docs))
            return
        self._send_json({"error": "not found"}, code=404)

    def do_POST(self) -> None:
        path = parse.urlparse(self.path).path
        size = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(size).decode("utf-8")) if size else {}
        self._record("POST", path, body)
        collections = "/api/v2/tenants/default_tenant/databases/default_database/collections"
        if path == collections:
            cid = f"cid-{body['name']}{self.cid_suffix}"
            if self.serve_new_collections:
                self.live_cids.add(cid)
            self._send_json({"id": cid, "name": body["name"]})
            return
        if self._stale_collection(path):
            return
        if path.endswith("/upsert"):
            for i, doc_id in enumerate(body["ids"]):
                self.docs[doc_id] = {
                    "document": body["documents"][i],
                    "metadata": body["metadatas"][i],
                }
            self._send_json(True)
            return
        if path.endswith("/delete"):
            for doc_id in body["ids"]:
                self.docs.pop(doc_id, None)
            self._send_json(True)
            return
        if path.endswith("/query"):
            if self.fail_query_with is not None:
                self._send_json({"error": "unavailable"}, code=self.fail_query_with)
                return
            ids = list(self.docs)
            self._send_json(
                {
                    "ids": [ids],
                    "documents": [[self.docs[i]["document"] for i in ids]],
                    "metadatas": [[self.docs[i]["metadata"] for i in ids]],
                    "distances": [[0.1 * (n + 1) for n in range(len(ids))]],
                }
            )
            return
        self._send_json({"error": "not found"}, code=404)


class ChromaVectorStoreTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _StubChromaHandler)
        cls.http_thread = threading.Thread(target=cls.httpd.serve_forever, daemon=True)
        cls.http_thread.start()
        cls.base_url = f"http://127.0.0.1:{cls.httpd.server_port}"

    @classmethod
    def tearDownClass(cls) -> None:
        cls.httpd.shutdown()
        cls.httpd.server_close()
        cls.http_thread.join(timeout=2)

    def setUp(self) -> None:
        _StubChromaHandler.reset()

    def test_heartbeat(self) -> None:
        self.assertTrue(ChromaVectorStore(self.base_url).available())
        self.assertFalse(ChromaVectorStore("http://127.0.0.1:1", timeout=0.5).available())

    def test_upsert_query_and_collection_cache(self) -> None:
        store = ChromaVectorStore(self.base_url)
        store.upsert(
            "xiaoguang_world_book",
            "e1",
            [0.1, 0.2],
            "星辰学院",
            {"category": "SETTING", "tags": ["a", "b"], "skip": None},
        )
        store.upsert("xiaoguang_world_book", "e2", [0.2, 0.1], "魔法塔", {"category": "LOCATION"})
        hits = store.query("xiaoguang_world_book", [0.1, 0.2], top_k=3, where={"category": "SETTING"})

        self.assertEqual(["e1", "e2"], [h.id for h in hits])
        self.assertAlmostEqual(0.9, hits[0].score)
        self.assertEqual({"category": "SETTING", "tags": "a,b"}, hits[0].metadata)

        events = _StubChromaHandler.events
        creates = [e for e in events if e["path"].endswith("/collections")]
        self.assertEqual(1, len(creates))
        self.assertTrue(creates[0]["body"]["get_or_create"])
        self.assertEqual("cosine", creates[0]["body"]["metadata"]["hnsw:space"])
        query = next(e for e in events if e["path"].endswith("/query"))
        self.assertIn("/collections/cid-xiaoguang_world_book/query", query["path"])
        self.assertEqual({"category": "SETTING"}, query["body"]["where"])
        self.assertEqual(3, query["body"]["n_results"])

    def test_multiple_where_clauses_are_combined(self) -> None:
        store = ChromaVectorStore(self.base_url)
        store.query("c", [0.1], where={"character_id": "c1", "category": "CORE"})
        query = next(e for e in _StubChromaHandler.events if e["path"].endswith("/query"))
        self.assertEqual(
            {"$and": [{"character_id": "c1"}, {"category": "CORE"}]}, query["body"]["where"]
        )

    def test_count_and_delete(self) -> None:
        store = ChromaVectorStore(self.base_url)
        store.upsert("c", "m1", [0.1], "a")
        store.upsert("c", "m2", [0.2], "b")
        store.delete("c", "m1")
        self.assertEqual(1, store.count("c"))

    def test_server_errors_are_transient(self) -> None:
        store = ChromaVectorStore(self.base_url)
        _StubChromaHandler.fail_query_with = 503
        with self.assertRaises(TransientServiceError) as ctx:
            store.query("c", [0.1])
        self.assertEqual(503, ctx.exception.status)

    def test_client_errors_are_permanent(self) -> None:
        store = ChromaVectorStore(self.base_url)
        _StubChromaHandler.fail_query_with = 422
        with self.assertRaises(PermanentServiceError):
            store.query("c", [0.1])

    def _recreate_collections(self) -> None:
        _StubChromaHandler.live_cids.clear()
        _StubChromaHandler.cid_suffix = "-v2"

    def test_recreated_collection_is_resolved_again(self) -> None:
        store = ChromaVectorStore(self.base_url)
        store.upsert("c", "m1", [0.1], "a")
        self._recreate_collections()

        hits = store.query("c", [0.1])
        self.assertEqual(["m1"], [h.id for h in hits])
        store.upsert("c", "m2", [0.2], "b")
        self.assertEqual(2, store.count("c"))

        creates = [e for e in _StubChromaHandler.events if e["path"].endswith("/collections")]
        self.assertEqual(2, len(creates))
        paths = [e["path"] for e in _StubChromaHandler.events if e["path"].endswith("/query")]
        self.assertEqual(2, len(paths))
        self.assertIn("/cid-c/query", paths[0])
        self.assertIn("/cid-c-v2/query", paths[1])

    def test_semantic_search_survives_recreated_collection(self) -> None:
        store = ChromaVectorStore(self.base_url)
        index = SemanticIndex(
            store,
            HashEmbeddingProvider(dim=8),
            dim=8,
            retry_policy=RetryPolicy(max_retries=1, initial_delay=0.0),
        )

        async def _run() -> Any:
            await index.index("c", "m1", "小明在学校打篮球")
            self._recreate_collections()
            return await index.search("c", "篮球")

        outcome = asyncio.run(_run())
        self.assertTrue(outcome.ok)
        self.assertEqual(1, outcome.attempts)
        self.assertEqual(["m1"], [h.id for h in outcome.value])

    def test_missing_collection_after_resolve_is_permanent(self) -> None:
        store = ChromaVectorStore(self.base_url)
        store.upsert("c", "m1", [0.1], "a")
        _StubChromaHandler.live_cids.clear()
        _StubChromaHandler.serve_new_collections = False
        with self.assertRaises(PermanentServiceError) as ctx:
            store.query("c", [0.1])
        self.assertEqual(404, ctx.exception.status)
        queries = [e for e in _StubChromaHandler.events if e["path"].endswith("/query")]
        self.assertEqual(2, len(queries))

    def test_unreachable_server_is_transient(self) -> None:
        store = ChromaVectorStore("http://127.0.0.1:1", timeout=0.5)
        with self.assertRaises(TransientServiceError):
            store.upsert("c", "m1", [0.1], "a")


if __name__ == "__main__":
    unittest.main()
