from __future__ import annotations

import json
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from xiaoguang_lite.domain.errors import PermanentServiceError, TransientServiceError
from xiaoguang_lite.domain.knowledge import CharacterMemory
from xiaoguang_lite.service.memory_evaluator import ChatModelMemoryEvaluator
from xiaoguang_lite.service.openai_embedding import OpenAIEmbeddingProvider


class _StubModelHandler(BaseHTTPRequestHandler):
    status = 200
    chat_content: Any = ""
    bodies: list[dict[str, Any]] = []
    auth: list[str] = []

    def log_message(self, format: str, *args: Any) -> None:
        return

    def _send_json(self, payload: dict[str, Any], *, code: int = 200) -> None:
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def do_POST(self) -> None:
        size = int(self.headers.get("Content-Length", "0"))
        body = json.loads(self.rfile.read(size).decode("utf-8")) if size else {}
        type(self).bodies.append({"path": self.path, **body})
        type(self).auth.append(self.headers.get("Authorization", ""))
        if self.status != 200:
            self._send_json({"error": "stub failure"}, code=self.status)
            return
        if self.path == "/v1/embeddings":
            self._send_json({"data": [{"embedding": [0.5, -0.25, 1]}]})
            return
        if self.path == "/v1/chat/completions":
            self._send_json({"choices": [{"message": {"content": self.chat_content}}]})
            return
        self._send_json({"error": "not found"}, code=404)


class _StubServerCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _StubModelHandler)
        cls.http_thread = threading.Thread(target=cls.httpd.serve_forever, daemon=True)
        cls.http_thread.start()
        cls.base_url = f"http://127.0.0.1:{cls.httpd.server_port}/v1"

    @classmethod
    def tearDownClass(cls) -> None:
        cls.httpd.shutdown()
        cls.httpd.server_close()
        cls.http_thread.join(timeout=2)

    def setUp(self) -> None:
        _StubModelHandler.status = 200
        _StubModelHandler.chat_content = ""
        _StubModelHandler.bodies = []
        _StubModelHandler.auth = []


class OpenAIEmbeddingProviderTests(_StubServerCase):
    def _provider(self) -> OpenAIEmbeddingProvider:
        return OpenAIEmbeddingProvider(self.base_url, "sk-test", "bge-test", timeout=5)

    def test_embed_posts_model_and_input(self) -> None:
        self.assertEqual([0.5, -0.25, 1.0], self._provider().embed("你好"))
        sent = _StubModelHandler.bodies[0]
        self.assertEqual("/v1/embeddings", sent["path"])
        self.assertEqual("bge-test", sent["model"])
        self.assertEqual("你好", sent["input"])
        self.assertEqual("Bearer sk-test", _StubModelHandler.auth[0])

    def test_http_failures_are_classified(self) -> None:
        _StubModelHandler.status = 503
        with self.assertRaises(TransientServiceError):
            self._provider().embed("x")
        _StubModelHandler.status = 401
        with self.assertRaises(PermanentServiceError):
            self._provider().embed("x")

    def test_missing_config_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            OpenAIEmbeddingProvider(self.base_url, " ", "m").embed("x")
        self.assertEqual(
            "http://h/v1/embeddings",
            self._provider()._build_embeddings_url("http://h/v1/embeddings/"),
        )


class ChatModelMemoryEvaluatorTests(_StubServerCase):
    def _evaluator(self, enabled: bool = True) -> ChatModelMemoryEvaluator:
        return ChatModelMemoryEvaluator(
            base_url=self.base_url, api_key="sk-chat", model="qwen-test", enabled=enabled, timeout=5
        )

    def _memories(self) -> list[CharacterMemory]:
        return [
            CharacterMemory(memory_id="m1", character_id="c1", content="第一次一起看海"),
            CharacterMemory(memory_id="m2", character_id="c1", content="今天午饭吃了面"),
        ]

    def test_is_enabled_needs_flag_and_credentials(self) -> None:
        self.assertTrue(self._evaluator().is_enabled())
        self.assertFalse(self._evaluator(enabled=False).is_enabled())
        no_key = ChatModelMemoryEvaluator(
            base_url=self.base_url, api_key="", model="m", enabled=True
        )
        self.assertFalse(no_key.is_enabled())

    def test_evaluations_are_parsed_from_fenced_reply(self) -> None:
        _StubModelHandler.chat_content = (
            "```json\n"
            + json.dumps(
                {
                    "evaluations": [
                        {
                            "id": 0,
                            "should_consolidate": True,
                            "confidence": 1.4,
                            "semantic_value": 1,
                            "emotional_depth": 1,
                            "reason": "珍贵回忆",
                        },
                        {"id": 1, "should_consolidate": "false", "confidence": "0.2"},
                        {"id": 7, "should_consolidate": True},
                    ]
                },
                ensure_ascii=False,
            )
            + "\n```"
        )
        results = self._evaluator().evaluate_batch(
            character_name="小明", memories=self._memories(), related_long_term=[]
        )
        self.assertEqual(["m1", "m2"], [r.memory_id for r in results])
        self.assertTrue(results[0].should_consolidate)
        self.assertEqual(1.0, results[0].confidence)
        self.assertAlmostEqual(0.55, results[0].score)
        self.assertEqual("珍贵回忆", results[0].reason)
        self.assertFalse(results[1].should_consolidate)
        self.assertEqual("chat_model", results[1].reason)

        sent = _StubModelHandler.bodies[0]
        self.assertEqual("/v1/chat/completions", sent["path"])
        self.assertEqual("qwen-test", sent["model"])
        candidates = json.loads(sent["messages"][1]["content"])["candidates"]
        self.assertEqual("第一次一起看海", candidates[0]["content"])

    def test_bad_replies_raise_permanent_errors(self) -> None:
        _StubModelHandler.chat_content = "我觉得都挺好"
        with self.assertRaises(PermanentServiceError):
            self._evaluator().evaluate_batch(
                character_name="小明", memories=self._memories(), related_long_term=[]
            )
        _StubModelHandler.chat_content = ""
        with self.assertRaises(PermanentServiceError):
            self._evaluator().evaluate_batch(
                character_name="小明", memories=self._memories(), related_long_term=[]
            )
        _StubModelHandler.status = 429
        with self.assertRaises(TransientServiceError):
            self._evaluator().evaluate_batch(
                character_name="小明", memories=self._memories(), related_long_term=[]
            )
        self.assertEqual(
            [],
            self._evaluator().evaluate_batch(
                character_name="小明", memories=[], related_long_term=[]
            ),
        )


if __name__ == "__main__":
    unittest.main()
