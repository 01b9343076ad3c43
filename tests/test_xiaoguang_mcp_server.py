from __future__ import annotations

import asyncio
import base64
import json
import os
import sys
import threading
import unittest
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Any
from urllib import parse

from fastmcp import Client


class _StubXiaoguangHandler(BaseHTTPRequestHandler):
    events: list[dict[str, Any]] = []
    events_lock = threading.Lock()

    def log_message(self, format: str, *args: Any) -> None:
        return

    @classmethod
    def clear_events(cls) -> None:
        with cls.events_lock:
            cls.events.clear()

    @classmethod
    def snapshot_events(cls) -> list[dict[str, Any]]:
        with cls.events_lock:
            return list(cls.events)

    def _record(self, method: str, path: str, query: dict[str, Any], body: Any) -> None:
        with self.events_lock:
            self.events.append(
                {
                    "method": method,
                    "path": path,
                    "query": query,
                    "body": body,
                    "auth": self.headers.get("Authorization", ""),
                }
            )

    def _send_json(self, payload: dict[str, Any], *, code: int = 200) -> None:
        raw = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)

    def do_GET(self) -> None:
        parsed = parse.urlparse(self.path)
        query = {k: v[0] if len(v) == 1 else v for k, v in parse.parse_qs(parsed.query).items()}
        self._record("GET", parsed.path, query, None)

        if parsed.path == "/health":
            self._send_json({"status": "ok", "service": "stub"})
            return
        if parsed.path == "/api/v1/identities/resolve":
            if query.get("identifier") == "主人":
                self._send_json(
                    {"ok": True, "identity": {"canonical_id": "master_001", "is_master": True}}
                )
            else:
                self._send_json({"ok": False, "error": "identity not found"}, code=404)
            return
        if parsed.path == "/api/v1/world-book/trigger":
            self._send_json({"ok": True, "entries": [{"entry_id": "school"}]})
            return
        if parsed.path == "/api/v1/graph/relations":
            self._send_json({"ok": True, "person": query.get("person"), "relations": []})
            return
        if parsed.path == "/api/v1/graph/path":
            self._send_json({"ok": True, "path": ["小明", "小红", "小刚"]})
            return

        self._send_json({"ok": False, "error": "not found"}, code=404)

    def do_POST(self) -> None:
        parsed = parse.urlparse(self.path)
        size = int(self.headers.get("Content-Length", "0"))
        raw = self.rfile.read(size).decode("utf-8") if size else "{}"
        try:
            body = json.loads(raw) if raw else {}
        except json.JSONDecodeError:
            self._send_json({"ok": False, "error": "invalid json"}, code=400)
            return
        self._record("POST", parsed.path, {}, body)

        if parsed.path == "/api/v1/knowledge/retrieve":
            self._send_json({"ok": True, "formatted_context": "【世界设定】", "total_tokens": 3})
            return
        if parsed.path == "/api/v1/graph/relations":
            self._send_json({"ok": True, "relation": body})
            return

        self._send_json({"ok": False, "error": "not found"}, code=404)


def _tool_payload(result: Any) -> dict[str, Any]:
    payload = getattr(result, "structuredContent", None)
    if isinstance(payload, dict):
        return payload
    content = getattr(result, "content", None) or []
    for item in content:
        text = getattr(item, "text", None)
        if isinstance(text, str):
            try:
                parsed = json.loads(text)
                if isinstance(parsed, dict):
                    return parsed
            except json.JSONDecodeError:
                continue
    return {}


class XiaoguangMCPServerTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.repo_root = Path(__file__).resolve().parents[1]
        cls.mcp_server = cls.repo_root / "integrations" / "xiaoguang-mcp" / "server.py"
        cls.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _StubXiaoguangHandler)
        cls.http_thread = threading.Thread(target=cls.httpd.serve_forever, daemon=True)
        cls.http_thread.start()
        cls.base_url = f"http://127.0.0.1:{cls.httpd.server_port}"

    @classmethod
    def tearDownClass(cls) -> None:
        cls.httpd.shutdown()
        cls.httpd.server_close()
        cls.http_thread.join(timeout=2)

    def setUp(self) -> None:
        _StubXiaoguangHandler.clear_events()

    def _client_config(self, **extra_env: str) -> dict[str, Any]:
        env = dict(os.environ)
        for key in ("XG_BEARER_TOKEN", "XG_BASIC_USER", "XG_BASIC_PASSWORD"):
            env.pop(key, None)
        env.update({"XG_BASE_URL": self.base_url, "XG_TIMEOUT_SEC": "8", **extra_env})
        return {
            "mcpServers": {
                "xiaoguang": {
                    "command": sys.executable,
                    "args": [str(self.mcp_server)],
                    "cwd": str(self.repo_root),
                    "env": env,
                }
            }
        }

    def _events(self, method: str, path: str) -> list[dict[str, Any]]:
        return [
            e
            for e in _StubXiaoguangHandler.snapshot_events()
            if e["method"] == method and e["path"] == path
        ]

    def test_mcp_tools_are_exposed(self) -> None:
        async def _run() -> set[str]:
            async with Client(self._client_config()) as client:
                tools = await client.list_tools()
                return {tool.name for tool in tools}

        names = asyncio.run(_run())
        self.assertTrue(
            {
                "xiaoguang_health",
                "resolve_identity",
                "retrieve_context",
                "trigger_world_entries",
                "record_relation",
                "person_relations",
                "relation_path",
            }.issubset(names)
        )

    def test_retrieve_context_clamps_budget(self) -> None:
        async def _run() -> tuple[dict[str, Any], dict[str, Any]]:
            async with Client(self._client_config()) as client:
                health = await client.call_tool("xiaoguang_health")
                ctx = await client.call_tool(
                    "retrieve_context",
                    {"query": "小明在学校做什么", "character_ids": ["c1"], "max_tokens": 99999},
                )
                return _tool_payload(health), _tool_payload(ctx)

        health, ctx = asyncio.run(_run())
        self.assertEqual("ok", health.get("status"))
        self.assertEqual("【世界设定】", ctx.get("formatted_context"))

        events = self._events("POST", "/api/v1/knowledge/retrieve")
        self.assertEqual(1, len(events))
        body = events[0]["body"]
        self.assertEqual("小明在学校做什么", body["query"])
        self.assertEqual(["c1"], body["character_ids"])
        self.assertEqual(32000, body["max_tokens"])
        self.assertEqual("", events[0]["auth"])

    def test_relation_tools_forward_clamped_values(self) -> None:
        async def _run() -> dict[str, Any]:
            async with Client(self._client_config()) as client:
                recorded = await client.call_tool(
                    "record_relation",
                    {
                        "person_a": "小明",
                        "person_b": "小红",
                        "relation_type": "朋友",
                        "confidence": 3.0,
                    },
                )
                await client.call_tool("person_relations", {"person": "小明", "limit": 999})
                await client.call_tool(
                    "relation_path", {"from_person": "小明", "to_person": "小刚", "max_depth": 0}
                )
                return _tool_payload(recorded)

        recorded = asyncio.run(_run())
        relation = recorded.get("relation", {})
        self.assertEqual(1.0, relation.get("confidence"))
        self.assertEqual("mcp", relation.get("source"))

        listing = self._events("GET", "/api/v1/graph/relations")[0]["query"]
        self.assertEqual("200", listing.get("limit"))
        path = self._events("GET", "/api/v1/graph/path")[0]["query"]
        self.assertEqual("1", path.get("max_depth"))
        self.assertEqual("小刚", path.get("to_person"))

    def test_resolve_identity_and_basic_auth(self) -> None:
        config = self._client_config(XG_BASIC_USER="xg", XG_BASIC_PASSWORD="secret")

        async def _run() -> dict[str, Any]:
            async with Client(config) as client:
                resolved = await client.call_tool("resolve_identity", {"identifier": " 主人 "})
                return _tool_payload(resolved)

        payload = asyncio.run(_run())
        self.assertEqual("master_001", payload.get("identity", {}).get("canonical_id"))
        event = self._events("GET", "/api/v1/identities/resolve")[0]
        self.assertEqual("主人", event["query"].get("identifier"))
        expected = base64.b64encode(b"xg:secret").decode("ascii")
        self.assertEqual(f"Basic {expected}", event["auth"])


if __name__ == "__main__":
    unittest.main()
