from __future__ import annotations

import base64
import json
import os
from typing import Any
from urllib import error, parse, request

from fastmcp import FastMCP


MCP_NAME = "xiaoguang-mcp"
BASE_URL = os.getenv("XG_BASE_URL", "http://127.0.0.1:20196").strip().rstrip("/")
TIMEOUT_SEC = float(os.getenv("XG_TIMEOUT_SEC", "25"))
BEARER_TOKEN = os.getenv("XG_BEARER_TOKEN", "").strip()
BASIC_USER = os.getenv("XG_BASIC_USER", "").strip()
BASIC_PASSWORD = os.getenv("XG_BASIC_PASSWORD", "").strip()

mcp = FastMCP(
    name=MCP_NAME,
    instructions=(
        "Bridge tools for the Xiaoguang knowledge HTTP API. "
        "Use these tools to resolve who someone is, pull world and character "
        "context for a message, and look up relations between people."
    ),
)


def _auth_header() -> dict[str, str]:
    if BEARER_TOKEN:
        return {"Authorization": f"Bearer {BEARER_TOKEN}"}
    if BASIC_USER:
        raw = f"{BASIC_USER}:{BASIC_PASSWORD}".encode("utf-8")
        token = base64.b64encode(raw).decode("ascii")
        return {"Authorization": f"Basic {token}"}
    return {}


def _request_json(
    method: str,
    path: str,
    *,
    params: dict[str, Any] | None = None,
    body: dict[str, Any] | None = None,
) -> dict[str, Any]:
    url = f"{BASE_URL}{path}"
    if params:
        query = parse.urlencode(
            {k: v for k, v in params.items() if v is not None and v != ""},
            doseq=True,
        )
        if query:
            url = f"{url}?{query}"

    payload_bytes = (
        json.dumps(body, ensure_ascii=False).encode("utf-8") if body is not None else None
    )
    headers = {"Content-Type": "application/json", **_auth_header()}
    req = request.Request(url=url, data=payload_bytes, headers=headers, method=method)
    try:
        with request.urlopen(req, timeout=TIMEOUT_SEC) as resp:
            raw = resp.read().decode("utf-8")
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore")
        raise RuntimeError(f"Xiaoguang API HTTP {exc.code}: {detail[:300]}") from exc
    except (error.URLError, OSError) as exc:
        raise RuntimeError(f"Xiaoguang API request failed: {exc}") from exc

    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"Xiaoguang API returned invalid JSON: {raw[:280]}") from exc
    if not isinstance(parsed, dict):
        raise RuntimeError("Xiaoguang API response is not a JSON object")
    return parsed


@mcp.tool(description="Health check for the Xiaoguang knowledge service.")
def xiaoguang_health() -> dict[str, Any]:
    return _request_json("GET", "/health")


@mcp.tool(description="Resolve a voiceprint id, character id, name or alias to one identity.")
def resolve_identity(identifier: str) -> dict[str, Any]:
    value = identifier.strip()
    if not value:
        raise ValueError("identifier must not be blank")
    return _request_json("GET", "/api/v1/identities/resolve", params={"identifier": value})


@mcp.tool(description="Build token-budgeted world, character, relationship and memory context.")
def retrieve_context(
    query: str,
    character_ids: list[str] | None = None,
    max_tokens: int | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {"query": query, "character_ids": list(character_ids or [])}
    if max_tokens is not None:
        body["max_tokens"] = max(1, min(32000, int(max_tokens)))
    return _request_json("POST", "/api/v1/knowledge/retrieve", body=body)


@mcp.tool(description="List world book entries triggered by keywords in a message.")
def trigger_world_entries(query: str, max_tokens: int | None = None) -> dict[str, Any]:
    return _request_json(
        "GET",
        "/api/v1/world-book/trigger",
        params={"query": query, "max_tokens": max_tokens},
    )


@mcp.tool(description="Record a relation between two people in the relation graph.")
def record_relation(
    person_a: str,
    person_b: str,
    relation_type: str,
    description: str = "",
    confidence: float = 0.5,
) -> dict[str, Any]:
    body = {
        "person_a": person_a,
        "person_b": person_b,
        "relation_type": relation_type,
        "description": description,
        "confidence": max(0.0, min(1.0, float(confidence))),
        "source": "mcp",
    }
    return _request_json("POST", "/api/v1/graph/relations", body=body)


@mcp.tool(description="List relations of one person.")
def person_relations(person: str, limit: int = 10) -> dict[str, Any]:
    return _request_json(
        "GET",
        "/api/v1/graph/relations",
        params={"person": person, "limit": max(1, min(200, int(limit)))},
    )


@mcp.tool(description="Find the shortest relation path between two people.")
def relation_path(from_person: str, to_person: str, max_depth: int = 5) -> dict[str, Any]:
    return _request_json(
        "GET",
        "/api/v1/graph/path",
        params={
            "from_person": from_person,
            "to_person": to_person,
            "max_depth": max(1, min(10, int(max_depth))),
        },
    )


def main() -> None:
    mcp.run("stdio", show_banner=False)


if __name__ == "__main__":
    main()
