"""
Neo4j person graph over the HTTP transactional endpoint.

Every call is one ``POST /db/{database}/tx/commit`` carrying parameterised
Cypher. People are ``(:Person {name})`` nodes joined by one ``RELATED_TO``
edge per pair, directed from the lexicographically smaller name.
"""

from __future__ import annotations

import base64
import json
import logging
import socket
from typing import Any
from urllib import error, parse, request

from xiaoguang_lite.domain.errors import (
    PermanentServiceError,
    TransientServiceError,
    classify_http_status,
)
from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.infra.graph.common import GraphPath, RelationRecord, normalize_pair

logger = logging.getLogger(__name__)

_RECORD_RELATION = """
MERGE (a:Person {name: $a})
MERGE (b:Person {name: $b})
MERGE (a)-[r:RELATED_TO]->(b)
ON CREATE SET r.relation_type = $relation_type, r.description = $description,
              r.confidence = $confidence, r.source = $source,
              r.created_at = $now, r.updated_at = $now
ON MATCH SET r.relation_type = $relation_type, r.description = $description,
             r.confidence = (r.confidence + $confidence) / 2.0, r.source = $source,
             r.updated_at = $now
RETURN a.name AS person_a, b.name AS person_b, r.relation_type AS relation_type,
       r.description AS description, r.confidence AS confidence, r.source AS source,
       r.created_at AS created_at, r.updated_at AS updated_at
"""

_PERSON_RELATIONS = """
MATCH (p:Person {name: $name})-[r:RELATED_TO]-(:Person)
RETURN startNode(r).name AS person_a, endNode(r).name AS person_b,
       r.relation_type AS relation_type, r.description AS description,
       r.confidence AS confidence, r.source AS source,
       r.created_at AS created_at, r.updated_at AS updated_at
ORDER BY r.confidence DESC, r.updated_at DESC
LIMIT $limit
"""

_REL_PROJECTION = (
    "{person_a: startNode(r).name, person_b: endNode(r).name, "
    "relation_type: r.relation_type, description: r.description, "
    "confidence: r.confidence, source: r.source, "
    "created_at: r.created_at, updated_at: r.updated_at}"
)


class Neo4jGraphStore:
    name = "neo4j"

    def __init__(
        self,
        base_url: str,
        *,
        database: str = "neo4j",
        user: str = "neo4j",
        password: str = "",
        timeout: float = 10.0,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        self.database = database
        self.user = user
        self.password = password
        self.timeout = float(timeout)

    def available(self) -> bool:
        try:
            self._run("RETURN 1 AS ok")
            return True
        except (TransientServiceError, PermanentServiceError) as exc:
            logger.warning("[Neo4jGraphStore] ping failed: %s", exc)
            return False

    def record_relation(
        self,
        person_a: str,
        person_b: str,
        relation_type: str,
        description: str = "",
        confidence: float = 0.5,
        source: str = "",
    ) -> RelationRecord:
        a, b = normalize_pair(person_a, person_b)
        kind = str(relation_type or "").strip()
        if not kind:
            raise ValueError("relation_type is required")
        rows = self._run(
            _RECORD_RELATION,
            {
                "a": a,
                "b": b,
                "relation_type": kind,
                "description": str(description or ""),
                "confidence": max(0.0, min(1.0, float(confidence))),
                "source": str(source or ""),
                "now": now_ms(),
            },
        )
        record = RelationRecord.from_dict(rows[0]) if rows else None
        if record is None:
            raise PermanentServiceError("MERGE returned no relation", service="neo4j")
        return record

    def person_relations(self, name: str, limit: int = 10) -> list[RelationRecord]:
        rows = self._run(
            _PERSON_RELATIONS,
            {"name": str(name or "").strip(), "limit": max(0, int(limit))},
        )
        return [r for r in (RelationRecord.from_dict(row) for row in rows) if r]

    def shortest_path(self, person_a: str, person_b: str, max_depth: int = 4) -> GraphPath | None:
        start = str(person_a or "").strip()
        goal = str(person_b or "").strip()
        if start == goal:
            rows = self._run("MATCH (p:Person {name: $name}) RETURN p.name AS name", {"name": start})
            return GraphPath(nodes=[start]) if rows else None
        # variable-length bounds cannot be parameters
        depth = max(1, int(max_depth))
        rows = self._run(
            f"""
            MATCH (a:Person {{name: $a}}), (b:Person {{name: $b}}),
                  p = shortestPath((a)-[:RELATED_TO*..{depth}]-(b))
            RETURN [n IN nodes(p) | n.name] AS nodes,
                   [r IN relationships(p) | {_REL_PROJECTION}] AS relations
            """,
            {"a": start, "b": goal},
        )
        if not rows:
            return None
        relations = [
            r for r in (RelationRecord.from_dict(x) for x in rows[0].get("relations") or []) if r
        ]
        return GraphPath(nodes=[str(n) for n in rows[0].get("nodes") or []], relations=relations)

    def neighbors(self, name: str, depth: int = 1, limit: int = 20) -> list[dict[str, Any]]:
        hops = max(1, int(depth))
        rows = self._run(
            f"""
            MATCH path = (p:Person {{name: $name}})-[:RELATED_TO*1..{hops}]-(o:Person)
            WHERE o.name <> $name
            RETURN o.name AS name, min(length(path)) AS distance
            ORDER BY distance ASC, name ASC
            LIMIT $limit
            """,
            {"name": str(name or "").strip(), "limit": max(0, int(limit))},
        )
        return [{"name": str(r["name"]), "distance": int(r["distance"])} for r in rows]

    def stats(self) -> dict[str, Any]:
        people = self._run("MATCH (p:Person) RETURN count(p) AS n")
        relations = self._run("MATCH ()-[r:RELATED_TO]->() RETURN count(r) AS n")
        return {
            "backend": self.name,
            "people": int(people[0]["n"]) if people else 0,
            "relations": int(relations[0]["n"]) if relations else 0,
        }

    def _run(self, statement: str, parameters: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        body = self._post(
            {"statements": [{"statement": statement, "parameters": parameters or {}}]}
        )
        errors = body.get("errors") or []
        if errors:
            first = errors[0] if isinstance(errors[0], dict) else {}
            code = str(first.get("code") or "")
            message = f"{code}: {first.get('message') or ''}"
            if ".TransientError." in code:
                raise TransientServiceError(message, service="neo4j")
            raise PermanentServiceError(message, service="neo4j")
        results = body.get("results") or []
        if not results:
            return []
        columns = results[0].get("columns") or []
        return [
            dict(zip(columns, item.get("row") or []))
            for item in results[0].get("data") or []
        ]

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        if not self.base_url:
            raise PermanentServiceError("neo4j base_url is required", service="neo4j")
        token = base64.b64encode(f"{self.user}:{self.password}".encode("utf-8")).decode("ascii")
        req = request.Request(
            url=f"{self.base_url}/db/{parse.quote(self.database, safe='')}/tx/commit",
            data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json;charset=UTF-8",
                "Authorization": f"Basic {token}",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            kind = classify_http_status(exc.code)
            raise kind(f"HTTP {exc.code}: {detail[:260]}", service="neo4j", status=exc.code) from exc
        except (error.URLError, socket.timeout, ConnectionError, TimeoutError) as exc:
            raise TransientServiceError(f"request failed: {exc}", service="neo4j") from exc
        try:
            body = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PermanentServiceError(f"invalid JSON: {raw[:200]}", service="neo4j") from exc
        if not isinstance(body, dict):
            raise PermanentServiceError("response is not an object", service="neo4j")
        return body
