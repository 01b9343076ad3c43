from __future__ import annotations

import json
import logging
import os
from collections import deque
from pathlib import Path
from threading import Lock
from typing import Any

from xiaoguang_lite.domain.identity import now_ms
from xiaoguang_lite.infra.graph.common import (
    GraphPath,
    RelationRecord,
    merge_confidence,
    normalize_pair,
)

logger = logging.getLogger(__name__)


class LocalRelationGraph:
    """Person relation graph kept in memory and appended to a JSONL file.

    Each line is the latest state of one (person_a, person_b) pair; replaying
    the file keeps the last line per pair.
    """

    name = "local"
    ROWS_FILE = "relations.jsonl"
    COMPACT_MIN_OPS = 200

    def __init__(self, graph_dir: Path) -> None:
        self.graph_dir = Path(graph_dir)
        self.graph_dir.mkdir(parents=True, exist_ok=True)
        self._rows_path = self.graph_dir / self.ROWS_FILE
        self._lock = Lock()
        self._relations: dict[tuple[str, str], RelationRecord] = {}
        self._adjacency: dict[str, set[str]] = {}
        self._log_ops = 0
        self._load_rows()

    def available(self) -> bool:
        return True

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
        conf = max(0.0, min(1.0, float(confidence)))
        ts = now_ms()
        with self._lock:
            existing = self._relations.get((a, b))
            if existing is not None:
                conf = merge_confidence(existing.confidence, conf)
            record = RelationRecord(
                person_a=a,
                person_b=b,
                relation_type=kind,
                description=str(description or ""),
                confidence=conf,
                source=str(source or ""),
                created_at=existing.created_at if existing else ts,
                updated_at=ts,
            )
            self._put_locked(record)
            self._append_locked(record)
            if self._log_ops >= self.COMPACT_MIN_OPS and self._log_ops >= 2 * len(
                self._relations
            ):
                self._compact_locked()
        return record

    def person_relations(self, name: str, limit: int = 10) -> list[RelationRecord]:
        key = str(name or "").strip()
        with self._lock:
            out = [
                self._relations[_edge(key, other)]
                for other in self._adjacency.get(key, set())
            ]
        out.sort(key=lambda r: (r.confidence, r.updated_at), reverse=True)
        return out[: max(0, int(limit))]

    def shortest_path(self, person_a: str, person_b: str, max_depth: int = 4) -> GraphPath | None:
        start = str(person_a or "").strip()
        goal = str(person_b or "").strip()
        with self._lock:
            adjacency = {k: set(v) for k, v in self._adjacency.items()}
            relations = dict(self._relations)
        if start not in adjacency or goal not in adjacency:
            return None
        if start == goal:
            return GraphPath(nodes=[start], relations=[])
        parents: dict[str, str] = {start: start}
        frontier = deque([(start, 0)])
        while frontier:
            node, depth = frontier.popleft()
            if depth >= max_depth:
                continue
            for nxt in sorted(adjacency.get(node, ())):
                if nxt in parents:
                    continue
                parents[nxt] = node
                if nxt == goal:
                    return _build_path(parents, goal, relations)
                frontier.append((nxt, depth + 1))
        return None

    def neighbors(self, name: str, depth: int = 1, limit: int = 20) -> list[dict[str, Any]]:
        start = str(name or "").strip()
        with self._lock:
            adjacency = {k: set(v) for k, v in self._adjacency.items()}
        if start not in adjacency:
            return []
        seen = {start}
        out: list[dict[str, Any]] = []
        frontier = deque([(start, 0)])
        while frontier and len(out) < limit:
            node, dist = frontier.popleft()
            if dist >= depth:
                continue
            for nxt in sorted(adjacency.get(node, ())):
                if nxt in seen:
                    continue
                seen.add(nxt)
                out.append({"name": nxt, "distance": dist + 1})
                frontier.append((nxt, dist + 1))
                if len(out) >= limit:
                    break
        return out

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "backend": self.name,
                "people": len(self._adjacency),
                "relations": len(self._relations),
            }

    def _put_locked(self, record: RelationRecord) -> None:
        self._relations[(record.person_a, record.person_b)] = record
        self._adjacency.setdefault(record.person_a, set()).add(record.person_b)
        self._adjacency.setdefault(record.person_b, set()).add(record.person_a)

    def _append_locked(self, record: RelationRecord) -> None:
        with self._rows_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(record.to_dict(), ensure_ascii=False))
            fh.write("\n")
        self._log_ops += 1

    def _compact_locked(self) -> None:
        tmp = self._rows_path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            for record in self._relations.values():
                fh.write(json.dumps(record.to_dict(), ensure_ascii=False))
                fh.write("\n")
        os.replace(tmp, self._rows_path)
        self._log_ops = len(self._relations)

    def _load_rows(self) -> None:
        if not self._rows_path.exists():
            return
        ops = 0
        with self._rows_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                text = line.strip()
                if not text:
                    continue
                try:
                    payload = json.loads(text)
                except json.JSONDecodeError:
                    logger.warning("[LocalRelationGraph] skipping corrupt line")
                    continue
                record = RelationRecord.from_dict(payload)
                if record is None:
                    continue
                self._put_locked(record)
                ops += 1
        self._log_ops = ops


def _edge(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a <= b else (b, a)


def _build_path(
    parents: dict[str, str], goal: str, relations: dict[tuple[str, str], RelationRecord]
) -> GraphPath:
    nodes = [goal]
    while parents[nodes[-1]] != nodes[-1]:
        nodes.append(parents[nodes[-1]])
    nodes.reverse()
    steps = [relations[_edge(x, y)] for x, y in zip(nodes, nodes[1:])]
    return GraphPath(nodes=nodes, relations=steps)
