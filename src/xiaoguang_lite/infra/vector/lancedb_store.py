from __future__ import annotations

import heapq
import json
import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any

import lancedb

from xiaoguang_lite.infra.vector.common import (
    VectorHit,
    clean_metadata,
    cosine,
    metadata_matches,
)

logger = logging.getLogger(__name__)


class LanceVectorStore:
    """Embedded vector index.

    Rows go to one LanceDB table (partitioned by a ``collection`` column) when
    ``use_lancedb`` is set; otherwise, or when LanceDB rejects a write, they are
    kept in memory and persisted as a JSONL operation log plus a compacted
    snapshot. Queries search both and merge by id.
    """

    name = "local"
    SNAPSHOT_FILE = "vector_rows.snapshot.json"
    LOG_FILE = "vector_rows.log.jsonl"
    COMPACT_MIN_OPS = 200
    TABLE_NAME = "xiaoguang_vectors"
    INDEX_MIN_ROWS = 256

    def __init__(
        self,
        db_dir: Path,
        vector_dim: int,
        *,
        use_lancedb: bool = True,
        index_metric: str = "cosine",
        index_rebuild_every: int = 128,
    ) -> None:
        self.db_dir = Path(db_dir)
        self.db_dir.mkdir(parents=True, exist_ok=True)
        self.vector_dim = int(vector_dim)
        self.lance_enabled = False
        self._rows: dict[str, dict[str, Any]] = {}
        self._lock = Lock()
        self._snapshot_path = self.db_dir / self.SNAPSHOT_FILE
        self._log_path = self.db_dir / self.LOG_FILE
        self._log_ops = 0
        self._use_lancedb = bool(use_lancedb)
        self._index_metric = str(index_metric or "cosine").strip().lower() or "cosine"
        self._index_rebuild_pending = 0
        self._index_rebuild_every = max(1, int(index_rebuild_every))
        self._lance_db: Any = None
        self._lance_table: Any = None
        self._init_lance()
        self._load_from_disk()

    def available(self) -> bool:
        return True

    def upsert(
        self,
        collection: str,
        doc_id: str,
        vector: list[float],
        document: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if len(vector) != self.vector_dim:
            raise ValueError(
                f"vector dimension {len(vector)} does not match index dimension {self.vector_dim}"
            )
        row = {
            "uid": _uid(collection, doc_id),
            "collection": collection,
            "doc_id": doc_id,
            "vector": [float(x) for x in vector],
            "document": str(document or ""),
            "metadata": clean_metadata(metadata),
        }
        with self._lock:
            if self._upsert_lancedb_locked(row):
                if row["uid"] in self._rows:
                    self._rows.pop(row["uid"], None)
                    self._append_log_locked({"op": "delete", "uid": row["uid"]})
                return
            self._rows[row["uid"]] = row
            self._append_log_locked({"op": "upsert", "row": row})
            if self._should_compact_locked():
                self._compact_locked()

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[VectorHit]:
        with self._lock:
            rows = [r for r in self._rows.values() if r["collection"] == collection]
            table = self._lance_table if self.lance_enabled else None
        limit = max(1, int(top_k))
        merged: dict[str, VectorHit] = {}
        for hit in [
            *self._search_local(rows, vector, limit, where),
            *self._search_lancedb(table, collection, vector, limit, where),
        ]:
            existing = merged.get(hit.id)
            if existing is None or hit.score > existing.score:
                merged[hit.id] = hit
        result = sorted(merged.values(), key=lambda h: h.score, reverse=True)
        return result[:limit]

    def delete(self, collection: str, doc_id: str) -> None:
        uid = _uid(collection, doc_id)
        with self._lock:
            if uid in self._rows:
                self._rows.pop(uid, None)
                self._append_log_locked({"op": "delete", "uid": uid})
            if self.lance_enabled and self._lance_table is not None:
                try:
                    self._lance_table.delete(f"uid = '{_quote_sql(uid)}'")
                except Exception as exc:
                    logger.warning("[LanceVectorStore] delete %s failed: %s", uid, exc)

    def count(self, collection: str) -> int:
        with self._lock:
            local = sum(1 for r in self._rows.values() if r["collection"] == collection)
            table = self._lance_table if self.lance_enabled else None
        if table is None:
            return local
        try:
            return local + int(table.count_rows(f"collection = '{_quote_sql(collection)}'"))
        except Exception as exc:
            logger.warning("[LanceVectorStore] count failed: %s", exc)
            return local

    def _search_local(
        self,
        rows: list[dict[str, Any]],
        vector: list[float],
        top_k: int,
        where: dict[str, Any] | None,
    ) -> list[VectorHit]:
        heap: list[tuple[float, str, VectorHit]] = []
        for row in rows:
            if not metadata_matches(row["metadata"], where):
                continue
            sim = cosine(vector, row["vector"])
            hit = VectorHit(
                id=row["doc_id"],
                document=row["document"],
                metadata=dict(row["metadata"]),
                distance=float(max(0.0, 1.0 - sim)),
            )
            entry = (float(sim), row["uid"], hit)
            if len(heap) < top_k:
                heapq.heappush(heap, entry)
            else:
                heapq.heappushpop(heap, entry)
        return [entry[2] for entry in sorted(heap, reverse=True)]

    def _search_lancedb(
        self,
        table: Any,
        collection: str,
        vector: list[float],
        top_k: int,
        where: dict[str, Any] | None,
    ) -> list[VectorHit]:
        if table is None:
            return []
        # metadata filters run after the ANN search, so over-fetch
        limit = max(24, top_k * 6) if where else top_k
        try:
            query = table.search(vector)
            if hasattr(query, "metric"):
                query = query.metric(self._index_metric)
            query = query.where(f"collection = '{_quote_sql(collection)}'", prefilter=True)
            rows = query.limit(limit).to_list()
        except Exception as exc:
            logger.warning("[LanceVectorStore] search failed: %s", exc)
            return []
        out: list[VectorHit] = []
        for row in rows:
            if not isinstance(row, dict):
                continue
            try:
                metadata = json.loads(str(row.get("metadata_json") or "{}"))
            except json.JSONDecodeError:
                metadata = {}
            if not isinstance(metadata, dict) or not metadata_matches(metadata, where):
                continue
            raw_distance = row.get("_distance")
            distance = float(raw_distance) if raw_distance is not None else 1.0
            out.append(
                VectorHit(
                    id=str(row.get("doc_id", "")),
                    document=str(row.get("document", "")),
                    metadata=metadata,
                    distance=float(max(0.0, distance)),
                )
            )
        return out

    def _init_lance(self) -> None:
        if not self._use_lancedb:
            return
        try:
            self._lance_db = lancedb.connect(str(self.db_dir))
            listed = self._lance_db.table_names()
            if self.TABLE_NAME in {str(x) for x in listed}:
                self._lance_table = self._lance_db.open_table(self.TABLE_NAME)
            self.lance_enabled = True
        except Exception as exc:
            logger.warning(
                "[LanceVectorStore] lancedb unavailable at %s, using local rows: %s",
                self.db_dir,
                exc,
            )
            self.lance_enabled = False
            self._lance_db = None
            self._lance_table = None

    def _upsert_lancedb_locked(self, row: dict[str, Any]) -> bool:
        if not self.lance_enabled or self._lance_db is None:
            return False
        record = {
            "uid": row["uid"],
            "collection": row["collection"],
            "doc_id": row["doc_id"],
            "vector": row["vector"],
            "document": row["document"],
            "metadata_json": json.dumps(row["metadata"], ensure_ascii=False),
        }
        try:
            if self._lance_table is None:
                self._lance_table = self._lance_db.create_table(
                    self.TABLE_NAME, data=[record]
                )
                return True
            self._lance_table.delete(f"uid = '{_quote_sql(row['uid'])}'")
            self._lance_table.add([record])
        except Exception as exc:
            logger.warning("[LanceVectorStore] lancedb write failed: %s", exc)
            return False
        self._index_rebuild_pending += 1
        if self._index_rebuild_pending >= self._index_rebuild_every:
            self._index_rebuild_pending = 0
            self._rebuild_index_locked()
        return True

    def _rebuild_index_locked(self) -> None:
        if self._lance_table is None:
            return
        try:
            if int(self._lance_table.count_rows()) < self.INDEX_MIN_ROWS:
                return
            self._lance_table.create_index(
                metric=self._index_metric, vector_column_name="vector", replace=True
            )
        except Exception as exc:
            # brute-force search still works without an index
            logger.debug("[LanceVectorStore] index build skipped: %s", exc)

    def _load_from_disk(self) -> None:
        try:
            if self._snapshot_path.exists():
                self._load_snapshot()
            if self._log_path.exists():
                self._replay_log()
        except (OSError, ValueError) as exc:
            logger.error("[LanceVectorStore] failed to restore local rows: %s", exc)
            self._rows = {}
            self._log_ops = 0

    def _load_snapshot(self) -> None:
        payload = json.loads(self._snapshot_path.read_text(encoding="utf-8"))
        items = payload.get("rows") if isinstance(payload, dict) else None
        if not isinstance(items, list):
            return
        restored: dict[str, dict[str, Any]] = {}
        for item in items:
            row = self._normalize_row(item)
            if row:
                restored[row["uid"]] = row
        self._rows = restored

    def _replay_log(self) -> None:
        ops = 0
        with self._log_path.open("r", encoding="utf-8") as fh:
            for line in fh:
                text = line.strip()
                if not text:
                    continue
                try:
                    evt = json.loads(text)
                except json.JSONDecodeError:
                    continue
                if not isinstance(evt, dict):
                    continue
                op = str(evt.get("op"))
                if op == "delete":
                    uid = str(evt.get("uid", "")).strip()
                    if uid:
                        self._rows.pop(uid, None)
                        ops += 1
                    continue
                if op != "upsert":
                    continue
                row = self._normalize_row(evt.get("row"))
                if row:
                    self._rows[row["uid"]] = row
                    ops += 1
        self._log_ops = ops

    def _normalize_row(self, value: Any) -> dict[str, Any] | None:
        if not isinstance(value, dict):
            return None
        collection = str(value.get("collection", "")).strip()
        doc_id = str(value.get("doc_id", "")).strip()
        raw_vector = value.get("vector")
        if not collection or not doc_id or not isinstance(raw_vector, list):
            return None
        vector = [float(x) for x in raw_vector if isinstance(x, (int, float))]
        if len(vector) != self.vector_dim:
            return None
        raw_meta = value.get("metadata")
        return {
            "uid": _uid(collection, doc_id),
            "collection": collection,
            "doc_id": doc_id,
            "vector": vector,
            "document": str(value.get("document", "")),
            "metadata": dict(raw_meta) if isinstance(raw_meta, dict) else {},
        }

    def _append_log_locked(self, event: dict[str, Any]) -> None:
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with self._log_path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(event, ensure_ascii=False))
            fh.write("\n")
        self._log_ops += 1

    def _should_compact_locked(self) -> bool:
        row_count = len(self._rows)
        if row_count <= 0 or self._log_ops < self.COMPACT_MIN_OPS:
            return False
        return self._log_ops >= row_count * 2

    def _compact_locked(self) -> None:
        tmp_snapshot = self._snapshot_path.with_suffix(".tmp")
        payload = {"rows": list(self._rows.values())}
        tmp_snapshot.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")),
            encoding="utf-8",
        )
        os.replace(tmp_snapshot, self._snapshot_path)
        tmp_log = self._log_path.with_suffix(".tmp")
        tmp_log.write_text("", encoding="utf-8")
        os.replace(tmp_log, self._log_path)
        self._log_ops = 0


def _uid(collection: str, doc_id: str) -> str:
    return f"{collection}:{doc_id}"


def _quote_sql(value: str) -> str:
    return str(value).replace("'", "''")
