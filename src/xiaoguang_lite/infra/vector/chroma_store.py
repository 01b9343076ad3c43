"""
Chroma vector index over its v2 REST API.

Collections are created lazily with cosine distance and their ids are cached
per process. A 404 on a cached id re-resolves the collection and retries once.
Transport failures and 5xx/429 responses raise ``TransientServiceError`` so the
retry layer can try again; every other rejection raises
``PermanentServiceError``.
"""

from __future__ import annotations

import json
import logging
import socket
from threading import Lock
from typing import Any
from urllib import error, parse, request

from xiaoguang_lite.domain.errors import (
    PermanentServiceError,
    TransientServiceError,
    classify_http_status,
)
from xiaoguang_lite.infra.vector.common import VectorHit, clean_metadata

logger = logging.getLogger(__name__)


class ChromaVectorStore:
    name = "chroma"

    def __init__(
        self,
        base_url: str,
        *,
        tenant: str = "default_tenant",
        database: str = "default_database",
        timeout: float = 10.0,
    ) -> None:
        self.base_url = str(base_url or "").strip().rstrip("/")
        self.tenant = tenant
        self.database = database
        self.timeout = float(timeout)
        self._collections: dict[str, str] = {}
        self._lock = Lock()

    def available(self) -> bool:
        try:
            self._request("GET", "/api/v2/heartbeat")
            return True
        except (TransientServiceError, PermanentServiceError) as exc:
            logger.warning("[ChromaVectorStore] heartbeat failed: %s", exc)
            return False

    def upsert(
        self,
        collection: str,
        doc_id: str,
        vector: list[float],
        document: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        self._collection_request(
            collection,
            "POST",
            "upsert",
            {
                "ids": [doc_id],
                "embeddings": [list(vector)],
                "documents": [document],
                "metadatas": [clean_metadata(metadata)],
            },
        )

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[VectorHit]:
        payload: dict[str, Any] = {
            "query_embeddings": [list(vector)],
            "n_results": max(1, int(top_k)),
            "include": ["documents", "metadatas", "distances"],
        }
        chroma_where = _to_chroma_where(where)
        if chroma_where:
            payload["where"] = chroma_where
        body = self._collection_request(collection, "POST", "query", payload)
        if not isinstance(body, dict):
            raise PermanentServiceError("query response is not an object", service="chroma")
        ids = _first(body.get("ids"))
        documents = _first(body.get("documents"))
        metadatas = _first(body.get("metadatas"))
        distances = _first(body.get("distances"))
        hits: list[VectorHit] = []
        for i, doc_id in enumerate(ids):
            meta = metadatas[i] if i < len(metadatas) else None
            distance = distances[i] if i < len(distances) else None
            hits.append(
                VectorHit(
                    id=str(doc_id),
                    document=str(documents[i] if i < len(documents) else "") or "",
                    metadata=dict(meta) if isinstance(meta, dict) else {},
                    distance=float(distance) if distance is not None else 1.0,
                )
            )
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits

    def delete(self, collection: str, doc_id: str) -> None:
        self._collection_request(collection, "POST", "delete", {"ids": [doc_id]})

    def count(self, collection: str) -> int:
        body = self._collection_request(collection, "GET", "count")
        try:
            return int(body)
        except (TypeError, ValueError) as exc:
            raise PermanentServiceError(
                f"unexpected count response: {body!r}", service="chroma"
            ) from exc

    def _collections_path(self) -> str:
        tenant = parse.quote(self.tenant, safe="")
        database = parse.quote(self.database, safe="")
        return f"/api/v2/tenants/{tenant}/databases/{database}/collections"

    def _collection_id(self, name: str) -> str:
        with self._lock:
            cached = self._collections.get(name)
        if cached:
            return cached
        body = self._request(
            "POST",
            self._collections_path(),
            {"name": name, "get_or_create": True, "metadata": {"hnsw:space": "cosine"}},
        )
        cid = str(body.get("id") or "") if isinstance(body, dict) else ""
        if not cid:
            raise PermanentServiceError(
                f"collection {name} has no id in response", service="chroma"
            )
        with self._lock:
            self._collections[name] = cid
        logger.info("[ChromaVectorStore] using collection %s (%s)", name, cid)
        return cid

    def _collection_request(
        self, collection: str, method: str, action: str, payload: Any = None
    ) -> Any:
        cid = self._collection_id(collection)
        try:
            return self._request(method, f"{self._collections_path()}/{cid}/{action}", payload)
        except PermanentServiceError as exc:
            if exc.status != 404:
                raise
            # collection was dropped or recreated server-side; resolve it again once
            with self._lock:
                if self._collections.get(collection) == cid:
                    del self._collections[collection]
            logger.warning(
                "[ChromaVectorStore] collection %s (%s) is gone, re-resolving", collection, cid
            )
        cid = self._collection_id(collection)
        return self._request(method, f"{self._collections_path()}/{cid}/{action}", payload)

    def _request(self, method: str, path: str, payload: Any = None) -> Any:
        if not self.base_url:
            raise PermanentServiceError("chroma base_url is required", service="chroma")
        data = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(
            url=f"{self.base_url}{path}", data=data, headers=headers, method=method
        )
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="ignore")
            kind = classify_http_status(exc.code)
            raise kind(
                f"{method} {path} HTTP {exc.code}: {detail[:260]}",
                service="chroma",
                status=exc.code,
            ) from exc
        except (error.URLError, socket.timeout, ConnectionError, TimeoutError) as exc:
            raise TransientServiceError(f"{method} {path} failed: {exc}", service="chroma") from exc
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PermanentServiceError(
                f"invalid JSON from {path}: {raw[:200]}", service="chroma"
            ) from exc


def _first(value: Any) -> list[Any]:
    if isinstance(value, list) and value and isinstance(value[0], list):
        return value[0]
    return []


def _to_chroma_where(where: dict[str, Any] | None) -> dict[str, Any] | None:
    clauses = [{k: v} for k, v in (where or {}).items() if v is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}
