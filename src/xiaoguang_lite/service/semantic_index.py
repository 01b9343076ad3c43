from __future__ import annotations

import logging
import time
from collections import OrderedDict
from functools import partial
from threading import Lock
from typing import Any, Protocol

import anyio

from xiaoguang_lite.domain.retry import DEFAULT, Outcome, RetryPolicy
from xiaoguang_lite.infra.vector.common import VectorHit

logger = logging.getLogger(__name__)


class EmbeddingProviderProtocol(Protocol):
    def embed(self, text: str) -> list[float]:
        ...


class VectorStoreProtocol(Protocol):
    name: str

    def available(self) -> bool:
        ...

    def upsert(
        self,
        collection: str,
        doc_id: str,
        vector: list[float],
        document: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        ...

    def query(
        self,
        collection: str,
        vector: list[float],
        top_k: int = 10,
        where: dict[str, Any] | None = None,
    ) -> list[VectorHit]:
        ...

    def delete(self, collection: str, doc_id: str) -> None:
        ...

    def count(self, collection: str) -> int:
        ...


class SemanticIndex:
    """Embeds text and talks to a vector store through the retry policy.

    Every public method returns an ``Outcome``; callers decide whether a
    failure degrades to an empty result.
    """

    def __init__(
        self,
        store: VectorStoreProtocol,
        embedder: EmbeddingProviderProtocol,
        *,
        dim: int,
        retry_policy: RetryPolicy = DEFAULT,
        query_cache_size: int = 256,
        query_cache_ttl_sec: int = 600,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.dim = max(8, int(dim))
        self.retry_policy = retry_policy
        self.query_cache_size = max(0, int(query_cache_size))
        self.query_cache_ttl_sec = max(0, int(query_cache_ttl_sec))
        self._query_cache: OrderedDict[str, tuple[int, list[float]]] = OrderedDict()
        self._cache_lock = Lock()
        self._stats: dict[str, int] = {}
        self._stats_lock = Lock()

    async def index(
        self,
        collection: str,
        doc_id: str,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> Outcome[None]:
        outcome = await self.retry_policy.execute(
            partial(
                anyio.to_thread.run_sync,
                partial(self._index_sync, collection, doc_id, text, metadata),
            ),
            f"vector.upsert[{collection}]",
        )
        self._record("indexed.ok" if outcome.ok else "indexed.failed")
        return outcome

    async def search(
        self,
        collection: str,
        text: str,
        *,
        top_k: int = 10,
        where: dict[str, Any] | None = None,
    ) -> Outcome[list[VectorHit]]:
        outcome = await self.retry_policy.execute(
            partial(
                anyio.to_thread.run_sync,
                partial(self._search_sync, collection, text, top_k, where),
            ),
            f"vector.query[{collection}]",
        )
        self._record("search.ok" if outcome.ok else "search.failed")
        return outcome

    async def remove(self, collection: str, doc_id: str) -> Outcome[None]:
        return await self.retry_policy.execute(
            partial(anyio.to_thread.run_sync, partial(self.store.delete, collection, doc_id)),
            f"vector.delete[{collection}]",
        )

    async def count(self, collection: str) -> Outcome[int]:
        return await self.retry_policy.execute(
            partial(anyio.to_thread.run_sync, partial(self.store.count, collection)),
            f"vector.count[{collection}]",
        )

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._stats)
        return {"backend": self.store.name, "dim": self.dim, **counters}

    def _index_sync(
        self,
        collection: str,
        doc_id: str,
        text: str,
        metadata: dict[str, Any] | None,
    ) -> None:
        vector = self._fit_vector_dim(self.embedder.embed(text))
        self.store.upsert(collection, doc_id, vector, text, metadata)

    def _search_sync(
        self,
        collection: str,
        text: str,
        top_k: int,
        where: dict[str, Any] | None,
    ) -> list[VectorHit]:
        return self.store.query(collection, self._embed_query(text), top_k, where)

    def _embed_query(self, query: str) -> list[float]:
        key = str(query or "").strip()
        if not key or self.query_cache_size <= 0:
            return self._fit_vector_dim(self.embedder.embed(key))
        now = int(time.time())
        with self._cache_lock:
            cached = self._query_cache.get(key)
            if cached and now - cached[0] <= self.query_cache_ttl_sec:
                self._query_cache.move_to_end(key)
                return list(cached[1])
            if cached:
                self._query_cache.pop(key, None)
        vec = self._fit_vector_dim(self.embedder.embed(key))
        with self._cache_lock:
            self._query_cache[key] = (now, vec)
            self._query_cache.move_to_end(key)
            while len(self._query_cache) > self.query_cache_size:
                self._query_cache.popitem(last=False)
        return list(vec)

    def _fit_vector_dim(self, vector: list[float]) -> list[float]:
        safe = [float(x) for x in vector if isinstance(x, (int, float))]
        if len(safe) >= self.dim:
            return safe[: self.dim]
        return safe + [0.0] * (self.dim - len(safe))

    def _record(self, key: str) -> None:
        with self._stats_lock:
            self._stats[key] = int(self._stats.get(key, 0)) + 1
