from __future__ import annotations

import logging
from functools import partial
from typing import Any, Protocol

import anyio

from xiaoguang_lite.domain.retry import DEFAULT, RetryPolicy
from xiaoguang_lite.infra.graph.common import GraphPath, RelationRecord

logger = logging.getLogger(__name__)


class GraphStoreProtocol(Protocol):
    name: str

    def available(self) -> bool:
        ...

    def record_relation(
        self,
        person_a: str,
        person_b: str,
        relation_type: str,
        description: str = "",
        confidence: float = 0.5,
        source: str = "",
    ) -> RelationRecord:
        ...

    def person_relations(self, name: str, limit: int = 10) -> list[RelationRecord]:
        ...

    def shortest_path(self, person_a: str, person_b: str, max_depth: int = 4) -> GraphPath | None:
        ...

    def neighbors(self, name: str, depth: int = 1, limit: int = 20) -> list[dict[str, Any]]:
        ...

    def stats(self) -> dict[str, Any]:
        ...


class RelationshipNetwork:
    """Person-to-person relation graph behind the retry policy.

    A graph outage never propagates: writes return None, reads return empty
    results, and the failure is logged.
    """

    def __init__(self, store: GraphStoreProtocol, *, retry_policy: RetryPolicy = DEFAULT) -> None:
        self.store = store
        self.retry_policy = retry_policy

    async def _call(self, name: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        return await self.retry_policy.execute(
            partial(anyio.to_thread.run_sync, partial(fn, *args, **kwargs)),
            f"graph.{name}",
        )

    async def record_relation(
        self,
        person_a: str,
        person_b: str,
        relation_type: str,
        *,
        description: str = "",
        confidence: float = 0.5,
        source: str = "",
    ) -> RelationRecord | None:
        outcome = await self._call(
            "record_relation",
            self.store.record_relation,
            person_a,
            person_b,
            relation_type,
            description,
            confidence,
            source,
        )
        if not outcome.ok:
            logger.error(
                "[RelationshipNetwork] relation %s-%s not recorded: %s",
                person_a,
                person_b,
                outcome.error,
            )
            return None
        return outcome.value

    async def person_relations(self, name: str, limit: int = 10) -> list[RelationRecord]:
        outcome = await self._call("person_relations", self.store.person_relations, name, limit)
        if not outcome.ok:
            logger.error("[RelationshipNetwork] relations of %s unavailable: %s", name, outcome.error)
            return []
        return list(outcome.value or [])

    async def relation_count(self, name: str) -> int:
        return len(await self.person_relations(name, limit=1000))

    async def find_path(
        self, person_a: str, person_b: str, max_depth: int = 4
    ) -> GraphPath | None:
        outcome = await self._call(
            "shortest_path", self.store.shortest_path, person_a, person_b, max_depth
        )
        if not outcome.ok:
            logger.error(
                "[RelationshipNetwork] path %s -> %s unavailable: %s",
                person_a,
                person_b,
                outcome.error,
            )
            return None
        return outcome.value

    async def neighbors(self, name: str, depth: int = 1, limit: int = 20) -> list[dict[str, Any]]:
        outcome = await self._call("neighbors", self.store.neighbors, name, depth, limit)
        if not outcome.ok:
            logger.error("[RelationshipNetwork] neighbors of %s unavailable: %s", name, outcome.error)
            return []
        return list(outcome.value or [])

    async def stats(self) -> dict[str, Any]:
        outcome = await self._call("stats", self.store.stats)
        if not outcome.ok:
            return {"backend": self.store.name, "available": False, "error": str(outcome.error)}
        return {**(outcome.value or {}), "available": True}
