from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RetrievalConfig:
    max_total_tokens: int = 3000
    max_memories_per_retrieval: int = 20
    min_relevance: float = 0.3
    enable_semantic_search: bool = True
    enable_graph_retrieval: bool = True
    enable_relationship_retrieval: bool = True
    semantic_top_k: int = 10
    rrf_k: int = 60
    max_people: int = 5
    relations_per_person: int = 5
    path_max_depth: int = 5


@dataclass(frozen=True)
class RetrievalProfile:
    name: str
    semantic_enabled: bool
    graph_enabled: bool
    relationship_enabled: bool
    min_relevance: float
    max_memories: int
    semantic_top_k: int
    rrf_k: int

    def to_config(self, max_total_tokens: int = 3000) -> RetrievalConfig:
        return RetrievalConfig(
            max_total_tokens=max_total_tokens,
            max_memories_per_retrieval=self.max_memories,
            min_relevance=self.min_relevance,
            enable_semantic_search=self.semantic_enabled,
            enable_graph_retrieval=self.graph_enabled,
            enable_relationship_retrieval=self.relationship_enabled,
            semantic_top_k=self.semantic_top_k,
            rrf_k=self.rrf_k,
        )


PROFILE_PRESETS: dict[str, RetrievalProfile] = {
    "keyword": RetrievalProfile(
        name="keyword",
        semantic_enabled=False,
        graph_enabled=False,
        relationship_enabled=False,
        min_relevance=0.3,
        max_memories=20,
        semantic_top_k=0,
        rrf_k=60,
    ),
    "hybrid": RetrievalProfile(
        name="hybrid",
        semantic_enabled=True,
        graph_enabled=False,
        relationship_enabled=True,
        min_relevance=0.3,
        max_memories=20,
        semantic_top_k=10,
        rrf_k=60,
    ),
    "graph": RetrievalProfile(
        name="graph",
        semantic_enabled=True,
        graph_enabled=True,
        relationship_enabled=True,
        min_relevance=0.25,
        max_memories=30,
        semantic_top_k=20,
        rrf_k=80,
    ),
}
