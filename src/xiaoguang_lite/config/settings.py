from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_unit(name: str, default: str) -> float:
    return max(0.0, min(1.0, float(os.getenv(name, default))))


def _default_data_dir() -> Path:
    if os.name == "nt":
        base = os.getenv("LOCALAPPDATA")
        if base:
            return Path(base) / "Xiaoguang"
        return Path.home() / "AppData" / "Local" / "Xiaoguang"
    xdg = os.getenv("XDG_DATA_HOME")
    if xdg:
        return Path(xdg) / "xiaoguang"
    return Path.home() / ".local" / "share" / "xiaoguang"


@dataclass(frozen=True)
class LiteSettings:
    app_name: str
    host: str
    port: int
    log_level: str
    data_dir: Path
    db_path: Path
    vector_dir: Path
    graph_dir: Path
    vector_backend: str
    vector_dim: int
    vector_lancedb_enabled: bool
    vector_index_metric: str
    chroma_url: str
    chroma_tenant: str
    chroma_database: str
    graph_backend: str
    neo4j_url: str
    neo4j_database: str
    neo4j_user: str
    neo4j_password: str
    embedding_provider: str
    embedding_base_url: str
    embedding_api_key: str
    embedding_model: str
    chat_base_url: str
    chat_api_key: str
    chat_model: str
    memory_evaluator_enabled: bool
    retry_preset: str
    retrieval_profile: str
    max_total_tokens: int
    world_max_injection_tokens: int
    world_min_semantic_score: float
    consolidation_promote_salience: float
    consolidation_access_threshold: int
    consolidation_reject_salience: float
    short_term_max_age_days: int
    query_embed_cache_size: int
    query_embed_cache_ttl_sec: int
    seed_defaults: bool

    @classmethod
    def from_env(cls) -> "LiteSettings":
        data_dir_raw = os.getenv("XG_DATA_DIR")
        if not data_dir_raw:
            data_dir_raw = str(_default_data_dir())
        data_dir = Path(data_dir_raw).resolve()
        db_path = Path(os.getenv("XG_DB_PATH", str(data_dir / "xiaoguang.db"))).resolve()
        vector_dir = Path(os.getenv("XG_VECTOR_DIR", str(data_dir / "lancedb"))).resolve()
        graph_dir = Path(os.getenv("XG_GRAPH_DIR", str(data_dir / "graph"))).resolve()
        return cls(
            app_name=os.getenv("XG_APP_NAME", "Xiaoguang"),
            host=os.getenv("XG_HOST", "127.0.0.1"),
            port=int(os.getenv("XG_PORT", "20196")),
            log_level=os.getenv("XG_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            data_dir=data_dir,
            db_path=db_path,
            vector_dir=vector_dir,
            graph_dir=graph_dir,
            vector_backend=os.getenv("XG_VECTOR_BACKEND", "local").strip().lower() or "local",
            vector_dim=max(8, int(os.getenv("XG_VECTOR_DIM", "384"))),
            vector_lancedb_enabled=_env_bool("XG_VECTOR_LANCEDB_ENABLED", True),
            vector_index_metric=str(os.getenv("XG_VECTOR_INDEX_METRIC", "cosine")).strip()
            or "cosine",
            chroma_url=os.getenv("XG_CHROMA_URL", "http://127.0.0.1:8000"),
            chroma_tenant=os.getenv("XG_CHROMA_TENANT", "default_tenant"),
            chroma_database=os.getenv("XG_CHROMA_DATABASE", "default_database"),
            graph_backend=os.getenv("XG_GRAPH_BACKEND", "local").strip().lower() or "local",
            neo4j_url=os.getenv("XG_NEO4J_URL", "http://127.0.0.1:7474"),
            neo4j_database=os.getenv("XG_NEO4J_DATABASE", "neo4j"),
            neo4j_user=os.getenv("XG_NEO4J_USER", "neo4j"),
            neo4j_password=os.getenv("XG_NEO4J_PASSWORD", ""),
            embedding_provider=os.getenv("XG_EMBEDDING_PROVIDER", "hash").strip().lower()
            or "hash",
            embedding_base_url=os.getenv(
                "XG_EMBEDDING_BASE_URL", "https://api.siliconflow.cn/v1/embeddings"
            ),
            embedding_api_key=os.getenv("XG_EMBEDDING_API_KEY", ""),
            embedding_model=os.getenv("XG_EMBEDDING_MODEL", "BAAI/bge-large-zh-v1.5"),
            chat_base_url=os.getenv("XG_CHAT_BASE_URL", "https://api.siliconflow.cn/v1"),
            chat_api_key=os.getenv("XG_CHAT_API_KEY", ""),
            chat_model=os.getenv("XG_CHAT_MODEL", "Qwen/Qwen3-8B"),
            memory_evaluator_enabled=_env_bool("XG_MEMORY_EVALUATOR_ENABLED", False),
            retry_preset=os.getenv("XG_RETRY_PRESET", "default").strip().lower() or "default",
            retrieval_profile=os.getenv("XG_RETRIEVAL_PROFILE", "hybrid"),
            max_total_tokens=max(100, int(os.getenv("XG_MAX_TOTAL_TOKENS", "3000"))),
            world_max_injection_tokens=max(
                0, int(os.getenv("XG_WORLD_MAX_INJECTION_TOKENS", "2000"))
            ),
            world_min_semantic_score=_env_unit("XG_WORLD_MIN_SEMANTIC_SCORE", "0.35"),
            consolidation_promote_salience=_env_unit(
                "XG_CONSOLIDATION_PROMOTE_SALIENCE", "0.6"
            ),
            consolidation_access_threshold=max(
                1, int(os.getenv("XG_CONSOLIDATION_ACCESS_THRESHOLD", "5"))
            ),
            consolidation_reject_salience=_env_unit(
                "XG_CONSOLIDATION_REJECT_SALIENCE", "0.3"
            ),
            short_term_max_age_days=max(1, int(os.getenv("XG_SHORT_TERM_MAX_AGE_DAYS", "7"))),
            query_embed_cache_size=max(
                0, int(os.getenv("XG_QUERY_EMBED_CACHE_SIZE", "256"))
            ),
            query_embed_cache_ttl_sec=max(
                30, int(os.getenv("XG_QUERY_EMBED_CACHE_TTL_SEC", "600"))
            ),
            seed_defaults=_env_bool("XG_SEED_DEFAULTS", True),
        )
