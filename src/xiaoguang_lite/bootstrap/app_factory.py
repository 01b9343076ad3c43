from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from xiaoguang_lite.api.routes.characters import router as characters_router
from xiaoguang_lite.api.routes.graph import router as graph_router
from xiaoguang_lite.api.routes.health import router as health_router
from xiaoguang_lite.api.routes.identities import router as identities_router
from xiaoguang_lite.api.routes.knowledge import router as knowledge_router
from xiaoguang_lite.api.routes.world_book import router as world_book_router
from xiaoguang_lite.config.profiles import PROFILE_PRESETS
from xiaoguang_lite.config.settings import LiteSettings
from xiaoguang_lite.domain.knowledge import DAY_MS
from xiaoguang_lite.domain.retry import RetryPolicy
from xiaoguang_lite.infra.graph.local_store import LocalRelationGraph
from xiaoguang_lite.infra.graph.neo4j_store import Neo4jGraphStore
from xiaoguang_lite.infra.sqlite.character_book_repository import CharacterBookRepository
from xiaoguang_lite.infra.sqlite.db import SQLiteEngine
from xiaoguang_lite.infra.sqlite.identity_repository import IdentityRepository
from xiaoguang_lite.infra.sqlite.init_schema import init_schema
from xiaoguang_lite.infra.sqlite.world_book_repository import WorldBookRepository
from xiaoguang_lite.infra.vector.chroma_store import ChromaVectorStore
from xiaoguang_lite.infra.vector.lancedb_store import LanceVectorStore
from xiaoguang_lite.service.character_book import CharacterBook, ConsolidationSettings
from xiaoguang_lite.service.embedding import HashEmbeddingProvider
from xiaoguang_lite.service.identity_registry import IdentityRegistry
from xiaoguang_lite.service.knowledge_retrieval import KnowledgeRetrievalEngine
from xiaoguang_lite.service.master_initializer import MasterInitializer
from xiaoguang_lite.service.memory_evaluator import ChatModelMemoryEvaluator
from xiaoguang_lite.service.openai_embedding import OpenAIEmbeddingProvider
from xiaoguang_lite.service.relationship_network import RelationshipNetwork
from xiaoguang_lite.service.semantic_index import SemanticIndex
from xiaoguang_lite.service.world_book import WorldBook

logger = logging.getLogger(__name__)


def _build_vector_store(settings: LiteSettings):
    if settings.vector_backend == "chroma":
        return ChromaVectorStore(
            settings.chroma_url,
            tenant=settings.chroma_tenant,
            database=settings.chroma_database,
        )
    if settings.vector_backend == "local":
        return LanceVectorStore(
            settings.vector_dir,
            vector_dim=settings.vector_dim,
            use_lancedb=settings.vector_lancedb_enabled,
            index_metric=settings.vector_index_metric,
        )
    raise ValueError(f"unknown vector backend: {settings.vector_backend}")


def _build_graph_store(settings: LiteSettings):
    if settings.graph_backend == "neo4j":
        return Neo4jGraphStore(
            settings.neo4j_url,
            database=settings.neo4j_database,
            user=settings.neo4j_user,
            password=settings.neo4j_password,
        )
    if settings.graph_backend == "local":
        return LocalRelationGraph(settings.graph_dir)
    raise ValueError(f"unknown graph backend: {settings.graph_backend}")


def _build_embedder(settings: LiteSettings):
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingProvider(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
        )
    if settings.embedding_provider == "hash":
        return HashEmbeddingProvider(dim=settings.vector_dim)
    raise ValueError(f"unknown embedding provider: {settings.embedding_provider}")


def create_app(settings: LiteSettings) -> FastAPI:
    engine = SQLiteEngine(settings.db_path)
    init_schema(engine)
    retry_policy = RetryPolicy.preset(settings.retry_preset)
    profile = PROFILE_PRESETS.get(settings.retrieval_profile, PROFILE_PRESETS["hybrid"])
    config = profile.to_config(max_total_tokens=settings.max_total_tokens)

    semantic_index = None
    if config.enable_semantic_search:
        semantic_index = SemanticIndex(
            _build_vector_store(settings),
            _build_embedder(settings),
            dim=settings.vector_dim,
            retry_policy=retry_policy,
            query_cache_size=settings.query_embed_cache_size,
            query_cache_ttl_sec=settings.query_embed_cache_ttl_sec,
        )

    registry = IdentityRegistry(IdentityRepository(engine))
    world_book = WorldBook(
        WorldBookRepository(engine),
        semantic_index=semantic_index,
        max_injection_tokens=settings.world_max_injection_tokens,
        min_semantic_score=settings.world_min_semantic_score,
    )
    evaluator = ChatModelMemoryEvaluator(
        base_url=settings.chat_base_url,
        api_key=settings.chat_api_key,
        model=settings.chat_model,
        enabled=settings.memory_evaluator_enabled,
    )
    character_book = CharacterBook(
        CharacterBookRepository(engine),
        semantic_index=semantic_index,
        evaluator=evaluator,
        retry_policy=retry_policy,
        consolidation=ConsolidationSettings(
            promote_salience=settings.consolidation_promote_salience,
            access_threshold=settings.consolidation_access_threshold,
            reject_salience=settings.consolidation_reject_salience,
            short_term_max_age_ms=settings.short_term_max_age_days * DAY_MS,
        ),
    )
    network = RelationshipNetwork(_build_graph_store(settings), retry_policy=retry_policy)
    master_initializer = MasterInitializer(registry, character_book)
    retrieval_engine = KnowledgeRetrievalEngine(
        world_book=world_book,
        character_book=character_book,
        registry=registry,
        network=network,
        config=config,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await registry.initialize()
        if settings.seed_defaults:
            await world_book.initialize_default_entries()
            await character_book.initialize_assistant_profile()
            await master_initializer.ensure_master()
        await character_book.cleanup_expired_memories()
        logger.info(
            "[AppFactory] ready profile=%s vector=%s graph=%s",
            profile.name,
            settings.vector_backend if semantic_index is not None else "off",
            settings.graph_backend,
        )
        yield

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.sqlite_engine = engine
    app.state.retry_policy = retry_policy
    app.state.semantic_index = semantic_index
    app.state.identity_registry = registry
    app.state.world_book = world_book
    app.state.character_book = character_book
    app.state.relationship_network = network
    app.state.master_initializer = master_initializer
    app.state.retrieval_engine = retrieval_engine

    app.include_router(health_router)
    app.include_router(identities_router)
    app.include_router(knowledge_router)
    app.include_router(world_book_router)
    app.include_router(characters_router)
    app.include_router(graph_router)
    return app
