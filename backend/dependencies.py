"""Process-wide service instances, built once from Settings and injected into routes with Depends."""

from __future__ import annotations

import logging
from functools import lru_cache

from sqlalchemy.engine import Engine

from backend.api.services.analytic_store import AnalyticStore
from backend.api.services.answer_synthesizer import AnswerSynthesizer
from backend.api.services.dataset_service import DatasetService
from backend.api.services.document_processor import DocumentProcessor, DocumentTextExtractor
from backend.api.services.embeddings import EmbeddingProvider, build_embedder
from backend.api.services.knowledge_store import KnowledgeStore
from backend.api.services.llm_providers import FallbackGenerator, GenerationConfig, OfflineProviderConfig, build_generator
from backend.api.services.query_engine import QueryEngine
from backend.api.services.query_generator import QueryGenerator
from backend.api.services.retrieval import HybridRetriever
from backend.api.services.schema_discovery import SchemaDiscovery
from backend.config import get_settings
from backend.db import get_engine, init_schema, seed_sample_data

logger = logging.getLogger(__name__)


@lru_cache
def get_relational_engine() -> Engine:
    engine = get_engine(get_settings().database_url)
    init_schema(engine)
    seed_sample_data(engine)
    return engine


@lru_cache
def get_analytic_store() -> AnalyticStore:
    return AnalyticStore(get_settings().analytics_path)


@lru_cache
def get_generation_config() -> GenerationConfig:
    s = get_settings()
    return GenerationConfig(
        cloud_models=s.cloud_models,
        offline=OfflineProviderConfig(base_url=s.ollama_base_url, enabled=s.ollama_enabled, model=s.ollama_model),
    )


@lru_cache
def get_generator() -> FallbackGenerator:
    s = get_settings()
    return build_generator(get_generation_config(), api_key=s.openrouter_api_key, base_url=s.openrouter_base_url)


@lru_cache
def get_embedder() -> EmbeddingProvider | None:
    s = get_settings()
    embedder = build_embedder(s.embedding_backend, s.embedding_model, s.ollama_base_url)
    logger.info("Embedding backend: %s", embedder.name if embedder else "none (lexical retrieval)")
    return embedder


@lru_cache
def get_knowledge_store() -> KnowledgeStore:
    return KnowledgeStore(get_relational_engine())


@lru_cache
def get_document_processor() -> DocumentProcessor:
    s = get_settings()
    return DocumentProcessor(
        get_knowledge_store(),
        DocumentTextExtractor(),
        embedder=get_embedder(),
        chunk_size=s.chunk_size,
        chunk_overlap=s.chunk_overlap,
    )


@lru_cache
def get_retriever() -> HybridRetriever:
    return HybridRetriever(get_knowledge_store(), get_embedder(), default_top_k=get_settings().top_k)


@lru_cache
def get_dataset_service() -> DatasetService:
    return DatasetService(get_relational_engine(), get_analytic_store())


@lru_cache
def get_query_engine() -> QueryEngine:
    s = get_settings()
    generator = get_generator()
    dataset_service = get_dataset_service()
    return QueryEngine(
        relational=get_relational_engine(),
        analytic=dataset_service.analytic,
        schema_discovery=SchemaDiscovery(get_relational_engine(), dataset_service),
        query_generator=QueryGenerator(generator),
        generator=generator,
        retriever=get_retriever(),
        synthesizer=AnswerSynthesizer(generator),
        max_repair_attempts=s.max_repair_attempts,
        topic_gating=s.topic_gating,
        top_k=s.top_k,
    )
