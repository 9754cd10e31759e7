"""
Shared fixtures for the test suite.

Provides: temp SQLite relational engine with sample data, in-memory DuckDB analytic store,
scripted fake text providers, fake embedders and fully wired services.
"""

from typing import Callable, Dict, List

import pytest

from backend.api.services.analytic_store import AnalyticStore
from backend.api.services.answer_synthesizer import RAG_SYSTEM_PROMPT, AnswerSynthesizer
from backend.api.services.dataset_service import DatasetService
from backend.api.services.document_processor import DocumentProcessor
from backend.api.services.errors import GenerationError
from backend.api.services.knowledge_store import KnowledgeStore
from backend.api.services.llm_providers import FallbackGenerator, GenerationConfig, OfflineProviderConfig
from backend.api.services.query_engine import GENERAL_SYSTEM_PROMPT, SUMMARY_SYSTEM_PROMPT, QueryEngine
from backend.api.services.query_generator import QueryGenerator
from backend.api.services.retrieval import HybridRetriever
from backend.api.services.schema_discovery import SchemaDiscovery
from backend.db import get_engine, init_schema, seed_sample_data


class FakeProvider:
    """Text provider returning scripted output and recording every call."""

    def __init__(self, name: str = "fake", responses: List[str] | None = None, handler: Callable | None = None, error: str | None = None):
        self.name = name
        self.responses = list(responses or [])
        self.handler = handler
        self.error = error
        self.calls: List[Dict[str, object]] = []

    def complete(self, system_prompt, user_prompt, temperature=0.2, max_tokens=2000):
        self.calls.append(
            {"system": system_prompt, "user": user_prompt, "temperature": temperature, "max_tokens": max_tokens}
        )
        if self.error:
            raise GenerationError(self.error)
        if self.handler is not None:
            return self.handler(system_prompt, user_prompt)
        return self.responses.pop(0) if self.responses else ""


class ScriptedChat:
    """Handler that answers by prompt kind: sql, repair, summary, general, rag."""

    def __init__(self, sql="", repairs=None, summary="Summary answer.", general="General answer.", rag="RAG answer."):
        self.sql = sql
        self.repairs = list(repairs or [])
        self.summary = summary
        self.general = general
        self.rag = rag
        self.kinds: List[str] = []

    def kind(self, system_prompt: str) -> str:
        if system_prompt.startswith("You are a SQL expert fixing"):
            return "repair"
        if system_prompt.startswith("You are a SQL expert"):
            return "sql"
        if system_prompt == SUMMARY_SYSTEM_PROMPT:
            return "summary"
        if system_prompt == GENERAL_SYSTEM_PROMPT:
            return "general"
        if system_prompt == RAG_SYSTEM_PROMPT:
            return "rag"
        return "unknown"

    def __call__(self, system_prompt, user_prompt):
        kind = self.kind(system_prompt)
        self.kinds.append(kind)
        if kind == "repair":
            return self.repairs.pop(0) if self.repairs else ""
        return getattr(self, kind, "")

    def count(self, kind: str) -> int:
        return self.kinds.count(kind)


class FakeEmbedder:
    """Embedder returning fixed vectors per text; unknown texts get `default`."""

    name = "fake-embedder"

    def __init__(self, vectors: Dict[str, List[float]] | None = None, default: List[float] | None = None, error: Exception | None = None):
        self.vectors = vectors or {}
        self.default = default or [0.0, 1.0]
        self.error = error

    def embed(self, text):
        if self.error:
            raise self.error
        return list(self.vectors.get(text, self.default))

    def embed_many(self, texts, batch_size=64):
        return [self.embed(t) for t in texts]


def make_generator(*providers: FakeProvider) -> FallbackGenerator:
    """Cloud fallback chain over the given providers, in order."""
    by_model = {p.name: p for p in providers}
    return FallbackGenerator(
        GenerationConfig(cloud_models=list(by_model)),
        cloud_factory=lambda model: by_model[model],
        offline_factory=lambda offline: by_model[offline.model],
    )


@pytest.fixture
def relational_engine(tmp_path):
    engine = get_engine(f"sqlite:///{tmp_path / 'app.db'}")
    init_schema(engine)
    seed_sample_data(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def analytic_store():
    store = AnalyticStore(":memory:")
    yield store
    store.close()


@pytest.fixture
def knowledge_store(relational_engine):
    return KnowledgeStore(relational_engine)


@pytest.fixture
def dataset_service(relational_engine, analytic_store):
    return DatasetService(relational_engine, analytic_store)


@pytest.fixture
def document_processor(knowledge_store):
    return DocumentProcessor(knowledge_store, chunk_size=200, chunk_overlap=20)


@pytest.fixture
def chat():
    return ScriptedChat()


@pytest.fixture
def fake_provider(chat):
    return FakeProvider(name="fake-model", handler=chat)


@pytest.fixture
def query_engine(relational_engine, analytic_store, dataset_service, knowledge_store, fake_provider):
    generator = make_generator(fake_provider)
    return QueryEngine(
        relational=relational_engine,
        analytic=analytic_store,
        schema_discovery=SchemaDiscovery(relational_engine, dataset_service),
        query_generator=QueryGenerator(generator),
        generator=generator,
        retriever=HybridRetriever(knowledge_store),
        synthesizer=AnswerSynthesizer(generator),
    )


@pytest.fixture
def offline_config():
    return OfflineProviderConfig(base_url="http://localhost:11434", enabled=True, model="llama3.2:3b")


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def generator_factory():
    return make_generator


@pytest.fixture
def embedder_factory():
    return FakeEmbedder
