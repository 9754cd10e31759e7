"""Hybrid keyword/vector retrieval over knowledge-base chunks."""

from __future__ import annotations

import logging
from typing import List

from backend.api.services.embeddings import EmbeddingProvider
from backend.api.services.knowledge_store import KnowledgeStore, RetrievableChunk
from backend.api.services.text_scoring import cosine_similarity, keyword_bonus, lexical_match_score, tokenize
from backend.models import SearchResponse, SearchResult

logger = logging.getLogger(__name__)

VECTOR_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3
HYBRID_SCORE_FLOOR = 0.1


def _clamp(score: float) -> float:
    return min(max(score, 0.0), 1.0)


class HybridRetriever:
    def __init__(self, store: KnowledgeStore, embedder: EmbeddingProvider | None = None, default_top_k: int = 5):
        self.store = store
        self.embedder = embedder
        self.default_top_k = default_top_k

    def search(self, query: str, top_k: int | None = None) -> SearchResponse:
        """Rank every chunk of a ready document and return the top-K. Never raises."""
        top_k = self.default_top_k if top_k is None else top_k
        if top_k <= 0:
            return SearchResponse()
        try:
            candidates = self.store.ready_chunks()
            logger.info("RAG search: %d candidate chunks", len(candidates))
            if not candidates:
                return SearchResponse()

            query_tokens = tokenize(query)
            logger.debug("RAG search query tokens: %s", query_tokens)
            query_vector = self._embed_query(query)

            if query_vector is None:
                scored = self._score_lexical(query_tokens, candidates)
            else:
                scored = self._score_hybrid(query_tokens, query_vector, candidates)

            # stable sort: equal scores keep insertion order
            scored.sort(key=lambda r: r.score, reverse=True)
            results = scored[:top_k]
            if results and results[0].score == 0:
                logger.info("RAG search: no keyword matches, returning top chunks anyway")
            return SearchResponse(results=results, total_found=len(results))
        except Exception:
            logger.exception("Hybrid search failed")
            return SearchResponse()

    def _embed_query(self, query: str) -> List[float] | None:
        if self.embedder is None:
            return None
        try:
            return self.embedder.embed(query) or None
        except Exception as e:
            logger.warning("Query embedding failed (%s); using lexical scoring", e)
            return None

    def _score_lexical(self, query_tokens: List[str], candidates: List[RetrievableChunk]) -> List[SearchResult]:
        return [
            self._result(c, lexical_match_score(query_tokens, tokenize(c.chunk.content)))
            for c in candidates
        ]

    def _score_hybrid(
        self, query_tokens: List[str], query_vector: List[float], candidates: List[RetrievableChunk]
    ) -> List[SearchResult]:
        out = []
        for c in candidates:
            embedding = c.chunk.embedding
            if not embedding or len(embedding) != len(query_vector):
                # no comparable vector (embedding failed or model changed): lexical only, no floor
                lexical = lexical_match_score(query_tokens, tokenize(c.chunk.content))
                if lexical > 0:
                    out.append(self._result(c, lexical))
                continue
            score = VECTOR_WEIGHT * cosine_similarity(query_vector, embedding) + KEYWORD_WEIGHT * keyword_bonus(
                query_tokens, c.chunk.content
            )
            if score > HYBRID_SCORE_FLOOR:
                out.append(self._result(c, score))
        return out

    @staticmethod
    def _result(c: RetrievableChunk, score: float) -> SearchResult:
        return SearchResult(
            chunk_id=c.chunk.id,
            document_id=c.chunk.document_id,
            document_name=c.document_name,
            content=c.chunk.content,
            page_number=c.chunk.page_number,
            score=_clamp(score),
        )
