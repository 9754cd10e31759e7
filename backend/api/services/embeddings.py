from __future__ import annotations

import logging
import threading
from typing import List, Protocol

import httpx
import numpy as np
from sentence_transformers import SentenceTransformer

from backend.api.services.errors import GenerationError

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    name: str

    def embed(self, text: str) -> List[float]:
        ...

    def embed_many(self, texts: List[str], batch_size: int = 64) -> List[List[float]]:
        ...


class SentenceTransformerEmbedder:
    """In-process embeddings; the model is loaded lazily on first use."""

    name = "sentence-transformers"

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> SentenceTransformer:
        with self._lock:
            if self._model is None:
                self._model = SentenceTransformer(self.model_name)
            return self._model

    def embed(self, text: str) -> List[float]:
        return self.embed_many([text])[0]

    def embed_many(self, texts: List[str], batch_size: int = 64) -> List[List[float]]:
        """Embed in batches to avoid memory spikes on large documents."""
        model = self._get_model()
        out: List[List[float]] = []
        for i in range(0, len(texts), batch_size):
            vecs = model.encode(texts[i : i + batch_size], convert_to_numpy=True, normalize_embeddings=True)
            out.extend(v.astype("float32").tolist() for v in np.atleast_2d(vecs))
        return out


class OllamaEmbedder:
    name = "ollama"

    def __init__(self, base_url: str, model: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def embed(self, text: str) -> List[float]:
        with httpx.Client(timeout=self.timeout) as client:
            response = client.post(f"{self.base_url}/api/embeddings", json={"model": self.model, "prompt": text})
        if response.status_code != 200:
            raise GenerationError(f"Ollama embedding error: HTTP {response.status_code}")
        embedding = response.json().get("embedding") or []
        if not embedding:
            raise GenerationError("Ollama returned an empty embedding")
        return [float(x) for x in embedding]

    def embed_many(self, texts: List[str], batch_size: int = 64) -> List[List[float]]:
        return [self.embed(t) for t in texts]


def build_embedder(backend: str, model: str, ollama_base_url: str) -> EmbeddingProvider | None:
    """None means lexical-only retrieval."""
    backend = (backend or "none").strip().lower()
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedder(model)
    if backend == "ollama":
        return OllamaEmbedder(ollama_base_url, model)
    if backend != "none":
        logger.warning("Unknown embedding backend %r; using lexical-only retrieval", backend)
    return None
