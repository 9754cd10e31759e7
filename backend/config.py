from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_CLOUD_MODELS = [
    "mistralai/mistral-small-24b-instruct-2501",
    "google/gemini-2.0-flash-exp:free",
    "meta-llama/llama-3.3-70b-instruct:free",
]


class Settings(BaseSettings):
    """Application settings, read from CHATBOT_* environment variables or .env."""

    model_config = SettingsConfigDict(
        env_prefix="CHATBOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage engines
    database_url: str = "sqlite:///storage/app.db"
    analytics_path: str = "storage/analytics.duckdb"

    # Cloud generation (OpenAI-compatible endpoint)
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    cloud_models: List[str] = Field(default_factory=lambda: list(DEFAULT_CLOUD_MODELS))

    # Local generation
    ollama_base_url: str = "http://localhost:11434"
    ollama_enabled: bool = False
    ollama_model: str = "llama3.2:3b"

    # Embeddings: none | sentence-transformers | ollama
    embedding_backend: str = "none"
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"

    # Core behaviour
    top_k: int = 5
    max_repair_attempts: int = 2
    topic_gating: bool = True
    chunk_size: int = 500
    chunk_overlap: int = 50

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()
