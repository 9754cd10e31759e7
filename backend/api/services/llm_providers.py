"""
Generative text providers and the ordered fallback chain.

Offline-first: when a local provider is configured and enabled it is the only
candidate; otherwise the cloud models are tried in priority order.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, List, Protocol

import httpx
from openai import OpenAI, OpenAIError

from backend.api.services.errors import GenerationError

logger = logging.getLogger(__name__)

RECOMMENDED_OLLAMA_MODELS = [
    {"id": "llama3.2:3b", "name": "Llama 3.2 3B", "size": "2GB", "recommended": True},
    {"id": "gemma2:2b", "name": "Gemma 2 2B", "size": "1.5GB", "recommended": True},
    {"id": "mistral:7b-instruct-q4_0", "name": "Mistral 7B Q4", "size": "4GB", "recommended": False},
    {"id": "phi3:mini", "name": "Phi-3 Mini", "size": "2.3GB", "recommended": True},
    {"id": "qwen2:1.5b", "name": "Qwen 2 1.5B", "size": "1GB", "recommended": True},
]


class TextProvider(Protocol):
    name: str

    def complete(self, system_prompt: str, user_prompt: str, temperature: float = 0.2, max_tokens: int = 2000) -> str:
        ...


# ------------------------- Configuration -------------------------
@dataclass(frozen=True)
class OfflineProviderConfig:
    base_url: str = "http://localhost:11434"
    enabled: bool = False
    model: str = ""

    @property
    def active(self) -> bool:
        return self.enabled and bool(self.model)


class GenerationConfig:
    """Process-wide model fallback list and offline provider settings, changed only by admin calls."""

    def __init__(self, cloud_models: List[str], offline: OfflineProviderConfig | None = None):
        self._lock = threading.Lock()
        self._cloud_models = [m for m in cloud_models if m]
        self._offline = offline or OfflineProviderConfig()

    @property
    def cloud_models(self) -> List[str]:
        return list(self._cloud_models)

    @property
    def offline(self) -> OfflineProviderConfig:
        return self._offline

    def set_cloud_models(self, models: List[str]) -> List[str]:
        cleaned = [m.strip() for m in models if m and m.strip()]
        with self._lock:
            self._cloud_models = cleaned
        logger.info("Cloud model fallback list updated: %s", cleaned)
        return list(cleaned)

    def update_offline(self, base_url: str | None = None, enabled: bool | None = None, model: str | None = None) -> OfflineProviderConfig:
        with self._lock:
            changes: Dict[str, Any] = {}
            if base_url is not None:
                changes["base_url"] = base_url.rstrip("/")
            if enabled is not None:
                changes["enabled"] = enabled
            if model is not None:
                changes["model"] = model
            self._offline = replace(self._offline, **changes)
        logger.info("Offline provider config: enabled=%s model=%s", self._offline.enabled, self._offline.model)
        return self._offline


# ------------------------- Providers -------------------------
class OpenRouterProvider:
    """Cloud provider over an OpenAI-compatible endpoint (OpenRouter by default)."""

    def __init__(self, model: str, api_key: str | None, base_url: str = "https://openrouter.ai/api/v1", timeout: float = 60.0):
        self.name = f"openrouter:{model}"
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self._client: OpenAI | None = None

    def _get_client(self) -> OpenAI:
        if not self.api_key:
            raise GenerationError("OpenRouter API key is not configured")
        if self._client is None:
            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url, timeout=self.timeout)
        return self._client

    def complete(self, system_prompt: str, user_prompt: str, temperature: float = 0.2, max_tokens: int = 2000) -> str:
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OpenAIError as e:
            raise GenerationError(f"{self.model}: {e}") from e
        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


class OllamaProvider:
    """Local provider talking to the Ollama chat API."""

    def __init__(self, base_url: str, model: str, timeout: float = 120.0):
        self.name = f"ollama:{model}"
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout

    def complete(self, system_prompt: str, user_prompt: str, temperature: float = 0.2, max_tokens: int = 2000) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(f"{self.base_url}/api/chat", json=payload)
        except httpx.HTTPError as e:
            raise GenerationError(f"Ollama request failed: {e}") from e
        if response.status_code != 200:
            raise GenerationError(f"Ollama error: HTTP {response.status_code} {response.text[:200]}")
        return (response.json().get("message") or {}).get("content") or ""


def check_ollama_connection(base_url: str) -> Dict[str, Any]:
    try:
        response = httpx.get(f"{base_url.rstrip('/')}/api/tags", timeout=5.0)
    except httpx.HTTPError as e:
        return {"connected": False, "error": str(e) or "Cannot reach the Ollama server"}
    if response.status_code != 200:
        return {"connected": False, "error": f"HTTP {response.status_code}"}
    return {"connected": True}


def list_ollama_models(base_url: str) -> Dict[str, Any]:
    try:
        response = httpx.get(f"{base_url.rstrip('/')}/api/tags", timeout=10.0)
    except httpx.HTTPError as e:
        return {"models": [], "error": str(e) or "Cannot list Ollama models"}
    if response.status_code != 200:
        return {"models": [], "error": f"HTTP {response.status_code}"}
    return {"models": response.json().get("models") or []}


# ------------------------- Fallback chain -------------------------
@dataclass
class GenerationResult:
    text: str = ""
    provider: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return bool(self.text.strip()) and self.error is None


@dataclass
class ProviderCandidate:
    provider: TextProvider

    def attempt(self, system_prompt: str, user_prompt: str, temperature: float, max_tokens: int) -> GenerationResult:
        name = self.provider.name
        try:
            text = self.provider.complete(system_prompt, user_prompt, temperature=temperature, max_tokens=max_tokens)
        except Exception as e:
            logger.warning("Generation with %s failed: %s", name, e)
            return GenerationResult(provider=name, error=str(e) or type(e).__name__)
        if not (text or "").strip():
            logger.warning("Generation with %s returned an empty response", name)
            return GenerationResult(provider=name, error="empty response")
        return GenerationResult(text=text, provider=name)


CloudFactory = Callable[[str], TextProvider]
OfflineFactory = Callable[[OfflineProviderConfig], TextProvider]


class FallbackGenerator:
    def __init__(self, config: GenerationConfig, cloud_factory: CloudFactory, offline_factory: OfflineFactory):
        self.config = config
        self.cloud_factory = cloud_factory
        self.offline_factory = offline_factory

    def candidates(self) -> List[ProviderCandidate]:
        offline = self.config.offline
        if offline.active:
            return [ProviderCandidate(self.offline_factory(offline))]
        return [ProviderCandidate(self.cloud_factory(model)) for model in self.config.cloud_models]

    def generate(self, system_prompt: str, user_prompt: str, temperature: float = 0.2, max_tokens: int = 2000) -> GenerationResult:
        """First non-empty response wins; never raises."""
        errors = []
        for candidate in self.candidates():
            logger.info("Generating with %s", candidate.provider.name)
            result = candidate.attempt(system_prompt, user_prompt, temperature, max_tokens)
            if result.ok:
                return result
            errors.append(f"{result.provider}: {result.error}")
        return GenerationResult(error="; ".join(errors) or "no generation provider configured")


def build_generator(config: GenerationConfig, api_key: str | None, base_url: str) -> FallbackGenerator:
    # one client per cloud model, reused across requests
    cloud_providers: Dict[str, OpenRouterProvider] = {}

    def cloud_factory(model: str) -> TextProvider:
        if model not in cloud_providers:
            cloud_providers[model] = OpenRouterProvider(model, api_key=api_key, base_url=base_url)
        return cloud_providers[model]

    return FallbackGenerator(
        config,
        cloud_factory=cloud_factory,
        offline_factory=lambda offline: OllamaProvider(offline.base_url, offline.model),
    )
