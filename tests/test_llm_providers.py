"""Tests for the generation fallback chain and the offline-first policy."""

from backend.api.services.llm_providers import (
    FallbackGenerator,
    GenerationConfig,
    OfflineProviderConfig,
    OpenRouterProvider,
    ProviderCandidate,
    build_generator,
)


class TestFallbackChain:
    """Cloud models are tried in order; the first non-empty response wins."""

    def test_first_success_wins(self, provider_factory, generator_factory) -> None:
        first = provider_factory("m1", responses=["first answer"])
        second = provider_factory("m2", responses=["second answer"])
        result = generator_factory(first, second).generate("sys", "user")
        assert result.ok
        assert result.text == "first answer"
        assert result.provider == "m1"
        assert second.calls == []

    def test_skips_failing_and_empty_candidates(self, provider_factory, generator_factory) -> None:
        broken = provider_factory("m1", error="rate limited")
        empty = provider_factory("m2", responses=["   "])
        good = provider_factory("m3", responses=["answer"])
        result = generator_factory(broken, empty, good).generate("sys", "user")
        assert result.text == "answer"
        assert len(broken.calls) == len(empty.calls) == len(good.calls) == 1

    def test_all_failing_returns_error_result(self, provider_factory, generator_factory) -> None:
        result = generator_factory(provider_factory("m1", error="down"), provider_factory("m2", error="down")).generate(
            "sys", "user"
        )
        assert not result.ok
        assert "m1: down" in result.error
        assert "m2: down" in result.error

    def test_no_models_configured(self) -> None:
        generator = FallbackGenerator(GenerationConfig([]), cloud_factory=lambda m: None, offline_factory=lambda c: None)
        result = generator.generate("sys", "user")
        assert not result.ok
        assert result.error

    def test_passes_sampling_parameters(self, provider_factory, generator_factory) -> None:
        provider = provider_factory("m1", responses=["ok"])
        generator_factory(provider).generate("sys", "user", temperature=0, max_tokens=42)
        assert provider.calls[0]["temperature"] == 0
        assert provider.calls[0]["max_tokens"] == 42


class TestOfflineFirst:
    """An enabled local provider is used exclusively."""

    def test_offline_used_without_cloud_fallback(self, provider_factory, offline_config) -> None:
        local = provider_factory("ollama", error="connection refused")
        cloud = provider_factory("cloud", responses=["cloud answer"])
        config = GenerationConfig(["cloud"], offline_config)
        generator = FallbackGenerator(config, cloud_factory=lambda m: cloud, offline_factory=lambda c: local)

        result = generator.generate("sys", "user")
        assert not result.ok
        assert len(local.calls) == 1
        assert cloud.calls == []

    def test_disabled_offline_uses_cloud(self, provider_factory, offline_config) -> None:
        local = provider_factory("ollama", responses=["local"])
        cloud = provider_factory("cloud", responses=["cloud answer"])
        config = GenerationConfig(["cloud"], offline_config)
        config.update_offline(enabled=False)
        generator = FallbackGenerator(config, cloud_factory=lambda m: cloud, offline_factory=lambda c: local)

        assert generator.generate("sys", "user").text == "cloud answer"
        assert local.calls == []

    def test_enabled_without_model_is_inactive(self) -> None:
        assert not OfflineProviderConfig(enabled=True, model="").active
        assert OfflineProviderConfig(enabled=True, model="phi3:mini").active


class TestGenerationConfig:
    """Admin updates to the model list and offline settings."""

    def test_set_cloud_models_drops_blanks(self) -> None:
        config = GenerationConfig(["a"])
        assert config.set_cloud_models([" b ", "", "c"]) == ["b", "c"]
        assert config.cloud_models == ["b", "c"]

    def test_update_offline_keeps_unspecified_fields(self, offline_config) -> None:
        config = GenerationConfig(["a"], offline_config)
        updated = config.update_offline(base_url="http://gpu-box:11434/")
        assert updated.base_url == "http://gpu-box:11434"
        assert updated.model == offline_config.model
        assert updated.enabled is True


class TestProviders:
    """Provider edge cases that do not need a network."""

    def test_missing_api_key_fails_the_attempt(self) -> None:
        result = ProviderCandidate(OpenRouterProvider("some/model", api_key=None)).attempt("sys", "user", 0, 10)
        assert not result.ok
        assert "API key" in result.error

    def test_build_generator_reuses_cloud_clients(self) -> None:
        generator = build_generator(GenerationConfig(["m1", "m2"]), api_key=None, base_url="https://example.invalid/v1")
        first = [c.provider for c in generator.candidates()]
        second = [c.provider for c in generator.candidates()]
        assert [p.name for p in first] == ["openrouter:m1", "openrouter:m2"]
        assert all(a is b for a, b in zip(first, second))
