"""Tests for storyforge.llm — GenerationService dispatch, abort and settings."""

import asyncio
import logging

import pytest

from storyforge.llm import (
    GenerationService,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    generate_with_provider,
)
from storyforge.models import AIModel, AISettings, GenerationParams, PromptMessage
from storyforge.providers import ProviderRegistry
from tests.helpers import FakeProvider, FakeResponse, sse

MESSAGES = [PromptMessage(role="user", content="Write a scene.")]


def _service(provider: FakeProvider, settings: AISettings | None = None, store=None) -> GenerationService:
    registry = ProviderRegistry()
    registry.register(provider)
    return GenerationService(registry, settings, store)


# ---------------------------------------------------------------------------
# generate()
# ---------------------------------------------------------------------------

class TestGenerate:
    async def test_returns_provider_response(self) -> None:
        response = FakeResponse(sse("a"))
        provider = FakeProvider(response)
        service = _service(provider)
        assert await service.generate("local", MESSAGES, "m", 0.3, 99) is response
        call = provider.calls[0]
        assert (call["model"], call["temperature"], call["max_tokens"]) == ("m", 0.3, 99)
        assert call["messages"] == MESSAGES

    async def test_unknown_provider(self) -> None:
        with pytest.raises(ProviderNotFoundError):
            await _service(FakeProvider()).generate("nope", MESSAGES, "m")

    async def test_unconfigured_provider(self) -> None:
        service = GenerationService.from_settings(AISettings())
        with pytest.raises(ProviderNotConfiguredError, match="openai"):
            await service.generate("openai", MESSAGES, "gpt-4o")

    async def test_provider_error_propagates(self) -> None:
        class Broken(FakeProvider):
            async def generate(self, *args):
                raise ProviderNotConfiguredError("nope")

        with pytest.raises(ProviderNotConfiguredError):
            await _service(Broken()).generate("local", MESSAGES, "m")


class TestAbort:
    async def test_abort_before_response_returns_204(self) -> None:
        gate = asyncio.Event()
        service = _service(FakeProvider(gate=gate))
        task = asyncio.ensure_future(service.generate("local", MESSAGES, "m"))
        await asyncio.sleep(0)
        service.abort_active_stream()
        response = await asyncio.wait_for(task, timeout=1)
        assert response.status_code == 204
        assert response.body is None

    async def test_late_response_is_closed(self) -> None:
        gate = asyncio.Event()
        late = FakeResponse(sse("a"))

        class Stubborn(FakeProvider):
            async def generate(self, *args):
                try:
                    await gate.wait()
                except asyncio.CancelledError:
                    pass
                return late

        service = _service(Stubborn())
        task = asyncio.ensure_future(service.generate("local", MESSAGES, "m"))
        await asyncio.sleep(0)
        service.abort_active_stream()
        assert (await task).status_code == 204
        for _ in range(5):
            await asyncio.sleep(0)
        assert late.closed

    async def test_abort_after_response_closes_it(self) -> None:
        response = FakeResponse(sse("a", "b"))
        service = _service(FakeProvider(response))
        assert await service.generate("local", MESSAGES, "m") is response
        service.abort_active_stream()
        for _ in range(3):
            await asyncio.sleep(0)
        assert response.closed

    async def test_abort_without_generation_is_noop(self) -> None:
        _service(FakeProvider()).abort_active_stream()

    async def test_abort_targets_latest_call_only(self) -> None:
        first = FakeResponse(sse("a"))
        second = FakeResponse(sse("b"))
        provider = FakeProvider(first)
        service = _service(provider)
        await service.generate("local", MESSAGES, "m")
        provider.response = second
        await service.generate("local", MESSAGES, "m")
        service.abort_active_stream()
        for _ in range(3):
            await asyncio.sleep(0)
        assert second.closed
        assert not first.closed

    async def test_caller_cancellation_cancels_provider_call(self) -> None:
        gate = asyncio.Event()
        provider = FakeProvider(gate=gate)
        service = _service(provider)
        task = asyncio.ensure_future(service.generate("local", MESSAGES, "m"))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(provider.calls) == 1


# ---------------------------------------------------------------------------
# generate_with_provider()
# ---------------------------------------------------------------------------

class TestGenerateWithProvider:
    async def test_passes_params(self) -> None:
        provider = FakeProvider()
        params = GenerationParams(provider="local", model="llama", temperature=0.2, max_tokens=50)
        await generate_with_provider(_service(provider), MESSAGES, params)
        assert provider.calls[0]["model"] == "llama"
        assert provider.calls[0]["temperature"] == 0.2
        assert provider.calls[0]["max_tokens"] == 50

    async def test_logs_metadata_and_bounded_preview(self, caplog) -> None:
        caplog.set_level(logging.INFO, logger="storyforge.llm")
        content = "x" * 500 + "TAIL"
        params = GenerationParams(provider="local", model="llama", temperature=0.5, max_tokens=100)
        await generate_with_provider(
            _service(FakeProvider()),
            [PromptMessage(role="system", content=content), *MESSAGES],
            params,
        )
        assert "provider=local model=llama temperature=0.5 max_tokens=100 message_count=2" in caplog.text
        assert "x" * 200 in caplog.text
        assert "x" * 201 not in caplog.text
        assert "TAIL" not in caplog.text
        assert "Write a scene." not in caplog.text


# ---------------------------------------------------------------------------
# Keys and models
# ---------------------------------------------------------------------------

class TestSettings:
    def test_from_settings_initialises_keyed_providers(self) -> None:
        service = GenerationService.from_settings(
            AISettings(gemini_key="g", local_api_url="http://box:1/v1")
        )
        assert service.registry.get("gemini").is_initialized()
        assert not service.registry.get("openai").is_initialized()
        assert service.registry.get("local").base_url == "http://box:1/v1"

    async def test_apply_settings_keeps_active_generation_abortable(self) -> None:
        gate = asyncio.Event()
        provider = FakeProvider(gate=gate)
        service = _service(provider)
        task = asyncio.ensure_future(service.generate("local", MESSAGES, "m"))
        await asyncio.sleep(0)

        service.apply_settings(AISettings(openai_key="sk-new"))
        assert service.registry.get("openai").is_initialized()
        service.abort_active_stream()

        response = await asyncio.wait_for(task, timeout=1)
        assert response.status_code == 204
        assert provider.calls[0]["signal"].aborted

    def test_update_key_persists_and_initialises(self, store) -> None:
        service = GenerationService.from_settings(store.get_settings(), store)
        service.update_key("openai", "sk-new")
        assert service.settings.openai_key == "sk-new"
        assert store.get_settings().openai_key == "sk-new"
        assert service.registry.get("openai").is_initialized()

    def test_update_key_unknown_provider_ignored(self, store) -> None:
        service = GenerationService.from_settings(store.get_settings(), store)
        service.update_key("local", "whatever")
        assert store.get_settings().openai_key == ""

    def test_update_local_api_url(self, store) -> None:
        service = GenerationService.from_settings(store.get_settings(), store)
        service.update_local_api_url("http://gpu:8080/v1")
        assert store.get_settings().local_api_url == "http://gpu:8080/v1"
        assert service.registry.get("local").base_url == "http://gpu:8080/v1"

    async def test_fetch_replaces_only_that_providers_models(self, store) -> None:
        existing = [
            AIModel(id="gpt-4o", name="GPT-4o", provider="openai"),
            AIModel(id="old", name="Old", provider="openrouter"),
        ]
        fresh = [AIModel(id="new", name="New", provider="openrouter")]
        service = _service(
            FakeProvider(name="openrouter", models=fresh),
            AISettings(available_models=existing),
            store,
        )
        assert await service.fetch_available_models("openrouter") == fresh
        assert [m.id for m in service.settings.available_models] == ["gpt-4o", "new"]
        assert [m.id for m in store.get_settings().available_models] == ["gpt-4o", "new"]

    async def test_get_available_models_filters(self) -> None:
        models = [
            AIModel(id="gpt-4o", name="GPT-4o", provider="openai"),
            AIModel(id="llama", name="Llama", provider="local"),
        ]
        service = _service(FakeProvider(), AISettings(available_models=models))
        assert [m.id for m in await service.get_available_models("local")] == ["llama"]
        assert len(await service.get_available_models()) == 2

    async def test_get_available_models_refresh(self) -> None:
        fresh = [AIModel(id="qwen", name="Qwen", provider="local")]
        service = _service(FakeProvider(models=fresh))
        assert await service.get_available_models("local") == []
        assert await service.get_available_models("local", force_refresh=True) == fresh
