"""Generation Dispatcher — sends messages to a provider, returns its stream.

GenerationService owns the provider registry and the cancellation token of
the most recent call. It validates nothing beyond provider configuration and
never retries; retry policy belongs to callers.

    service = GenerationService.from_settings(store.get_settings())
    response = await generate_with_provider(service, messages, params)

abort_active_stream() cancels the latest call: before the provider answered
it makes generate() return a 204 StreamResponse, afterwards it closes the
connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from storyforge.models import AIModel, AISettings, GenerationParams, PromptMessage
from storyforge.providers import (
    Provider,
    ProviderNotConfiguredError,
    ProviderNotFoundError,
    ProviderRegistry,
)
from storyforge.streaming import (
    AbortSignal,
    LLMError,
    StreamFramingError,
    StreamResponse,
    TransportError,
)

__all__ = [
    "GenerationService",
    "LLMError",
    "ProviderNotConfiguredError",
    "ProviderNotFoundError",
    "StreamFramingError",
    "TransportError",
    "generate_with_provider",
]

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 200

_KEY_FIELDS = {
    "openai": "openai_key",
    "openrouter": "openrouter_key",
    "gemini": "gemini_key",
}


class SettingsStore(Protocol):
    def get_settings(self) -> AISettings: ...

    def update_settings(self, fields: dict) -> AISettings: ...


def _discard(task: asyncio.Task) -> None:
    """Done-callback for a provider call that lost the race against abort."""
    if task.cancelled():
        return
    if task.exception() is None:
        task.result().close_soon()


class GenerationService:
    def __init__(
        self,
        registry: ProviderRegistry,
        settings: AISettings | None = None,
        store: SettingsStore | None = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or AISettings()
        self._store = store
        self._active: AbortSignal | None = None

    @classmethod
    def from_settings(
        cls, settings: AISettings, store: SettingsStore | None = None
    ) -> GenerationService:
        service = cls(ProviderRegistry(), settings, store)
        service.apply_settings(settings)
        return service

    @property
    def settings(self) -> AISettings:
        return self._settings

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def _ensure_initialized(self, name: str) -> Provider:
        provider = self._registry.get(name)
        if provider.is_initialized():
            return provider
        field = _KEY_FIELDS.get(name)
        key = getattr(self._settings, field) if field else ""
        if not key:
            raise ProviderNotConfiguredError(f"{name} API key not set")
        provider.initialize(key)
        return provider

    async def generate(
        self,
        provider: str,
        messages: list[PromptMessage],
        model_id: str,
        temperature: float = 1.0,
        max_tokens: int = 2048,
    ) -> StreamResponse:
        """Start a streamed generation.

        Raises TransportError (or another LLMError) on failure. Returns a
        204 response when aborted before the provider answered.
        """
        signal = AbortSignal()
        self._active = signal
        backend = self._ensure_initialized(provider)

        call = asyncio.ensure_future(
            backend.generate(messages, model_id, temperature, max_tokens, signal)
        )
        aborted = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({call, aborted}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            call.cancel()
            call.add_done_callback(_discard)
            raise
        finally:
            aborted.cancel()

        if not call.done():
            call.cancel()
            call.add_done_callback(_discard)
            logger.info("generation aborted before response provider=%s model=%s",
                        provider, model_id)
            return StreamResponse.no_content()

        response = call.result()
        if signal.aborted:
            await response.aclose()
            return StreamResponse.no_content()
        signal.add_callback(response.close_soon)
        return response

    def apply_settings(self, settings: AISettings) -> None:
        """Adopt new keys and endpoints. A generation in flight stays abortable."""
        self._settings = settings
        for provider, field in _KEY_FIELDS.items():
            self._registry.initialize(provider, getattr(settings, field))
        self._registry.initialize("local", settings.local_api_url)

    def abort_active_stream(self) -> None:
        if self._active is not None:
            logger.info("aborting stream")
            self._active.abort()
            self._active = None

    # ------------------------------------------------------------------
    # Keys and models
    # ------------------------------------------------------------------

    def update_key(self, provider: str, key: str) -> None:
        field = _KEY_FIELDS.get(provider)
        if field is None:
            return
        logger.info("updating key provider=%s", provider)
        self._settings = self._settings.model_copy(update={field: key})
        if self._store is not None:
            self._store.update_settings({field: key})
        self._registry.initialize(provider, key)

    def update_local_api_url(self, url: str) -> None:
        self._settings = self._settings.model_copy(update={"local_api_url": url})
        if self._store is not None:
            self._store.update_settings({"local_api_url": url})
        self._registry.initialize("local", url)

    async def fetch_available_models(self, provider: str) -> list[AIModel]:
        """Refresh one provider's model list and persist it with the others."""
        models = await self._registry.get(provider).fetch_models()
        kept = [m for m in self._settings.available_models if m.provider != provider]
        self._settings = self._settings.model_copy(
            update={"available_models": kept + models}
        )
        if self._store is not None:
            self._store.update_settings({
                "available_models": [m.model_dump() for m in self._settings.available_models],
            })
        return models

    async def get_available_models(
        self, provider: str | None = None, force_refresh: bool = False
    ) -> list[AIModel]:
        if provider and force_refresh:
            await self.fetch_available_models(provider)
        models = self._settings.available_models
        if provider:
            return [m for m in models if m.provider == provider]
        return list(models)


async def generate_with_provider(
    service: GenerationService,
    messages: list[PromptMessage],
    params: GenerationParams,
) -> StreamResponse:
    """Log the request metadata, then dispatch.

    Only a bounded preview of the first message is logged, never the payload.
    """
    preview = messages[0].content[:PREVIEW_CHARS] if messages else ""
    logger.info(
        "ai generation request provider=%s model=%s temperature=%s max_tokens=%d "
        "message_count=%d prompt_preview=%r",
        params.provider, params.model, params.temperature, params.max_tokens,
        len(messages), preview,
    )
    return await service.generate(
        params.provider, messages, params.model, params.temperature, params.max_tokens
    )
