"""Generation providers — one class per backend, all behind the Provider protocol.

Every provider returns a StreamResponse in the uniform event-stream framing
(see storyforge.streaming), so nothing downstream knows which backend ran.

    LocalProvider       — OpenAI-compatible local server (LM Studio, llama.cpp,
                          KoboldCpp's OpenAI endpoint). No key needed.
    OpenAIProvider      — api.openai.com chat completions.
    OpenRouterProvider  — openrouter.ai, OpenAI wire format.
    GeminiProvider      — Google Generative Language API; chunks are
                          re-framed into the uniform format.

New backends are added by registering another Provider with the
ProviderRegistry, not by branching on provider names.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import ClassVar, Protocol

import httpx

from storyforge.config import DEFAULT_LOCAL_API_URL
from storyforge.models import AIModel, PromptMessage, ProviderName
from storyforge.streaming import (
    AbortSignal,
    LLMError,
    StreamFramingError,
    StreamResponse,
    TransportError,
    format_sse,
    iter_sse_payloads,
)

logger = logging.getLogger(__name__)


class ProviderNotConfiguredError(LLMError):
    """The provider needs an API key (or URL) that has not been set."""


class ProviderNotFoundError(LLMError):
    """No provider is registered under the requested name."""


# ---------------------------------------------------------------------------
# Protocol — every provider implementation must match this
# ---------------------------------------------------------------------------

class Provider(Protocol):
    name: ProviderName

    def initialize(self, config: str | None) -> None: ...

    def is_initialized(self) -> bool: ...

    async def fetch_models(self) -> list[AIModel]: ...

    async def generate(
        self,
        messages: list[PromptMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        signal: AbortSignal,
    ) -> StreamResponse: ...


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------

class _HttpProvider:
    """Opens a streamed POST and wraps it as a StreamResponse."""

    name: ClassVar[ProviderName]

    def __init__(self, base_url: str, timeout: float = 120.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = ""
        self._timeout = timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    def initialize(self, config: str | None) -> None:
        """Set the API key. An empty value leaves the provider as it was."""
        if config:
            self._api_key = config

    def is_initialized(self) -> bool:
        return bool(self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _open_stream(
        self, url: str, body: dict
    ) -> tuple[httpx.Response, Callable[[], Awaitable[None]]]:
        """Send the request; return the streamed response (status checked) and its closer."""
        client = httpx.AsyncClient(timeout=self._timeout)
        request = client.build_request("POST", url, json=body, headers=self._headers())
        try:
            resp = await client.send(request, stream=True)
        except httpx.ConnectError as e:
            await client.aclose()
            raise TransportError(f"Cannot connect to {self.name} at {self._base_url}") from e
        except httpx.TimeoutException as e:
            await client.aclose()
            raise TransportError(f"{self.name} timed out after {self._timeout}s") from e
        except httpx.HTTPError as e:
            await client.aclose()
            raise TransportError(f"{self.name} request failed: {e}") from e

        if resp.status_code >= 400:
            detail = (await resp.aread()).decode(errors="replace")[:200]
            await resp.aclose()
            await client.aclose()
            logger.warning("provider error provider=%s status=%d detail=%r",
                           self.name, resp.status_code, detail)
            raise TransportError(
                f"{self.name} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
            )

        async def _close() -> None:
            await resp.aclose()
            await client.aclose()

        return resp, _close

    async def _raw_body(self, resp: httpx.Response, signal: AbortSignal) -> AsyncIterator[bytes]:
        """Response bytes; transport errors after an abort end the body quietly."""
        try:
            async for chunk in resp.aiter_bytes():
                if signal.aborted:
                    return
                yield chunk
        except httpx.HTTPError as e:
            if signal.aborted:
                return
            raise TransportError(f"{self.name} stream interrupted: {e}") from e

    async def _get_json(self, path: str) -> dict:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            resp = await client.get(f"{self._base_url}{path}", headers=self._headers())
            resp.raise_for_status()
        return resp.json()


# ---------------------------------------------------------------------------
# OpenAI-compatible providers
# ---------------------------------------------------------------------------

class _OpenAICompatibleProvider(_HttpProvider):
    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(
        self, messages: list[PromptMessage], model: str, temperature: float, max_tokens: int
    ) -> tuple[str, dict]:
        """Return (url, body) for a streamed chat completion."""
        body: dict = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "stream": True,
        }
        return f"{self._base_url}/chat/completions", body

    def _include_model(self, model_id: str) -> bool:
        return True

    def _context_length(self, raw: dict) -> int:
        return int(raw.get("context_length") or 4096)

    async def fetch_models(self) -> list[AIModel]:
        """List models; failures are logged and yield an empty list."""
        if not self.is_initialized():
            logger.warning("fetch_models on uninitialised provider=%s", self.name)
            return []
        try:
            data = await self._get_json("/models")
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error("fetch_models failed provider=%s error=%s", self.name, e)
            return []
        models = [
            AIModel(
                id=raw["id"],
                name=raw.get("name") or raw["id"],
                provider=self.name,
                context_length=self._context_length(raw),
            )
            for raw in data.get("data", [])
            if "id" in raw and self._include_model(raw["id"])
        ]
        logger.info("fetched models provider=%s count=%d", self.name, len(models))
        return models

    async def generate(
        self,
        messages: list[PromptMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        signal: AbortSignal,
    ) -> StreamResponse:
        if not self.is_initialized():
            raise ProviderNotConfiguredError(f"{self.name} API key not set")
        url, body = self._build_request(messages, model, temperature, max_tokens)
        resp, close = await self._open_stream(url, body)
        return StreamResponse(resp.status_code, body=self._raw_body(resp, signal), on_close=close)


class LocalProvider(_OpenAICompatibleProvider):
    name = "local"

    def __init__(self, base_url: str = DEFAULT_LOCAL_API_URL, timeout: float = 120.0) -> None:
        super().__init__(base_url, timeout)

    def initialize(self, config: str | None) -> None:
        """For the local provider the config is the server URL."""
        if config:
            self._base_url = config.rstrip("/")

    def is_initialized(self) -> bool:
        return bool(self._base_url)


class OpenAIProvider(_OpenAICompatibleProvider):
    name = "openai"

    # Reasoning-era models reject max_tokens
    _NO_MAX_TOKENS_PREFIXES = ("gpt-5", "o1", "o3")

    def __init__(self, base_url: str = "https://api.openai.com/v1", timeout: float = 120.0) -> None:
        super().__init__(base_url, timeout)

    def _build_request(
        self, messages: list[PromptMessage], model: str, temperature: float, max_tokens: int
    ) -> tuple[str, dict]:
        url, body = super()._build_request(messages, model, temperature, max_tokens)
        if model.startswith(self._NO_MAX_TOKENS_PREFIXES):
            del body["max_tokens"]
        return url, body

    def _include_model(self, model_id: str) -> bool:
        return model_id.startswith("gpt")

    def _context_length(self, raw: dict) -> int:
        model_id = raw["id"]
        if "gpt-4" in model_id:
            return 8192
        if "gpt-3.5-turbo-16k" in model_id:
            return 16384
        return 4096


class OpenRouterProvider(_OpenAICompatibleProvider):
    name = "openrouter"

    def __init__(self, base_url: str = "https://openrouter.ai/api/v1", timeout: float = 120.0) -> None:
        super().__init__(base_url, timeout)


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------

class GeminiProvider(_HttpProvider):
    name = "gemini"

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        timeout: float = 120.0,
    ) -> None:
        super().__init__(base_url, timeout)

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._api_key:
            headers["x-goog-api-key"] = self._api_key
        return headers

    @staticmethod
    def convert_messages(messages: list[PromptMessage]) -> tuple[str | None, list[dict]]:
        """Split into (system instruction, contents) the way Gemini expects.

        System messages are joined into one instruction; assistant turns
        become the "model" role.
        """
        system: str | None = None
        contents: list[dict] = []
        for m in messages:
            if m.role == "system":
                system = f"{system}\n{m.content}" if system else m.content
            else:
                contents.append({
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                })
        return system, contents

    def _build_request(
        self, messages: list[PromptMessage], model: str, temperature: float, max_tokens: int
    ) -> tuple[str, dict]:
        system, contents = self.convert_messages(messages)
        body: dict = {
            "contents": contents,
            "generationConfig": {"temperature": temperature, "maxOutputTokens": max_tokens},
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return f"{self._base_url}/models/{model}:streamGenerateContent?alt=sse", body

    @staticmethod
    def _chunk_text(payload: str) -> str:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise StreamFramingError(f"Malformed Gemini chunk: {payload[:80]!r}") from e
        if "error" in data:
            raise TransportError(f"Gemini reported an error mid-stream: {data['error']}")
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts)

    async def _tokens(self, resp: httpx.Response, signal: AbortSignal) -> AsyncIterator[str]:
        try:
            async for payload in iter_sse_payloads(self._raw_body(resp, signal)):
                if signal.aborted:
                    return
                text = self._chunk_text(payload)
                if text:
                    yield text
        except LLMError:
            if signal.aborted:
                return
            raise

    async def fetch_models(self) -> list[AIModel]:
        if not self.is_initialized():
            logger.warning("fetch_models on uninitialised provider=%s", self.name)
            return []
        try:
            data = await self._get_json("/models")
        except (httpx.HTTPError, json.JSONDecodeError) as e:
            logger.error("fetch_models failed provider=%s error=%s", self.name, e)
            return []
        models: list[AIModel] = []
        for raw in data.get("models", []):
            if "generateContent" not in raw.get("supportedGenerationMethods", []):
                continue
            model_id = raw.get("name", "").removeprefix("models/")
            # Only Gemini proper supports system instructions
            if not model_id.startswith("gemini-"):
                continue
            models.append(AIModel(
                id=model_id,
                name=raw.get("displayName") or model_id,
                provider="gemini",
                context_length=raw.get("inputTokenLimit") or 32768,
            ))
        logger.info("fetched models provider=%s count=%d", self.name, len(models))
        return models

    async def generate(
        self,
        messages: list[PromptMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        signal: AbortSignal,
    ) -> StreamResponse:
        if not self.is_initialized():
            raise ProviderNotConfiguredError("gemini API key not set")
        url, body = self._build_request(messages, model, temperature, max_tokens)
        resp, close = await self._open_stream(url, body)
        return StreamResponse(
            resp.status_code, body=format_sse(self._tokens(resp, signal)), on_close=close
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ProviderRegistry:
    """Providers by name. Ships with the four built-in backends."""

    def __init__(self, local_api_url: str = DEFAULT_LOCAL_API_URL) -> None:
        self._providers: dict[str, Provider] = {}
        self.register(LocalProvider(local_api_url))
        self.register(OpenAIProvider())
        self.register(OpenRouterProvider())
        self.register(GeminiProvider())

    def register(self, provider: Provider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> Provider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderNotFoundError(f"Provider {name} not found")
        return provider

    def names(self) -> list[str]:
        return sorted(self._providers)

    def initialize(self, name: str, config: str | None) -> None:
        self.get(name).initialize(config)
