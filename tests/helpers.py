"""Shared fakes for stream tests."""

import asyncio
import json

from storyforge.streaming import StreamResponse


def sse(*tokens: str, done: bool = True) -> list[bytes]:
    """Frame tokens as one event-stream chunk each."""
    chunks = [
        f"data: {json.dumps({'choices': [{'delta': {'content': t}}]})}\n\n".encode()
        for t in tokens
    ]
    if done:
        chunks.append(b"data: [DONE]\n\n")
    return chunks


async def _body(chunks: list[bytes], gate: asyncio.Event | None, gate_after: int):
    for i, chunk in enumerate(chunks):
        if gate is not None and i == gate_after:
            await gate.wait()
        await asyncio.sleep(0)
        yield chunk


class FakeResponse(StreamResponse):
    """StreamResponse over canned chunks; records whether it was closed.

    With a gate, delivery pauses before chunk number gate_after until the
    gate is set, so tests can act mid-stream.
    """

    def __init__(
        self,
        chunks: list[bytes] | None = None,
        status_code: int = 200,
        gate: asyncio.Event | None = None,
        gate_after: int = 0,
    ) -> None:
        self.close_calls = 0

        async def _on_close() -> None:
            self.close_calls += 1

        body = _body(chunks, gate, gate_after) if chunks is not None else None
        super().__init__(status_code, body=body, on_close=_on_close)


class FailingBody:
    """Async byte iterator that yields some chunks and then raises."""

    def __init__(self, chunks: list[bytes], error: Exception) -> None:
        self._chunks = list(chunks)
        self._error = error

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._chunks:
            return self._chunks.pop(0)
        raise self._error


class RecordingNotifier:
    def __init__(self) -> None:
        self.messages: list[str] = []

    def error(self, message: str) -> None:
        self.messages.append(message)


class FakeProvider:
    """Provider double. With a gate, generate() waits for it before answering."""

    def __init__(
        self,
        response: StreamResponse | None = None,
        name: str = "local",
        gate: asyncio.Event | None = None,
        models: list | None = None,
    ) -> None:
        self.name = name
        self.response = response
        self.gate = gate
        self.models = models or []
        self.calls: list[dict] = []
        self.configured: str | None = None

    def initialize(self, config: str | None) -> None:
        if config:
            self.configured = config

    def is_initialized(self) -> bool:
        return True

    async def fetch_models(self) -> list:
        return list(self.models)

    async def generate(self, messages, model, temperature, max_tokens, signal) -> StreamResponse:
        self.calls.append({
            "messages": list(messages),
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "signal": signal,
        })
        if self.gate is not None:
            await self.gate.wait()
        return self.response if self.response is not None else FakeResponse(sse())
