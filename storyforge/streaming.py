"""Stream Processor — turns a provider response into an ordered token sequence.

Every provider hands back a StreamResponse whose body uses one framing:
Server-Sent Events carrying OpenAI-style chat completion chunks.

    data: {"choices": [{"delta": {"content": "Hel"}}]}

    data: {"choices": [{"delta": {"content": "lo"}}]}

    data: [DONE]

TokenStream is the cancellable async iterator over the decoded tokens;
process_stream() is the callback form built on top of it.

Status handling:
  204          — generation was cancelled before anything was produced;
                 no tokens, completes immediately.
  other non-2xx — TransportError before any token.
A stream that ends inside an event (or inside a UTF-8 sequence) is a
StreamFramingError, never a silent completion.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from contextlib import aclosing

logger = logging.getLogger(__name__)

DONE = "[DONE]"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class LLMError(RuntimeError):
    """Base class for generation failures."""


class TransportError(LLMError):
    """The provider could not be reached, refused the request or dropped the stream."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StreamFramingError(LLMError):
    """The response body is not valid event-stream framing."""


# ---------------------------------------------------------------------------
# AbortSignal — cancellation token shared by dispatcher and transport
# ---------------------------------------------------------------------------

class AbortSignal:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run callback on abort, or right away if already aborted."""
        if self.aborted:
            callback()
        else:
            self._callbacks.append(callback)

    def abort(self) -> None:
        if self.aborted:
            return
        self._event.set()
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("abort callback failed")

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# StreamResponse — status + byte body, the uniform transport shape
# ---------------------------------------------------------------------------

class StreamResponse:
    """A streamed HTTP-like response: status code plus an async byte body.

    on_close releases the underlying connection; it runs at most once.
    """

    def __init__(
        self,
        status_code: int,
        body: AsyncIterator[bytes] | None = None,
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self._on_close = on_close
        self._closed = False
        self._closing: asyncio.Task | None = None

    @classmethod
    def no_content(cls) -> StreamResponse:
        """The representation of a generation cancelled before it started."""
        return cls(204)

    @classmethod
    def from_tokens(
        cls,
        tokens: AsyncIterable[str],
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> StreamResponse:
        return cls(200, body=format_sse(tokens), on_close=on_close)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_close is not None:
            await self._on_close()
        # A body suspended mid-read ends by itself once the transport is gone.
        aclose = getattr(self.body, "aclose", None)
        if aclose is not None and not getattr(self.body, "ag_running", False):
            await aclose()

    def close_soon(self) -> None:
        """Schedule aclose() on the running loop; used from sync abort paths."""
        if self._closed or self._closing is not None:
            return
        self._closing = asyncio.ensure_future(self.aclose())


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------

class SSEDecoder:
    """Incremental Server-Sent Events decoder.

    feed() returns the data payloads of every event completed by the chunk.
    finish() must be called at end of stream; it rejects leftovers.
    """

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""

    def feed(self, chunk: bytes) -> list[str]:
        try:
            self._buffer += self._utf8.decode(chunk)
        except UnicodeDecodeError as e:
            raise StreamFramingError(f"Invalid UTF-8 in stream: {e}") from e
        self._buffer = self._buffer.replace("\r\n", "\n")

        payloads: list[str] = []
        while "\n\n" in self._buffer:
            event, self._buffer = self._buffer.split("\n\n", 1)
            data_lines = []
            for line in event.split("\n"):
                if line.startswith("data:"):
                    value = line[len("data:"):]
                    data_lines.append(value[1:] if value.startswith(" ") else value)
            if data_lines:
                payloads.append("\n".join(data_lines))
        return payloads

    def finish(self) -> None:
        try:
            self._utf8.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise StreamFramingError("Stream ended inside a UTF-8 sequence") from e
        if self._buffer.strip():
            raise StreamFramingError(
                f"Stream ended mid-event: {self._buffer[:80]!r}"
            )


async def iter_sse_payloads(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Yield event payloads from a byte stream, validating the ending."""
    decoder = SSEDecoder()
    async for chunk in chunks:
        for payload in decoder.feed(chunk):
            yield payload
    decoder.finish()


def encode_sse_token(token: str) -> bytes:
    chunk = {"choices": [{"delta": {"content": token}}]}
    return f"data: {json.dumps(chunk)}\n\n".encode()


async def format_sse(tokens: AsyncIterable[str]) -> AsyncIterator[bytes]:
    """Frame plain text tokens as the uniform event stream."""
    async for token in tokens:
        if token:
            yield encode_sse_token(token)
    yield f"data: {DONE}\n\n".encode()


def parse_chunk(payload: str) -> str:
    """Extract the text delta from one chat completion chunk ("" if none)."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise StreamFramingError(f"Malformed stream chunk: {payload[:80]!r}") from e
    if not isinstance(data, dict):
        raise StreamFramingError(f"Unexpected stream chunk: {payload[:80]!r}")
    if "error" in data:
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise TransportError(f"Provider reported an error mid-stream: {message}")
    choices = data.get("choices")
    if not isinstance(choices, list):
        raise StreamFramingError(f"Stream chunk has no choices: {payload[:80]!r}")
    if not choices:
        return ""
    delta = choices[0].get("delta") or {}
    return delta.get("content") or ""


# ---------------------------------------------------------------------------
# TokenStream — cancellable async iterator of tokens
# ---------------------------------------------------------------------------

async def _drop(step: asyncio.Future) -> None:
    """Cancel a pending read and wait until it has unwound."""
    if not step.done():
        step.cancel()
        await asyncio.wait({step})
    if not step.cancelled():
        step.exception()


class TokenStream:
    """Ordered tokens of one response, with a paired cancel().

    After cancel() the iterator ends at once and no further token is
    yielded, whatever the transport still delivers. A read stalled on the
    transport is interrupted, so cancel() never waits on the provider.
    The response is closed when iteration ends, however it ends.
    """

    def __init__(self, response: StreamResponse) -> None:
        self._response = response
        self._cancelled = False
        self._cancel_requested = asyncio.Event()
        self._iterator: AsyncIterator[str] | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._cancel_requested.set()
        self._response.close_soon()

    def __aiter__(self) -> TokenStream:
        return self

    async def __anext__(self) -> str:
        if self._iterator is None:
            self._iterator = self._iterate()
        if self._cancelled:
            # Every resume point checks the flag before it reads again
            return await self._iterator.__anext__()

        step = asyncio.ensure_future(self._next())
        stop = asyncio.ensure_future(self._cancel_requested.wait())
        try:
            await asyncio.wait({step, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _drop(step)
            raise
        finally:
            stop.cancel()

        if not self._cancelled:
            return step.result()
        await _drop(step)
        raise StopAsyncIteration

    async def _next(self) -> str:
        return await self._iterator.__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        await self._response.aclose()

    async def _iterate(self) -> AsyncIterator[str]:
        response = self._response
        try:
            if self._cancelled or response.status_code == 204:
                return
            if not response.ok:
                raise TransportError(
                    f"Generation failed with HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            if response.body is None:
                raise TransportError("Response has no body", status_code=response.status_code)

            try:
                async with aclosing(iter_sse_payloads(response.body)) as payloads:
                    async for payload in payloads:
                        if self._cancelled or payload == DONE:
                            return
                        token = parse_chunk(payload)
                        if token:
                            yield token
                            if self._cancelled:
                                return
            except LLMError:
                if self._cancelled:
                    return
                raise
            except Exception as e:
                if self._cancelled:
                    return
                raise TransportError(f"Stream failed: {e}") from e
        finally:
            await response.aclose()


# ---------------------------------------------------------------------------
# Callback form
# ---------------------------------------------------------------------------

async def process_stream(
    response: StreamResponse,
    on_token: Callable[[str], None],
    on_complete: Callable[[], None],
    on_error: Callable[[Exception], None],
    *,
    stream: TokenStream | None = None,
) -> None:
    """Drive a response to completion through callbacks.

    on_complete or on_error fires exactly once, unless the stream is
    cancelled, in which case neither fires.
    """
    tokens = stream or TokenStream(response)
    try:
        async with aclosing(tokens) as it:
            async for token in it:
                on_token(token)
    except LLMError as e:
        if tokens.cancelled:
            return
        logger.error("stream error: %s", e)
        on_error(e)
        return
    if not tokens.cancelled:
        on_complete()
