"""Generation Session Controller — one generation's state, visible to callers.

A GenerationSession holds exactly one StreamingState and at most one
in-flight stream. Its phases:

    IDLE ──> STREAMING ──> COMPLETE
      │          ├───────> ERRORED
      │          └───────> ABORTED
      └──────────────────> ERRORED     (response refused before streaming)

Any phase other than STREAMING may start a new stream; reset() returns to
IDLE from anywhere. Transitions out of STREAMING are guarded by a run
counter, so events from a stream that was aborted or reset are dropped
instead of reaching the state.

Starting a stream while one is active raises SessionBusyError.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from contextlib import aclosing
from typing import Protocol

from storyforge.models import StreamingState
from storyforge.notifications import LoggingNotifier, Notifier, notify_error
from storyforge.streaming import LLMError, StreamResponse, TokenStream, TransportError

logger = logging.getLogger(__name__)

StateListener = Callable[[StreamingState], None]


class SessionPhase(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERRORED = "errored"
    ABORTED = "aborted"


_TRANSITIONS: dict[SessionPhase, set[SessionPhase]] = {
    SessionPhase.IDLE: {SessionPhase.STREAMING, SessionPhase.ERRORED},
    SessionPhase.STREAMING: {SessionPhase.COMPLETE, SessionPhase.ERRORED, SessionPhase.ABORTED},
    SessionPhase.COMPLETE: {SessionPhase.STREAMING, SessionPhase.ERRORED},
    SessionPhase.ERRORED: {SessionPhase.STREAMING, SessionPhase.ERRORED},
    SessionPhase.ABORTED: {SessionPhase.STREAMING, SessionPhase.ERRORED},
}


class SessionBusyError(RuntimeError):
    """A stream is already in flight on this session."""


class Abortable(Protocol):
    def abort_active_stream(self) -> None: ...


class GenerationSession:
    def __init__(
        self,
        transport: Abortable | None = None,
        notifier: Notifier | None = None,
    ) -> None:
        self._transport = transport
        self._notifier = notifier or LoggingNotifier()
        self._state = StreamingState()
        self._phase = SessionPhase.IDLE
        self._stream: TokenStream | None = None
        self._run = 0
        self._listeners: list[StateListener] = []

    # ------------------------------------------------------------------
    # Observed state
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamingState:
        return self._state

    @property
    def phase(self) -> SessionPhase:
        return self._phase

    @property
    def is_streaming(self) -> bool:
        return self._state.is_streaming

    @property
    def streamed_text(self) -> str:
        return self._state.streamed_text

    @property
    def is_complete(self) -> bool:
        return self._state.is_complete

    @property
    def was_aborted(self) -> bool:
        return self._phase is SessionPhase.ABORTED

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call listener with every new state. Returns an unsubscribe function."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self, state: StreamingState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("state listener failed")

    def _transition(self, phase: SessionPhase) -> None:
        if phase not in _TRANSITIONS[self._phase]:
            raise RuntimeError(f"Invalid session transition {self._phase.value} -> {phase.value}")
        self._phase = phase

    def _owns(self, run: int) -> bool:
        return run == self._run and self._phase is SessionPhase.STREAMING

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def process_stream(self, response: StreamResponse) -> str:
        """Stream a response into the session state and return the full text.

        204 returns "" without touching the state. A refused response or a
        stream failure raises and notifies once. After abort() or reset()
        the text gathered so far is returned and nothing else is reported.
        """
        if self._phase is SessionPhase.STREAMING:
            raise SessionBusyError("A generation is already streaming on this session")

        if response.status_code == 204:
            logger.info("generation was aborted")
            await response.aclose()
            return ""

        if not response.ok:
            await response.aclose()
            self._transition(SessionPhase.ERRORED)
            self._publish(StreamingState())
            notify_error(self._notifier, "Failed to generate response")
            raise TransportError("Failed to generate response", status_code=response.status_code)

        self._run += 1
        run = self._run
        stream = TokenStream(response)
        self._stream = stream
        self._transition(SessionPhase.STREAMING)
        self._publish(StreamingState(is_streaming=True))

        chunks: list[str] = []
        try:
            async with aclosing(stream) as tokens:
                async for token in tokens:
                    if not self._owns(run):
                        break
                    chunks.append(token)
                    self._publish(StreamingState(is_streaming=True, streamed_text="".join(chunks)))
        except LLMError as e:
            if not self._owns(run):
                return "".join(chunks)
            self._stream = None
            self._transition(SessionPhase.ERRORED)
            self._publish(self._state.model_copy(update={"is_streaming": False}))
            logger.error("streaming error: %s", e)
            notify_error(self._notifier, "Failed to stream response")
            raise
        except asyncio.CancelledError:
            if self._owns(run):
                self._stream = None
                self._transition(SessionPhase.ABORTED)
                self._publish(self._state.model_copy(update={"is_streaming": False}))
            raise

        text = "".join(chunks)
        if not self._owns(run):
            return text
        self._stream = None
        self._transition(SessionPhase.COMPLETE)
        self._publish(StreamingState(is_streaming=False, streamed_text=text, is_complete=True))
        return text

    def abort(self) -> None:
        """Cancel the active stream. The state flips at once; teardown may lag."""
        if self._transport is not None:
            self._transport.abort_active_stream()
        if self._stream is not None:
            self._stream.cancel()
            self._stream = None
        if self._phase is SessionPhase.STREAMING:
            self._transition(SessionPhase.ABORTED)
            self._publish(self._state.model_copy(update={"is_streaming": False}))

    def reset(self) -> None:
        """Back to the initial state from any phase; an in-flight stream is dropped."""
        if self._stream is not None:
            self._stream.cancel()
            self._stream = None
        self._run += 1
        self._phase = SessionPhase.IDLE
        self._publish(StreamingState())
