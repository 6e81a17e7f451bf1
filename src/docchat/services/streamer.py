"""Answer streaming state machine.

``Idle -> ContextReady -> Streaming -> Completed | Aborted``. The resolved sources go
out once as a side-channel event before any answer text; a partial answer is never
handed to the completion handler.
"""

from __future__ import annotations

import asyncio
import enum
import time
from typing import AsyncIterator, Sequence

from docchat.metrics.observability import PipelineMetrics, get_logger
from docchat.models import ChatMessage, Done, RetrievedSource, SourcesResolved, StreamError, StreamEvent, TextDelta
from docchat.services.context import AssembledContext, build_system_prompt
from docchat.services.generation import GenerationBackend


class StreamState(str, enum.Enum):
    IDLE = "idle"
    CONTEXT_READY = "context_ready"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"


class InvalidStreamTransition(RuntimeError):
    pass


class AnswerStream:
    """Drives one generation call and exposes it as a tagged event stream."""

    def __init__(
        self,
        generator: GenerationBackend,
        *,
        deadline: float | None = None,
    ) -> None:
        self._generator = generator
        self._deadline = deadline
        self._state = StreamState.IDLE
        self._system = ""
        self._messages: Sequence[ChatMessage] = ()
        self._sources: Sequence[RetrievedSource] = ()
        self._text: str | None = None
        self.abort_reason: str | None = None
        self._logger = get_logger("stream")

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def text(self) -> str | None:
        """Full answer, available only once the stream has completed."""

        return self._text

    @property
    def sources(self) -> Sequence[RetrievedSource]:
        return self._sources

    def prepare(
        self,
        context: AssembledContext,
        *,
        instructions: str,
        messages: Sequence[ChatMessage],
        sources: Sequence[RetrievedSource] | None = None,
    ) -> None:
        """Move ``Idle -> ContextReady``; ``sources`` defaults to the assembled ones."""

        self._require(StreamState.IDLE)
        self._system = build_system_prompt(instructions, context)
        self._messages = list(messages)
        self._sources = list(context.sources if sources is None else sources)
        self._state = StreamState.CONTEXT_READY

    async def events(self) -> AsyncIterator[StreamEvent]:
        self._require(StreamState.CONTEXT_READY)
        self._state = StreamState.STREAMING
        start = time.perf_counter()
        parts: list[str] = []
        fragments = self._generator.stream(system=self._system, messages=self._messages)
        try:
            yield SourcesResolved(sources=self._sources)
            while True:
                try:
                    fragment = await self._next_fragment(fragments)
                except StopAsyncIteration:
                    break
                parts.append(fragment)
                yield TextDelta(text=fragment)
        except asyncio.TimeoutError:
            self._abort("timeout", start)
            yield StreamError(kind="timeout")
            return
        except asyncio.CancelledError:
            self._abort("cancelled", start)
            raise
        except GeneratorExit:
            self._abort("disconnected", start)
            raise
        except Exception as exc:
            self._logger.error("stream.upstream_failed", detail=str(exc), error=type(exc).__name__)
            PipelineMetrics.record_upstream_failure("generation")
            self._abort("upstream", start)
            yield StreamError(kind="upstream")
            return
        finally:
            close = getattr(fragments, "aclose", None)
            if close is not None:
                await close()

        self._text = "".join(parts)
        self._state = StreamState.COMPLETED
        PipelineMetrics.observe_generation(time.perf_counter() - start, "completed")
        self._logger.info("stream.completed", answer_chars=len(self._text), source_count=len(self._sources))
        yield Done(text=self._text)

    async def _next_fragment(self, fragments: AsyncIterator[str]) -> str:
        if self._deadline is None:
            return await fragments.__anext__()
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(fragments.__anext__(), timeout=remaining)

    def _abort(self, reason: str, start: float) -> None:
        self._state = StreamState.ABORTED
        self.abort_reason = reason
        PipelineMetrics.observe_generation(time.perf_counter() - start, "aborted")
        self._logger.warning("stream.aborted", reason=reason)

    def _require(self, expected: StreamState) -> None:
        if self._state is not expected:
            raise InvalidStreamTransition(f"expected {expected.value}, stream is {self._state.value}")
