"""Streaming generation backends for DocChat."""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, Sequence

from docchat.errors import GenerationError
from docchat.models import ChatMessage
from docchat.services.context import NO_CONTEXT_MARKER

LOGGER = logging.getLogger(__name__)

NO_ANSWER_TEXT = "I couldn't find any relevant information about that in your documents."

_FIRST_SOURCE_RE = re.compile(r"\[Source 1\]\n(?P<content>.+?)(?:\n\n---\n\n|\n===END DOCUMENT===)", re.DOTALL)


@dataclass(frozen=True)
class GenerationConfig:
    """Configuration for answer generation."""

    model: str = "Qwen/Qwen2.5-1.5B-Instruct"
    max_new_tokens: int = 512
    temperature: float = 0.3
    use_model: bool = False
    device: str | None = None
    token_timeout_seconds: float = 30.0


class GenerationBackend(Protocol):
    """Protocol describing streaming generation behaviour.

    Closing the returned iterator must stop generation.
    """

    def stream(self, *, system: str, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """Yield answer text fragments for the system prompt and conversation."""


class TemplateGenerator:
    """Simple deterministic generator used for tests and offline environments."""

    async def stream(self, *, system: str, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        for word in _words(self._compose(system, messages)):
            yield word
            await asyncio.sleep(0)

    @staticmethod
    def _compose(system: str, messages: Sequence[ChatMessage]) -> str:
        if NO_CONTEXT_MARKER in system:
            return NO_ANSWER_TEXT
        match = _FIRST_SOURCE_RE.search(system)
        if match is None:
            return NO_ANSWER_TEXT
        summary = " ".join(match.group("content").split())
        if len(summary) > 280:
            summary = summary[:277].rstrip() + "..."
        question = messages[-1].content if messages else ""
        return f"Based on your documents, regarding '{question}': {summary} [1]"


def _words(text: str) -> list[str]:
    parts = text.split(" ")
    return [part if index == len(parts) - 1 else f"{part} " for index, part in enumerate(parts)]


class QwenGenerator:
    """Generator that optionally streams from Qwen models via Transformers."""

    def __init__(self, config: GenerationConfig | None = None, fallback: GenerationBackend | None = None) -> None:
        self._config = config or GenerationConfig()
        self._fallback = fallback or TemplateGenerator()
        self._tokenizer = None
        self._model = None
        if not self._config.use_model:
            LOGGER.info("QwenGenerator running in template-only mode.")
            return
        try:
            from transformers import AutoModelForCausalLM, AutoTokenizer

            self._tokenizer = AutoTokenizer.from_pretrained(
                self._config.model,
                trust_remote_code=True,
            )
            self._model = AutoModelForCausalLM.from_pretrained(
                self._config.model,
                trust_remote_code=True,
            )
            if self._tokenizer.pad_token is None and self._tokenizer.eos_token is not None:
                self._tokenizer.pad_token = self._tokenizer.eos_token
            if getattr(self._model.config, "pad_token_id", None) is None and self._tokenizer.pad_token_id is not None:
                self._model.config.pad_token_id = self._tokenizer.pad_token_id
            if self._config.device:
                self._model.to(self._config.device)
            LOGGER.info("Loaded generation model %s", self._config.model)
        except Exception as exc:  # pragma: no cover - model load failure
            LOGGER.warning("Falling back to template generator: %s", exc)
            self._tokenizer = None
            self._model = None

    async def stream(self, *, system: str, messages: Sequence[ChatMessage]) -> AsyncIterator[str]:
        if self._tokenizer is None or self._model is None:
            async for fragment in self._fallback.stream(system=system, messages=messages):
                yield fragment
            return

        import torch
        from transformers import StoppingCriteria, StoppingCriteriaList, TextIteratorStreamer

        cancelled = threading.Event()

        class _CancelFlag(StoppingCriteria):
            def __call__(self, input_ids, scores, **kwargs):  # type: ignore[override]
                return torch.full((input_ids.shape[0],), cancelled.is_set(), dtype=torch.bool, device=input_ids.device)

        prompt = self._tokenizer.apply_chat_template(
            self._build_messages(system=system, messages=messages),
            tokenize=False,
            add_generation_prompt=True,
        )
        tokenized = self._tokenizer(prompt, return_tensors="pt")
        if self._config.device:
            tokenized = tokenized.to(self._config.device)
        streamer = TextIteratorStreamer(
            self._tokenizer,
            skip_prompt=True,
            skip_special_tokens=True,
            timeout=self._config.token_timeout_seconds,
        )
        failures: list[BaseException] = []

        def _generate() -> None:
            try:
                with torch.no_grad():
                    self._model.generate(
                        **tokenized,
                        streamer=streamer,
                        max_new_tokens=self._config.max_new_tokens,
                        do_sample=self._config.temperature > 0,
                        temperature=self._config.temperature,
                        stopping_criteria=StoppingCriteriaList([_CancelFlag()]),
                    )
            except Exception as exc:  # surfaced to the consumer below
                failures.append(exc)
                streamer.end()

        worker = threading.Thread(target=_generate, name="docchat-generate", daemon=True)
        worker.start()
        iterator = iter(streamer)
        finished = object()
        try:
            while True:
                try:
                    fragment = await asyncio.to_thread(next, iterator, finished)
                except Exception as exc:
                    raise GenerationError() from exc
                if fragment is finished:
                    break
                if fragment:
                    yield fragment
            if failures:
                raise GenerationError() from failures[0]
        finally:
            cancelled.set()
            # wakes a to_thread worker still blocked on the queue
            streamer.text_queue.put(streamer.stop_signal)

    @staticmethod
    def _build_messages(*, system: str, messages: Sequence[ChatMessage]) -> list[dict[str, str]]:
        return [{"role": "system", "content": system}] + [
            {"role": message.role, "content": message.content} for message in messages
        ]
