from __future__ import annotations

import asyncio
import threading

import pytest

from docchat.models import ChatMessage
from docchat.services.generation import GenerationConfig, QwenGenerator

MESSAGES = [ChatMessage(role="user", content="What is the refund policy?")]


class PromptTokenizer:
    def apply_chat_template(self, messages, **kwargs):
        return "prompt"

    def __call__(self, prompt, return_tensors=None):
        return {}


@pytest.mark.asyncio
async def test_without_model_streams_from_fallback():
    class EchoFallback:
        async def stream(self, *, system, messages):
            yield "from "
            yield "fallback"

    generator = QwenGenerator(GenerationConfig(use_model=False), fallback=EchoFallback())
    fragments = [fragment async for fragment in generator.stream(system="sys", messages=MESSAGES)]
    assert fragments == ["from ", "fallback"]


@pytest.mark.asyncio
async def test_cancelled_model_stream_releases_its_worker_thread():
    pytest.importorskip("torch")
    pytest.importorskip("transformers")
    release = threading.Event()

    class StallingModel:
        def generate(self, *, streamer, **kwargs):
            streamer.on_finalized_text("one ")
            release.wait(10)
            streamer.end()

    generator = QwenGenerator(GenerationConfig(use_model=False, token_timeout_seconds=30.0))
    generator._tokenizer = PromptTokenizer()
    generator._model = StallingModel()
    fragments: list[str] = []

    async def consume():
        async for fragment in generator.stream(system="sys", messages=MESSAGES):
            fragments.append(fragment)

    task = asyncio.create_task(consume())
    try:
        while not fragments:
            await asyncio.sleep(0.01)
        # consumer is now parked on the next fragment
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fragments == ["one "]
        loop = asyncio.get_running_loop()
        await asyncio.wait_for(loop.shutdown_default_executor(), timeout=2)
    finally:
        release.set()
