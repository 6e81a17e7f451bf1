"""Service layer orchestrations for DocChat."""

from .chat import ChatService, PreparedChat
from .context import AssembledContext, ContextAssembler, dedupe_sources
from .generation import GenerationBackend, GenerationConfig, QwenGenerator, TemplateGenerator
from .persistence import ExchangePersister
from .streamer import AnswerStream, StreamState

__all__ = [
    "AnswerStream",
    "AssembledContext",
    "ChatService",
    "ContextAssembler",
    "ExchangePersister",
    "GenerationBackend",
    "GenerationConfig",
    "PreparedChat",
    "QwenGenerator",
    "StreamState",
    "TemplateGenerator",
    "dedupe_sources",
]
