"""Source deduplication and grounded context assembly."""

from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Sequence

from docchat.access.validation import DOCUMENT_BEGIN_MARKER, DOCUMENT_END_MARKER
from docchat.models import RetrievedSource

NO_CONTEXT_MARKER = "No relevant document context was found."


def _normalize_content(text: str) -> str:
    normalized = unicodedata.normalize("NFKC", text)
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip().lower()


def dedupe_sources(sources: Sequence[RetrievedSource]) -> list[RetrievedSource]:
    """Drop repeated chunk ids and near-identical passages, keeping the most similar copy.

    Survivors keep their original relative order.
    """

    by_confidence = sorted(range(len(sources)), key=lambda i: (-sources[i].similarity, i))
    seen_ids: set[str] = set()
    seen_content: set[str] = set()
    kept: set[int] = set()
    for index in by_confidence:
        source = sources[index]
        content_key = _normalize_content(source.content)
        if source.chunk_id in seen_ids or content_key in seen_content:
            continue
        seen_ids.add(source.chunk_id)
        seen_content.add(content_key)
        kept.add(index)
    return [source for index, source in enumerate(sources) if index in kept]


@dataclass(frozen=True)
class AssembledContext:
    """Prompt-ready context block and the sources it numbers."""

    text: str
    sources: Sequence[RetrievedSource]

    @property
    def source_index(self) -> list[int]:
        return [position + 1 for position in range(len(self.sources))]

    @property
    def is_empty(self) -> bool:
        return not self.sources


@dataclass(frozen=True)
class ContextAssemblerConfig:
    separator: str = "\n\n---\n\n"
    file_header: str = "### File: {file_name}"


class ContextAssembler:
    """Renders passages as numbered ``[Source N]`` blocks in final rank order."""

    def __init__(self, config: ContextAssemblerConfig | None = None) -> None:
        self._config = config or ContextAssemblerConfig()

    def assemble(self, sources: Sequence[RetrievedSource]) -> AssembledContext:
        if not sources:
            return AssembledContext(text=NO_CONTEXT_MARKER, sources=[])
        has_files = any(source.file_name for source in sources)
        blocks: list[str] = []
        current_file: str | None = None
        for number, source in enumerate(sources, start=1):
            block = f"[Source {number}]\n{_strip_markers(source.content)}"
            # A header opens every run of consecutive passages from the same file
            if has_files and (number == 1 or source.file_name != current_file):
                current_file = source.file_name
                header = self._config.file_header.format(file_name=current_file or "Unnamed file")
                block = f"{header}\n\n{block}"
            blocks.append(block)
        body = self._config.separator.join(blocks)
        return AssembledContext(
            text=f"{DOCUMENT_BEGIN_MARKER}\n{body}\n{DOCUMENT_END_MARKER}",
            sources=list(sources),
        )


def build_system_prompt(instructions: str, context: AssembledContext) -> str:
    return f"{instructions}\n\n{context.text}"


def _strip_markers(text: str) -> str:
    return text.replace(DOCUMENT_BEGIN_MARKER, "").replace(DOCUMENT_END_MARKER, "")
