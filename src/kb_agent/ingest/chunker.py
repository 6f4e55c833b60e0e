"""Header-aware fixed-window chunking implementation."""

from __future__ import annotations

import re

from kb_agent.config import ChunkingConfig
from kb_agent.types import Chunk

# Zero-width split right after the newline that precedes a top-level header,
# so the newline stays with the previous section.
_HEADER_BOUNDARY = re.compile(r"(?<=\n)(?=# )")


class MarkdownChunker:
    """Splits markdown into sections, then into fixed-size character windows.

    Design notes:
    1. Header boundaries first.
       A line beginning with `# ` opens a new top-level section. Deeper headers
       (`## `) do not split.

    2. Fixed windows second.
       Each section is cut into consecutive, non-overlapping windows of
       `window_chars` characters. The last window of a section may be shorter.

    Chunk ids are derived from the document id and ordinal, so chunking the
    same input twice yields identical chunks. Concatenating the texts of all
    chunks reproduces the input exactly.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk(self, doc_id: str, text: str) -> list[Chunk]:
        if not text:
            return []

        chunks: list[Chunk] = []
        for section in self._split_sections(text):
            for window in self._windows(section, self.config.window_chars):
                ordinal = len(chunks)
                chunks.append(
                    Chunk(
                        parent_doc_id=doc_id,
                        chunk_id=f"{doc_id}-chunk-{ordinal:04d}",
                        text=window,
                        ordinal=ordinal,
                    )
                )
        return chunks

    @staticmethod
    def _split_sections(text: str) -> list[str]:
        return [part for part in _HEADER_BOUNDARY.split(text) if part]

    @staticmethod
    def _windows(section: str, size: int) -> list[str]:
        return [section[i : i + size] for i in range(0, len(section), size)]
