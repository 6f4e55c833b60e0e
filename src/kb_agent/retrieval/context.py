"""Formats retrieved chunks into a prompt block."""

from __future__ import annotations

from collections.abc import Sequence

from kb_agent.types import Chunk, Message

CONTEXT_HEADER = "### Retrieved Context (do not quote verbatim unless necessary)\n"


class ContextBuilder:
    """Renders chunks as a bulleted block, one chunk per line."""

    def __init__(self, header: str = CONTEXT_HEADER) -> None:
        self.header = header

    def build_prompt_block(self, chunks: Sequence[Chunk]) -> str:
        body = "\n".join(
            "- " + chunk.text.replace("\n", " ").strip() for chunk in chunks
        )
        return self.header + body + "\n"

    def build_system_message(self, chunks: Sequence[Chunk]) -> Message:
        return Message.system(self.build_prompt_block(chunks))
