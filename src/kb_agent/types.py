"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SourceKind(str, Enum):
    AGENT_MD = "agent_md"
    MARKDOWN_DOC = "markdown_doc"
    GENERATED_API_METHOD = "generated_api_method"
    TEXT = "text"


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model.

    `arguments_json` is kept as raw text; the loop is responsible for parsing.
    """

    id: str
    tool_name: str
    arguments_json: str = ""


@dataclass(slots=True, frozen=True)
class Message:
    """One transcript entry."""

    role: Role
    content: str = ""
    tool_call_id: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: tuple[ToolCallRequest, ...] = ()
    ) -> Message:
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool(cls, request_id: str, content: str) -> Message:
        return cls(role=Role.TOOL, content=content, tool_call_id=request_id)


@dataclass(slots=True, frozen=True)
class ToolExecutionResult:
    """Outcome of one tool call; failures are carried as `ERROR:` text."""

    request_id: str
    tool_name: str
    text: str

    @property
    def is_error(self) -> bool:
        return self.text.startswith("ERROR:")


def _sum_optional(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return a + b


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token counts reported by a provider.

    A field left as `None` means "not reported", which is different from zero.
    """

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None

    def __post_init__(self) -> None:
        for name in ("input_tokens", "output_tokens", "total_tokens"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValueError(f"{name} must be non-negative, got {value}")

    def merge(self, other: TokenUsage | None) -> TokenUsage:
        if other is None:
            return self
        return TokenUsage(
            input_tokens=_sum_optional(self.input_tokens, other.input_tokens),
            output_tokens=_sum_optional(self.output_tokens, other.output_tokens),
            total_tokens=_sum_optional(self.total_tokens, other.total_tokens),
        )

    def is_empty(self) -> bool:
        return (
            self.input_tokens is None
            and self.output_tokens is None
            and self.total_tokens is None
        )

    def summary(self) -> str | None:
        if self.is_empty():
            return None

        def _fmt(value: int | None) -> str:
            return "n/a" if value is None else str(value)

        return (
            f"input={_fmt(self.input_tokens)} "
            f"output={_fmt(self.output_tokens)} "
            f"total={_fmt(self.total_tokens)}"
        )

    def as_dict(self) -> dict[str, int | None]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


def merge_usage(a: TokenUsage | None, b: TokenUsage | None) -> TokenUsage | None:
    """Null-safe usage merge; two absent operands stay absent."""
    if a is None:
        return b
    return a.merge(b)


@dataclass(slots=True, frozen=True)
class ModelTurn:
    """What a model callback returns for a single turn."""

    message: Message
    tool_calls: tuple[ToolCallRequest, ...] = ()
    usage: TokenUsage | None = None


@dataclass(slots=True, frozen=True)
class InferenceResult:
    text: str
    usage_summary: str | None
    usage: TokenUsage = field(default_factory=TokenUsage)
    turns: int = 0
    transcript: tuple[Message, ...] = ()
    tool_results: tuple[ToolExecutionResult, ...] = ()
    cancelled: bool = False


@dataclass(slots=True, frozen=True)
class Document:
    """A source unit owned by the knowledge index."""

    id: str
    title: str
    text: str
    source_kind: SourceKind = SourceKind.TEXT
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True, frozen=True)
class Chunk:
    """A bounded slice of a document, the unit of indexing and retrieval."""

    parent_doc_id: str
    chunk_id: str
    text: str
    ordinal: int


@dataclass(slots=True, frozen=True)
class ScoredChunk:
    """A retrieval result with its relevance score."""

    chunk: Chunk
    score: float


@dataclass(slots=True)
class ToolTrace:
    """Trace record for an executed tool call."""

    name: str
    input_payload: dict[str, Any]
    output_preview: str
    latency_ms: float
    error: bool = False
