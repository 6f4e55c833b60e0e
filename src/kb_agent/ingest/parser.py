"""Parsing interfaces and concrete parsers for knowledge sources."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

import structlog

from kb_agent.errors import IngestError
from kb_agent.types import Document, SourceKind

logger = structlog.get_logger(__name__)

_HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")


class Parser(ABC):
    """Base parser interface used by the ingest pipeline."""

    extensions: tuple[str, ...] = ()

    @abstractmethod
    def parse(self, path: Path, *, doc_id: str | None = None) -> list[Document]:
        """Parse a file into one or more documents."""

    @staticmethod
    def read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise IngestError(f"Cannot read {path}: {exc}") from exc


class TextParser(Parser):
    """Parser for plain text documents."""

    extensions = (".txt", ".log")

    def parse(self, path: Path, *, doc_id: str | None = None) -> list[Document]:
        return [
            Document(
                id=doc_id or path.stem,
                title=path.name,
                text=self.read_text(path),
                source_kind=SourceKind.TEXT,
                metadata={"path": str(path.resolve())},
            )
        ]


class MarkdownParser(Parser):
    """Parser for markdown documents; `Agent.md` is tagged as the agent prompt."""

    extensions = (".md", ".mdx", ".markdown")

    def parse(self, path: Path, *, doc_id: str | None = None) -> list[Document]:
        is_agent_md = path.name == "Agent.md"
        return [
            Document(
                id=doc_id or ("agent-md" if is_agent_md else path.stem),
                title="Agent Prompt" if is_agent_md else path.name,
                text=self.read_text(path),
                source_kind=SourceKind.AGENT_MD if is_agent_md else SourceKind.MARKDOWN_DOC,
                metadata={"path": str(path.resolve())},
            )
        ]


class OpenApiParser(Parser):
    """Expands an OpenAPI JSON document into one document per operation.

    Each operation becomes `api:<operationId>` with a small markdown body
    describing title, method, path, summary and description. Operations
    without an `operationId` fall back to `<method>_<path>`.
    """

    extensions = (".json",)

    def parse(self, path: Path, *, doc_id: str | None = None) -> list[Document]:
        del doc_id  # ids are derived per operation
        try:
            payload: Any = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise IngestError(f"Cannot read OpenAPI document {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise IngestError(f"OpenAPI document must be a JSON object: {path}")
        return self.parse_spec(payload, source=str(path.resolve()))

    def parse_spec(self, payload: dict[str, Any], *, source: str = "") -> list[Document]:
        info = payload.get("info") or {}
        title = str(info.get("title") or "API")
        paths = payload.get("paths") or {}

        documents: list[Document] = []
        for api_path, methods in paths.items():
            if not isinstance(methods, dict):
                continue
            for method, operation in methods.items():
                if method.lower() not in _HTTP_METHODS or not isinstance(operation, dict):
                    continue
                op_id = str(operation.get("operationId") or f"{method}_{api_path}")
                summary = str(operation.get("summary") or "")
                description = str(operation.get("description") or "")
                text = (
                    f"# {title} – {op_id}\n"
                    f"**Method**: {method.upper()} {api_path}\n\n"
                    f"**Summary**: {summary}\n\n"
                    f"{description}\n"
                )
                documents.append(
                    Document(
                        id=f"api:{op_id}",
                        title=op_id,
                        text=text,
                        source_kind=SourceKind.GENERATED_API_METHOD,
                        metadata={"path": api_path, "method": method, "source": source},
                    )
                )
        return documents


class ParserRegistry:
    """Maps file extension to parser implementation."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers or [TextParser(), MarkdownParser(), OpenApiParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def supports(self, path: str | Path) -> bool:
        return Path(path).suffix.lower() in self._parsers

    def parse_path(self, path: str | Path, *, doc_id: str | None = None) -> list[Document]:
        file_path = Path(path)
        if not file_path.is_file():
            raise IngestError(f"File not found: {file_path}")
        parser = self._parsers.get(file_path.suffix.lower())
        if parser is None:
            raise IngestError(f"No parser registered for extension: {file_path.suffix}")
        return parser.parse(file_path, doc_id=doc_id)
