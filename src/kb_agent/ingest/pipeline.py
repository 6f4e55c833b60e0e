"""End-to-end ingest pipeline: parse -> chunk -> index."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import structlog

from kb_agent.errors import IngestError
from kb_agent.ingest.chunker import MarkdownChunker
from kb_agent.ingest.parser import OpenApiParser, ParserRegistry
from kb_agent.retrieval.index import KnowledgeIndex
from kb_agent.types import Document, SourceKind

logger = structlog.get_logger(__name__)


class IngestPipeline:
    """Parses sources, chunks each document and hands the chunks to the index.

    Re-ingesting a document id replaces its previous chunks.
    """

    def __init__(
        self,
        parser_registry: ParserRegistry,
        chunker: MarkdownChunker,
        index: KnowledgeIndex,
    ) -> None:
        self._parser_registry = parser_registry
        self._chunker = chunker
        self._index = index

    def ingest_document(self, document: Document) -> int:
        """Chunk and index one document; returns the number of chunks."""

        chunks = self._chunker.chunk(document.id, document.text)
        try:
            self._index.add(document, chunks)
        except ValueError as exc:
            raise IngestError(f"Cannot index {document.id}: {exc}") from exc
        return len(chunks)

    def ingest_text(
        self,
        doc_id: str,
        text: str,
        *,
        title: str | None = None,
        source_kind: SourceKind = SourceKind.TEXT,
        metadata: dict[str, Any] | None = None,
    ) -> Document:
        document = Document(
            id=doc_id,
            title=title or doc_id,
            text=text,
            source_kind=source_kind,
            metadata=dict(metadata or {}),
        )
        self.ingest_document(document)
        return document

    def ingest_path(
        self,
        path: str | Path,
        *,
        doc_id: str | None = None,
        extra_metadata: dict[str, Any] | None = None,
    ) -> list[Document]:
        """Ingest a single source file and return the indexed documents."""

        documents = self._parser_registry.parse_path(path, doc_id=doc_id)
        if extra_metadata:
            documents = [
                Document(
                    id=doc.id,
                    title=doc.title,
                    text=doc.text,
                    source_kind=doc.source_kind,
                    metadata={**doc.metadata, **extra_metadata},
                    created_at=doc.created_at,
                )
                for doc in documents
            ]
        chunk_count = sum(self.ingest_document(doc) for doc in documents)
        logger.info(
            "path_ingested", path=str(path), documents=len(documents), chunks=chunk_count
        )
        return documents

    def ingest_foundation(self, root: str | Path) -> list[Document]:
        """Index `Agent.md`, `docs/*.md|*.mdx` and `apis/*.json` under `root`.

        A missing root yields nothing. Unreadable OpenAPI files are logged and
        skipped.
        """

        root_dir = Path(root)
        if not root_dir.is_dir():
            logger.warning("foundation_missing", root=str(root_dir))
            return []

        ingested: list[Document] = []
        agent_md = root_dir / "Agent.md"
        if agent_md.is_file():
            ingested.extend(self.ingest_path(agent_md))

        docs_dir = root_dir / "docs"
        if docs_dir.is_dir():
            for doc_path in sorted(docs_dir.iterdir()):
                if doc_path.is_file() and doc_path.suffix in {".md", ".mdx"}:
                    ingested.extend(self.ingest_path(doc_path))

        apis_dir = root_dir / "apis"
        if apis_dir.is_dir():
            openapi = OpenApiParser()
            for spec_path in sorted(apis_dir.glob("*.json")):
                try:
                    documents = openapi.parse(spec_path)
                except IngestError as exc:
                    logger.warning("openapi_skipped", path=str(spec_path), error=str(exc))
                    continue
                for doc in documents:
                    self.ingest_document(doc)
                ingested.extend(documents)

        logger.info("foundation_ingested", root=str(root_dir), documents=len(ingested))
        return ingested
