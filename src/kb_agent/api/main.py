"""FastAPI entrypoint for ingest/query/search/trace endpoints."""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, model_validator

from kb_agent.agent.chat_model import LangChainModelInvoker
from kb_agent.agent.fallback import RetrievalOnlyModel
from kb_agent.agent.loop import ModelInvoker
from kb_agent.agent.planner import AgentPlanner
from kb_agent.agent.registry import ToolRegistry
from kb_agent.agent.tools import register_builtin_tools
from kb_agent.config import AppSettings, load_settings
from kb_agent.errors import GuardrailRejected, IngestError, ModelInvocationError
from kb_agent.ingest.chunker import MarkdownChunker
from kb_agent.ingest.parser import ParserRegistry
from kb_agent.ingest.pipeline import IngestPipeline
from kb_agent.obs.logging import configure_logging
from kb_agent.obs.tracing import TraceStore
from kb_agent.retrieval.index import KnowledgeIndex
from kb_agent.types import Message, Role, SourceKind

logger = structlog.get_logger(__name__)


def _create_model(settings: AppSettings) -> tuple[ModelInvoker, str]:
    if not os.getenv("OPENAI_API_KEY"):
        return RetrievalOnlyModel(top_k=settings.retrieval.default_top_k), "deterministic"

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        model=settings.provider.model, temperature=settings.provider.temperature
    )
    return LangChainModelInvoker(llm), "langchain"


def build_planner(
    settings: AppSettings,
    model: ModelInvoker,
    index: KnowledgeIndex,
    registry: ToolRegistry,
    trace_store: TraceStore,
) -> AgentPlanner:
    return AgentPlanner(
        model=model,
        tool_registry=registry,
        index=index,
        trace_store=trace_store,
        config=settings.agent,
        retrieval_config=settings.retrieval,
    )


class IngestRequest(BaseModel):
    path: str | None = None
    doc_id: str | None = None
    title: str | None = None
    text: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _path_or_text(self) -> "IngestRequest":
        if not self.path and self.text is None:
            raise ValueError("either `path` or `text` is required")
        if self.text is not None and not self.doc_id:
            raise ValueError("`doc_id` is required with inline `text`")
        return self


class ChatMessage(BaseModel):
    role: Role
    content: str = ""


class QueryRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)


class SourceSearchRequest(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=4, ge=1, le=20)


def create_app(settings: AppSettings | None = None) -> FastAPI:
    """Wire index, tools, planner and routes explicitly."""

    settings = settings or load_settings()
    configure_logging(settings.logging)

    index = KnowledgeIndex()
    pipeline = IngestPipeline(ParserRegistry(), MarkdownChunker(settings.chunking), index)
    registry = ToolRegistry()
    register_builtin_tools(registry, index, config=settings.retrieval)
    trace_store = TraceStore()
    model, planner_mode = _create_model(settings)
    planner = build_planner(settings, model, index, registry, trace_store)

    if settings.foundation_dir:
        pipeline.ingest_foundation(settings.foundation_dir)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        planner.close()

    app = FastAPI(title="Knowledge Base Agent", version="0.1.0", lifespan=lifespan)
    app.state.index = index
    app.state.planner = planner
    app.state.tool_registry = registry

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "planner_mode": planner_mode,
            "documents": index.size(),
            "tools": [spec.name for spec in registry.current_tool_specs()],
            "trace_count": len(trace_store),
        }

    @app.post("/ingest")
    def ingest(request: IngestRequest) -> dict[str, Any]:
        try:
            if request.text is not None:
                documents = [
                    pipeline.ingest_text(
                        str(request.doc_id),
                        request.text,
                        title=request.title,
                        source_kind=SourceKind.TEXT,
                        metadata=request.metadata,
                    )
                ]
            else:
                documents = pipeline.ingest_path(
                    str(request.path),
                    doc_id=request.doc_id,
                    extra_metadata=request.metadata,
                )
        except IngestError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        return {
            "documents": [doc.id for doc in documents],
            "chunks_created": sum(len(index.chunks_for(doc.id)) for doc in documents),
        }

    @app.post("/query")
    def query(request: QueryRequest) -> dict[str, Any]:
        messages = [Message(role=m.role, content=m.content) for m in request.messages]
        try:
            return planner.invoke(messages)
        except GuardrailRejected as exc:
            raise HTTPException(status_code=400, detail=exc.reason) from exc
        except ModelInvocationError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.post("/sources/search")
    def source_search(request: SourceSearchRequest) -> dict[str, Any]:
        hits = index.search_scored(request.query, request.top_k)
        return {
            "items": [
                {
                    "chunk_id": hit.chunk.chunk_id,
                    "doc_id": hit.chunk.parent_doc_id,
                    "ordinal": hit.chunk.ordinal,
                    "score": hit.score,
                    "text": hit.chunk.text,
                }
                for hit in hits
            ]
        }

    @app.get("/documents/{doc_id}")
    def document_detail(doc_id: str) -> dict[str, Any]:
        document = index.get(doc_id)
        if document is None:
            raise HTTPException(status_code=404, detail=f"Document not found: {doc_id}")
        return {
            "id": document.id,
            "title": document.title,
            "text": document.text,
            "source_kind": document.source_kind.value,
            "metadata": document.metadata,
            "created_at": document.created_at.isoformat(),
            "chunks": len(index.chunks_for(doc_id)),
        }

    @app.delete("/documents")
    def clear_documents() -> dict[str, Any]:
        index.clear()
        return {"documents": index.size()}

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return trace_store.summary()

    logger.info("app_created", planner_mode=planner_mode)
    return app


app = create_app()
