"""Built-in knowledge-base tools."""

from __future__ import annotations

from pydantic import BaseModel, Field

from kb_agent.agent.registry import FunctionTool, ToolRegistry
from kb_agent.config import RetrievalConfig
from kb_agent.obs.hooks import InstrumentationHooks, span
from kb_agent.retrieval.context import ContextBuilder
from kb_agent.retrieval.index import KnowledgeIndex


class RetrieveContextInput(BaseModel):
    query: str = Field(min_length=1, description="Natural language query")
    top_k: int = Field(default=4, ge=1, le=20, description="Max results")


class GetDocumentInput(BaseModel):
    doc_id: str = Field(min_length=1, description="Document id from the inventory")


class ListDocumentsInput(BaseModel):
    prefix: str = Field(default="", description="Only list ids starting with this prefix")


def build_builtin_tools(
    index: KnowledgeIndex,
    *,
    context_builder: ContextBuilder | None = None,
    config: RetrievalConfig | None = None,
    hooks: InstrumentationHooks | None = None,
) -> list[FunctionTool]:
    """Create the default tool set.

    Tools:
    - `retrieve_context`: ranked knowledge snippets as a context block.
    - `get_document`: full text of one indexed document.
    - `list_documents`: inventory of indexed documents.
    """

    builder = context_builder or ContextBuilder()
    retrieval = config or RetrievalConfig()

    def _retrieve(input_data: RetrieveContextInput) -> str:
        top_k = min(input_data.top_k, retrieval.max_top_k)
        with span(hooks, "kb.retrieve", query_chars=len(input_data.query), top_k=top_k):
            chunks = index.search(input_data.query, top_k)
        if not chunks:
            return "NO_RESULTS"
        return builder.build_prompt_block(chunks)

    def _get_document(input_data: GetDocumentInput) -> str:
        document = index.get(input_data.doc_id)
        if document is None:
            return "NOT_FOUND"
        return document.text

    def _list_documents(input_data: ListDocumentsInput) -> str:
        lines = [
            f"- {doc.id} :: {doc.title}"
            for doc in index.documents()
            if doc.id.startswith(input_data.prefix)
        ]
        return "\n".join(lines) if lines else "NO_DOCUMENTS"

    return [
        FunctionTool(
            name="retrieve_context",
            description=(
                "Retrieve contextual information from the knowledge base "
                "using a natural language query."
            ),
            args_schema=RetrieveContextInput,
            handler=_retrieve,
        ),
        FunctionTool(
            name="get_document",
            description="Return the full text of a knowledge base document by id.",
            args_schema=GetDocumentInput,
            handler=_get_document,
        ),
        FunctionTool(
            name="list_documents",
            description="List knowledge base documents as `id :: title` lines.",
            args_schema=ListDocumentsInput,
            handler=_list_documents,
        ),
    ]


def register_builtin_tools(
    registry: ToolRegistry,
    index: KnowledgeIndex,
    *,
    context_builder: ContextBuilder | None = None,
    config: RetrievalConfig | None = None,
    hooks: InstrumentationHooks | None = None,
) -> None:
    registry.add_tools(
        build_builtin_tools(
            index, context_builder=context_builder, config=config, hooks=hooks
        )
    )
