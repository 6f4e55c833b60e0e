import pytest
from pydantic import BaseModel

from kb_agent.agent.fallback import RetrievalOnlyModel
from kb_agent.agent.planner import AgentPlanner
from kb_agent.agent.registry import FunctionTool, ToolRegistry
from kb_agent.agent.tools import register_builtin_tools
from kb_agent.config import AgentConfig, RetrievalConfig
from kb_agent.errors import GuardrailRejected
from kb_agent.ingest.chunker import MarkdownChunker
from kb_agent.ingest.parser import ParserRegistry
from kb_agent.ingest.pipeline import IngestPipeline
from kb_agent.obs.tracing import TraceStore
from kb_agent.retrieval.context import CONTEXT_HEADER
from kb_agent.retrieval.index import KnowledgeIndex
from kb_agent.types import Message, Role, SourceKind


class EmptyInput(BaseModel):
    pass


def _planner(
    *, config: AgentConfig | None = None, retrieval: RetrievalConfig | None = None
) -> tuple[AgentPlanner, TraceStore]:
    index = KnowledgeIndex()
    pipeline = IngestPipeline(ParserRegistry(), MarkdownChunker(), index)
    pipeline.ingest_text(
        "policy",
        "# Data policy\nAll employees must encrypt customer data at rest.\n",
        title="Data policy",
    )
    pipeline.ingest_text(
        "holidays",
        "# Holidays\nHoliday arrangements live in the handbook.\n",
        title="Holidays",
    )
    registry = ToolRegistry()
    register_builtin_tools(registry, index)
    trace_store = TraceStore()
    planner = AgentPlanner(
        model=RetrievalOnlyModel(),
        tool_registry=registry,
        index=index,
        trace_store=trace_store,
        config=config,
        retrieval_config=retrieval,
    )
    return planner, trace_store


def test_agent_retrieves_and_answers_from_knowledge_base() -> None:
    planner, trace_store = _planner()

    try:
        payload = planner.invoke([Message.user("What must employees encrypt?")])
    finally:
        planner.close()

    assert payload["answer"].startswith("Based on the knowledge base:")
    assert "encrypt customer data at rest" in payload["answer"]
    assert payload["turns"] == 2
    assert payload["tool_calls"] == 1
    assert payload["usage"]["input_tokens"] > 0
    assert payload["cancelled"] is False

    record = trace_store.get(payload["trace_id"])
    assert record.question == "What must employees encrypt?"
    assert [trace.name for trace in record.tool_traces] == ["retrieve_context"]


def test_system_prompt_lists_documents_and_tools() -> None:
    planner, _ = _planner()

    try:
        messages = planner.prepare_messages(
            [Message.user("holiday handbook")], planner.tool_registry.current_tool_specs()
        )
    finally:
        planner.close()

    system_prompt = messages[0].content
    assert "Knowledge Base (documents):\n- holidays :: Holidays\n- policy :: Data policy" in system_prompt
    assert "- retrieve_context :: " in system_prompt
    assert messages[1].role is Role.SYSTEM
    assert messages[1].content.startswith(CONTEXT_HEADER)
    assert "Holiday arrangements" in messages[1].content
    assert messages[-1] == Message.user("holiday handbook")


def test_system_prompt_lists_api_services_between_documents_and_tools() -> None:
    planner, _ = _planner()
    IngestPipeline(ParserRegistry(), MarkdownChunker(), planner.index).ingest_text(
        "api:listOrders",
        "# GET /orders\nList orders for the current account.\n",
        title="GET /orders",
        source_kind=SourceKind.GENERATED_API_METHOD,
    )

    try:
        prompt = planner.build_system_prompt(planner.tool_registry.current_tool_specs())
    finally:
        planner.close()

    assert "\n\nAvailable Services:\n- api:listOrders\n\nAvailable Tools:\n" in prompt
    assert prompt.index("Knowledge Base (documents):") < prompt.index("Available Services:")
    assert "- policy\n" not in prompt.split("Available Services:")[1]


def test_auto_context_can_be_disabled() -> None:
    planner, _ = _planner(retrieval=RetrievalConfig(auto_context_enabled=False))

    try:
        messages = planner.prepare_messages([Message.user("holiday handbook")], [])
    finally:
        planner.close()

    assert len(messages) == 2
    assert not messages[1].content.startswith(CONTEXT_HEADER)


def test_ad_hoc_tool_shadows_builtin_for_one_run() -> None:
    planner, _ = _planner()
    override = FunctionTool(
        name="retrieve_context",
        description="override",
        args_schema=EmptyInput,
        handler=lambda data: "ERROR: retrieval disabled",
    )

    try:
        shadowed = planner.run([Message.user("encrypt data")], ad_hoc_tools=[override])
        normal = planner.run([Message.user("encrypt data")])
    finally:
        planner.close()

    assert shadowed.tool_results[0].text == "ERROR: retrieval disabled"
    assert "could not find verifiable evidence" in shadowed.text
    assert normal.text.startswith("Based on the knowledge base:")


def test_guardrail_blocks_denied_prompt() -> None:
    planner, trace_store = _planner(config=AgentConfig(guardrails="deny: salary"))

    try:
        with pytest.raises(GuardrailRejected):
            planner.invoke([Message.user("What is the CEO salary?")])
    finally:
        planner.close()

    assert trace_store.list_recent() == []

