"""Agent planner: prompt assembly, auto-context and the tool-calling loop."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any

import structlog

from kb_agent.agent.guardrails import DenyKeywordGuardrail
from kb_agent.agent.loop import (
    CancellationToken,
    ModelInvoker,
    ToolCallingLoop,
    ToolTraceObserver,
)
from kb_agent.agent.registry import Tool, ToolRegistry, ToolSpec, safe_describe
from kb_agent.config import AgentConfig, RetrievalConfig
from kb_agent.errors import UnknownToolError
from kb_agent.obs.hooks import InstrumentationHooks, span
from kb_agent.obs.tracing import Timer, TraceStore
from kb_agent.retrieval.context import ContextBuilder
from kb_agent.retrieval.index import KnowledgeIndex
from kb_agent.types import InferenceResult, Message, Role, ToolTrace

logger = structlog.get_logger(__name__)


class AgentPlanner:
    """High-level orchestrator around `ToolCallingLoop`."""

    def __init__(
        self,
        *,
        model: ModelInvoker,
        tool_registry: ToolRegistry,
        index: KnowledgeIndex,
        trace_store: TraceStore,
        config: AgentConfig | None = None,
        retrieval_config: RetrievalConfig | None = None,
        context_builder: ContextBuilder | None = None,
        loop: ToolCallingLoop | None = None,
        hooks: InstrumentationHooks | None = None,
    ) -> None:
        self.model = model
        self.tool_registry = tool_registry
        self.index = index
        self.trace_store = trace_store
        self.config = config or AgentConfig()
        self.retrieval_config = retrieval_config or RetrievalConfig()
        self.context_builder = context_builder or ContextBuilder()
        self.hooks = hooks
        self.loop = loop or ToolCallingLoop(self.config, hooks=hooks)
        self.guardrail = DenyKeywordGuardrail(self.config.guardrails)

    def build_system_prompt(self, tool_specs: Sequence[ToolSpec]) -> str:
        documents = self.index.documents()
        inventory = "\n".join(f"- {doc.id} :: {doc.title}" for doc in documents)
        services = "\n".join(
            f"- {doc.id}"
            for doc in documents
            if doc.id.startswith("api:")
        )
        tools_summary = "\n".join(
            f"- {spec.name} :: {spec.description}" for spec in tool_specs
        )
        return (
            f"{self.config.system_prompt}"
            f"\n\nKnowledge Base (documents):\n{inventory}"
            f"\n\nAvailable Services:\n{services}"
            f"\n\nAvailable Tools:\n{tools_summary}"
        )

    def prepare_messages(
        self, messages: Sequence[Message], tool_specs: Sequence[ToolSpec]
    ) -> list[Message]:
        """System prompt, then an optional retrieved-context block, then the conversation."""

        prepared = [Message.system(self.build_system_prompt(tool_specs))]
        query = next(
            (m.content for m in reversed(messages) if m.role is Role.USER), ""
        )
        if self.retrieval_config.auto_context_enabled and query.strip():
            top_k = self.retrieval_config.auto_context_top_k
            with span(self.hooks, "kb.retrieve", query_chars=len(query), top_k=top_k):
                chunks = self.index.search(query, top_k)
            if chunks:
                prepared.append(self.context_builder.build_system_message(chunks))
            logger.debug("auto_context", chunks=len(chunks))
        prepared.extend(messages)
        return prepared

    def run(
        self,
        messages: Sequence[Message],
        *,
        ad_hoc_tools: Iterable[Tool] = (),
        cancel_token: CancellationToken | None = None,
        discard_on_cancel: bool = False,
        max_turns: int | None = None,
        on_tool_trace: ToolTraceObserver | None = None,
    ) -> InferenceResult:
        tools = self.tool_registry.merged_with(ad_hoc_tools)
        tool_specs = [
            spec for spec in (safe_describe(tool) for tool in tools.values()) if spec
        ]

        def _execute(name: str, args: dict[str, Any]) -> str:
            tool = tools.get(name)
            if tool is None:
                raise UnknownToolError(name)
            return tool.execute(args)

        return self.loop.run(
            self.prepare_messages(messages, tool_specs),
            tool_specs,
            _execute,
            self.model,
            max_turns,
            guardrail=self.guardrail if self.guardrail.denied else None,
            cancel_token=cancel_token,
            discard_on_cancel=discard_on_cancel,
            on_tool_trace=on_tool_trace,
        )

    def invoke(
        self,
        messages: Sequence[Message],
        *,
        ad_hoc_tools: Iterable[Tool] = (),
        cancel_token: CancellationToken | None = None,
    ) -> dict[str, Any]:
        """Run the agent over a conversation and persist trace metrics.

        Returns:
            A structured payload containing the answer, token usage, turn
            count, trace id, latency, and whether the latency target has been
            satisfied.
        """

        observed_tools: list[ToolTrace] = []
        with Timer() as timer:
            result = self.run(
                messages,
                ad_hoc_tools=ad_hoc_tools,
                cancel_token=cancel_token,
                on_tool_trace=observed_tools.append,
            )

        question = next((m.content for m in messages if m.role is Role.USER), "")
        record = self.trace_store.create_record(
            question=question,
            answer=result.text,
            tool_traces=observed_tools,
            usage=result.usage,
            latency_ms=timer.elapsed_ms,
            turns=result.turns,
            cancelled=result.cancelled,
        )

        return {
            "answer": result.text,
            "usage": result.usage.as_dict(),
            "usage_summary": result.usage_summary,
            "turns": result.turns,
            "tool_calls": len(result.tool_results),
            "trace_id": record.trace_id,
            "latency_ms": record.latency_ms,
            "latency_target_met": record.latency_ms
            <= (self.config.target_latency_seconds * 1000.0),
            "cancelled": result.cancelled,
        }

    def close(self) -> None:
        self.loop.close()
