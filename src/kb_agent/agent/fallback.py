"""Deterministic model callback used when no external LLM is configured."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence

from kb_agent.agent.registry import ToolSpec
from kb_agent.retrieval.context import CONTEXT_HEADER
from kb_agent.types import Message, ModelTurn, Role, TokenUsage, ToolCallRequest

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_NO_EVIDENCE = "I could not find verifiable evidence in the indexed documents."


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))


class RetrievalOnlyModel:
    """Answers from retrieval evidence without an LLM.

    It speaks the same callback contract as the LangChain adapter, so the
    full loop (tool request, tool execution, final answer) runs offline:

    - first turn: request `retrieve_context` for the latest user message when
      that tool is offered, otherwise answer from any injected context block;
    - after a tool result: answer with up to `max_snippets` snippets.
    """

    retrieval_tool = "retrieve_context"

    def __init__(self, *, top_k: int = 4, max_snippets: int = 3) -> None:
        self.top_k = top_k
        self.max_snippets = max_snippets

    def __call__(
        self, transcript: Sequence[Message], tool_specs: Sequence[ToolSpec]
    ) -> ModelTurn:
        last = transcript[-1] if transcript else None
        if last is not None and last.role is Role.TOOL:
            return self._answer(transcript, last.content)

        question = next(
            (m.content for m in reversed(transcript) if m.role is Role.USER), ""
        )
        offered = {spec.name for spec in tool_specs}
        if question.strip() and self.retrieval_tool in offered:
            request = ToolCallRequest(
                id=f"call_{len(transcript)}",
                tool_name=self.retrieval_tool,
                arguments_json=json.dumps({"query": question, "top_k": self.top_k}),
            )
            input_tokens = _prompt_tokens(transcript)
            return ModelTurn(
                message=Message.assistant("", (request,)),
                tool_calls=(request,),
                usage=TokenUsage(
                    input_tokens=input_tokens, output_tokens=0, total_tokens=input_tokens
                ),
            )

        context = "\n".join(
            m.content
            for m in transcript
            if m.role is Role.SYSTEM and m.content.startswith(CONTEXT_HEADER)
        )
        return self._answer(transcript, context)

    def _answer(self, transcript: Sequence[Message], evidence: str) -> ModelTurn:
        snippets = [
            line[2:].strip()
            for line in evidence.splitlines()
            if line.startswith("- ") and line[2:].strip()
        ]
        if snippets and not evidence.startswith("ERROR:"):
            lines = [
                f"{idx}. {snippet}"
                for idx, snippet in enumerate(snippets[: self.max_snippets], start=1)
            ]
            answer = "Based on the knowledge base:\n" + "\n".join(lines)
        else:
            answer = _NO_EVIDENCE

        input_tokens = _prompt_tokens(transcript)
        output_tokens = estimate_token_count(answer)
        return ModelTurn(
            message=Message.assistant(answer),
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )


def _prompt_tokens(transcript: Sequence[Message]) -> int:
    return sum(estimate_token_count(message.content) for message in transcript)
