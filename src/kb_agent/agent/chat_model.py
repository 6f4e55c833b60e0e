"""Adapter exposing a LangChain chat model as a loop model callback."""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

from kb_agent.agent.registry import ToolSpec
from kb_agent.types import Message, ModelTurn, Role, TokenUsage, ToolCallRequest


class LangChainModelInvoker:
    """Calls a `BaseChatModel` with tools bound from `ToolSpec`s.

    Provider errors are not caught here; the loop treats them as fatal.
    """

    def __init__(self, llm: BaseChatModel) -> None:
        self.llm = llm

    def __call__(
        self, transcript: Sequence[Message], tool_specs: Sequence[ToolSpec]
    ) -> ModelTurn:
        model: Any = self.llm
        if tool_specs:
            model = self.llm.bind_tools([spec.to_openai_tool() for spec in tool_specs])
        response = model.invoke(to_langchain_messages(transcript))
        return from_langchain_message(response)


def to_langchain_messages(transcript: Sequence[Message]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in transcript:
        if message.role is Role.SYSTEM:
            converted.append(SystemMessage(content=message.content))
        elif message.role is Role.USER:
            converted.append(HumanMessage(content=message.content))
        elif message.role is Role.ASSISTANT:
            converted.append(
                AIMessage(
                    content=message.content,
                    tool_calls=[
                        {
                            "name": request.tool_name,
                            "args": _args_or_empty(request.arguments_json),
                            "id": request.id,
                            "type": "tool_call",
                        }
                        for request in message.tool_calls
                    ],
                )
            )
        else:
            converted.append(
                ToolMessage(content=message.content, tool_call_id=message.tool_call_id or "")
            )
    return converted


def from_langchain_message(response: BaseMessage) -> ModelTurn:
    text = _extract_text(response.content)
    requests: list[ToolCallRequest] = []

    for index, call in enumerate(getattr(response, "tool_calls", None) or []):
        requests.append(
            ToolCallRequest(
                id=str(call.get("id") or f"call_{index}"),
                tool_name=str(call.get("name", "")),
                arguments_json=json.dumps(call.get("args") or {}),
            )
        )
    # Calls the provider emitted with unparseable arguments keep their raw
    # text so the loop reports the parse failure back to the model.
    for index, call in enumerate(getattr(response, "invalid_tool_calls", None) or []):
        requests.append(
            ToolCallRequest(
                id=str(call.get("id") or f"invalid_call_{index}"),
                tool_name=str(call.get("name") or ""),
                arguments_json=str(call.get("args") or ""),
            )
        )

    usage_metadata = getattr(response, "usage_metadata", None)
    usage = None
    if usage_metadata:
        usage = TokenUsage(
            input_tokens=usage_metadata.get("input_tokens"),
            output_tokens=usage_metadata.get("output_tokens"),
            total_tokens=usage_metadata.get("total_tokens"),
        )

    return ModelTurn(
        message=Message.assistant(text, tuple(requests)),
        tool_calls=tuple(requests),
        usage=usage,
    )


def _extract_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return "".join(parts)
    return str(content or "")


def _args_or_empty(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}
