"""Tool contracts and a copy-on-write tool registry built on Pydantic v2 models."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

import structlog
from pydantic import BaseModel, ConfigDict, Field

from kb_agent.errors import UnknownToolError

logger = structlog.get_logger(__name__)

_JSON_SCHEMA_DRAFT = "http://json-schema.org/draft-07/schema#"


class ToolParameter(BaseModel):
    """One named argument a tool accepts."""

    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    schema_extras: dict[str, Any] = Field(default_factory=dict)


class ToolSpec(BaseModel):
    """Declarative, immutable description of a tool as exposed to the model."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    parameters: tuple[ToolParameter, ...] = ()

    def to_json_schema(self) -> dict[str, Any]:
        properties: dict[str, Any] = {}
        required: list[str] = []
        for param in self.parameters:
            schema: dict[str, Any] = {"type": param.type}
            if param.description:
                schema["description"] = param.description
            schema.update(param.schema_extras)
            properties[param.name] = schema
            if param.required:
                required.append(param.name)

        root: dict[str, Any] = {"type": "object", "properties": properties}
        if required:
            root["required"] = required
        root["$schema"] = _JSON_SCHEMA_DRAFT
        return root

    def to_openai_tool(self) -> dict[str, Any]:
        parameters = self.to_json_schema()
        parameters.pop("$schema", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }


@runtime_checkable
class Tool(Protocol):
    """Anything that can describe itself and run with a mapping of arguments."""

    def describe(self) -> ToolSpec: ...

    def execute(self, args: Mapping[str, Any]) -> str: ...


class FunctionTool:
    """Tool backed by a pydantic argument model and a plain handler."""

    def __init__(
        self,
        *,
        name: str,
        description: str,
        args_schema: type[BaseModel],
        handler: Callable[[Any], str],
    ) -> None:
        self.name = name
        self.description = description
        self.args_schema = args_schema
        self.handler = handler
        self._spec: ToolSpec | None = None

    def describe(self) -> ToolSpec:
        if self._spec is None:
            self._spec = ToolSpec(
                name=self.name,
                description=self.description,
                parameters=tuple(_parameters_from_model(self.args_schema)),
            )
        return self._spec

    def execute(self, args: Mapping[str, Any]) -> str:
        data = self.args_schema.model_validate(dict(args))
        return self.handler(data)

    def __repr__(self) -> str:
        return f"FunctionTool(name={self.name!r})"


def _parameters_from_model(model: type[BaseModel]) -> list[ToolParameter]:
    schema = model.model_json_schema()
    required = set(schema.get("required", []))
    parameters: list[ToolParameter] = []
    for name, prop in schema.get("properties", {}).items():
        prop = dict(prop)
        prop.pop("title", None)
        description = str(prop.pop("description", ""))
        type_name = prop.pop("type", None)
        if type_name is None:
            # Optional[X] renders as anyOf [X, null]; expose X.
            variants = [v for v in prop.pop("anyOf", []) if v.get("type") != "null"]
            type_name = variants[0].get("type", "string") if variants else "string"
        parameters.append(
            ToolParameter(
                name=name,
                type=str(type_name),
                required=name in required,
                description=description,
                schema_extras=prop,
            )
        )
    return parameters


def safe_describe(tool: Tool) -> ToolSpec | None:
    """Return the tool's spec, or None (logged) when describing it fails."""
    try:
        return tool.describe()
    except Exception as exc:
        logger.warning("tool_describe_failed", tool=repr(tool), error=str(exc))
        return None


class ToolRegistry:
    """Standing set of tools.

    Writes replace the whole tuple under a lock, so a snapshot returned by
    `current_tools()` never changes after it is handed out.
    """

    def __init__(self, tools: Iterable[Tool] | None = None) -> None:
        self._tools: tuple[Tool, ...] = tuple(tools or ())
        self._write_lock = threading.Lock()

    def current_tools(self) -> tuple[Tool, ...]:
        return self._tools

    def current_tool_specs(self) -> list[ToolSpec]:
        specs: list[ToolSpec] = []
        for tool in self._tools:
            spec = safe_describe(tool)
            if spec is not None:
                specs.append(spec)
        return specs

    def add_tool(self, tool: Tool) -> None:
        with self._write_lock:
            self._tools = (*self._tools, tool)

    def add_tools(self, tools: Iterable[Tool]) -> None:
        new_tools = tuple(tools)
        with self._write_lock:
            self._tools = (*self._tools, *new_tools)

    def resolve(self, name: str) -> Tool:
        for tool in self._tools:
            spec = safe_describe(tool)
            if spec is not None and spec.name == name:
                return tool
        raise UnknownToolError(name)

    def execute(self, name: str, args: Mapping[str, Any]) -> str:
        return self.resolve(name).execute(args)

    def merged_with(self, ad_hoc_tools: Iterable[Tool] = ()) -> dict[str, Tool]:
        """Name -> tool map where ad-hoc tools shadow standing ones."""

        merged: dict[str, Tool] = {}
        for tool in (*self._tools, *ad_hoc_tools):
            spec = safe_describe(tool)
            if spec is not None:
                merged[spec.name] = tool
        return merged
