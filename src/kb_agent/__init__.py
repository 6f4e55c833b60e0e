"""Knowledge-base agent package."""

from .agent.loop import CancellationToken, ToolCallingLoop
from .agent.planner import AgentPlanner
from .agent.registry import FunctionTool, ToolRegistry, ToolSpec
from .config import AgentConfig, ChunkingConfig, RetrievalConfig
from .retrieval.index import KnowledgeIndex

__all__ = [
    "AgentConfig",
    "AgentPlanner",
    "CancellationToken",
    "ChunkingConfig",
    "FunctionTool",
    "KnowledgeIndex",
    "RetrievalConfig",
    "ToolCallingLoop",
    "ToolRegistry",
    "ToolSpec",
]
