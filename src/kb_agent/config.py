"""Configuration models for the agent."""

from __future__ import annotations

import os
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_DEFAULT_SYSTEM_PROMPT = """
You are a helpful assistant backed by an internal knowledge base.

Rules:
1) Use `retrieve_context` when the provided context does not answer the question.
2) Prefer facts from retrieved context over prior knowledge.
3) If a tool returns an ERROR, decide whether to retry with different arguments or use another tool.
4) If evidence is missing, explicitly say you cannot verify.
""".strip()


class ChunkingConfig(BaseModel):
    """Configures header-aware fixed-window chunking."""

    window_chars: int = Field(default=800, ge=1)


class RetrievalConfig(BaseModel):
    """Configures knowledge retrieval and automatic context injection."""

    auto_context_enabled: bool = True
    auto_context_top_k: int = Field(default=4, ge=1)
    default_top_k: int = Field(default=4, ge=1)
    max_top_k: int = Field(default=20, ge=1)


class AgentConfig(BaseModel):
    """Configures the tool-calling loop and latency targets."""

    max_turns: int = Field(default=8, ge=1)
    tool_timeout_seconds: float = Field(default=30.0, gt=0.0)
    tool_workers: int = Field(default=4, ge=1)
    target_latency_seconds: float = Field(default=8.0, gt=0.0)
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    guardrails: str = ""


class ProviderConfig(BaseModel):
    """Selects the chat model used when an API key is available."""

    provider: str = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"


class AppSettings(BaseModel):
    """Top-level settings assembled from the environment."""

    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    foundation_dir: str | None = None


def load_settings() -> AppSettings:
    """Build `AppSettings` from `.env` and process environment variables."""

    load_dotenv()

    agent_overrides: dict[str, object] = {}
    if os.getenv("KB_AGENT_MAX_TURNS"):
        agent_overrides["max_turns"] = int(os.environ["KB_AGENT_MAX_TURNS"])
    if os.getenv("KB_AGENT_TOOL_TIMEOUT_SECONDS"):
        agent_overrides["tool_timeout_seconds"] = float(
            os.environ["KB_AGENT_TOOL_TIMEOUT_SECONDS"]
        )
    if os.getenv("KB_AGENT_SYSTEM_PROMPT"):
        agent_overrides["system_prompt"] = os.environ["KB_AGENT_SYSTEM_PROMPT"]
    agent_overrides["guardrails"] = os.getenv("KB_AGENT_GUARDRAILS", "")

    retrieval_overrides: dict[str, object] = {}
    if os.getenv("KB_AGENT_AUTO_CONTEXT"):
        retrieval_overrides["auto_context_enabled"] = os.environ[
            "KB_AGENT_AUTO_CONTEXT"
        ].strip().lower() in {"1", "true", "yes", "on"}
    if os.getenv("KB_AGENT_AUTO_CONTEXT_TOP_K"):
        retrieval_overrides["auto_context_top_k"] = int(
            os.environ["KB_AGENT_AUTO_CONTEXT_TOP_K"]
        )

    return AppSettings(
        chunking=ChunkingConfig(
            window_chars=int(os.getenv("KB_AGENT_CHUNK_CHARS", "800"))
        ),
        retrieval=RetrievalConfig(**retrieval_overrides),
        agent=AgentConfig(**agent_overrides),
        provider=ProviderConfig(
            provider=os.getenv("KB_AGENT_PROVIDER", "openai"),
            model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        ),
        logging=LoggingConfig(
            level=os.getenv("LOG_LEVEL", "INFO"),
            format="json" if os.getenv("LOG_FORMAT", "console") == "json" else "console",
        ),
        foundation_dir=os.getenv("KB_AGENT_FOUNDATION_DIR") or None,
    )
