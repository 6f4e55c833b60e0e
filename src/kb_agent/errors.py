"""Exception types raised across the agent."""

from __future__ import annotations


class KbAgentError(Exception):
    """Base class for agent errors."""


class UnknownToolError(KbAgentError, LookupError):
    """Raised when a tool name cannot be resolved."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ToolArgumentError(KbAgentError, ValueError):
    """Tool arguments were not a JSON object."""


class ModelInvocationError(KbAgentError):
    """The model endpoint failed; fatal for the current run."""


class GuardrailRejected(KbAgentError):
    """The request was rejected before any model call."""

    def __init__(self, reason: str = "Request rejected by guardrails") -> None:
        self.reason = reason
        super().__init__(reason)


class RunCancelled(KbAgentError):
    """A run was cancelled and the caller asked to discard partial output."""


class IngestError(KbAgentError):
    """A source could not be parsed or ingested."""
