"""LLM service protocol and data types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol


class Role(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True, slots=True)
class ToolCallRequest:
    """A tool call requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Message:
    """A single message in conversation history."""

    role: Role
    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()  # Assistant messages only
    tool_call_id: str | None = None  # Tool messages only
    name: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True, slots=True)
class AgentAction:
    """What the model wants next: tool calls, or a final reply."""

    reply: str | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()

    @property
    def is_final(self) -> bool:
        return not self.tool_calls and self.reply is not None


@dataclass
class CallMetadata:
    """Metadata collected for one model call."""

    model: str = ""
    latency_ms: float | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    finish_reason: str | None = None


class LLMService(Protocol):
    """Protocol for LLM backends."""

    async def next_action(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]],
    ) -> tuple[AgentAction, CallMetadata]:
        """Ask the model for its next step.

        Args:
            messages: System prompt, history and this turn's tool traffic
            tools: Tool schemas in OpenAI function format

        Returns:
            Tuple of (action, call metadata).
        """
        ...

    async def close(self) -> None:
        """Close any open connections and clean up resources."""
        ...

    async def health_check(self) -> bool:
        """Check if the service is operational."""
        ...
